"""Run the relay: python -m import_relay [--concurrency N] [--print-config]"""

from import_relay.workers.runner import main

if __name__ == "__main__":
    raise SystemExit(main())
