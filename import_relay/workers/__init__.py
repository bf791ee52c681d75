"""
Import Relay - Workers

The import pipeline: payload decoding, request mapping, the import gateway,
the ack/retry policy, the failure publisher and the Kafka runner.

Run the worker via:
    python -m import_relay
    import-relay --concurrency 4

Do NOT import worker modules here to avoid sys.modules RuntimeWarning
when running the runner as __main__.
"""
