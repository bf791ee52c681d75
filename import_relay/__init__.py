"""Import relay: Kafka import requests to the GED import service over gRPC."""

__version__ = "0.1.0"
