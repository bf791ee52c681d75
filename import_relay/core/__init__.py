"""Configuration, logging, error taxonomy and metrics shared by the workers."""
