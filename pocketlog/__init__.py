"""PocketLog: hourly log segments from network senders, shipped to object storage."""

__version__ = "0.1.0"
