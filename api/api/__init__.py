"""HTTP surface of the billing sync service."""

__version__ = "0.4.0"
