"""solesync: sneaker market-data sync and cross-provider price aggregation."""

__version__ = "0.1.0"
