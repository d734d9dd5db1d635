"""Racing Warehouse: incremental ingestion of horse-racing entity data."""

__version__ = "0.1.0"
