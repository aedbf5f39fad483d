"""Import/export mapping and transformation engine for cap-table data."""

__version__ = "0.1.0"
