"""SimpleStock: local SQLite storage for monthly stock counts."""

__version__ = "0.1.0"
