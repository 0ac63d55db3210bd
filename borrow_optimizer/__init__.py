"""Multi-venue borrowing optimizer: strategy ranking, position supervision and keeper."""

__version__ = "0.1.0"
