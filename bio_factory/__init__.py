"""Data-driven biological factory rule engine."""

__version__ = "0.1.0"
