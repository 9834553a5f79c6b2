"""Binary-outcome prediction market engine."""

__version__ = "0.1.0"
