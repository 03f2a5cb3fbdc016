"""Foreign-exchange rate service with a read-through cache and stale fallback."""

__version__ = "0.1.0"
