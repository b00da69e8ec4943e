"""apiwatch — alert evaluation and notification engine for API health metrics."""

__version__ = "0.1.0"
