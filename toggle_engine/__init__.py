"""Feature toggle and remote configuration engine."""

__version__ = "1.0.0"
