"""Device-side enrollment state, caching and reconciliation for Kantine Koning."""

__version__ = "0.1.0"
