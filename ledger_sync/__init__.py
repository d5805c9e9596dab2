"""Sync ledger transactions into a remote budget."""

__version__ = "1.0.0"
