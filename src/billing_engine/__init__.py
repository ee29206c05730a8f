"""Recurring payment scheduling and commission ledger engine."""

__version__ = "0.1.0"
