"""Entitlement & settlement ledger for the course marketplace."""

__version__ = "1.0.0"
