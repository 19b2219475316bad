"""Configuration package for the entitlement ledger."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
