"""Database connectors."""

from .legacy_db import LegacyDatabaseConnector

__all__ = ["LegacyDatabaseConnector"]
