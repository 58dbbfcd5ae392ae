"""API connectors."""

from .legacy_api import LegacyApiConnector

__all__ = ["LegacyApiConnector"]
