"""File-based connectors."""

from .file_connector import FileConnector

__all__ = ["FileConnector"]
