"""Source connector framework for legacy care systems.

This package provides connectors for extracting resident records from
legacy care management systems:
- Export files (CSV, TSV, XLSX, JSON, XML)
- Legacy SQL databases (via SQLAlchemy)
- Legacy REST APIs (via httpx)

Every connector normalizes rows into provenance-tagged ExtractedRecords and
supports resumable extraction.
"""

from .base import BaseConnector, ExtractionStream, decode_resume_token, encode_resume_token
from .models import (
    AuthType,
    ConnectionHandle,
    ConnectorCapabilities,
    ConnectorType,
    Credentials,
    ExtractionSelector,
    SourceSystemDescriptor,
    SourceSystemType,
)
from .registry import ConnectorRegistry, build_default_registry, capabilities

__all__ = [
    # Base classes
    "BaseConnector",
    "ExtractionStream",
    "decode_resume_token",
    "encode_resume_token",
    # Models
    "AuthType",
    "ConnectionHandle",
    "ConnectorCapabilities",
    "ConnectorType",
    "Credentials",
    "ExtractionSelector",
    "SourceSystemDescriptor",
    "SourceSystemType",
    # Registry
    "ConnectorRegistry",
    "build_default_registry",
    "capabilities",
]
