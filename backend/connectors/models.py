"""Pydantic models for legacy source connectors.

Defines the descriptors, credentials, selectors and capability records shared
by every connector implementation.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator

# Pattern for SQL identifiers (table/column names)
SQL_IDENTIFIER_PATTERN = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)?$"
)


class SourceSystemType(str, Enum):
    """Legacy systems a care facility may migrate from."""

    PERSON_CENTRED_SOFTWARE = "person_centred_software"
    CARE_SYSTEMS_UK = "care_systems_uk"
    NHS_SPINE = "nhs_spine"
    SOCIAL_SERVICES = "social_services"
    GENERIC_FILE_IMPORT = "generic_file_import"
    GENERIC_DATABASE = "generic_database"
    GENERIC_API = "generic_api"


class ConnectorType(str, Enum):
    """Transport used to reach a legacy system."""

    DATABASE = "database"
    API = "api"
    FILE = "file"


class AuthType(str, Enum):
    """API authentication schemes."""

    NONE = "none"
    API_KEY = "api_key"
    BASIC = "basic"
    BEARER = "bearer"


class SourceSystemDescriptor(BaseModel):
    """Identifies a legacy system and how to reach it."""

    system_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    system_type: SourceSystemType
    name: str = Field(..., min_length=1, max_length=255)
    version: str | None = None
    # Transport-specific parameters: path/format for files, url/table for
    # databases, base_url/endpoint for APIs
    connection: dict[str, Any] = Field(default_factory=dict)


class Credentials(BaseModel):
    """Credentials for a legacy system session."""

    auth_type: AuthType = AuthType.NONE
    username: str | None = None
    password: SecretStr | None = None
    token: SecretStr | None = None
    api_key: SecretStr | None = None
    api_key_header: str = "X-API-Key"


class ExtractionSelector(BaseModel):
    """Selects what to extract from a connected system."""

    entity: str | None = None  # Table name, API endpoint, or None for files
    fields: list[str] | None = None
    batch_size: int = Field(default=500, ge=1, le=10000)
    limit: int | None = Field(default=None, ge=1)

    @field_validator("entity")
    @classmethod
    def validate_entity(cls, v: str | None) -> str | None:
        """Reject entity names that could smuggle SQL or path segments."""
        if v is None:
            return v
        if v.startswith("/"):
            if ".." in v or "//" in v:
                raise ValueError(f"Invalid endpoint path: '{v}'")
            return v
        if not SQL_IDENTIFIER_PATTERN.match(v):
            raise ValueError(
                f"Invalid entity name: '{v}'. "
                "Only alphanumeric characters and underscores allowed."
            )
        return v


class ConnectorCapabilities(BaseModel):
    """What a legacy system supports."""

    system_type: SourceSystemType
    system_name: str
    connector_type: ConnectorType
    supported_operations: list[str]
    data_types: list[str]
    limits: dict[str, Any] = Field(default_factory=dict)
    export_formats: list[str] = Field(default_factory=list)
    supported_versions: list[str] | None = None
    known_limitations: list[str] = Field(default_factory=list)


@dataclass
class ConnectionHandle:
    """An active, authenticated session with a legacy system."""

    connector_id: str
    descriptor: SourceSystemDescriptor
    session: Any = None
    handle_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    opened_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    closed: bool = False
    details: dict[str, Any] = field(default_factory=dict)
