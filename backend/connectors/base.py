"""Base connector abstract class.

Defines the interface that all legacy source connectors must implement.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Iterator

from errors import ConnectionError
from records import ExtractedRecord

from .capabilities import SYSTEM_CAPABILITIES
from .models import (
    ConnectionHandle,
    ConnectorCapabilities,
    ConnectorType,
    Credentials,
    ExtractionSelector,
    SourceSystemDescriptor,
    SourceSystemType,
)

logger = logging.getLogger(__name__)

RESUME_TOKEN_PREFIX = "offset:"


def encode_resume_token(offset: int) -> str:
    """Encode an extraction position as an opaque resume token."""
    return f"{RESUME_TOKEN_PREFIX}{offset}"


def decode_resume_token(token: str | None) -> int:
    """Decode a resume token back to an extraction offset.

    Raises:
        ValueError: If the token is not one this module produced
    """
    if not token:
        return 0
    if not token.startswith(RESUME_TOKEN_PREFIX):
        raise ValueError(f"Invalid resume token: {token!r}")
    try:
        offset = int(token[len(RESUME_TOKEN_PREFIX):])
    except ValueError as e:
        raise ValueError(f"Invalid resume token: {token!r}") from e
    if offset < 0:
        raise ValueError(f"Invalid resume token: {token!r}")
    return offset


class ExtractionStream:
    """Lazy, finite, restartable sequence of extracted records.

    Iterating pulls records from the source on demand. ``resume_token`` always
    points just past the last record handed out, so a new ``extract`` call
    with that token continues where this stream stopped.
    """

    def __init__(self, records: Iterator[ExtractedRecord], start_offset: int) -> None:
        self._records = records
        self._offset = start_offset

    def __iter__(self) -> "ExtractionStream":
        return self

    def __next__(self) -> ExtractedRecord:
        record = next(self._records)
        self._offset += 1
        return record

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def resume_token(self) -> str:
        return encode_resume_token(self._offset)


class BaseConnector(ABC):
    """Abstract base class for all legacy source connectors.

    Connectors handle:
    - Session management (connect, disconnect)
    - Lazy extraction normalized to flat ExtractedRecords
    - Capability reporting for the system types they serve

    Subclasses declare the system types they serve and implement
    ``_open`` and ``_iter_rows`` for their transport.
    """

    connector_type: ClassVar[ConnectorType]
    system_types: ClassVar[tuple[SourceSystemType, ...]] = ()

    def __init__(self, connector_id: str, name: str | None = None) -> None:
        """Initialize the connector.

        Args:
            connector_id: Unique identifier recorded in record provenance
            name: Human-readable name used in log messages
        """
        self.connector_id = connector_id
        self.name = name or connector_id

    def connect(
        self,
        descriptor: SourceSystemDescriptor,
        credentials: Credentials | None = None,
    ) -> ConnectionHandle:
        """Open an authenticated session with a legacy system.

        Args:
            descriptor: The system to connect to
            credentials: Credentials for the session

        Returns:
            ConnectionHandle for use with ``extract``

        Raises:
            ConnectionError: On auth failure, unreachable host, or an
                unsupported system version
        """
        if descriptor.system_type not in self.system_types:
            raise ConnectionError(
                f"Connector {type(self).__name__} does not serve "
                f"{descriptor.system_type.value}",
                self.connector_id,
            )
        self._check_version(descriptor)
        handle = self._open(descriptor, credentials or Credentials())
        self._log("info", f"Connected to {descriptor.name}", system_id=descriptor.system_id)
        return handle

    def extract(
        self,
        handle: ConnectionHandle,
        selector: ExtractionSelector | None = None,
        resume_token: str | None = None,
    ) -> ExtractionStream:
        """Extract records lazily, optionally resuming from a token.

        Args:
            handle: Handle returned by ``connect``
            selector: What to extract
            resume_token: Token from a previous stream's ``resume_token``

        Returns:
            ExtractionStream of ExtractedRecords

        Raises:
            ConnectionError: If the handle is closed
            ValueError: If the resume token is invalid
        """
        if handle.closed:
            raise ConnectionError("Connection handle is closed", self.connector_id)
        offset = decode_resume_token(resume_token)
        return ExtractionStream(
            self._iter_rows(handle, selector or ExtractionSelector(), offset), offset
        )

    def disconnect(self, handle: ConnectionHandle) -> None:
        """Close a session."""
        if handle.closed:
            return
        self._close(handle)
        handle.closed = True
        self._log("info", "Disconnected", system_id=handle.descriptor.system_id)

    @classmethod
    def capabilities(cls, system_type: SourceSystemType) -> ConnectorCapabilities:
        """Report what a system type supports through this connector."""
        return SYSTEM_CAPABILITIES[system_type]

    def _check_version(self, descriptor: SourceSystemDescriptor) -> None:
        supported = self.capabilities(descriptor.system_type).supported_versions
        if descriptor.version and supported and descriptor.version not in supported:
            raise ConnectionError(
                f"Unsupported {descriptor.system_type.value} version "
                f"{descriptor.version} (supported: {', '.join(supported)})",
                self.connector_id,
            )

    @abstractmethod
    def _open(
        self, descriptor: SourceSystemDescriptor, credentials: Credentials
    ) -> ConnectionHandle:
        """Open the transport session and return a handle."""

    @abstractmethod
    def _iter_rows(
        self, handle: ConnectionHandle, selector: ExtractionSelector, offset: int
    ) -> Iterator[ExtractedRecord]:
        """Yield records starting at ``offset``."""

    def _close(self, handle: ConnectionHandle) -> None:
        """Release transport resources held by the handle."""

    def _log(self, level: str, message: str, **context: Any) -> None:
        """Log a message with connector context.

        Args:
            level: Log level (debug, info, warning, error)
            message: Log message
            **context: Additional context to include
        """
        log_fn = getattr(logger, level.lower(), logger.info)
        log_fn(
            f"[{self.name}] {message}",
            extra={"connector_id": self.connector_id, **context},
        )
