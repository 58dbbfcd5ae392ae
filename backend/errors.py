"""Error taxonomy for the migration pipeline.

Every error carries the pipeline, batch and record provenance it relates to,
plus the UTC timestamp at which it was raised, so it can be recorded against
the pipeline without extra bookkeeping at the call site.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


class MigrationError(Exception):
    """Base exception for migration pipeline errors."""

    #: Transient errors are retried with backoff before they become fatal.
    transient: bool = False

    def __init__(
        self,
        message: str,
        pipeline_id: str | None = None,
        batch_id: str | None = None,
        provenance: str | None = None,
        transient: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.pipeline_id = pipeline_id
        self.batch_id = batch_id
        self.provenance = provenance
        self.timestamp = datetime.now(timezone.utc).isoformat()
        if transient is not None:
            self.transient = transient

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def with_context(
        self,
        pipeline_id: str | None = None,
        batch_id: str | None = None,
    ) -> "MigrationError":
        """Fill in pipeline/batch context that was unknown where the error was raised."""
        if pipeline_id and not self.pipeline_id:
            self.pipeline_id = pipeline_id
        if batch_id and not self.batch_id:
            self.batch_id = batch_id
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.error_type,
            "message": self.message,
            "pipeline_id": self.pipeline_id,
            "batch_id": self.batch_id,
            "provenance": self.provenance,
            "timestamp": self.timestamp,
        }


class ConnectionError(MigrationError):
    """Raised when a legacy system cannot be reached or authenticated."""

    def __init__(
        self,
        message: str,
        connector_id: str | None = None,
        transient: bool = False,
        **context: Any,
    ) -> None:
        super().__init__(message, transient=transient, **context)
        self.connector_id = connector_id


class ParseError(MigrationError):
    """Raised when an input file has malformed structure."""

    def __init__(
        self, message: str, line_number: int | None = None, **context: Any
    ) -> None:
        super().__init__(message, **context)
        self.line_number = line_number


class MappingError(MigrationError):
    """Raised when source fields cannot be mapped with enough confidence."""

    def __init__(
        self, message: str, source_fields: list[str] | None = None, **context: Any
    ) -> None:
        super().__init__(message, **context)
        self.source_fields = source_fields or []


class ValidationError(MigrationError):
    """Raised when a record (or a whole batch) fails validation."""

    def __init__(
        self, message: str, findings: list[Any] | None = None, **context: Any
    ) -> None:
        super().__init__(message, **context)
        self.findings = findings or []


class BackupError(MigrationError):
    """Raised when a snapshot cannot be created, verified or restored."""


class WriteError(MigrationError):
    """Raised when a batch cannot be written to the target store."""

    transient = True


class CancellationRequested(MigrationError):
    """Raised at a batch boundary after the operator cancelled the pipeline."""


class InvalidTransitionError(MigrationError):
    """Raised when a pipeline state change is not allowed."""


class NotFoundError(MigrationError):
    """Raised when a pipeline, mapping or snapshot does not exist for the tenant."""


class TenantIsolationError(MigrationError):
    """Raised when an operation crosses tenant boundaries."""
