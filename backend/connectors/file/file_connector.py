"""File connector for legacy system exports.

Reads an export file from disk (or an uploaded byte buffer) and serves its
rows through the connector interface.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

from errors import ConnectionError
from fileimport import FileImporter, ImportResult
from records import ExtractedRecord

from ..base import BaseConnector
from ..models import (
    ConnectionHandle,
    ConnectorType,
    Credentials,
    ExtractionSelector,
    SourceSystemDescriptor,
    SourceSystemType,
)


class FileConnector(BaseConnector):
    """Connector for export files (CSV, TSV, XLSX, JSON, XML).

    Descriptor ``connection`` keys:
        - path: Path to the export file
        - content: Raw bytes, used instead of ``path`` for uploads
        - filename: Original file name when ``content`` is given
        - format: Declared format (otherwise sniffed)
        - best_effort: Quarantine malformed rows instead of failing
    """

    connector_type = ConnectorType.FILE
    system_types = (SourceSystemType.GENERIC_FILE_IMPORT,)

    def __init__(
        self,
        connector_id: str,
        name: str | None = None,
        importer: FileImporter | None = None,
    ) -> None:
        super().__init__(connector_id, name)
        self.importer = importer or FileImporter()

    def _open(
        self, descriptor: SourceSystemDescriptor, credentials: Credentials
    ) -> ConnectionHandle:
        connection = descriptor.connection
        content = connection.get("content")
        filename = connection.get("filename")

        if content is None:
            path_value = connection.get("path")
            if not path_value:
                raise ConnectionError(
                    "File connector requires 'path' or 'content'", self.connector_id
                )
            path = Path(path_value)
            try:
                content = path.read_bytes()
            except OSError as e:
                raise ConnectionError(
                    f"Cannot read export file {path}: {e}", self.connector_id
                ) from e
            filename = filename or path.name
        elif isinstance(content, str):
            content = content.encode("utf-8")

        result = self.importer.import_bytes(
            content,
            filename=filename,
            declared_format=connection.get("format"),
            best_effort=bool(connection.get("best_effort", False)),
            connector_id=self.connector_id,
        )
        return ConnectionHandle(
            connector_id=self.connector_id,
            descriptor=descriptor,
            session=result,
            details=result.summary(),
        )

    def _iter_rows(
        self, handle: ConnectionHandle, selector: ExtractionSelector, offset: int
    ) -> Iterator[ExtractedRecord]:
        result: ImportResult = handle.session
        records = result.records[offset:]
        if selector.limit is not None:
            records = records[: selector.limit]
        for record in records:
            if selector.fields:
                yield ExtractedRecord(
                    fields={
                        name: record.fields[name]
                        for name in selector.fields
                        if name in record.fields
                    },
                    provenance=record.provenance,
                )
            else:
                yield record

    def _close(self, handle: ConnectionHandle) -> None:
        handle.session = None
