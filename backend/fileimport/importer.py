"""File import: bytes in, provenance-tagged records out."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from config import MAX_IMPORT_BYTES, TYPE_INFERENCE_SAMPLE_SIZE
from errors import ParseError
from records import ExtractedRecord, Provenance

from .parsers import (
    FileFormat,
    ParseOutcome,
    QuarantinedRow,
    parse_delimited,
    parse_json,
    parse_xlsx,
    parse_xml,
    sniff_format,
)
from .type_inference import FieldTypeInference, infer_types

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    """Result of importing one file."""

    file_format: FileFormat
    records: list[ExtractedRecord]
    fields: list[str]
    field_types: dict[str, FieldTypeInference]
    quarantined: list[QuarantinedRow] = field(default_factory=list)
    source_name: str | None = None

    @property
    def row_count(self) -> int:
        return len(self.records)

    def summary(self) -> dict[str, Any]:
        return {
            "format": self.file_format.value,
            "source_name": self.source_name,
            "row_count": self.row_count,
            "quarantined_count": len(self.quarantined),
            "fields": self.fields,
            "field_types": {k: v.to_dict() for k, v in self.field_types.items()},
            "quarantined": [q.to_dict() for q in self.quarantined],
        }


class FileImporter:
    """Parses legacy export files into ExtractedRecords.

    Handles:
    - Format detection from file name or content
    - Size limits (no partial reads of oversize files)
    - Strict and best-effort parsing
    - Per-field type inference
    """

    def __init__(
        self,
        max_bytes: int = MAX_IMPORT_BYTES,
        sample_size: int = TYPE_INFERENCE_SAMPLE_SIZE,
    ) -> None:
        """Initialize the importer.

        Args:
            max_bytes: Largest accepted file size
            sample_size: Values per field used for type inference
        """
        self.max_bytes = max_bytes
        self.sample_size = sample_size

    def import_bytes(
        self,
        data: bytes,
        filename: str | None = None,
        declared_format: FileFormat | str | None = None,
        best_effort: bool = False,
        connector_id: str = "file_import",
    ) -> ImportResult:
        """Parse a byte buffer into records.

        Args:
            data: File contents
            filename: Original file name (used for format detection and provenance)
            declared_format: Format to use instead of sniffing
            best_effort: Quarantine malformed rows instead of aborting
            connector_id: Connector id recorded in each record's provenance

        Returns:
            ImportResult with records, inferred field types and quarantined rows

        Raises:
            ParseError: If the file is too large, empty, or malformed
        """
        if len(data) > self.max_bytes:
            raise ParseError(
                f"File size {len(data)} bytes exceeds the {self.max_bytes} byte limit"
            )
        if not data:
            raise ParseError("File is empty")

        file_format = (
            FileFormat(declared_format) if declared_format else sniff_format(data, filename)
        )
        outcome = self._parse(data, file_format, best_effort)

        records = [
            ExtractedRecord.from_raw(
                row.values,
                Provenance(
                    connector_id=connector_id,
                    source_row_index=row.row_number - 1,
                    source_name=filename,
                    line_number=row.line_number,
                ),
            )
            for row in outcome.rows
        ]
        field_types = infer_types(
            [row.values for row in outcome.rows], outcome.fields, self.sample_size
        )

        if outcome.quarantined:
            logger.warning(
                f"Quarantined {len(outcome.quarantined)} malformed row(s) from "
                f"{filename or file_format.value}"
            )
        logger.info(
            f"Imported {len(records)} record(s) from {filename or file_format.value}"
        )

        return ImportResult(
            file_format=file_format,
            records=records,
            fields=outcome.fields,
            field_types=field_types,
            quarantined=outcome.quarantined,
            source_name=filename,
        )

    def _parse(
        self, data: bytes, file_format: FileFormat, best_effort: bool
    ) -> ParseOutcome:
        if file_format == FileFormat.CSV:
            return parse_delimited(data, ",", best_effort)
        if file_format == FileFormat.TSV:
            return parse_delimited(data, "\t", best_effort)
        if file_format == FileFormat.XLSX:
            return parse_xlsx(data, best_effort)
        if file_format == FileFormat.JSON:
            return parse_json(data, best_effort)
        return parse_xml(data, best_effort)
