"""Parsers for legacy export files.

Provides parsing capabilities for:
- Delimited text (CSV, TSV) with a header row
- Excel workbooks (first worksheet, header row)
- JSON arrays or objects wrapping a record array
- XML documents with repeated record elements

Every parser returns a ``ParseOutcome`` holding the parsed rows (each with the
line or row number it came from) and, in best-effort mode, the rows that were
quarantined because they were malformed. In strict mode the first malformed row
raises ``ParseError``.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET
from defusedxml.ElementTree import ParseError as XMLParseError
from openpyxl import load_workbook

from errors import ParseError

logger = logging.getLogger(__name__)


class FileFormat(str, Enum):
    """Supported import formats."""

    CSV = "csv"
    TSV = "tsv"
    XLSX = "xlsx"
    JSON = "json"
    XML = "xml"


EXTENSION_FORMATS = {
    ".csv": FileFormat.CSV,
    ".txt": FileFormat.CSV,
    ".tsv": FileFormat.TSV,
    ".tab": FileFormat.TSV,
    ".xlsx": FileFormat.XLSX,
    ".xlsm": FileFormat.XLSX,
    ".json": FileFormat.JSON,
    ".xml": FileFormat.XML,
}

# Keys commonly used to wrap the record array in JSON exports
JSON_RECORD_KEYS = ("records", "data", "residents", "patients", "clients", "items", "rows")


@dataclass
class ParsedRow:
    """A parsed row and where it was found."""

    values: dict[str, Any]
    row_number: int
    line_number: int | None = None


@dataclass
class QuarantinedRow:
    """A malformed row set aside in best-effort mode."""

    row_number: int
    reason: str
    line_number: int | None = None
    raw: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "line_number": self.line_number,
            "reason": self.reason,
            "raw": self.raw,
        }


@dataclass
class ParseOutcome:
    """Rows and quarantined rows produced by a parser."""

    rows: list[ParsedRow] = field(default_factory=list)
    quarantined: list[QuarantinedRow] = field(default_factory=list)
    fields: list[str] = field(default_factory=list)


def sniff_format(data: bytes, filename: str | None = None) -> FileFormat:
    """Determine the file format from the file name, falling back to content.

    Args:
        data: Raw file bytes
        filename: Optional original file name

    Returns:
        The detected FileFormat

    Raises:
        ParseError: If the format cannot be determined
    """
    if filename:
        suffix = "." + filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if suffix in EXTENSION_FORMATS:
            return EXTENSION_FORMATS[suffix]

    # xlsx files are zip archives
    if data[:4] == b"PK\x03\x04":
        return FileFormat.XLSX

    head = data[:2048].lstrip(b"\xef\xbb\xbf").lstrip()
    if head[:1] in (b"[", b"{"):
        return FileFormat.JSON
    if head[:1] == b"<":
        return FileFormat.XML

    try:
        text = head.decode("utf-8", errors="strict")
    except UnicodeDecodeError as e:
        raise ParseError("Unable to determine file format from content") from e

    first_line = text.splitlines()[0] if text else ""
    if "\t" in first_line:
        return FileFormat.TSV
    if "," in first_line or ";" in first_line:
        return FileFormat.CSV

    raise ParseError("Unable to determine file format from content")


def _decode(data: bytes) -> str:
    """Decode text content, accepting a UTF-8 BOM and falling back to cp1252."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        pass
    try:
        return data.decode("cp1252")
    except UnicodeDecodeError as e:
        raise ParseError(
            f"File is not valid UTF-8 or Windows-1252 text (byte offset {e.start})"
        ) from e


def _clean_cell(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _reject(
    outcome: ParseOutcome,
    best_effort: bool,
    row_number: int,
    reason: str,
    line_number: int | None = None,
    raw: Any = None,
) -> None:
    """Quarantine a malformed row, or raise when not in best-effort mode."""
    if not best_effort:
        where = f"line {line_number}" if line_number else f"row {row_number}"
        raise ParseError(f"Malformed {where}: {reason}", line_number=line_number)
    outcome.quarantined.append(
        QuarantinedRow(
            row_number=row_number, reason=reason, line_number=line_number, raw=raw
        )
    )


def _check_header(header: list[Any], line_number: int | None = 1) -> list[str]:
    names = [str(h).strip() if h is not None else "" for h in header]
    if not any(names):
        raise ParseError("Header row is empty", line_number=line_number)
    if any(not name for name in names):
        raise ParseError("Header row contains blank column names", line_number=line_number)
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ParseError(
            f"Header row contains duplicate columns: {', '.join(duplicates)}",
            line_number=line_number,
        )
    return names


def parse_delimited(
    data: bytes, delimiter: str = ",", best_effort: bool = False
) -> ParseOutcome:
    """Parse CSV/TSV content with a header row.

    A row whose field count differs from the header is malformed. Blank lines
    are skipped.

    Args:
        data: Raw file bytes
        delimiter: Field delimiter character
        best_effort: Quarantine malformed rows instead of raising

    Returns:
        ParseOutcome with rows keyed by header names

    Raises:
        ParseError: On undecodable content, a bad header, or (strict mode) a
            malformed row
    """
    text = _decode(data)
    if not text.strip():
        raise ParseError("File is empty")

    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter, strict=True)
    outcome = ParseOutcome()
    header: list[str] | None = None
    row_number = 0

    while True:
        try:
            row = next(reader)
        except StopIteration:
            break
        except csv.Error as e:
            # Quoting errors leave the reader positioned after the bad line
            row_number += 1
            _reject(outcome, best_effort, row_number, str(e), reader.line_num)
            continue

        if not row or all(not cell.strip() for cell in row):
            continue

        if header is None:
            header = _check_header(row, reader.line_num)
            outcome.fields = header
            continue

        row_number += 1
        if len(row) != len(header):
            _reject(
                outcome,
                best_effort,
                row_number,
                f"expected {len(header)} fields, found {len(row)}",
                reader.line_num,
                raw=row,
            )
            continue

        outcome.rows.append(
            ParsedRow(
                values={name: _clean_cell(cell) for name, cell in zip(header, row)},
                row_number=row_number,
                line_number=reader.line_num,
            )
        )

    if header is None:
        raise ParseError("File has no header row")
    return outcome


def parse_xlsx(data: bytes, best_effort: bool = False) -> ParseOutcome:
    """Parse the first worksheet of an Excel workbook.

    The first non-empty row is the header. Rows with values beyond the header
    width are malformed.
    """
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as e:
        # openpyxl raises a mix of zipfile, KeyError and its own exceptions
        raise ParseError(f"Unreadable spreadsheet: {e}") from e

    try:
        sheet = workbook.worksheets[0]
        outcome = ParseOutcome()
        header: list[str] | None = None
        row_number = 0

        for sheet_row, cells in enumerate(sheet.iter_rows(values_only=True), start=1):
            if cells is None or all(_clean_cell(c) is None for c in cells):
                continue
            if header is None:
                # Trailing empty header cells are formatting, not columns
                trimmed = list(cells)
                while trimmed and _clean_cell(trimmed[-1]) is None:
                    trimmed.pop()
                header = _check_header(trimmed, sheet_row)
                outcome.fields = header
                continue

            row_number += 1
            overflow = [c for c in cells[len(header):] if _clean_cell(c) is not None]
            if overflow:
                _reject(
                    outcome,
                    best_effort,
                    row_number,
                    f"values beyond the {len(header)} header columns",
                    sheet_row,
                    raw=[_json_safe(c) for c in cells],
                )
                continue

            padded = list(cells[: len(header)]) + [None] * (len(header) - len(cells))
            outcome.rows.append(
                ParsedRow(
                    values={
                        name: _excel_value(cell) for name, cell in zip(header, padded)
                    },
                    row_number=row_number,
                    line_number=sheet_row,
                )
            )
    finally:
        workbook.close()

    if header is None:
        raise ParseError("Worksheet has no header row")
    return outcome


def _excel_value(cell: Any) -> Any:
    if isinstance(cell, datetime):
        # Excel stores dates as datetimes at midnight
        return cell.date() if not cell.time().hour and not cell.time().minute else cell
    if isinstance(cell, float) and cell.is_integer():
        return int(cell)
    return _clean_cell(cell)


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def flatten_record(record: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings into dotted keys.

    Lists are kept as embedded sequences (e.g. medication lists); mappings
    inside lists are left intact.
    """
    result: dict[str, Any] = {}
    for key, value in record.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            result.update(flatten_record(value, name))
        else:
            result[name] = _clean_cell(value)
    return result


def parse_json(data: bytes, best_effort: bool = False) -> ParseOutcome:
    """Parse a JSON array of objects, or an object wrapping one.

    Also accepts newline-delimited JSON where every line is an object.
    """
    text = _decode(data)
    if not text.strip():
        raise ParseError("File is empty")

    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        document = _parse_ndjson(text)
        if document is None:
            raise ParseError(f"Invalid JSON: {e.msg}", line_number=e.lineno) from e

    if isinstance(document, dict):
        items = None
        for key in JSON_RECORD_KEYS:
            if isinstance(document.get(key), list):
                items = document[key]
                break
        if items is None:
            list_values = [v for v in document.values() if isinstance(v, list)]
            if len(list_values) == 1:
                items = list_values[0]
            else:
                items = [document]
    elif isinstance(document, list):
        items = document
    else:
        raise ParseError("JSON document must be an array or object of records")

    outcome = ParseOutcome()
    seen: dict[str, None] = {}
    for row_number, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            _reject(
                outcome,
                best_effort,
                row_number,
                f"expected an object, found {type(item).__name__}",
                raw=item,
            )
            continue
        values = flatten_record(item)
        for name in values:
            seen.setdefault(name)
        outcome.rows.append(ParsedRow(values=values, row_number=row_number))

    outcome.fields = list(seen)
    return outcome


def _parse_ndjson(text: str) -> list[Any] | None:
    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) < 2:
        return None
    try:
        return [json.loads(line) for line in lines]
    except json.JSONDecodeError:
        return None


def _element_value(element: Any) -> Any:
    """Convert an XML element into a scalar, a mapping or a list."""
    children = list(element)
    if not children:
        if element.attrib:
            value = dict(element.attrib)
            if element.text and element.text.strip():
                value["value"] = element.text.strip()
            return value
        return _clean_cell(element.text)

    grouped: dict[str, list[Any]] = {}
    for child in children:
        grouped.setdefault(child.tag, []).append(_element_value(child))

    result: dict[str, Any] = dict(element.attrib)
    for tag, values in grouped.items():
        result[tag] = values if len(values) > 1 else values[0]

    # <Medications><Medication/>...</Medications> is a list, not a mapping
    if len(grouped) == 1 and not element.attrib:
        tag, values = next(iter(grouped.items()))
        if len(values) > 1:
            return values
    return result


def parse_xml(data: bytes, best_effort: bool = False) -> ParseOutcome:
    """Parse an XML document whose root holds repeated record elements.

    Each child of the root is a record; its child elements and attributes are
    the fields. A record element with neither is malformed.
    """
    try:
        root = SafeET.fromstring(data)
    except XMLParseError as e:
        line = getattr(e, "position", (None, None))[0]
        raise ParseError(f"Invalid XML: {e}", line_number=line) from e
    except DefusedXmlException as e:
        raise ParseError(f"Refused XML construct: {e}") from e

    outcome = ParseOutcome()
    seen: dict[str, None] = {}
    for row_number, element in enumerate(list(root), start=1):
        if not len(element) and not element.attrib:
            _reject(
                outcome,
                best_effort,
                row_number,
                f"record element <{element.tag}> has no fields",
                raw=element.text,
            )
            continue
        value = _element_value(element)
        if not isinstance(value, dict):
            value = {element.tag: value}
        values = flatten_record(value)
        for name in values:
            seen.setdefault(name)
        outcome.rows.append(ParsedRow(values=values, row_number=row_number))

    if not outcome.rows and not outcome.quarantined:
        raise ParseError("XML document contains no records")

    outcome.fields = list(seen)
    return outcome
