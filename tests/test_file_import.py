"""Tests for legacy file import and type inference."""

from __future__ import annotations

import io
import json
from datetime import date, datetime

import pytest
from openpyxl import Workbook

from errors import ParseError
from fileimport import FileFormat, FileImporter, FieldType, infer_types, sniff_format
from records import ValueKind


@pytest.fixture
def importer() -> FileImporter:
    return FileImporter()


def _xlsx(rows: list[list]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class TestFormatSniffing:
    """Test format detection."""

    def test_extension_wins(self):
        """Test the file extension decides the format."""
        assert sniff_format(b"a,b\n1,2\n", "export.tsv") == FileFormat.TSV

    def test_content_fallback(self):
        """Test formats are recognized from content without a name."""
        assert sniff_format(b'[{"a": 1}]') == FileFormat.JSON
        assert sniff_format(b"<residents/>") == FileFormat.XML
        assert sniff_format(b"a\tb\n1\t2\n") == FileFormat.TSV
        assert sniff_format(b"a,b\n1,2\n") == FileFormat.CSV

    def test_unknown_content(self):
        """Test undetectable content raises ParseError."""
        with pytest.raises(ParseError):
            sniff_format(b"just some words")


class TestDelimitedImport:
    """Test CSV and TSV import."""

    def test_csv_rows_become_records(self, importer: FileImporter):
        """Test each CSV row becomes an ExtractedRecord with provenance."""
        data = b"PatientID,PatientName,DOB\nP001,Margaret Smith,05/03/1941\nP002,Arthur Jones,12/11/1938\n"

        result = importer.import_bytes(data, filename="residents.csv", connector_id="pcs")

        assert result.row_count == 2
        assert result.fields == ["PatientID", "PatientName", "DOB"]
        first = result.records[0]
        assert first.get("PatientName") == "Margaret Smith"
        assert first.provenance.connector_id == "pcs"
        assert first.provenance.source_name == "residents.csv"
        assert first.provenance.line_number == 2
        assert first.provenance.key == "pcs:residents.csv:0"

    def test_blank_cells_are_null(self, importer: FileImporter):
        """Test empty cells are tagged as null values."""
        result = importer.import_bytes(b"a,b\n1,\n", filename="x.csv")

        assert result.records[0].kind_of("b") == ValueKind.NULL

    def test_ragged_row_strict(self, importer: FileImporter):
        """Test a row with the wrong field count aborts a strict import."""
        with pytest.raises(ParseError) as exc_info:
            importer.import_bytes(b"a,b\n1,2\n3\n", filename="x.csv")

        assert exc_info.value.line_number == 3

    def test_ragged_row_best_effort(self, importer: FileImporter):
        """Test best-effort mode quarantines the bad row and keeps the rest."""
        result = importer.import_bytes(
            b"a,b\n1,2\n3\n4,5\n", filename="x.csv", best_effort=True
        )

        assert result.row_count == 2
        assert len(result.quarantined) == 1
        summary = result.summary()
        assert summary["quarantined_count"] == 1
        assert summary["quarantined"][0]["line_number"] == 3

    def test_duplicate_header(self, importer: FileImporter):
        """Test duplicate column names are rejected."""
        with pytest.raises(ParseError, match="duplicate"):
            importer.import_bytes(b"a,a\n1,2\n", filename="x.csv")

    def test_empty_file(self, importer: FileImporter):
        """Test an empty file is rejected."""
        with pytest.raises(ParseError):
            importer.import_bytes(b"", filename="x.csv")

    def test_size_limit(self):
        """Test oversize files are rejected before parsing."""
        with pytest.raises(ParseError, match="exceeds"):
            FileImporter(max_bytes=10).import_bytes(b"a,b\n1,2\n3,4\n", filename="x.csv")

    def test_windows_1252_fallback(self, importer: FileImporter):
        """Test non-UTF-8 exports decode as Windows-1252."""
        data = "name\nRené\n".encode("cp1252")

        result = importer.import_bytes(data, filename="x.csv")

        assert result.records[0].get("name") == "René"


class TestStructuredImport:
    """Test JSON, XML and XLSX import."""

    def test_json_wrapped_records(self, importer: FileImporter):
        """Test records wrapped in an object key are found and flattened."""
        document = {
            "residents": [
                {"id": "R1", "address": {"postcode": "M1 1AE"}, "meds": ["Aspirin 75mg OD"]},
            ]
        }

        result = importer.import_bytes(json.dumps(document).encode(), filename="x.json")

        record = result.records[0]
        assert record.get("address.postcode") == "M1 1AE"
        assert record.kind_of("meds") == ValueKind.LIST

    def test_json_non_object_best_effort(self, importer: FileImporter):
        """Test non-object array items are quarantined in best-effort mode."""
        result = importer.import_bytes(
            b'[{"id": "R1"}, 42]', filename="x.json", best_effort=True
        )

        assert result.row_count == 1
        assert result.quarantined[0].row_number == 2

    def test_xml_records(self, importer: FileImporter):
        """Test child elements of the root become records."""
        data = (
            b"<residents>"
            b"<resident id='R1'><name>Margaret Smith</name>"
            b"<medications><medication>Aspirin 75mg OD</medication>"
            b"<medication>Simvastatin 20mg ON</medication></medications></resident>"
            b"</residents>"
        )

        result = importer.import_bytes(data, filename="x.xml")

        record = result.records[0]
        assert record.get("id") == "R1"
        assert record.get("name") == "Margaret Smith"
        assert record.get("medications") == ["Aspirin 75mg OD", "Simvastatin 20mg ON"]

    def test_xml_entities_are_refused(self, importer: FileImporter):
        """Test entity declarations are rejected by the hardened parser."""
        data = b'<!DOCTYPE r [<!ENTITY x "boom">]><r><a>&x;</a></r>'

        with pytest.raises(ParseError, match="Refused"):
            importer.import_bytes(data, filename="x.xml")

    def test_xlsx_dates_and_numbers(self, importer: FileImporter):
        """Test spreadsheet dates stay dates and whole floats become ints."""
        data = _xlsx([["id", "dob", "weight"], ["R1", datetime(1941, 3, 5), 61.0]])

        result = importer.import_bytes(data, filename="x.xlsx")

        record = result.records[0]
        assert record.get("dob") == date(1941, 3, 5)
        assert record.kind_of("dob") == ValueKind.DATE
        assert record.get("weight") == 61


class TestTypeInference:
    """Test per-field type inference."""

    def test_nhs_numbers_are_identifiers(self):
        """Test checksum-valid NHS numbers are inferred as identifiers."""
        rows = [{"nhs": "9434765919"}, {"nhs": "4010232137"}]

        inferred = infer_types(rows, ["nhs"])

        assert inferred["nhs"].field_type == FieldType.IDENTIFIER
        assert inferred["nhs"].checksum_valid_ratio == 1.0

    def test_majority_vote_with_threshold(self):
        """Test a type is accepted only when its share reaches the threshold."""
        rows = [{"d": "2020-01-01"}] * 7 + [{"d": "unknown"}] * 3

        inferred = infer_types(rows, ["d"])

        assert inferred["d"].field_type == FieldType.DATE
        assert inferred["d"].confidence == pytest.approx(0.7)

    def test_enumerated_text(self):
        """Test repetitive short text is enumerated."""
        rows = [{"level": v} for v in ("Nursing", "Residential", "Nursing", "Dementia", "Nursing", "Residential")]

        inferred = infer_types(rows, ["level"])

        assert inferred["level"].field_type == FieldType.ENUMERATED

    def test_empty_field(self):
        """Test a field with no values is empty."""
        inferred = infer_types([{"x": None}, {"x": ""}], ["x"])

        assert inferred["x"].field_type == FieldType.EMPTY
