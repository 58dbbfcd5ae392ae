"""File import for legacy export files.

This module parses delimited text, spreadsheets, JSON and XML exports into
provenance-tagged records and infers a type for every field.

Usage:
    importer = FileImporter()
    result = importer.import_bytes(data, filename="residents.csv")
    for record in result.records:
        ...
"""

from .importer import FileImporter, ImportResult
from .parsers import FileFormat, QuarantinedRow, sniff_format
from .type_inference import (
    FieldType,
    FieldTypeInference,
    classify_value,
    infer_field_type,
    infer_types,
)

__all__ = [
    # Importer
    "FileImporter",
    "ImportResult",
    # Parsing
    "FileFormat",
    "QuarantinedRow",
    "sniff_format",
    # Type inference
    "FieldType",
    "FieldTypeInference",
    "classify_value",
    "infer_field_type",
    "infer_types",
]
