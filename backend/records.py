"""Extracted record model.

Legacy rows are held as an ordered mapping of field name to a tagged value so
that every component can branch on the value kind instead of guessing at the
type of an opaque blob.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator


class ValueKind(str, Enum):
    """Kinds of value a legacy field can hold."""

    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    LIST = "list"
    MAPPING = "mapping"
    NULL = "null"


@dataclass(frozen=True)
class TaggedValue:
    """A field value tagged with its kind."""

    kind: ValueKind
    value: Any

    @classmethod
    def of(cls, raw: Any) -> "TaggedValue":
        """Wrap a native Python value."""
        if isinstance(raw, TaggedValue):
            return raw
        if raw is None:
            return cls(ValueKind.NULL, None)
        if isinstance(raw, bool):
            return cls(ValueKind.STRING, "true" if raw else "false")
        if isinstance(raw, (int, float, Decimal)):
            return cls(ValueKind.NUMBER, raw)
        if isinstance(raw, datetime):
            return cls(ValueKind.DATE, raw.date())
        if isinstance(raw, date):
            return cls(ValueKind.DATE, raw)
        if isinstance(raw, (list, tuple)):
            return cls(ValueKind.LIST, tuple(cls.of(item) for item in raw))
        if isinstance(raw, dict):
            return cls(
                ValueKind.MAPPING,
                tuple((str(k), cls.of(v)) for k, v in raw.items()),
            )
        return cls(ValueKind.STRING, str(raw))

    @property
    def is_empty(self) -> bool:
        if self.kind == ValueKind.NULL:
            return True
        if self.kind == ValueKind.STRING:
            return not self.value.strip()
        if self.kind in (ValueKind.LIST, ValueKind.MAPPING):
            return len(self.value) == 0
        return False

    def to_python(self) -> Any:
        """Unwrap to plain Python values (dates stay ``date`` objects)."""
        if self.kind == ValueKind.LIST:
            return [item.to_python() for item in self.value]
        if self.kind == ValueKind.MAPPING:
            return {key: item.to_python() for key, item in self.value}
        return self.value

    def to_json(self) -> Any:
        """Unwrap to JSON-serializable values (dates become ISO strings)."""
        if self.kind == ValueKind.DATE:
            return self.value.isoformat()
        if self.kind == ValueKind.NUMBER and isinstance(self.value, Decimal):
            return float(self.value)
        if self.kind == ValueKind.LIST:
            return [item.to_json() for item in self.value]
        if self.kind == ValueKind.MAPPING:
            return {key: item.to_json() for key, item in self.value}
        return self.value


@dataclass(frozen=True)
class Provenance:
    """Where a record came from."""

    connector_id: str
    source_row_index: int
    source_name: str | None = None
    line_number: int | None = None

    @property
    def key(self) -> str:
        """Stable dedup key for at-least-once extraction."""
        return f"{self.connector_id}:{self.source_name or ''}:{self.source_row_index}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "connector_id": self.connector_id,
            "source_name": self.source_name,
            "source_row_index": self.source_row_index,
            "line_number": self.line_number,
        }


@dataclass
class ExtractedRecord:
    """A single legacy row with its provenance."""

    fields: dict[str, TaggedValue]
    provenance: Provenance
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: dict[str, Any], provenance: Provenance) -> "ExtractedRecord":
        return cls(
            fields={str(k): TaggedValue.of(v) for k, v in raw.items()},
            provenance=provenance,
        )

    def __iter__(self) -> Iterator[str]:
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def __contains__(self, name: object) -> bool:
        return name in self.fields

    def field_names(self) -> list[str]:
        return list(self.fields)

    def get(self, name: str, default: Any = None) -> Any:
        tagged = self.fields.get(name)
        if tagged is None:
            return default
        return tagged.to_python()

    def kind_of(self, name: str) -> ValueKind | None:
        tagged = self.fields.get(name)
        return tagged.kind if tagged else None

    def to_dict(self) -> dict[str, Any]:
        return {name: tagged.to_python() for name, tagged in self.fields.items()}

    def to_json(self) -> dict[str, Any]:
        return {name: tagged.to_json() for name, tagged in self.fields.items()}
