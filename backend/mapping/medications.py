"""Deterministic decomposition of free-text medication lists.

Legacy systems often hold a resident's whole medication list in one string,
e.g. ``"Aspirin 75mg OD; Simvastatin 20mg ON"``. This module splits such a
string into structured entries with name, dose, unit, frequency and route.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any

ENTRY_DELIMITERS = re.compile(r"[;,|\n]+")
NAME_PATTERN = re.compile(
    r"^\s*([A-Za-z][A-Za-z\s\-]*?)(?=\s*\d|\s+\b(?:OD|BD|TDS|QDS|PRN|ON|NOCTE|MANE|STAT)\b|\s*$)",
    re.IGNORECASE,
)
DOSE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(mg|mcg|micrograms?|g|ml|units?|iu)\b", re.IGNORECASE)
FREQUENCY_PATTERN = re.compile(r"\b(OD|BD|TDS|QDS|PRN|ON|NOCTE|MANE|STAT)\b", re.IGNORECASE)
ROUTE_PATTERN = re.compile(
    r"\b(oral|po|iv|im|sc|subcut|topical|inhaled|sublingual|rectal|transdermal)\b",
    re.IGNORECASE,
)

DEFAULT_FREQUENCY = "As directed"
DEFAULT_ROUTE = "Oral"

FREQUENCY_DESCRIPTIONS = {
    "OD": "Once daily",
    "BD": "Twice daily",
    "TDS": "Three times daily",
    "QDS": "Four times daily",
    "PRN": "As required",
    "ON": "At night",
    "NOCTE": "At night",
    "MANE": "In the morning",
    "STAT": "Immediately",
}

ROUTE_NAMES = {
    "po": "Oral",
    "oral": "Oral",
    "iv": "Intravenous",
    "im": "Intramuscular",
    "sc": "Subcutaneous",
    "subcut": "Subcutaneous",
    "topical": "Topical",
    "inhaled": "Inhaled",
    "sublingual": "Sublingual",
    "rectal": "Rectal",
    "transdermal": "Transdermal",
}

_UNIT_NAMES = {"microgram": "mcg", "micrograms": "mcg", "unit": "units", "iu": "units"}


@dataclass
class MedicationEntry:
    """One structured medication entry decomposed from free text."""

    name: str
    dose: str | None
    unit: str | None
    frequency: str
    route: str
    confidence: float
    raw: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_text(self) -> str:
        """Render the entry the way legacy systems write it."""
        parts = [self.name]
        if self.dose:
            parts.append(f"{self.dose}{self.unit or ''}")
        if self.frequency != DEFAULT_FREQUENCY:
            parts.append(self.frequency)
        return " ".join(parts)


def parse_medication_entry(text: str) -> MedicationEntry | None:
    """Parse a single medication entry.

    Returns None for fragments with no drug name. Confidence starts at 0.5 and
    rises with each component recognized (name 0.2, dose 0.2, frequency 0.1).
    """
    raw = text.strip()
    if not raw:
        return None

    name_match = NAME_PATTERN.match(raw)
    name = name_match.group(1).strip() if name_match else ""
    if not name:
        return None

    dose_match = DOSE_PATTERN.search(raw)
    remainder = raw[name_match.end():]
    frequency_match = FREQUENCY_PATTERN.search(remainder)
    route_match = ROUTE_PATTERN.search(remainder)

    confidence = 0.5 + 0.2
    dose = unit = None
    if dose_match:
        dose = dose_match.group(1)
        unit_text = dose_match.group(2).lower()
        unit = _UNIT_NAMES.get(unit_text, unit_text)
        confidence += 0.2
    frequency = DEFAULT_FREQUENCY
    if frequency_match:
        frequency = frequency_match.group(1).upper()
        confidence += 0.1

    return MedicationEntry(
        name=name[:1].upper() + name[1:],
        dose=dose,
        unit=unit,
        frequency=frequency,
        route=ROUTE_NAMES[route_match.group(1).lower()] if route_match else DEFAULT_ROUTE,
        confidence=round(min(confidence, 1.0), 2),
        raw=raw,
    )


def decompose_medications(value: Any) -> list[MedicationEntry]:
    """Split a medication list into structured entries.

    Accepts a delimited string (``;``, ``,``, ``|`` or newlines), a list of
    strings, or a list of mappings with ``name``/``dose``/``frequency`` keys.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        entries: list[MedicationEntry] = []
        for item in value:
            if isinstance(item, dict):
                entry = _entry_from_mapping(item)
                if entry:
                    entries.append(entry)
            else:
                entries.extend(decompose_medications(item))
        return entries

    entries = []
    for fragment in ENTRY_DELIMITERS.split(str(value)):
        entry = parse_medication_entry(fragment)
        if entry:
            entries.append(entry)
    return entries


def _entry_from_mapping(item: dict[str, Any]) -> MedicationEntry | None:
    lowered = {str(k).lower(): v for k, v in item.items()}
    name = lowered.get("name") or lowered.get("drug") or lowered.get("medication")
    if not name:
        return None
    text = " ".join(
        str(lowered[k]) for k in ("name", "drug", "medication", "dose", "frequency", "route")
        if lowered.get(k)
    )
    entry = parse_medication_entry(text)
    if entry is None:
        return None
    entry.name = str(name).strip()
    entry.raw = text
    return entry


def medications_to_text(entries: list[dict[str, Any]] | list[MedicationEntry]) -> str:
    """Render structured entries back into a legacy-style medication string."""
    rendered = []
    for entry in entries:
        if isinstance(entry, dict):
            entry = MedicationEntry(
                name=entry.get("name", ""),
                dose=entry.get("dose"),
                unit=entry.get("unit"),
                frequency=entry.get("frequency") or DEFAULT_FREQUENCY,
                route=entry.get("route") or DEFAULT_ROUTE,
                confidence=entry.get("confidence", 1.0),
                raw=entry.get("raw", ""),
            )
        rendered.append(entry.to_text())
    return "; ".join(rendered)
