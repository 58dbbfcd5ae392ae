"""Canonical resident schema for migrated care records.

This module defines the platform's canonical resident fields, the value shape
each field expects, and the aliases legacy care systems commonly use for them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ValueShape(str, Enum):
    """Expected shape of a canonical field's values."""

    IDENTIFIER = "identifier"
    NHS_NUMBER = "nhs_number"
    PERSON_NAME = "person_name"
    DATE = "date"
    PHONE = "phone"
    EMAIL = "email"
    POSTCODE = "postcode"
    NUMERIC = "numeric"
    ENUM = "enum"
    MEDICATION_LIST = "medication_list"
    TEXT_LIST = "text_list"
    FREE_TEXT = "free_text"
    SHORT_TEXT = "short_text"


# Shapes too permissive to override a field name on their own
WEAK_SHAPES = frozenset(
    {ValueShape.FREE_TEXT, ValueShape.SHORT_TEXT, ValueShape.TEXT_LIST}
)


class FieldCategory(str, Enum):
    """Field categories; identifier and clinical fields trust values over names."""

    IDENTIFIER = "identifier"
    CLINICAL = "clinical"
    DEMOGRAPHIC = "demographic"
    CONTACT = "contact"
    ADMINISTRATIVE = "administrative"


@dataclass(frozen=True)
class CanonicalField:
    """Definition of a canonical resident field with mapping aliases."""

    name: str
    shape: ValueShape
    category: FieldCategory
    required: bool = False
    aliases: tuple[str, ...] = ()
    allowed_values: tuple[str, ...] = ()
    value_range: tuple[float, float] | None = None
    description: str = ""

    @property
    def shape_weighted(self) -> bool:
        """Whether value shape outweighs the field name when scoring."""
        return self.category in (
            FieldCategory.IDENTIFIER,
            FieldCategory.CLINICAL,
        ) and self.shape not in WEAK_SHAPES


CARE_LEVELS = (
    "Low dependency",
    "Medium dependency",
    "High dependency",
    "Nursing care",
    "Dementia care",
    "End of life care",
)

GENDERS = ("Male", "Female", "Other", "Unknown")

FUNDING_TYPES = ("Self-funded", "Local authority", "NHS continuing healthcare", "Mixed")


def _field(name: str, shape: ValueShape, category: FieldCategory, **kwargs) -> CanonicalField:
    return CanonicalField(name=name, shape=shape, category=category, **kwargs)


CANONICAL_SCHEMA: dict[str, CanonicalField] = {
    f.name: f
    for f in (
        _field(
            "resident_id",
            ValueShape.IDENTIFIER,
            FieldCategory.IDENTIFIER,
            required=True,
            aliases=(
                "patient_id",
                "client_id",
                "service_user_id",
                "su_id",
                "person_id",
                "resident_ref",
                "resident_number",
            ),
            description="Unique identifier of the resident in the source system",
        ),
        _field(
            "nhs_number",
            ValueShape.NHS_NUMBER,
            FieldCategory.IDENTIFIER,
            aliases=("nhs_no", "nhs", "nhsnumber", "nhs_num"),
            description="10 digit NHS number with modulus 11 check digit",
        ),
        _field(
            "full_name",
            ValueShape.PERSON_NAME,
            FieldCategory.DEMOGRAPHIC,
            aliases=("name", "patient_name", "client_name", "resident_name", "service_user_name"),
        ),
        _field(
            "first_name",
            ValueShape.PERSON_NAME,
            FieldCategory.DEMOGRAPHIC,
            aliases=("forename", "given_name", "firstname", "first"),
        ),
        _field(
            "last_name",
            ValueShape.PERSON_NAME,
            FieldCategory.DEMOGRAPHIC,
            aliases=("surname", "family_name", "lastname", "last"),
        ),
        _field(
            "date_of_birth",
            ValueShape.DATE,
            FieldCategory.CLINICAL,
            required=True,
            aliases=("dob", "birth_date", "birthdate", "d_o_b"),
        ),
        _field(
            "gender",
            ValueShape.ENUM,
            FieldCategory.DEMOGRAPHIC,
            aliases=("sex",),
            allowed_values=("male", "female", "other", "unknown", "m", "f", "u"),
        ),
        _field(
            "phone_number",
            ValueShape.PHONE,
            FieldCategory.CONTACT,
            aliases=("phone", "telephone", "tel", "mobile", "contact_number"),
        ),
        _field(
            "email",
            ValueShape.EMAIL,
            FieldCategory.CONTACT,
            aliases=("email_address", "e_mail"),
        ),
        _field(
            "address",
            ValueShape.FREE_TEXT,
            FieldCategory.CONTACT,
            aliases=("home_address", "street_address", "address_line_1"),
        ),
        _field(
            "postcode",
            ValueShape.POSTCODE,
            FieldCategory.CONTACT,
            aliases=("post_code", "postal_code", "zip", "zip_code"),
        ),
        _field(
            "current_medications",
            ValueShape.MEDICATION_LIST,
            FieldCategory.CLINICAL,
            aliases=("medications", "medication", "meds", "drugs", "prescriptions"),
        ),
        _field(
            "known_allergies",
            ValueShape.TEXT_LIST,
            FieldCategory.CLINICAL,
            aliases=("allergies", "allergy", "allergy_list"),
        ),
        _field(
            "medical_history",
            ValueShape.FREE_TEXT,
            FieldCategory.CLINICAL,
            aliases=("conditions", "diagnoses", "diagnosis", "history"),
        ),
        _field(
            "gp_name",
            ValueShape.PERSON_NAME,
            FieldCategory.ADMINISTRATIVE,
            required=True,
            aliases=("gp", "gp_details", "doctor", "general_practitioner"),
        ),
        _field(
            "care_level",
            ValueShape.ENUM,
            FieldCategory.CLINICAL,
            required=True,
            aliases=("dependency_level", "dependency", "level_of_care"),
            allowed_values=tuple(level.lower() for level in CARE_LEVELS)
            + ("low", "medium", "high", "nursing", "dementia", "end of life", "residential"),
        ),
        _field(
            "care_requirements",
            ValueShape.FREE_TEXT,
            FieldCategory.CLINICAL,
            aliases=("care_needs", "needs", "support_needs"),
        ),
        _field(
            "room_number",
            ValueShape.SHORT_TEXT,
            FieldCategory.ADMINISTRATIVE,
            aliases=("room", "room_no", "bed", "bedroom"),
        ),
        _field(
            "admission_date",
            ValueShape.DATE,
            FieldCategory.ADMINISTRATIVE,
            required=True,
            aliases=("admitted", "start_date", "entry_date", "date_admitted", "admission"),
        ),
        _field(
            "funding_type",
            ValueShape.ENUM,
            FieldCategory.ADMINISTRATIVE,
            aliases=("funding", "funding_source", "payer"),
            allowed_values=tuple(f.lower() for f in FUNDING_TYPES)
            + ("self", "private", "la", "chc", "nhs"),
        ),
        _field(
            "next_of_kin",
            ValueShape.PERSON_NAME,
            FieldCategory.CONTACT,
            required=True,
            aliases=("nok", "emergency_contact", "next_of_kin_name", "kin"),
        ),
        _field(
            "emergency_contact_phone",
            ValueShape.PHONE,
            FieldCategory.CONTACT,
            aliases=("nok_phone", "next_of_kin_phone", "emergency_phone"),
        ),
        _field(
            "risk_factors",
            ValueShape.TEXT_LIST,
            FieldCategory.CLINICAL,
            aliases=("risks", "risk", "risk_assessment"),
        ),
        _field(
            "mobility_aid",
            ValueShape.SHORT_TEXT,
            FieldCategory.CLINICAL,
            aliases=("mobility", "walking_aid"),
        ),
        _field(
            "dietary_requirements",
            ValueShape.TEXT_LIST,
            FieldCategory.CLINICAL,
            aliases=("diet", "dietary_needs", "dietary"),
        ),
        _field(
            "weight_kg",
            ValueShape.NUMERIC,
            FieldCategory.CLINICAL,
            aliases=("weight", "weight_kilograms"),
            value_range=(20.0, 300.0),
        ),
        _field(
            "height_cm",
            ValueShape.NUMERIC,
            FieldCategory.CLINICAL,
            aliases=("height",),
            value_range=(90.0, 230.0),
        ),
        _field(
            "religion",
            ValueShape.SHORT_TEXT,
            FieldCategory.DEMOGRAPHIC,
            aliases=("faith", "religious_preference"),
        ),
        _field(
            "preferred_language",
            ValueShape.SHORT_TEXT,
            FieldCategory.DEMOGRAPHIC,
            aliases=("language", "first_language"),
        ),
        _field(
            "social_worker",
            ValueShape.PERSON_NAME,
            FieldCategory.ADMINISTRATIVE,
            aliases=("social_worker_name", "care_manager"),
        ),
        _field(
            "notes",
            ValueShape.FREE_TEXT,
            FieldCategory.ADMINISTRATIVE,
            aliases=("note", "comments", "remarks", "additional_information"),
        ),
    )
}

# Fields the Care Quality Commission expects on every resident record
CQC_REQUIRED_FIELDS = (
    "resident_id",
    "full_name",
    "date_of_birth",
    "care_level",
    "admission_date",
    "next_of_kin",
    "gp_name",
)


def get_all_aliases() -> dict[str, str]:
    """Get a lookup of every alias (and canonical name) to its canonical field."""
    lookup: dict[str, str] = {}
    for canonical_name, field_def in CANONICAL_SCHEMA.items():
        lookup[canonical_name] = canonical_name
        for alias in field_def.aliases:
            lookup[alias] = canonical_name
    return lookup


def get_required_fields() -> list[str]:
    return [name for name, field_def in CANONICAL_SCHEMA.items() if field_def.required]


ALIAS_LOOKUP = get_all_aliases()
REQUIRED_FIELDS = get_required_fields()
