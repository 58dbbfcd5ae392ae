"""Static capability records for the supported legacy systems."""

from __future__ import annotations

from .models import ConnectorCapabilities, ConnectorType, SourceSystemType

RESIDENT_DATA_TYPES = [
    "residents",
    "medications",
    "care_plans",
    "assessments",
    "incidents",
]

SYSTEM_CAPABILITIES: dict[SourceSystemType, ConnectorCapabilities] = {
    SourceSystemType.PERSON_CENTRED_SOFTWARE: ConnectorCapabilities(
        system_type=SourceSystemType.PERSON_CENTRED_SOFTWARE,
        system_name="Person Centred Software",
        connector_type=ConnectorType.DATABASE,
        supported_operations=["connect", "extract", "incremental_extract"],
        data_types=RESIDENT_DATA_TYPES,
        limits={"max_batch_size": 5000, "requests_per_minute": 60},
        export_formats=["csv", "xlsx", "json"],
        supported_versions=["4.x", "5.x", "6.x"],
        known_limitations=[
            "Export limited to 5000 records per batch",
            "Medication history limited to 2 years",
        ],
    ),
    SourceSystemType.CARE_SYSTEMS_UK: ConnectorCapabilities(
        system_type=SourceSystemType.CARE_SYSTEMS_UK,
        system_name="Care Systems UK",
        connector_type=ConnectorType.DATABASE,
        supported_operations=["connect", "extract"],
        data_types=["residents", "medications", "care_plans"],
        limits={"max_batch_size": 2000},
        export_formats=["csv", "xml"],
        supported_versions=["2019", "2021", "2023"],
        known_limitations=["No incremental export; full extracts only"],
    ),
    SourceSystemType.NHS_SPINE: ConnectorCapabilities(
        system_type=SourceSystemType.NHS_SPINE,
        system_name="NHS Spine",
        connector_type=ConnectorType.API,
        supported_operations=["connect", "extract", "verify_identity"],
        data_types=["demographics", "gp_registration"],
        limits={"max_batch_size": 100, "requests_per_second": 5},
        export_formats=["json"],
        known_limitations=["Read-only demographics; no clinical records"],
    ),
    SourceSystemType.SOCIAL_SERVICES: ConnectorCapabilities(
        system_type=SourceSystemType.SOCIAL_SERVICES,
        system_name="Local Authority Social Services",
        connector_type=ConnectorType.API,
        supported_operations=["connect", "extract"],
        data_types=["residents", "funding", "assessments"],
        limits={"max_batch_size": 500, "requests_per_minute": 120},
        export_formats=["json", "xml"],
        known_limitations=["Funding records only for local-authority placements"],
    ),
    SourceSystemType.GENERIC_FILE_IMPORT: ConnectorCapabilities(
        system_type=SourceSystemType.GENERIC_FILE_IMPORT,
        system_name="File import",
        connector_type=ConnectorType.FILE,
        supported_operations=["connect", "extract", "best_effort_parse"],
        data_types=RESIDENT_DATA_TYPES,
        limits={"max_file_bytes": 100 * 1024 * 1024},
        export_formats=["csv", "tsv", "xlsx", "json", "xml"],
    ),
    SourceSystemType.GENERIC_DATABASE: ConnectorCapabilities(
        system_type=SourceSystemType.GENERIC_DATABASE,
        system_name="Legacy SQL database",
        connector_type=ConnectorType.DATABASE,
        supported_operations=["connect", "extract"],
        data_types=RESIDENT_DATA_TYPES,
        limits={"max_batch_size": 10000},
    ),
    SourceSystemType.GENERIC_API: ConnectorCapabilities(
        system_type=SourceSystemType.GENERIC_API,
        system_name="Legacy REST API",
        connector_type=ConnectorType.API,
        supported_operations=["connect", "extract"],
        data_types=RESIDENT_DATA_TYPES,
        limits={"max_batch_size": 1000},
        export_formats=["json"],
    ),
}
