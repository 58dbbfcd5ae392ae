"""Pytest configuration and fixtures."""

from __future__ import annotations

import atexit
import os
import random
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any

import pytest

# Add backend to path for imports
backend_path = str(Path(__file__).parent.parent / "backend")
if backend_path not in sys.path:
    sys.path.insert(0, backend_path)

# Set test database path before importing app
# Use a temp file instead of :memory: for SQLite compatibility with FastAPI
_temp_db = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
_temp_db_path = _temp_db.name
_temp_backup_dir = tempfile.mkdtemp(prefix="migration-backups-")
os.environ["DB_PATH"] = _temp_db_path
os.environ["BACKUP_DIR"] = _temp_backup_dir


def _cleanup_test_db() -> None:
    """Clean up temporary test database file and backup directory."""
    if os.path.exists(_temp_db_path):
        try:
            os.unlink(_temp_db_path)
        except OSError:
            pass  # File may already be deleted or locked
    shutil.rmtree(_temp_backup_dir, ignore_errors=True)


# Register cleanup to run at exit
atexit.register(_cleanup_test_db)


@pytest.fixture(scope="session", autouse=True)
def cleanup_test_db() -> None:
    """Pytest fixture to ensure test database cleanup after session."""
    yield
    _cleanup_test_db()


# Synthetic residents (test data only)

FIRST_NAMES = ("Margaret", "Arthur", "Dorothy", "Harold", "Joan", "Stanley", "Edith", "Walter")
LAST_NAMES = ("Smith", "Jones", "Taylor", "Brown", "Wilson", "Evans", "Thomas", "Roberts")
GP_NAMES = ("Dr Patel", "Dr Okafor", "Dr Hughes", "Dr Lewis")
CARE_LEVELS = ("Nursing care", "Dementia care", "Low dependency", "High dependency")

RESIDENT_FIELDS = (
    "resident_id",
    "nhs_number",
    "full_name",
    "date_of_birth",
    "care_level",
    "admission_date",
    "next_of_kin",
    "gp_name",
)

# Known-valid NHS numbers (modulus 11)
VALID_NHS_NUMBERS = ("9434765919", "4010232137")


def make_nhs_number(seed: int) -> str:
    """A checksum-valid NHS number derived from ``seed``."""
    from utils import complete_nhs_number

    prefix = 400000000 + seed * 7
    while True:
        completed = complete_nhs_number(f"{prefix:09d}")
        if completed:
            return completed
        prefix += 1


def make_resident(index: int) -> dict[str, Any]:
    """One clean synthetic resident row, already in canonical field names."""
    rng = random.Random(index)
    first = FIRST_NAMES[index % len(FIRST_NAMES)]
    last = LAST_NAMES[(index // len(FIRST_NAMES)) % len(LAST_NAMES)]
    return {
        "resident_id": f"R{index:05d}",
        "nhs_number": make_nhs_number(index),
        "full_name": f"{first} {last}",
        "date_of_birth": f"19{rng.randint(25, 45)}-{rng.randint(1, 12):02d}-{rng.randint(1, 28):02d}",
        "care_level": CARE_LEVELS[index % len(CARE_LEVELS)],
        "admission_date": f"20{rng.randint(15, 23)}-{rng.randint(1, 12):02d}-{rng.randint(1, 28):02d}",
        "next_of_kin": f"{FIRST_NAMES[(index + 3) % len(FIRST_NAMES)]} {last}",
        "gp_name": GP_NAMES[index % len(GP_NAMES)],
    }


def make_residents(count: int, start: int = 0) -> list[dict[str, Any]]:
    return [make_resident(i) for i in range(start, start + count)]


def to_csv(rows: list[dict[str, Any]], fields: tuple[str, ...] | list[str] | None = None) -> str:
    """Render rows as CSV text with a header row."""
    fields = list(fields or (rows[0].keys() if rows else RESIDENT_FIELDS))
    lines = [",".join(fields)]
    for row in rows:
        lines.append(",".join(str(row.get(name, "") or "") for name in fields))
    return "\n".join(lines) + "\n"


def file_source(
    content: str,
    name: str = "Residents export",
    filename: str = "residents.csv",
    **connection: Any,
) -> dict[str, Any]:
    """A generic file import source system entry for a pipeline config."""
    return {
        "system": {
            "system_type": "generic_file_import",
            "name": name,
            "connection": {"content": content, "filename": filename, **connection},
        }
    }


def pipeline_config(sources: list[dict[str, Any]], **overrides: Any):
    """Build a PipelineConfig suited to fast tests."""
    from pipeline import PipelineConfig

    data: dict[str, Any] = {
        "name": "Oakwood migration",
        "source_systems": sources,
        "batch_size": 100,
        "retry_base_delay": 0.0,
        "batch_timeout_seconds": 30.0,
    }
    data.update(overrides)
    return PipelineConfig.model_validate(data)


@pytest.fixture
def residents() -> list[dict[str, Any]]:
    """Twenty clean synthetic residents."""
    return make_residents(20)


@pytest.fixture
def residents_csv(residents: list[dict[str, Any]]) -> str:
    return to_csv(residents)


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "migration.db")


@pytest.fixture
def target_store(db_path: str):
    from store import TargetStore

    return TargetStore(db_path)


@pytest.fixture
def backup_service(tmp_path: Path, db_path: str, target_store):
    from backup import BackupService, BlobStorage

    return BackupService(
        BlobStorage(tmp_path / "backups"), target_store, db_path, min_free_bytes=0
    )


@pytest.fixture
def mapping_engine(db_path: str):
    from mapping import FieldMappingEngine, MappingHistoryStore

    return FieldMappingEngine(MappingHistoryStore(db_path))


@pytest.fixture
def service(db_path: str, target_store, backup_service, mapping_engine):
    """Migration service over temporary stores, with retries that never sleep."""
    from pipeline import PipelineRepository
    from service import MigrationService
    from validation import ValidationEngine

    return MigrationService(
        repository=PipelineRepository(db_path),
        mapping_engine=mapping_engine,
        validator=ValidationEngine(),
        store=target_store,
        backup=backup_service,
        sleep=lambda _: None,
    )
