"""Tests for legacy source connectors."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from sqlalchemy import create_engine, text

from conftest import make_residents, to_csv
from connectors import (
    AuthType,
    ConnectorType,
    Credentials,
    ExtractionSelector,
    SourceSystemDescriptor,
    SourceSystemType,
    build_default_registry,
    capabilities,
    decode_resume_token,
    encode_resume_token,
)
from connectors.api import LegacyApiConnector
from connectors.database import LegacyDatabaseConnector
from connectors.file import FileConnector
from errors import ConnectionError, ParseError


def _file_descriptor(content: str, **connection) -> SourceSystemDescriptor:
    return SourceSystemDescriptor(
        system_id="pcs-export",
        system_type=SourceSystemType.GENERIC_FILE_IMPORT,
        name="Residents export",
        connection={"content": content, "filename": "residents.csv", **connection},
    )


class TestResumeTokens:
    """Test resume token encoding."""

    def test_round_trip(self):
        """Test an offset survives encoding."""
        assert decode_resume_token(encode_resume_token(42)) == 42

    def test_empty_token_starts_at_zero(self):
        """Test a missing token means the beginning."""
        assert decode_resume_token(None) == 0

    @pytest.mark.parametrize("token", ["page:3", "offset:abc", "offset:-1"])
    def test_invalid_tokens(self, token):
        """Test foreign or malformed tokens are rejected."""
        with pytest.raises(ValueError):
            decode_resume_token(token)


class TestFileConnector:
    """Test the file connector."""

    def test_extract_all(self):
        """Test every row is extracted with provenance from the connector id."""
        connector = FileConnector("pcs-export")
        handle = connector.connect(_file_descriptor(to_csv(make_residents(5))))

        records = list(connector.extract(handle))

        assert len(records) == 5
        assert records[0].get("resident_id") == "R00000"
        assert records[0].provenance.key == "pcs-export:residents.csv:0"
        assert handle.details["row_count"] == 5

    def test_resume_continues_after_last_record(self):
        """Test a new stream resumes exactly where the previous one stopped."""
        connector = FileConnector("pcs-export")
        handle = connector.connect(_file_descriptor(to_csv(make_residents(10))))

        stream = connector.extract(handle)
        first = [next(stream) for _ in range(4)]
        token = stream.resume_token
        rest = list(connector.extract(handle, resume_token=token))

        assert token == "offset:4"
        assert [r.get("resident_id") for r in first + rest] == [
            f"R{i:05d}" for i in range(10)
        ]

    def test_selector_limit_and_fields(self):
        """Test the selector limits rows and projects fields."""
        connector = FileConnector("pcs-export")
        handle = connector.connect(_file_descriptor(to_csv(make_residents(10))))

        records = list(
            connector.extract(
                handle, ExtractionSelector(fields=["resident_id", "full_name"], limit=3)
            )
        )

        assert len(records) == 3
        assert records[0].field_names() == ["resident_id", "full_name"]

    def test_read_from_path(self, tmp_path: Path):
        """Test export files are read from disk."""
        path = tmp_path / "export.csv"
        path.write_text(to_csv(make_residents(2)), encoding="utf-8")
        connector = FileConnector("disk")
        descriptor = SourceSystemDescriptor(
            system_type=SourceSystemType.GENERIC_FILE_IMPORT,
            name="Disk export",
            connection={"path": str(path)},
        )

        records = list(connector.extract(connector.connect(descriptor)))

        assert records[1].provenance.source_name == "export.csv"

    def test_missing_file(self, tmp_path: Path):
        """Test an unreadable path raises ConnectionError."""
        connector = FileConnector("disk")
        descriptor = SourceSystemDescriptor(
            system_type=SourceSystemType.GENERIC_FILE_IMPORT,
            name="Disk export",
            connection={"path": str(tmp_path / "missing.csv")},
        )

        with pytest.raises(ConnectionError):
            connector.connect(descriptor)

    def test_malformed_file_strict(self):
        """Test a malformed export fails the connect in strict mode."""
        connector = FileConnector("pcs-export")

        with pytest.raises(ParseError):
            connector.connect(_file_descriptor("a,b\n1,2\n3\n"))

    def test_closed_handle(self):
        """Test extraction from a closed handle raises ConnectionError."""
        connector = FileConnector("pcs-export")
        handle = connector.connect(_file_descriptor("a,b\n1,2\n"))
        connector.disconnect(handle)

        with pytest.raises(ConnectionError, match="closed"):
            connector.extract(handle)

    def test_wrong_system_type(self):
        """Test a connector refuses system types it does not serve."""
        descriptor = SourceSystemDescriptor(
            system_type=SourceSystemType.NHS_SPINE, name="Spine", connection={}
        )

        with pytest.raises(ConnectionError, match="does not serve"):
            FileConnector("x").connect(descriptor)


class TestLegacyDatabaseConnector:
    """Test extraction from a legacy SQL database."""

    @pytest.fixture
    def legacy_db(self, tmp_path: Path) -> str:
        url = f"sqlite:///{tmp_path / 'legacy.db'}"
        engine = create_engine(url)
        with engine.begin() as conn:
            conn.execute(
                text(
                    "CREATE TABLE patients (id INTEGER PRIMARY KEY, "
                    "patient_name TEXT, dob TEXT)"
                )
            )
            for i in range(1, 8):
                conn.execute(
                    text("INSERT INTO patients VALUES (:id, :name, :dob)"),
                    {"id": i, "name": f"Resident {i}", "dob": "1940-01-01"},
                )
        engine.dispose()
        return url

    def _descriptor(self, url: str, **connection) -> SourceSystemDescriptor:
        return SourceSystemDescriptor(
            system_id="care-db",
            system_type=SourceSystemType.GENERIC_DATABASE,
            name="Care database",
            connection={"url": url, "table": "patients", **connection},
        )

    def test_paged_extraction(self, legacy_db: str):
        """Test rows come back in key order across pages."""
        connector = LegacyDatabaseConnector("care-db")
        handle = connector.connect(self._descriptor(legacy_db))

        records = list(connector.extract(handle, ExtractionSelector(batch_size=3)))
        connector.disconnect(handle)

        assert [r.get("id") for r in records] == list(range(1, 8))
        assert records[3].provenance.source_row_index == 3

    def test_resume_from_token(self, legacy_db: str):
        """Test extraction resumes at the token's offset."""
        connector = LegacyDatabaseConnector("care-db")
        handle = connector.connect(self._descriptor(legacy_db))

        records = list(connector.extract(handle, resume_token="offset:5"))

        assert [r.get("id") for r in records] == [6, 7]

    def test_missing_table(self, legacy_db: str):
        """Test a missing table raises ConnectionError."""
        connector = LegacyDatabaseConnector("care-db")
        handle = connector.connect(self._descriptor(legacy_db, table="residents"))

        with pytest.raises(ConnectionError, match="Table not found"):
            list(connector.extract(handle))

    def test_missing_url(self):
        """Test a descriptor without a URL is rejected."""
        descriptor = SourceSystemDescriptor(
            system_type=SourceSystemType.GENERIC_DATABASE, name="No url", connection={}
        )

        with pytest.raises(ConnectionError, match="url"):
            LegacyDatabaseConnector("x").connect(descriptor)

    def test_unsupported_version(self, legacy_db: str):
        """Test unsupported system versions fail before connecting."""
        descriptor = SourceSystemDescriptor(
            system_type=SourceSystemType.PERSON_CENTRED_SOFTWARE,
            name="PCS",
            version="3.x",
            connection={"url": legacy_db, "table": "patients"},
        )

        with pytest.raises(ConnectionError, match="Unsupported"):
            LegacyDatabaseConnector("pcs").connect(descriptor)

    def test_selector_rejects_injection(self):
        """Test entity names that are not identifiers are rejected."""
        with pytest.raises(ValueError):
            ExtractionSelector(entity="patients; DROP TABLE patients")


class TestLegacyApiConnector:
    """Test extraction from a legacy REST API."""

    RECORDS = [{"id": i, "name": f"Resident {i}", "address": {"postcode": "M1 1AE"}} for i in range(5)]

    def _transport(self, calls: list[httpx.Request], fail_first: int = 0) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if request.url.path == "/":
                return httpx.Response(200, json={"status": "ok"})
            if len(calls) <= fail_first + 1:
                return httpx.Response(503)
            offset = int(request.url.params["offset"])
            limit = int(request.url.params["limit"])
            return httpx.Response(200, json={"records": self.RECORDS[offset:offset + limit]})

        return httpx.MockTransport(handler)

    def _descriptor(self) -> SourceSystemDescriptor:
        return SourceSystemDescriptor(
            system_id="la-api",
            system_type=SourceSystemType.GENERIC_API,
            name="Local authority API",
            connection={"base_url": "https://legacy.example.org", "endpoint": "/residents"},
        )

    def test_paged_extraction(self):
        """Test pages are requested until a short page arrives."""
        calls: list[httpx.Request] = []
        connector = LegacyApiConnector("la-api", transport=self._transport(calls), retry_delay=0)
        handle = connector.connect(self._descriptor())

        records = list(connector.extract(handle, ExtractionSelector(batch_size=2)))

        assert [r.get("id") for r in records] == [0, 1, 2, 3, 4]
        assert records[0].get("address.postcode") == "M1 1AE"
        assert records[4].provenance.key == "la-api:/residents:4"

    def test_server_errors_are_retried(self):
        """Test 5xx responses are retried before succeeding."""
        calls: list[httpx.Request] = []
        connector = LegacyApiConnector(
            "la-api", transport=self._transport(calls, fail_first=2), retry_delay=0
        )
        handle = connector.connect(self._descriptor())

        records = list(connector.extract(handle, ExtractionSelector(batch_size=10)))

        assert len(records) == 5

    def test_retries_exhausted_is_transient(self):
        """Test exhausted retries raise a transient ConnectionError."""
        connector = LegacyApiConnector(
            "la-api",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
            max_retries=1,
            retry_delay=0,
        )

        with pytest.raises(ConnectionError) as exc_info:
            connector.connect(self._descriptor())

        assert exc_info.value.transient

    def test_auth_failure(self):
        """Test 401 responses fail without retrying."""
        connector = LegacyApiConnector(
            "la-api",
            transport=httpx.MockTransport(lambda request: httpx.Response(401)),
            retry_delay=0,
        )

        with pytest.raises(ConnectionError, match="Authentication failed") as exc_info:
            connector.connect(self._descriptor())

        assert not exc_info.value.transient

    def test_bearer_header(self):
        """Test bearer credentials are sent as an Authorization header."""
        calls: list[httpx.Request] = []
        connector = LegacyApiConnector("la-api", transport=self._transport(calls), retry_delay=0)

        connector.connect(
            self._descriptor(),
            Credentials(auth_type=AuthType.BEARER, token="s3cret"),
        )

        assert calls[0].headers["Authorization"] == "Bearer s3cret"


class TestRegistry:
    """Test the connector registry and capabilities."""

    def test_default_registry_serves_every_system(self):
        """Test every system type has a registered connector."""
        registry = build_default_registry()

        assert set(registry.list_system_types()) == set(SourceSystemType)

    def test_create_connector(self):
        """Test connectors are created by system type."""
        registry = build_default_registry()

        connector = registry.create_connector("care_systems_uk", "csuk")

        assert isinstance(connector, LegacyDatabaseConnector)
        assert connector.connector_id == "csuk"

    def test_unknown_system_type(self):
        """Test unknown system types are rejected."""
        with pytest.raises(ValueError):
            build_default_registry().create_connector("mainframe", "x")

    def test_capabilities(self):
        """Test capability records describe the legacy system."""
        caps = capabilities(SourceSystemType.PERSON_CENTRED_SOFTWARE)

        assert caps.connector_type == ConnectorType.DATABASE
        assert "6.x" in caps.supported_versions
        assert caps.known_limitations
