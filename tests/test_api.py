"""Tests for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from app import create_app
from conftest import file_source, make_residents, to_csv
from service import MigrationService

TENANT = "oakwood"
HEADERS = {"X-Tenant-ID": TENANT}
OTHER_TENANT = {"X-Tenant-ID": "riverside"}


@pytest.fixture
def client(service: MigrationService):
    """Create test client over a service with temporary stores."""
    with TestClient(create_app(service)) as client:
        yield client


def _config(rows: int = 20, **overrides: Any) -> dict[str, Any]:
    return {
        "name": "Oakwood migration",
        "source_systems": [file_source(to_csv(make_residents(rows)))],
        "batch_size": 10,
        "retry_base_delay": 0.0,
        **overrides,
    }


def _create(client: TestClient, **overrides: Any) -> str:
    response = client.post("/api/migrations", json=_config(**overrides), headers=HEADERS)
    assert response.status_code == 201
    return response.json()["pipeline_id"]


def _run(client: TestClient, service: MigrationService, pipeline_id: str, **body: Any) -> None:
    response = client.post(
        f"/api/migrations/{pipeline_id}/execute", json=body or None, headers=HEADERS
    )
    assert response.status_code == 202
    service.wait(pipeline_id, TENANT, timeout=120)


class TestHealthEndpoint:
    """Test the health check endpoint."""

    def test_health_returns_status(self, client: TestClient):
        """Test health endpoint returns status and timestamp."""
        response = client.get("/health")
        data = response.json()

        assert response.status_code == 200
        assert data["status"] == "healthy"
        assert "timestamp" in data


class TestConnectorEndpoints:
    """Test capability and import preview endpoints."""

    def test_capabilities(self, client: TestClient):
        """Test a known system type reports its capabilities."""
        response = client.get("/api/migrations/connectors/person_centred_software/capabilities")

        assert response.status_code == 200
        data = response.json()
        assert data["connector_type"] == "database"
        assert "6.x" in data["supported_versions"]

    def test_capabilities_unknown_type(self, client: TestClient):
        """Test an unknown system type returns 404."""
        response = client.get("/api/migrations/connectors/mainframe/capabilities")

        assert response.status_code == 404

    def test_preview_import(self, client: TestClient):
        """Test an uploaded export is parsed and summarized."""
        content = to_csv(make_residents(15)).encode("utf-8")

        response = client.post(
            "/api/migrations/imports/preview",
            files={"file": ("residents.csv", content, "text/csv")},
            headers=HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["row_count"] == 15
        assert "nhs_number" in data["fields"]
        assert len(data["sample"]) == 10

    def test_preview_malformed_file(self, client: TestClient):
        """Test a malformed export returns 400."""
        response = client.post(
            "/api/migrations/imports/preview",
            files={"file": ("broken.csv", b"a,b\n1,2\n3\n", "text/csv")},
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"]["error_type"] == "ParseError"

    def test_preview_best_effort(self, client: TestClient):
        """Test best-effort preview quarantines malformed rows."""
        response = client.post(
            "/api/migrations/imports/preview",
            files={"file": ("broken.csv", b"a,b\n1,2\n3\n", "text/csv")},
            data={"best_effort": "true"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["quarantined_count"] == 1


class TestPipelineEndpoints:
    """Test pipeline lifecycle endpoints."""

    def test_tenant_header_required(self, client: TestClient):
        """Test requests without a tenant are rejected."""
        response = client.post("/api/migrations", json=_config())

        assert response.status_code == 422

    def test_invalid_config(self, client: TestClient):
        """Test an invalid configuration returns 422."""
        response = client.post(
            "/api/migrations", json=_config(jurisdiction="atlantis"), headers=HEADERS
        )

        assert response.status_code == 422

    def test_create_and_get(self, client: TestClient):
        """Test a created pipeline is visible in preparing."""
        pipeline_id = _create(client)

        response = client.get(f"/api/migrations/{pipeline_id}", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "preparing"
        assert data["name"] == "Oakwood migration"
        assert data["rollback_available"] is False
        listed = client.get("/api/migrations", headers=HEADERS).json()["pipelines"]
        assert [p["id"] for p in listed] == [pipeline_id]

    def test_other_tenant_sees_not_found(self, client: TestClient):
        """Test another tenant's pipeline looks exactly like a missing one."""
        pipeline_id = _create(client)

        foreign = client.get(f"/api/migrations/{pipeline_id}", headers=OTHER_TENANT)
        missing = client.get("/api/migrations/no-such-pipeline", headers=OTHER_TENANT)

        assert foreign.status_code == 404
        assert foreign.json() == {"detail": "Not found"}
        assert missing.status_code == 404
        assert client.get("/api/migrations", headers=OTHER_TENANT).json()["pipelines"] == []

    def test_execute_to_completion(self, client: TestClient, service: MigrationService):
        """Test a pipeline runs to completion and reports progress and quality."""
        pipeline_id = _create(client)

        _run(client, service, pipeline_id)

        progress = client.get(f"/api/migrations/{pipeline_id}/progress", headers=HEADERS)
        assert progress.status_code == 200
        assert progress.json()["state"] == "completed"
        assert progress.json()["processed"] == 20

        report = client.get(f"/api/migrations/{pipeline_id}/quality-report", headers=HEADERS)
        assert report.status_code == 200
        assert report.json()["overall_score"] >= 70

        findings = client.get(f"/api/migrations/{pipeline_id}/findings", headers=HEADERS)
        assert findings.status_code == 200
        assert findings.json()["total"] == len(findings.json()["findings"])

        again = client.post(f"/api/migrations/{pipeline_id}/execute", headers=HEADERS)
        assert again.status_code == 409

    def test_dry_run(self, client: TestClient, service: MigrationService):
        """Test a dry run through the API writes nothing."""
        pipeline_id = _create(client)

        _run(client, service, pipeline_id, dry_run=True)

        data = client.get(f"/api/migrations/{pipeline_id}", headers=HEADERS).json()
        assert data["state"] == "completed"
        assert data["dry_run"] is True
        assert service.store.count(TENANT) == 0

    def test_quality_report_before_validation(self, client: TestClient):
        """Test a pipeline without a quality report returns 404."""
        pipeline_id = _create(client)

        response = client.get(f"/api/migrations/{pipeline_id}/quality-report", headers=HEADERS)

        assert response.status_code == 404

    def test_override_when_not_suspended(self, client: TestClient):
        """Test a quality override without a suspension is a conflict."""
        pipeline_id = _create(client)

        response = client.post(f"/api/migrations/{pipeline_id}/quality/override", headers=HEADERS)

        assert response.status_code == 409

    def test_pause_and_resume_when_idle(self, client: TestClient):
        """Test pausing or resuming a pipeline that is not running is a conflict."""
        pipeline_id = _create(client)

        paused = client.post(f"/api/migrations/{pipeline_id}/pause", headers=HEADERS)
        resumed = client.post(f"/api/migrations/{pipeline_id}/resume", headers=HEADERS)

        assert paused.status_code == 409
        assert resumed.status_code == 409

    def test_findings_severity_filter_validated(self, client: TestClient):
        """Test an unknown severity filter is rejected."""
        pipeline_id = _create(client)

        response = client.get(
            f"/api/migrations/{pipeline_id}/findings", params={"severity": "fatal"}, headers=HEADERS
        )

        assert response.status_code == 422


class TestMappingEndpoints:
    """Test mapping review endpoints."""

    def test_list_and_feedback(self, client: TestClient, service: MigrationService):
        """Test proposed mappings can be listed and accepted."""
        pipeline_id = _create(client)
        _run(client, service, pipeline_id)

        mappings = client.get(f"/api/migrations/{pipeline_id}/mappings", headers=HEADERS)
        assert mappings.status_code == 200
        by_source = {m["source_field"]: m for m in mappings.json()["mappings"] if m["status"] == "accepted"}
        assert by_source["nhs_number"]["target_field"] == "nhs_number"

        mapping_id = by_source["gp_name"]["mapping_id"]
        feedback = client.post(
            f"/api/migrations/mappings/{mapping_id}/feedback",
            json={"accepted": True},
            headers=HEADERS,
        )
        assert feedback.status_code == 200
        assert feedback.json()["mapping_id"] == mapping_id

    def test_feedback_unknown_mapping(self, client: TestClient):
        """Test feedback on an unknown mapping returns 404."""
        response = client.post(
            "/api/migrations/mappings/no-such-mapping/feedback",
            json={"accepted": False},
            headers=HEADERS,
        )

        assert response.status_code == 404


class TestBackupEndpoints:
    """Test backup, drill and rollback endpoints."""

    def test_backups_drill_and_rollback(self, client: TestClient, service: MigrationService):
        """Test a completed pipeline can be drilled and rolled back once."""
        pipeline_id = _create(client)
        _run(client, service, pipeline_id)

        backups = client.get(f"/api/migrations/{pipeline_id}/backups", headers=HEADERS).json()
        assert [b["kind"] for b in backups["backups"]] == ["full"]

        drill = client.post(f"/api/migrations/{pipeline_id}/backups/test", headers=HEADERS)
        assert drill.status_code == 200
        assert drill.json()["success"] is True

        rollback = client.post(f"/api/migrations/{pipeline_id}/rollback", headers=HEADERS)
        assert rollback.status_code == 200
        assert rollback.json()["success"] is True
        assert service.store.count(TENANT) == 0

        again = client.post(f"/api/migrations/{pipeline_id}/rollback", headers=HEADERS)
        assert again.status_code == 409

    def test_restore_snapshot(self, client: TestClient, service: MigrationService):
        """Test restoring a snapshot by id rolls a completed pipeline back."""
        pipeline_id = _create(client)
        _run(client, service, pipeline_id)
        snapshot_id = service.list_backups(pipeline_id, TENANT)[0].snapshot_id

        response = client.post(f"/api/migrations/backups/{snapshot_id}/restore", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["snapshot_id"] == snapshot_id
        state = client.get(f"/api/migrations/{pipeline_id}", headers=HEADERS).json()["state"]
        assert state == "rolled_back"

    def test_restore_other_tenants_snapshot(self, client: TestClient, service: MigrationService):
        """Test another tenant cannot restore a snapshot."""
        pipeline_id = _create(client)
        _run(client, service, pipeline_id)
        snapshot_id = service.list_backups(pipeline_id, TENANT)[0].snapshot_id

        response = client.post(
            f"/api/migrations/backups/{snapshot_id}/restore", headers=OTHER_TENANT
        )

        assert response.status_code == 404
