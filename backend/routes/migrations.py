"""Migration pipeline routes.

This router exposes pipeline creation and execution, progress, operator
approvals, quality reports, backups and rollback. The tenant is taken from
the ``X-Tenant-ID`` header on every request; migration errors are turned
into HTTP responses by the handler registered in ``app.py``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, Request, UploadFile

from connectors import SourceSystemType, capabilities
from fileimport import FileImporter
from pipeline import PipelineConfig
from schemas import (
    ApproveMappingsRequest,
    ExecuteMigrationRequest,
    FindingsResponse,
    MappingFeedbackRequest,
    PipelineCreatedResponse,
    ProgressResponse,
    RollbackRequest,
)
from service import MigrationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/migrations", tags=["migrations"])

# Findings pagination limits
DEFAULT_FINDINGS_LIMIT = 500
MAX_FINDINGS_LIMIT = 5000


def get_service(request: Request) -> MigrationService:
    return request.app.state.migration_service


def get_tenant_id(
    x_tenant_id: str = Header(..., min_length=1, max_length=100),
) -> str:
    return x_tenant_id.strip()


# Routes without a pipeline id


@router.get("/connectors/{system_type}/capabilities")
async def get_capabilities(system_type: str):
    """Report what a legacy system type supports."""
    try:
        caps = capabilities(SourceSystemType(system_type))
    except ValueError:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown system type: {system_type}. "
            f"Valid: {[t.value for t in SourceSystemType]}",
        )
    return caps.model_dump(mode="json")


@router.post("/imports/preview")
async def preview_import(
    file: UploadFile = File(...),
    declared_format: str | None = Form(default=None),
    best_effort: bool = Form(default=False),
    tenant_id: str = Depends(get_tenant_id),
):
    """Parse an export file and report its fields, inferred types and quarantined rows."""
    content = await file.read()
    result = FileImporter().import_bytes(
        content,
        filename=file.filename,
        declared_format=declared_format,
        best_effort=best_effort,
        connector_id=f"upload:{tenant_id}",
    )
    logger.info(
        f"Previewed import of {file.filename}: {result.row_count} row(s)",
        extra={"tenant_id": tenant_id},
    )
    return {
        **result.summary(),
        "sample": [record.to_json() for record in result.records[:10]],
    }


@router.post("/mappings/{mapping_id}/feedback")
async def submit_mapping_feedback(
    mapping_id: str,
    request: MappingFeedbackRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Accept, reject or correct a proposed mapping."""
    try:
        mapping = service.submit_mapping_feedback(
            mapping_id, tenant_id, request.accepted, request.correction
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return mapping.to_dict()


@router.post("/backups/{snapshot_id}/restore")
async def restore_snapshot(
    snapshot_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Restore the target store from a snapshot."""
    return service.restore(snapshot_id, tenant_id).to_dict()


# Pipelines


@router.post("", status_code=201, response_model=PipelineCreatedResponse)
async def create_pipeline(
    config: PipelineConfig,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Create a migration pipeline in the preparing state."""
    pipeline_id = service.create_pipeline(config, tenant_id)
    return PipelineCreatedResponse(pipeline_id=pipeline_id, state="preparing")


@router.get("")
async def list_pipelines(
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """List the tenant's pipelines, newest first."""
    return {"pipelines": service.list_pipelines(tenant_id)}


@router.get("/{pipeline_id}")
async def get_pipeline(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Current state, failure reason, recommendations and rollback availability."""
    return service.get_pipeline(pipeline_id, tenant_id)


@router.post("/{pipeline_id}/execute", status_code=202)
async def execute_migration(
    pipeline_id: str,
    request: ExecuteMigrationRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Start the pipeline in the background."""
    dry_run = request.dry_run if request else False
    service.execute_migration(pipeline_id, tenant_id, dry_run=dry_run)
    return {"pipeline_id": pipeline_id, "status": "started", "dry_run": dry_run}


@router.get("/{pipeline_id}/progress", response_model=ProgressResponse)
async def get_progress(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Poll progress counters."""
    return service.get_progress(pipeline_id, tenant_id).to_dict()


@router.post("/{pipeline_id}/pause", status_code=202)
async def pause_pipeline(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Pause at the next batch boundary."""
    service.pause(pipeline_id, tenant_id)
    return {"pipeline_id": pipeline_id, "status": "pause_requested"}


@router.post("/{pipeline_id}/resume", status_code=202)
async def resume_pipeline(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Continue a paused pipeline from its last committed batch."""
    service.resume(pipeline_id, tenant_id)
    return {"pipeline_id": pipeline_id, "status": "resumed"}


@router.post("/{pipeline_id}/cancel", status_code=202)
async def cancel_pipeline(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Cancel at the next batch boundary."""
    service.cancel(pipeline_id, tenant_id)
    return {"pipeline_id": pipeline_id, "status": "cancellation_requested"}


@router.post("/{pipeline_id}/rollback")
async def rollback_pipeline(
    pipeline_id: str,
    request: RollbackRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Restore the target store and mark the pipeline rolled back."""
    request = request or RollbackRequest()
    result = service.rollback(
        pipeline_id, tenant_id, snapshot_id=request.snapshot_id, at=request.at
    )
    return result.to_dict()


@router.get("/{pipeline_id}/mappings")
async def list_mappings(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """List proposed, accepted and alternate mappings for the pipeline."""
    mappings = service.list_mappings(pipeline_id, tenant_id)
    return {"pipeline_id": pipeline_id, "mappings": [m.to_dict() for m in mappings]}


@router.post("/{pipeline_id}/mappings/approve")
async def approve_mappings(
    pipeline_id: str,
    request: ApproveMappingsRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Approve pending mappings and resume the pipeline."""
    approved = service.approve_mappings(
        pipeline_id,
        tenant_id,
        mapping_ids=request.mapping_ids,
        allow_unmapped=request.allow_unmapped,
    )
    return {"pipeline_id": pipeline_id, "approved": [m.to_dict() for m in approved]}


@router.post("/{pipeline_id}/quality/override", status_code=202)
async def override_quality(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Proceed despite a quality score below the threshold."""
    service.override_quality(pipeline_id, tenant_id)
    return {"pipeline_id": pipeline_id, "status": "resumed"}


@router.get("/{pipeline_id}/quality-report")
async def get_quality_report(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
) -> dict[str, Any]:
    """Latest quality report with remediation recommendations."""
    return service.get_quality_report(pipeline_id, tenant_id)


@router.get("/{pipeline_id}/findings", response_model=FindingsResponse)
async def list_findings(
    pipeline_id: str,
    severity: str | None = Query(default=None, pattern="^(error|warning|info)$"),
    limit: int = Query(default=DEFAULT_FINDINGS_LIMIT, ge=1, le=MAX_FINDINGS_LIMIT),
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Findings recorded against the pipeline's records."""
    findings = service.list_findings(pipeline_id, tenant_id, severity, limit)
    return FindingsResponse(pipeline_id=pipeline_id, findings=findings, total=len(findings))


@router.get("/{pipeline_id}/backups")
async def list_backups(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """List the pipeline's snapshots, newest first."""
    snapshots = service.list_backups(pipeline_id, tenant_id)
    return {"pipeline_id": pipeline_id, "backups": [s.to_dict() for s in snapshots]}


@router.post("/{pipeline_id}/backups/test")
async def test_restore_cycle(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: MigrationService = Depends(get_service),
):
    """Run a backup, corruption, restore and verify drill on a scratch copy."""
    return service.test_restore_cycle(pipeline_id, tenant_id).to_dict()
