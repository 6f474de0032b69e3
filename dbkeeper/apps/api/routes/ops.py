from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from dbkeeper.apps.api.deps import get_db, get_scheduler
from dbkeeper.core.errors import ArtifactNotFoundError
from dbkeeper.domain.models import BackupArtifact, BackupRun
from dbkeeper.domain.types import StrategyName
from dbkeeper.persistence.repos.alerts import list_alerts
from dbkeeper.persistence.repos.artifacts import get_artifact, list_artifacts, to_view
from dbkeeper.persistence.repos.runs import list_runs
from dbkeeper.services.retention import plan_retention
from dbkeeper.services.scheduler import Scheduler


router = APIRouter(prefix="/ops", tags=["ops"])


class ArtifactResponse(BaseModel):
    # Describe a cataloged artifact for operator listings.
    id: str
    target: str
    strategy: str
    created_at: datetime
    location: str
    sha256: str | None
    size_bytes: int
    encrypted: bool
    binlog_file: str | None
    binlog_position: int | None
    gtid_set: str | None
    row_counts: dict[str, int] | None
    verification_status: str
    verified_at: datetime | None
    verification_report: dict[str, Any] | None
    pruned_at: datetime | None


class ArtifactListResponse(BaseModel):
    items: list[ArtifactResponse]


class RunResponse(BaseModel):
    id: int
    target: str
    strategy: str
    trigger: str
    state: str
    artifact_id: str | None
    started_at: datetime | None
    completed_at: datetime | None
    error_code: str | None
    error_message: str | None
    pruned_count: int


class RunListResponse(BaseModel):
    items: list[RunResponse]


class AlertResponse(BaseModel):
    id: int
    event_type: str
    severity: str
    target: str | None
    artifact_id: str | None
    message: str
    occurred_at: datetime


class AlertListResponse(BaseModel):
    items: list[AlertResponse]


class BackupTriggerRequest(BaseModel):
    strategy: StrategyName | None = None


class BackupTriggerResponse(BaseModel):
    target: str
    strategy: str | None
    status: str


class CancelResponse(BaseModel):
    target: str
    cancelled: bool


class SchedulerStatusResponse(BaseModel):
    running: bool
    targets: list[dict[str, Any]]


class RetentionDecisionResponse(BaseModel):
    artifact_id: str
    delete: bool
    reason: str


class RetentionPlanResponse(BaseModel):
    target: str
    decisions: list[RetentionDecisionResponse]


def _artifact_payload(row: BackupArtifact) -> ArtifactResponse:
    return ArtifactResponse(
        id=row.id,
        target=row.target,
        strategy=row.strategy,
        created_at=row.created_at,
        location=row.location,
        sha256=row.sha256,
        size_bytes=row.size_bytes,
        encrypted=row.encrypted,
        binlog_file=row.binlog_file,
        binlog_position=row.binlog_position,
        gtid_set=row.gtid_set,
        row_counts=row.row_counts_json,
        verification_status=row.verification_status,
        verified_at=row.verified_at,
        verification_report=row.verification_report_json,
        pruned_at=row.pruned_at,
    )


def _run_payload(row: BackupRun) -> RunResponse:
    return RunResponse(
        id=row.id,
        target=row.target,
        strategy=row.strategy,
        trigger=row.trigger,
        state=row.state,
        artifact_id=row.artifact_id,
        started_at=row.started_at,
        completed_at=row.completed_at,
        error_code=row.error_code,
        error_message=row.error_message,
        pruned_count=row.pruned_count,
    )


@router.get("/artifacts", response_model=ArtifactListResponse)
async def artifacts_list(
    target: str | None = Query(default=None),
    include_pruned: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> ArtifactListResponse:
    rows = await list_artifacts(db, target=target, include_pruned=include_pruned, limit=limit)
    return ArtifactListResponse(items=[_artifact_payload(row) for row in rows])


@router.get("/artifacts/{artifact_id}", response_model=ArtifactResponse)
async def artifact_detail(artifact_id: str, db: AsyncSession = Depends(get_db)) -> ArtifactResponse:
    row = await get_artifact(db, artifact_id)
    if row is None:
        raise ArtifactNotFoundError(f"artifact {artifact_id} not found")
    return _artifact_payload(row)


@router.post("/artifacts/{artifact_id}/verify")
async def artifact_verify(artifact_id: str, scheduler: Scheduler = Depends(get_scheduler)) -> dict[str, Any]:
    # Runs inline under the target lease; restores can take minutes for large artifacts.
    report = await scheduler.verify_artifact(artifact_id)
    return report.to_dict()


@router.get("/runs", response_model=RunListResponse)
async def runs_list(
    target: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> RunListResponse:
    rows = await list_runs(db, target=target, limit=limit)
    return RunListResponse(items=[_run_payload(row) for row in rows])


@router.get("/alerts", response_model=AlertListResponse)
async def alerts_list(
    target: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> AlertListResponse:
    rows = await list_alerts(db, target=target, limit=limit)
    return AlertListResponse(
        items=[
            AlertResponse(
                id=row.id,
                event_type=row.event_type,
                severity=row.severity,
                target=row.target,
                artifact_id=row.artifact_id,
                message=row.message,
                occurred_at=row.occurred_at,
            )
            for row in rows
        ]
    )


@router.get("/scheduler", response_model=SchedulerStatusResponse)
async def scheduler_status(scheduler: Scheduler = Depends(get_scheduler)) -> SchedulerStatusResponse:
    return SchedulerStatusResponse(running=scheduler.running, targets=scheduler.status())


@router.post("/targets/{target}/backup", response_model=BackupTriggerResponse, status_code=202)
async def target_backup(
    target: str,
    payload: BackupTriggerRequest | None = None,
    scheduler: Scheduler = Depends(get_scheduler),
) -> BackupTriggerResponse:
    strategy = payload.strategy if payload else None
    if target not in scheduler.config.target_names():
        raise HTTPException(status_code=404, detail={"code": "TARGET_NOT_FOUND", "message": f"unknown target {target}"})
    scheduler.trigger_now(target, strategy)
    return BackupTriggerResponse(target=target, strategy=strategy, status="running")


@router.post("/targets/{target}/cancel", response_model=CancelResponse)
async def target_cancel(target: str, scheduler: Scheduler = Depends(get_scheduler)) -> CancelResponse:
    if target not in scheduler.config.target_names():
        raise HTTPException(status_code=404, detail={"code": "TARGET_NOT_FOUND", "message": f"unknown target {target}"})
    return CancelResponse(target=target, cancelled=scheduler.cancel(target))


@router.get("/targets/{target}/retention", response_model=RetentionPlanResponse)
async def target_retention_plan(
    target: str,
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
) -> RetentionPlanResponse:
    # Preview only; deletions happen in the pipeline or `backup prune`.
    policies = scheduler.config.policies_for(target)
    rows = await list_artifacts(db, target=target)
    decisions = plan_retention([to_view(row) for row in rows], policies, now=datetime.now(timezone.utc))
    return RetentionPlanResponse(
        target=target,
        decisions=[
            RetentionDecisionResponse(artifact_id=d.artifact_id, delete=d.delete, reason=d.reason) for d in decisions
        ],
    )
