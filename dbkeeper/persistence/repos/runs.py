from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dbkeeper.domain.models import BackupRun
from dbkeeper.domain.types import RunState


async def start_run(session: AsyncSession, *, target: str, strategy: str, trigger: str, started_at: datetime) -> BackupRun:
    run = BackupRun(
        target=target,
        strategy=strategy,
        trigger=trigger,
        state=RunState.RUNNING.value,
        started_at=started_at,
    )
    session.add(run)
    await session.commit()
    await session.refresh(run)
    return run


async def finish_run(
    session: AsyncSession,
    run: BackupRun,
    *,
    state: RunState,
    completed_at: datetime,
    artifact_id: str | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
    pruned_count: int = 0,
) -> None:
    run.state = state.value
    run.completed_at = completed_at
    if artifact_id is not None:
        run.artifact_id = artifact_id
    run.error_code = error_code
    run.error_message = error_message
    run.pruned_count = pruned_count
    await session.commit()


async def latest_run(session: AsyncSession, target: str) -> BackupRun | None:
    stmt = (
        select(BackupRun)
        .where(BackupRun.target == target, BackupRun.completed_at.is_not(None))
        .order_by(BackupRun.id.desc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_runs(session: AsyncSession, *, target: str | None = None, limit: int = 50) -> list[BackupRun]:
    stmt = select(BackupRun).order_by(BackupRun.id.desc()).limit(limit)
    if target is not None:
        stmt = stmt.where(BackupRun.target == target)
    return list((await session.execute(stmt)).scalars().all())
