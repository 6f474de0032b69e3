from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dbkeeper.domain.models import BackupArtifact
from dbkeeper.domain.types import VERIFICATION_PASSED, ArtifactView


async def add_artifact(session: AsyncSession, artifact: BackupArtifact) -> BackupArtifact:
    session.add(artifact)
    return artifact


async def get_artifact(session: AsyncSession, artifact_id: str) -> BackupArtifact | None:
    return await session.get(BackupArtifact, artifact_id)


async def list_artifacts(
    session: AsyncSession,
    *,
    target: str | None = None,
    include_pruned: bool = False,
    limit: int | None = None,
) -> list[BackupArtifact]:
    stmt = select(BackupArtifact).order_by(BackupArtifact.created_at.desc())
    if target is not None:
        stmt = stmt.where(BackupArtifact.target == target)
    if not include_pruned:
        stmt = stmt.where(BackupArtifact.pruned_at.is_(None))
    if limit is not None:
        stmt = stmt.limit(limit)
    return list((await session.execute(stmt)).scalars().all())


async def latest_verified_artifact(session: AsyncSession, target: str) -> BackupArtifact | None:
    stmt = (
        select(BackupArtifact)
        .where(
            BackupArtifact.target == target,
            BackupArtifact.verification_status == VERIFICATION_PASSED,
            BackupArtifact.pruned_at.is_(None),
        )
        .order_by(BackupArtifact.created_at.desc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def mark_pruned(session: AsyncSession, artifact_ids: list[str], *, pruned_at: datetime) -> int:
    count = 0
    for artifact_id in artifact_ids:
        artifact = await session.get(BackupArtifact, artifact_id)
        if artifact is None or artifact.pruned_at is not None:
            continue
        artifact.pruned_at = pruned_at
        count += 1
    return count


def to_view(artifact: BackupArtifact) -> ArtifactView:
    return ArtifactView(
        id=artifact.id,
        target=artifact.target,
        strategy=artifact.strategy,
        created_at=artifact.created_at,
        verification_status=artifact.verification_status,
    )
