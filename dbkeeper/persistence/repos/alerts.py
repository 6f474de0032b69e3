from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dbkeeper.domain.models import AlertRecord


async def list_alerts(session: AsyncSession, *, target: str | None = None, limit: int = 50) -> list[AlertRecord]:
    stmt = select(AlertRecord).order_by(AlertRecord.occurred_at.desc(), AlertRecord.id.desc()).limit(limit)
    if target is not None:
        stmt = stmt.where(AlertRecord.target == target)
    return list((await session.execute(stmt)).scalars().all())
