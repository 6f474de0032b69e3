from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dbkeeper.core.config import get_settings
from dbkeeper.domain.models import Base
from dbkeeper.persistence.guards import install_artifact_guards


def build_engine(database_url: str) -> AsyncEngine:
    _engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # Scheduler tasks share one catalog file across connections.
        _engine_kwargs["connect_args"] = {"check_same_thread": False}
    else:
        _engine_kwargs["pool_size"] = 5
        _engine_kwargs["max_overflow"] = 5
        _engine_kwargs["pool_recycle"] = 1800
    return create_async_engine(database_url, **_engine_kwargs)


install_artifact_guards()
engine = build_engine(get_settings().database_url)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def init_models(bind: AsyncEngine | None = None) -> None:
    # Create catalog tables; safe to call on every start.
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
