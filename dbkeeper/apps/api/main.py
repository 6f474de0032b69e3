from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbkeeper.apps.api.errors import dbkeeper_exception_handler
from dbkeeper.apps.api.routes.health import router as health_router
from dbkeeper.apps.api.routes.ops import router as ops_router
from dbkeeper.core.errors import DbKeeperError
from dbkeeper.core.logging import configure_logging
from dbkeeper.persistence.db import SessionLocal, init_models
from dbkeeper.services.scheduler import Scheduler


def create_app(
    scheduler: Scheduler | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    start_scheduler: bool = False,
    create_tables: bool = True,
) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if create_tables:
            await init_models()
        if scheduler is not None and start_scheduler:
            await scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None and start_scheduler:
                await scheduler.stop()

    app = FastAPI(title="dbkeeper ops API", lifespan=lifespan)
    app.state.scheduler = scheduler
    app.state.session_factory = session_factory or SessionLocal
    app.add_exception_handler(DbKeeperError, dbkeeper_exception_handler)
    app.include_router(health_router)
    app.include_router(ops_router)
    return app
