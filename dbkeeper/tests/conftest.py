from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from dbkeeper.core.config import get_settings
from dbkeeper.persistence.db import build_engine, init_models
from dbkeeper.services.artifact_store import LocalArtifactStorage


_ISOLATED_ENV = (
    "REDIS_URL",
    "ALERT_WEBHOOK_URL",
    "ALERT_WEBHOOK_SECRET",
    "BACKUP_ENCRYPTION_ENABLED",
    "BACKUP_ENCRYPTION_KEY",
    "BACKUP_SIGNING_ENABLED",
    "BACKUP_SIGNING_KEY",
    "VERIFY_AFTER_SNAPSHOT",
    "CONFIG_PATH",
)


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch) -> None:
    # Keep every test on its own backup root with near-zero retry backoff.
    for name in _ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("BACKUP_MIN_FREE_BYTES", "0")
    monkeypatch.setenv("SNAPSHOT_RETRY_BACKOFF_MS", "1")
    monkeypatch.setenv("ALERT_WEBHOOK_BACKOFF_MS", "1")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path: Path):
    # Fresh SQLite catalog per test.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    await init_models(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def storage(tmp_path: Path) -> LocalArtifactStorage:
    return LocalArtifactStorage(tmp_path / "backups")
