from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from dbkeeper.apps.api.main import create_app
from dbkeeper.services.locks import TargetLockManager
from dbkeeper.services.pipeline import BackupPipeline
from dbkeeper.services.resilience import RetryPolicy
from dbkeeper.services.schedule_config import parse_config
from dbkeeper.services.scheduler import Scheduler
from dbkeeper.services.snapshot import SnapshotExecutor
from dbkeeper.services.verification import VerificationRunner
from dbkeeper.tests.utils.fakes import FakeProvider, FakeStrategy, RecordingAlertSink, artifact_row


CONFIG = {
    "targets": [{"name": "orders", "database": "orders_db", "user": "backup", "password": "s3cret"}],
    "policies": {"standard": [{"tier": "daily", "keep": 1, "max_age": "7d"}]},
    "schedules": [{"cadence": "0 2 * * *", "target": "orders", "policy": "standard"}],
}


def _scheduler(session_factory, storage, strategy: FakeStrategy, locks: TargetLockManager | None = None) -> Scheduler:
    alerts = RecordingAlertSink()
    pipeline = BackupPipeline(
        executor=SnapshotExecutor(
            session_factory=session_factory,
            storage=storage,
            strategies={"logical": strategy},
            retry_policy=RetryPolicy(timeout_ms=None, max_attempts=1, backoff_ms=1),
        ),
        verifier=VerificationRunner(
            session_factory=session_factory,
            provider=FakeProvider(),
            strategies={"logical": strategy},
            alerts=alerts,
        ),
        alerts=alerts,
        session_factory=session_factory,
        storage=storage,
        verify_after_snapshot=True,
    )
    return Scheduler(
        parse_config(CONFIG),
        pipeline=pipeline,
        locks=locks or TargetLockManager(),
        session_factory=session_factory,
        poll_interval_s=0.01,
    )


async def _wait_idle(scheduler: Scheduler) -> None:
    for _ in range(500):
        if scheduler.status()[0]["state"] == "idle":
            return
        await asyncio.sleep(0.01)
    raise AssertionError("run did not finish")


@pytest.mark.asyncio
async def test_health_and_catalog_listings(session_factory, storage) -> None:
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        session.add(artifact_row("orders-new", created_at=now - timedelta(days=1), location=storage.base_dir / "orders" / "new"))
        session.add(artifact_row("orders-old", created_at=now - timedelta(days=40), location=storage.base_dir / "orders" / "old"))
        await session.commit()

    app = create_app(session_factory=session_factory, create_tables=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        assert (await client.get("/health")).json() == {"status": "ok"}

        listing = await client.get("/ops/artifacts", params={"target": "orders"})
        assert listing.status_code == 200
        assert [item["id"] for item in listing.json()["items"]] == ["orders-new", "orders-old"]

        detail = await client.get("/ops/artifacts/orders-old")
        assert detail.status_code == 200
        assert detail.json()["verification_status"] == "passed"
        assert detail.json()["binlog_position"] == 4

        missing = await client.get("/ops/artifacts/nope")
        assert missing.status_code == 404
        assert missing.json()["detail"]["code"] == "ARTIFACT_NOT_FOUND"

        assert (await client.get("/ops/runs")).json() == {"items": []}
        assert (await client.get("/ops/alerts")).json() == {"items": []}

        # Scheduler-backed routes need a scheduler attached.
        unavailable = await client.get("/ops/scheduler")
        assert unavailable.status_code == 503
        assert unavailable.json()["detail"]["code"] == "SCHEDULER_UNAVAILABLE"


@pytest.mark.asyncio
async def test_trigger_overlap_and_cancel(session_factory, storage) -> None:
    strategy = FakeStrategy(gate=asyncio.Event())
    scheduler = _scheduler(session_factory, storage, strategy)
    app = create_app(scheduler, session_factory=session_factory, create_tables=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        unknown = await client.post("/ops/targets/billing/backup")
        assert unknown.status_code == 404
        assert unknown.json()["detail"]["code"] == "TARGET_NOT_FOUND"

        started = await client.post("/ops/targets/orders/backup")
        assert started.status_code == 202
        assert started.json() == {"target": "orders", "strategy": None, "status": "running"}
        await asyncio.wait_for(strategy.started.wait(), timeout=5)

        overlap = await client.post("/ops/targets/orders/backup")
        assert overlap.status_code == 409
        assert overlap.json()["detail"]["code"] == "BACKUP_IN_PROGRESS"

        status = (await client.get("/ops/scheduler")).json()
        assert status["running"] is False
        assert status["targets"][0]["state"] == "running"
        assert status["targets"][0]["skipped_overlaps"] == 1

        cancelled = await client.post("/ops/targets/orders/cancel")
        assert cancelled.json() == {"target": "orders", "cancelled": True}
        await _wait_idle(scheduler)
        assert (await client.post("/ops/targets/orders/cancel")).json()["cancelled"] is False

        runs = (await client.get("/ops/runs", params={"target": "orders"})).json()["items"]
        assert [(run["state"], run["error_code"]) for run in runs] == [("failed", "CANCELLED")]


@pytest.mark.asyncio
async def test_completed_run_and_retention_preview(session_factory, storage) -> None:
    scheduler = _scheduler(session_factory, storage, FakeStrategy())
    async with session_factory() as session:
        old = datetime.now(timezone.utc) - timedelta(days=40)
        session.add(artifact_row("orders-old", created_at=old, location=storage.base_dir / "orders" / "old"))
        await session.commit()

    app = create_app(scheduler, session_factory=session_factory, create_tables=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        assert (await client.post("/ops/targets/orders/backup", json={"strategy": "logical"})).status_code == 202
        await _wait_idle(scheduler)

        runs = (await client.get("/ops/runs")).json()["items"]
        assert runs[0]["state"] == "succeeded"
        # The pipeline already pruned the expired artifact after verifying the new one.
        assert runs[0]["pruned_count"] == 1
        new_id = runs[0]["artifact_id"]

        preview = (await client.get("/ops/targets/orders/retention")).json()
        assert preview["target"] == "orders"
        assert [(d["artifact_id"], d["delete"]) for d in preview["decisions"]] == [(new_id, False)]

        report = (await client.post(f"/ops/artifacts/{new_id}/verify")).json()
        assert report["artifact_id"] == new_id
        assert report["passed"] is True

        missing = await client.post("/ops/artifacts/nope/verify")
        assert missing.status_code == 404

        alerts = (await client.get("/ops/alerts")).json()["items"]
        assert alerts == []


@pytest.mark.asyncio
async def test_unknown_strategy_is_rejected_without_starting_a_run(session_factory, storage) -> None:
    scheduler = _scheduler(session_factory, storage, FakeStrategy())
    app = create_app(scheduler, session_factory=session_factory, create_tables=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        rejected = await client.post("/ops/targets/orders/backup", json={"strategy": "bogus"})
        assert rejected.status_code == 422

        status = (await client.get("/ops/scheduler")).json()
        assert status["targets"][0]["state"] == "idle"
        assert status["targets"][0]["skipped_overlaps"] == 0
        assert (await client.get("/ops/runs")).json() == {"items": []}


@pytest.mark.asyncio
async def test_verify_is_refused_while_the_target_is_busy(session_factory, storage) -> None:
    locks = TargetLockManager()
    scheduler = _scheduler(session_factory, storage, FakeStrategy(), locks=locks)
    app = create_app(scheduler, session_factory=session_factory, create_tables=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        assert (await client.post("/ops/targets/orders/backup")).status_code == 202
        await _wait_idle(scheduler)
        artifact_id = (await client.get("/ops/runs")).json()["items"][0]["artifact_id"]

        # Stands in for a retention pass or backup holding the target.
        lease = await locks.acquire("orders")
        busy = await client.post(f"/ops/artifacts/{artifact_id}/verify")
        assert busy.status_code == 409
        assert busy.json()["detail"]["code"] == "BACKUP_IN_PROGRESS"
        await locks.release(lease)

        report = await client.post(f"/ops/artifacts/{artifact_id}/verify")
        assert report.status_code == 200
        assert report.json()["passed"] is True
