from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import VerificationMismatchError, error_code
from dbkeeper.domain.types import RetentionDecision, RetentionPolicy, RunState, TargetDescriptor
from dbkeeper.persistence.db import SessionLocal
from dbkeeper.persistence.repos.runs import finish_run, start_run
from dbkeeper.services.alerts import (
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    AlertEvent,
    AlertSink,
    LoggingAlertSink,
)
from dbkeeper.services.artifact_store import ArtifactStorage, default_storage
from dbkeeper.services.retention import apply_retention
from dbkeeper.services.snapshot import SnapshotExecutor
from dbkeeper.services.verification import VerificationRunner


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunOutcome:
    target: str
    strategy: str
    state: RunState
    run_id: int | None = None
    artifact_id: str | None = None
    verified: bool = False
    pruned: list[RetentionDecision] = field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.SUCCEEDED


class BackupPipeline:
    """Snapshot, then verify, then apply retention; alert on every terminal state."""

    def __init__(
        self,
        *,
        executor: SnapshotExecutor | None = None,
        verifier: VerificationRunner | None = None,
        alerts: AlertSink | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        storage: ArtifactStorage | None = None,
        verify_after_snapshot: bool | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._alerts = alerts or LoggingAlertSink()
        self._storage = storage or default_storage()
        self._executor = executor or SnapshotExecutor(session_factory=self._session_factory, storage=self._storage)
        self._verifier = verifier or VerificationRunner(session_factory=self._session_factory, alerts=self._alerts)
        if verify_after_snapshot is None:
            verify_after_snapshot = get_settings().verify_after_snapshot
        self._verify_after_snapshot = verify_after_snapshot
        self._clock = clock

    @property
    def alerts(self) -> AlertSink:
        return self._alerts

    @property
    def verifier(self) -> VerificationRunner:
        return self._verifier

    async def run(
        self,
        target: TargetDescriptor,
        strategy: str,
        *,
        policies: Sequence[RetentionPolicy] = (),
        trigger: str = "schedule",
    ) -> RunOutcome:
        outcome = RunOutcome(target=target.name, strategy=strategy, state=RunState.RUNNING)
        async with self._session_factory() as session:
            run = await start_run(session, target=target.name, strategy=strategy, trigger=trigger, started_at=self._clock())
            outcome.run_id = run.id
            try:
                artifact = await self._executor.run(target, strategy)
                outcome.artifact_id = artifact.id
                if self._verify_after_snapshot:
                    report = await self._verifier.verify(artifact.id)
                    if not report.passed:
                        raise VerificationMismatchError(report.diagnostic or "verification failed")
                    outcome.verified = True
                    if policies:
                        outcome.pruned = await self.run_retention(target.name, policies)
                elif policies:
                    logger.info("retention_skipped target=%s reason=verification_disabled", target.name)
            except asyncio.CancelledError:
                outcome.state = RunState.FAILED
                outcome.error_code = "CANCELLED"
                outcome.error_message = "run cancelled by operator"
                await asyncio.shield(self._finish(session, run, outcome))
                logger.warning("backup_run_cancelled target=%s run=%s", target.name, run.id)
                raise
            except Exception as exc:  # noqa: BLE001 - failures are recorded and alerted, never silently skipped
                outcome.state = RunState.FAILED
                outcome.error_code = error_code(exc)
                outcome.error_message = str(exc)
                await self._finish(session, run, outcome)
                logger.error(
                    "backup_run_failed target=%s run=%s code=%s error=%s",
                    target.name,
                    run.id,
                    outcome.error_code,
                    exc,
                )
                await self._alerts.emit(
                    AlertEvent(
                        event_type="backup.failed",
                        severity=SEVERITY_CRITICAL,
                        message=f"backup of {target.name} failed: {exc}",
                        target=target.name,
                        run_id=run.id,
                        artifact_id=outcome.artifact_id,
                        details={"error_code": outcome.error_code, "strategy": strategy, "trigger": trigger},
                    )
                )
                return outcome

            outcome.state = RunState.SUCCEEDED
            await self._finish(session, run, outcome)
        logger.info(
            "backup_run_succeeded target=%s run=%s artifact=%s verified=%s pruned=%s",
            target.name,
            outcome.run_id,
            outcome.artifact_id,
            outcome.verified,
            len(outcome.pruned),
        )
        await self._alerts.emit(
            AlertEvent(
                event_type="backup.succeeded",
                severity=SEVERITY_INFO,
                message=f"backup of {target.name} succeeded",
                target=target.name,
                run_id=outcome.run_id,
                artifact_id=outcome.artifact_id,
                details={"verified": outcome.verified, "pruned": [d.artifact_id for d in outcome.pruned]},
            )
        )
        return outcome

    async def _finish(self, session: AsyncSession, run, outcome: RunOutcome) -> None:
        await finish_run(
            session,
            run,
            state=outcome.state,
            completed_at=self._clock(),
            artifact_id=outcome.artifact_id,
            error_code=outcome.error_code,
            error_message=outcome.error_message,
            pruned_count=len(outcome.pruned),
        )

    async def run_retention(
        self,
        target: str,
        policies: Sequence[RetentionPolicy],
        *,
        dry_run: bool = False,
    ) -> list[RetentionDecision]:
        async with self._session_factory() as session:
            decisions = await apply_retention(
                session=session,
                policies=policies,
                now=self._clock(),
                target=target,
                storage=self._storage,
                dry_run=dry_run,
            )
        if decisions and not dry_run:
            await self._alerts.emit(
                AlertEvent(
                    event_type="retention.pruned",
                    severity=SEVERITY_INFO,
                    message=f"pruned {len(decisions)} artifact(s) of {target}",
                    target=target,
                    details={"artifacts": {d.artifact_id: d.reason for d in decisions}},
                )
            )
        return decisions

    async def emit_skip(self, target: str, reason: str) -> None:
        await self._alerts.emit(
            AlertEvent(
                event_type="backup.skipped",
                severity=SEVERITY_WARNING,
                message=f"backup of {target} skipped: {reason}",
                target=target,
            )
        )
