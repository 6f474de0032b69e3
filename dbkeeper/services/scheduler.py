from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import ArtifactNotFoundError, BackupInProgressError, ConfigurationError
from dbkeeper.domain.types import STRATEGY_NAMES, RunState, ScheduleEntry, VerificationReport
from dbkeeper.persistence.db import SessionLocal
from dbkeeper.persistence.repos.artifacts import get_artifact, latest_verified_artifact
from dbkeeper.persistence.repos.runs import latest_run
from dbkeeper.services.cron import CronSchedule, parse_cron
from dbkeeper.services.locks import TargetLockManager
from dbkeeper.services.pipeline import BackupPipeline, RunOutcome
from dbkeeper.services.schedule_config import DbKeeperConfig


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TargetState:
    target: str
    state: RunState = RunState.IDLE
    retention_blocked: bool = False
    last_outcome: RunState | None = None
    last_artifact_id: str | None = None
    last_error: str | None = None
    last_started_at: datetime | None = None
    last_completed_at: datetime | None = None
    next_fire_at: datetime | None = None
    skipped_overlaps: int = 0
    runs_started: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "state": self.state.value,
            "retention_blocked": self.retention_blocked,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "last_artifact_id": self.last_artifact_id,
            "last_error": self.last_error,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_completed_at": self.last_completed_at.isoformat() if self.last_completed_at else None,
            "next_fire_at": self.next_fire_at.isoformat() if self.next_fire_at else None,
            "skipped_overlaps": self.skipped_overlaps,
            "runs_started": self.runs_started,
        }


@dataclass(frozen=True)
class _Job:
    kind: str  # "backup" or "retention"
    entry: ScheduleEntry
    cron: CronSchedule


class Scheduler:
    """One coordination loop per target: Idle -> Running -> Succeeded/Failed -> Idle."""

    def __init__(
        self,
        config: DbKeeperConfig,
        *,
        pipeline: BackupPipeline | None = None,
        locks: TargetLockManager | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        poll_interval_s: float | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._config = config
        self._session_factory = session_factory or SessionLocal
        self._pipeline = pipeline or BackupPipeline(session_factory=self._session_factory)
        self._locks = locks or TargetLockManager()
        self._poll_interval_s = poll_interval_s if poll_interval_s is not None else get_settings().scheduler_poll_interval_s
        self._clock = clock
        self._states: dict[str, TargetState] = {name: TargetState(target=name) for name in config.target_names()}
        self._jobs: dict[str, list[_Job]] = {name: [] for name in config.target_names()}
        for entry in config.schedule_entries():
            self._jobs[entry.target].append(_Job("backup", entry, parse_cron(entry.cadence)))
            if entry.retention_cadence:
                self._jobs[entry.target].append(_Job("retention", entry, parse_cron(entry.retention_cadence)))
        self._loops: dict[str, asyncio.Task] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    @property
    def pipeline(self) -> BackupPipeline:
        return self._pipeline

    @property
    def config(self) -> DbKeeperConfig:
        return self._config

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._loops.values())

    def _state(self, target: str) -> TargetState:
        state = self._states.get(target)
        if state is None:
            raise ConfigurationError(f"unknown target {target!r}")
        return state

    async def load_state(self) -> None:
        # A failed last run keeps retention suppressed across restarts until a verified backup exists.
        async with self._session_factory() as session:
            for name, state in self._states.items():
                run = await latest_run(session, name)
                if run is None:
                    continue
                state.last_outcome = RunState(run.state)
                state.last_artifact_id = run.artifact_id
                state.last_error = run.error_message
                state.last_started_at = run.started_at
                state.last_completed_at = run.completed_at
                if run.state == RunState.FAILED.value:
                    state.retention_blocked = True

    async def start(self) -> None:
        await self.load_state()
        for name, jobs in self._jobs.items():
            if not jobs or name in self._loops:
                continue
            self._loops[name] = asyncio.create_task(self._target_loop(name), name=f"dbkeeper-loop-{name}")
        logger.info("scheduler_started targets=%s", ",".join(sorted(self._loops)) or "-")

    async def wait(self) -> None:
        if self._loops:
            await asyncio.gather(*self._loops.values())

    async def stop(self) -> None:
        tasks = list(self._loops.values()) + list(self._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()
        self._inflight.clear()
        await self._locks.close()
        logger.info("scheduler_stopped")

    def status(self) -> list[dict[str, Any]]:
        return [self._states[name].to_dict() for name in sorted(self._states)]

    async def _sleep_until(self, when: datetime) -> None:
        while True:
            remaining = (when - self._clock()).total_seconds()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, self._poll_interval_s))

    async def _target_loop(self, target: str) -> None:
        state = self._states[target]
        jobs = self._jobs[target]
        started = self._clock()
        due = [job.cron.next_after(started) for job in jobs]
        while True:
            # Earliest due job first; backups win ties with retention.
            index = min(range(len(jobs)), key=lambda i: (due[i], jobs[i].kind != "backup"))
            fire_at, job = due[index], jobs[index]
            state.next_fire_at = min(due)
            await self._sleep_until(fire_at)
            try:
                if job.kind == "backup":
                    await self._run_scheduled_backup(target, job.entry)
                else:
                    await self._run_scheduled_retention(target)
            except BackupInProgressError:
                pass
            except Exception:  # noqa: BLE001 - one broken run must not stop the target loop
                logger.exception("scheduler_job_failed target=%s kind=%s", target, job.kind)
            now = self._clock()
            if job.kind == "backup":
                missed = job.cron.fires_between(fire_at, now)
                if missed:
                    state.skipped_overlaps += missed
                    logger.warning("backup_ticks_skipped target=%s count=%s reason=run_in_progress", target, missed)
            due[index] = job.cron.next_after(max(fire_at, now))

    async def _run_scheduled_backup(self, target: str, entry: ScheduleEntry) -> None:
        task = self._start_run(target, entry.strategy, trigger="schedule")
        # asyncio.wait does not propagate the run task's cancellation into this loop.
        await asyncio.wait({task})

    async def _run_scheduled_retention(self, target: str) -> None:
        state = self._states[target]
        if state.retention_blocked:
            logger.warning("retention_suppressed target=%s reason=last_run_failed", target)
            return
        async with self._session_factory() as session:
            verified = await latest_verified_artifact(session, target)
        if verified is None:
            logger.warning("retention_suppressed target=%s reason=no_verified_artifact", target)
            return
        policies = self._config.policies_for(target)
        if not policies:
            return
        lease = await self._locks.acquire(target)
        if lease is None:
            logger.info("retention_skipped target=%s reason=run_in_progress", target)
            return
        try:
            await self._pipeline.run_retention(target, policies)
        finally:
            await self._locks.release(lease)

    async def verify_artifact(self, artifact_id: str) -> VerificationReport:
        # Manual verification holds the target lease so retention cannot prune the artifact mid-restore.
        async with self._session_factory() as session:
            artifact = await get_artifact(session, artifact_id)
        if artifact is None or artifact.pruned_at is not None:
            raise ArtifactNotFoundError(f"artifact {artifact_id} not found")
        lease = await self._locks.acquire(artifact.target)
        if lease is None:
            logger.warning("verification_skipped target=%s artifact=%s reason=run_in_progress", artifact.target, artifact_id)
            raise BackupInProgressError(f"{artifact.target} is busy; retry verification when the current run finishes")
        try:
            return await self._pipeline.verifier.verify(artifact_id)
        finally:
            await self._locks.release(lease)

    def trigger_now(self, target: str, strategy: str | None = None) -> asyncio.Task:
        """Start a manual run; raises BackupInProgressError if the target is busy, ConfigurationError for an unknown strategy."""
        self._state(target)
        if strategy is None:
            entries = self._config.schedule_entries(target)
            strategy = entries[0].strategy if entries else "logical"
        elif strategy not in STRATEGY_NAMES:
            raise ConfigurationError(f"unknown strategy {strategy!r}; expected one of {', '.join(STRATEGY_NAMES)}")
        return self._start_run(target, strategy, trigger="manual")

    def _start_run(self, target: str, strategy: str, *, trigger: str) -> asyncio.Task:
        state = self._state(target)
        current = self._inflight.get(target)
        if state.state == RunState.RUNNING or (current is not None and not current.done()) or self._locks.is_locked(target):
            state.skipped_overlaps += 1
            logger.warning("backup_skipped_overlap target=%s trigger=%s", target, trigger)
            raise BackupInProgressError(f"a backup of {target} is already running")
        # Claim synchronously so a second trigger in the same tick sees the target busy.
        state.state = RunState.RUNNING
        task = asyncio.create_task(self._execute(target, strategy, trigger), name=f"dbkeeper-run-{target}")
        self._inflight[target] = task
        return task

    async def _execute(self, target: str, strategy: str, trigger: str) -> RunOutcome | None:
        state = self._states[target]
        try:
            lease = await self._locks.acquire(target)
            if lease is None:
                state.skipped_overlaps += 1
                logger.warning("backup_skipped_overlap target=%s trigger=%s reason=lock_held", target, trigger)
                await self._pipeline.emit_skip(target, "another process holds the target lock")
                return None
            try:
                descriptor = self._config.target(target)
                state.runs_started += 1
                state.last_started_at = self._clock()
                outcome = await self._pipeline.run(
                    descriptor,
                    strategy,
                    policies=self._config.policies_for(target),
                    trigger=trigger,
                )
            except asyncio.CancelledError:
                state.last_outcome = RunState.FAILED
                state.last_error = "cancelled"
                state.last_completed_at = self._clock()
                state.retention_blocked = True
                raise
            finally:
                await self._locks.release(lease)
            state.last_outcome = outcome.state
            state.last_artifact_id = outcome.artifact_id
            state.last_error = outcome.error_message
            state.last_completed_at = self._clock()
            # A failure suppresses standalone retention; only a verified success lifts it.
            if not outcome.succeeded:
                state.retention_blocked = True
            elif outcome.verified:
                state.retention_blocked = False
            return outcome
        finally:
            state.state = RunState.IDLE
            if self._inflight.get(target) is asyncio.current_task():
                del self._inflight[target]

    def cancel(self, target: str) -> bool:
        """Cancel the in-flight run of ``target``; returns False when nothing is running."""
        self._state(target)
        task = self._inflight.get(target)
        if task is None or task.done():
            return False
        logger.warning("backup_cancel_requested target=%s", target)
        task.cancel()
        return True
