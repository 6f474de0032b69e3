from __future__ import annotations

import asyncio
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping

from cryptography.exceptions import InvalidTag
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import (
    ArtifactNotFoundError,
    ConfigurationError,
    DbKeeperError,
    EphemeralTargetError,
)
from dbkeeper.domain.models import BackupArtifact
from dbkeeper.domain.types import VERIFICATION_FAILED, VERIFICATION_PASSED, VerificationReport
from dbkeeper.persistence.db import SessionLocal
from dbkeeper.persistence.repos.artifacts import get_artifact
from dbkeeper.services.alerts import SEVERITY_CRITICAL, SEVERITY_INFO, AlertEvent, AlertSink, LoggingAlertSink
from dbkeeper.services.artifact_store import (
    ENCRYPTED_SUFFIX,
    decrypt_file,
    encryption_key,
    load_manifest,
    validate_artifact_dir,
)
from dbkeeper.services.ephemeral import EphemeralProvider, get_provider
from dbkeeper.services.strategies import BackupStrategy, get_strategy


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compare_row_counts(expected: Mapping[str, int], actual: Mapping[str, int]) -> dict[str, dict[str, int | None]]:
    # Report every table whose restored count differs, including missing and unexpected tables.
    deltas: dict[str, dict[str, int | None]] = {}
    for table in sorted(set(expected) | set(actual)):
        want = expected.get(table)
        got = actual.get(table)
        if want != got:
            deltas[table] = {"expected": want, "actual": got}
    return deltas


class VerificationRunner:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        provider: EphemeralProvider | None = None,
        strategies: Mapping[str, BackupStrategy] | None = None,
        alerts: AlertSink | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._provider = provider
        self._strategies = dict(strategies or {})
        self._alerts = alerts or LoggingAlertSink()
        self._clock = clock

    def _strategy(self, name: str) -> BackupStrategy:
        if name in self._strategies:
            return self._strategies[name]
        return get_strategy(name)

    async def verify(self, artifact_id: str) -> VerificationReport:
        """Restore one artifact into an ephemeral target and record the outcome.

        Checksum, decryption, restore and row-count problems fail the artifact.
        Errors provisioning the ephemeral target leave it unverified and are
        re-raised, since they say nothing about the artifact itself.
        """
        async with self._session_factory() as session:
            artifact = await get_artifact(session, artifact_id)
        if artifact is None or artifact.pruned_at is not None:
            raise ArtifactNotFoundError(f"artifact {artifact_id} not found")

        report = VerificationReport(
            artifact_id=artifact.id,
            passed=False,
            checksum_ok=False,
            started_at=self._clock(),
        )
        logger.info("verification_started target=%s artifact=%s", artifact.target, artifact.id)
        await self._check(artifact, report)
        report.completed_at = self._clock()
        await self._record(artifact.id, report)

        if report.passed:
            logger.info("verification_passed target=%s artifact=%s", artifact.target, artifact.id)
            await self._alerts.emit(
                AlertEvent(
                    event_type="verification.passed",
                    severity=SEVERITY_INFO,
                    message=f"artifact {artifact.id} restored and matched",
                    target=artifact.target,
                    artifact_id=artifact.id,
                )
            )
        else:
            logger.error(
                "verification_failed target=%s artifact=%s diagnostic=%s",
                artifact.target,
                artifact.id,
                report.diagnostic,
            )
            await self._alerts.emit(
                AlertEvent(
                    event_type="verification.failed",
                    severity=SEVERITY_CRITICAL,
                    message=f"artifact {artifact.id} failed verification: {report.diagnostic}",
                    target=artifact.target,
                    artifact_id=artifact.id,
                    details=report.to_dict(),
                )
            )
        return report

    async def _check(self, artifact: BackupArtifact, report: VerificationReport) -> None:
        settings = get_settings()
        location = Path(artifact.location)
        if artifact.sha256 is None:
            report.diagnostic = "artifact has no recorded checksum"
            return
        errors = await asyncio.to_thread(
            validate_artifact_dir,
            location,
            expected_sha256=artifact.sha256,
            require_signature=bool(settings.backup_signing_enabled),
        )
        if errors:
            report.diagnostic = "; ".join(errors)
            return
        report.checksum_ok = True
        manifest = load_manifest(location)
        database = str(manifest.extra.get("database") or artifact.target)
        strategy = self._strategy(artifact.strategy)
        provider = self._provider or get_provider()

        with tempfile.TemporaryDirectory(prefix="dbkeeper-restore-") as workdir:
            workspace = Path(workdir)
            data_path = location / artifact.data_file
            if artifact.encrypted:
                plain_name = artifact.data_file.removesuffix(ENCRYPTED_SUFFIX)
                plain_path = workspace / plain_name
                try:
                    await asyncio.to_thread(decrypt_file, data_path, plain_path, encryption_key())
                except (InvalidTag, ValueError) as exc:
                    report.diagnostic = f"decryption failed: {str(exc) or type(exc).__name__}"
                    return
                data_path = plain_path

            try:
                source = await strategy.prepare_restore(data_path, workspace)
                async with provider.provision(source, database=database) as restored:
                    actual = await restored.row_counts()
            except (EphemeralTargetError, ConfigurationError):
                raise
            except DbKeeperError as exc:
                report.diagnostic = f"restore failed: {exc}"
                return

        expected = artifact.row_counts_json
        if expected is None:
            # Physical copies carry no row counts; a started server with readable tables is the bar.
            report.passed = True
            report.diagnostic = f"restored {len(actual)} readable tables; row counts not recorded for {artifact.strategy}"
            return
        report.row_count_deltas = compare_row_counts(expected, actual)
        if report.row_count_deltas:
            report.diagnostic = f"row count mismatch in {len(report.row_count_deltas)} table(s)"
            return
        report.passed = True

    async def _record(self, artifact_id: str, report: VerificationReport) -> None:
        async with self._session_factory() as session:
            artifact = await get_artifact(session, artifact_id)
            if artifact is None or artifact.pruned_at is not None:
                # Retention won the race; a pruned artifact keeps its last recorded status.
                logger.warning("verification_discarded artifact=%s reason=removed_during_restore", artifact_id)
                raise ArtifactNotFoundError(f"artifact {artifact_id} was removed during verification")
            artifact.verification_status = VERIFICATION_PASSED if report.passed else VERIFICATION_FAILED
            artifact.verified_at = report.completed_at
            artifact.verification_report_json = report.to_dict()
            await session.commit()
