from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import InsufficientDiskSpaceError
from dbkeeper.domain.models import BackupArtifact
from dbkeeper.domain.types import CaptureResult, TargetDescriptor
from dbkeeper.persistence.db import SessionLocal
from dbkeeper.persistence.repos.artifacts import add_artifact
from dbkeeper.services.artifact_store import (
    ENCRYPTED_SUFFIX,
    ArtifactManifest,
    ArtifactStorage,
    default_storage,
    encrypt_file,
    encryption_key,
    load_app_version,
    sha256_file,
    signing_key,
    write_manifest,
)
from dbkeeper.services.mysql_client import write_option_file
from dbkeeper.services.resilience import RetryPolicy, retry_async, snapshot_retry_policy, snapshot_retryable
from dbkeeper.services.strategies import BackupStrategy, get_strategy


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_artifact_id(target: str, created_at: datetime) -> str:
    # Sortable per target and unique across concurrent processes.
    return f"{target}-{created_at.strftime('%Y%m%dT%H%M%SZ')}-{uuid4().hex[:8]}"


def required_free_bytes(estimated_bytes: int) -> int:
    settings = get_settings()
    return max(int(settings.backup_min_free_bytes), int(estimated_bytes * settings.backup_free_space_factor))


class SnapshotExecutor:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        storage: ArtifactStorage | None = None,
        strategies: Mapping[str, BackupStrategy] | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._storage = storage or default_storage()
        self._strategies = dict(strategies or {})
        self._retry_policy = retry_policy
        self._clock = clock

    def _strategy(self, name: str) -> BackupStrategy:
        if name in self._strategies:
            return self._strategies[name]
        return get_strategy(name)

    async def _preflight(self, strategy: BackupStrategy, target: TargetDescriptor, option_file: Path) -> None:
        estimated = await strategy.estimate_size(target, option_file)
        required = required_free_bytes(estimated)
        free = self._storage.free_bytes()
        logger.info(
            "snapshot_preflight target=%s estimated_bytes=%s required_bytes=%s free_bytes=%s",
            target.name,
            estimated,
            required,
            free,
        )
        if free < required:
            raise InsufficientDiskSpaceError(
                f"backup storage has {free} bytes free; {required} required for {target.name}"
            )

    async def run(self, target: TargetDescriptor, strategy_name: str) -> BackupArtifact:
        # Capture, finalize, and catalog one artifact; partial files never survive a failure.
        settings = get_settings()
        strategy = self._strategy(strategy_name)
        created_at = self._clock()
        artifact_id = new_artifact_id(target.name, created_at)
        artifact_dir = self._storage.artifact_dir(target.name, artifact_id)
        data_path = artifact_dir / strategy.data_filename
        policy = self._retry_policy or snapshot_retry_policy()
        logger.info("snapshot_started target=%s strategy=%s artifact=%s", target.name, strategy.name, artifact_id)

        try:
            with tempfile.TemporaryDirectory(prefix="dbkeeper-cred-") as cred_dir:
                option_file = write_option_file(target, Path(cred_dir))

                async def _attempt() -> CaptureResult:
                    await self._preflight(strategy, target, option_file)
                    return await strategy.capture(target, option_file, data_path)

                def _on_retry(attempt: int, exc: Exception, sleep_s: float) -> None:
                    data_path.unlink(missing_ok=True)
                    logger.warning(
                        "snapshot_retry target=%s attempt=%s sleep_s=%.2f error=%s",
                        target.name,
                        attempt,
                        sleep_s,
                        exc,
                    )

                capture = await retry_async(
                    _attempt,
                    policy=policy,
                    retryable=snapshot_retryable,
                    on_retry=_on_retry,
                )

            final_path = capture.data_path
            encrypted = bool(settings.backup_encryption_enabled)
            if encrypted:
                final_path = capture.data_path.with_name(capture.data_path.name + ENCRYPTED_SUFFIX)
                checksum = await asyncio.to_thread(encrypt_file, capture.data_path, final_path, encryption_key())
                capture.data_path.unlink(missing_ok=True)
            else:
                checksum = await asyncio.to_thread(sha256_file, final_path)
            size_bytes = final_path.stat().st_size

            manifest = ArtifactManifest(
                artifact_id=artifact_id,
                target=target.name,
                strategy=strategy.name,
                created_at=created_at.isoformat(),
                data_file=final_path.name,
                sha256=checksum,
                size_bytes=size_bytes,
                encrypted=encrypted,
                consistency=capture.marker.to_dict(),
                row_counts=capture.row_counts,
                app_version=load_app_version(),
                tool_version=capture.tool_version,
                extra={"database": target.database},
            )
            write_manifest(
                artifact_dir,
                manifest,
                signing=signing_key() if settings.backup_signing_enabled else None,
            )

            artifact = BackupArtifact(
                id=artifact_id,
                target=target.name,
                strategy=strategy.name,
                created_at=created_at,
                location=str(artifact_dir),
                data_file=final_path.name,
                sha256=checksum,
                size_bytes=size_bytes,
                encrypted=encrypted,
                binlog_file=capture.marker.binlog_file,
                binlog_position=capture.marker.binlog_position,
                gtid_set=capture.marker.gtid_set,
                row_counts_json=capture.row_counts,
            )
            async with self._session_factory() as session:
                await add_artifact(session, artifact)
                await session.commit()
        except BaseException as exc:
            # Covers cancellation too: the artifact directory is removed before re-raising.
            shutil.rmtree(artifact_dir, ignore_errors=True)
            if isinstance(exc, Exception):
                logger.error(
                    "snapshot_failed target=%s strategy=%s artifact=%s error=%s",
                    target.name,
                    strategy.name,
                    artifact_id,
                    exc,
                )
            else:
                logger.warning("snapshot_cancelled target=%s artifact=%s", target.name, artifact_id)
            raise

        logger.info(
            "snapshot_completed target=%s artifact=%s size_bytes=%s binlog=%s:%s",
            target.name,
            artifact_id,
            size_bytes,
            capture.marker.binlog_file,
            capture.marker.binlog_position,
        )
        return artifact
