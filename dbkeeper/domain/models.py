from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from dbkeeper.domain.types import VERIFICATION_UNVERIFIED, ConsistencyMarker


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    # SQLite drops tzinfo; store UTC and always hand back aware datetimes.
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# Columns that freeze once an artifact's checksum is recorded.
IMMUTABLE_ARTIFACT_COLUMNS = (
    "target",
    "strategy",
    "created_at",
    "location",
    "sha256",
    "size_bytes",
    "encrypted",
    "binlog_file",
    "binlog_position",
    "gtid_set",
    "row_counts_json",
)


class BackupArtifact(Base):
    __tablename__ = "backup_artifacts"
    __table_args__ = (
        Index("ix_backup_artifacts_target_created", "target", "created_at"),
        Index("ix_backup_artifacts_verification_status", "verification_status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    target: Mapped[str] = mapped_column(String)
    strategy: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True))
    # Directory holding the data file, manifest, and optional signature.
    location: Mapped[str] = mapped_column(String)
    data_file: Mapped[str] = mapped_column(String)
    sha256: Mapped[str | None] = mapped_column(String, nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    encrypted: Mapped[bool] = mapped_column(Boolean, default=False)
    binlog_file: Mapped[str | None] = mapped_column(String, nullable=True)
    binlog_position: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    gtid_set: Mapped[str | None] = mapped_column(Text, nullable=True)
    row_counts_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    verification_status: Mapped[str] = mapped_column(String, default=VERIFICATION_UNVERIFIED)
    verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    verification_report_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    pruned_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)

    @property
    def marker(self) -> ConsistencyMarker:
        return ConsistencyMarker(
            binlog_file=self.binlog_file,
            binlog_position=self.binlog_position,
            gtid_set=self.gtid_set,
        )


class BackupRun(Base):
    __tablename__ = "backup_runs"
    __table_args__ = (
        Index("ix_backup_runs_target_started", "target", "started_at"),
        Index("ix_backup_runs_state", "state"),
    )

    # Track each pipeline execution for readiness reporting and retention gating.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target: Mapped[str] = mapped_column(String)
    strategy: Mapped[str] = mapped_column(String)
    trigger: Mapped[str] = mapped_column(String, default="schedule")
    state: Mapped[str] = mapped_column(String)
    artifact_id: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    pruned_count: Mapped[int] = mapped_column(Integer, default=0)


class AlertRecord(Base):
    __tablename__ = "alert_events"
    __table_args__ = (Index("ix_alert_events_target_occurred", "target", "occurred_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String)
    severity: Mapped[str] = mapped_column(String)
    target: Mapped[str | None] = mapped_column(String, nullable=True)
    run_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    artifact_id: Mapped[str | None] = mapped_column(String, nullable=True)
    message: Mapped[str] = mapped_column(Text)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True))
