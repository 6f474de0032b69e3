from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Literal


StrategyName = Literal["logical", "physical"]
STRATEGY_NAMES: tuple[str, ...] = ("logical", "physical")

VERIFICATION_UNVERIFIED = "unverified"
VERIFICATION_PASSED = "passed"
VERIFICATION_FAILED = "failed"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class TargetDescriptor:
    # Connection details for one MySQL database; password may also come from an option file.
    name: str
    database: str
    host: str = "127.0.0.1"
    port: int = 3306
    user: str | None = None
    password: str | None = None
    option_file: Path | None = None
    socket: str | None = None

    def redacted(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "database": self.database,
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "option_file": str(self.option_file) if self.option_file else None,
            "socket": self.socket,
        }


@dataclass(frozen=True)
class ConsistencyMarker:
    # Replication coordinates captured atomically with the data copy.
    binlog_file: str | None = None
    binlog_position: int | None = None
    gtid_set: str | None = None

    def is_empty(self) -> bool:
        return self.binlog_file is None and not self.gtid_set

    def to_dict(self) -> dict[str, Any]:
        return {
            "binlog_file": self.binlog_file,
            "binlog_position": self.binlog_position,
            "gtid_set": self.gtid_set,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "ConsistencyMarker":
        payload = payload or {}
        position = payload.get("binlog_position")
        return cls(
            binlog_file=payload.get("binlog_file"),
            binlog_position=int(position) if position is not None else None,
            gtid_set=payload.get("gtid_set"),
        )


@dataclass(frozen=True)
class CaptureResult:
    # Output of a strategy capture before encryption/checksum finalization.
    data_path: Path
    marker: ConsistencyMarker
    row_counts: dict[str, int] | None = None
    tool_version: str | None = None


@dataclass(frozen=True)
class RestoreSource:
    # Prepared artifact ready to load: a SQL stream or a prepared data directory.
    kind: Literal["sql", "datadir"]
    path: Path


@dataclass(frozen=True)
class ArtifactSelector:
    target: str
    strategy: str | None = None

    def matches(self, target: str, strategy: str) -> bool:
        if target != self.target:
            return False
        return self.strategy is None or self.strategy == strategy


@dataclass(frozen=True)
class RetentionPolicy:
    # One rotation tier; a tier without max_age is the catch-all for older artifacts.
    tier: str
    selector: ArtifactSelector
    keep: int | None = None
    max_age: timedelta | None = None

    def __post_init__(self) -> None:
        if self.keep is None and self.max_age is None:
            raise ValueError(f"retention tier {self.tier!r} needs keep or max_age")
        if self.keep is not None and self.keep < 0:
            raise ValueError(f"retention tier {self.tier!r} keep must be >= 0")


@dataclass(frozen=True)
class ScheduleEntry:
    cadence: str
    target: str
    strategy: str = "logical"
    policy: str | None = None
    retention_cadence: str | None = None


@dataclass(frozen=True)
class ArtifactView:
    # Minimal artifact projection used by pure retention logic.
    id: str
    target: str
    strategy: str
    created_at: datetime
    verification_status: str = VERIFICATION_UNVERIFIED


@dataclass(frozen=True)
class RetentionDecision:
    artifact_id: str
    delete: bool
    reason: str


@dataclass
class VerificationReport:
    artifact_id: str
    passed: bool
    checksum_ok: bool
    started_at: datetime
    completed_at: datetime | None = None
    row_count_deltas: dict[str, dict[str, int | None]] = field(default_factory=dict)
    diagnostic: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "passed": self.passed,
            "checksum_ok": self.checksum_ok,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "row_count_deltas": self.row_count_deltas,
            "diagnostic": self.diagnostic,
        }
