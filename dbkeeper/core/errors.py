from __future__ import annotations


class DbKeeperError(Exception):
    """Base error for dbkeeper."""

    code = "DBKEEPER_ERROR"


class ConfigurationError(DbKeeperError):
    """Missing or invalid orchestrator configuration."""

    code = "CONFIGURATION_ERROR"


class SnapshotError(DbKeeperError):
    """Snapshot capture failure."""

    code = "SNAPSHOT_FAILED"


class TransientConnectionError(SnapshotError):
    """Target database unreachable; safe to retry."""

    code = "CONNECTION_FAILED"


class ConcurrentDDLError(SnapshotError):
    """Snapshot invalidated by DDL running against the target; retry with backoff."""

    code = "CONCURRENT_DDL"


class InsufficientDiskSpaceError(SnapshotError):
    """Not enough space for the artifact; never retried."""

    code = "INSUFFICIENT_DISK_SPACE"


class SnapshotConsistencyError(SnapshotError):
    """Captured data cannot be trusted; abort and alert."""

    code = "SNAPSHOT_INCONSISTENT"


class VerificationError(DbKeeperError):
    """Verification could not be carried out."""

    code = "VERIFICATION_ERROR"


class VerificationMismatchError(VerificationError):
    """Restored artifact does not match what was captured."""

    code = "VERIFICATION_MISMATCH"


class EphemeralTargetError(VerificationError):
    """Ephemeral restore target could not be provisioned."""

    code = "EPHEMERAL_TARGET_FAILED"


class BackupInProgressError(DbKeeperError):
    """Another run already holds the target."""

    code = "BACKUP_IN_PROGRESS"


class ArtifactImmutableError(DbKeeperError):
    """Attempted to modify an artifact after its checksum was recorded."""

    code = "ARTIFACT_IMMUTABLE"


class ArtifactNotFoundError(DbKeeperError):
    """Artifact missing from the catalog or storage."""

    code = "ARTIFACT_NOT_FOUND"


class IntegrationUnavailableError(DbKeeperError):
    """External alert channel temporarily unavailable."""

    code = "INTEGRATION_UNAVAILABLE"


def error_code(exc: BaseException) -> str:
    # Map arbitrary exceptions to stable codes for run records and alerts.
    if isinstance(exc, DbKeeperError):
        return exc.code
    return "UNEXPECTED_ERROR"
