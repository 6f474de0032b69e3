from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


# Keep the artifact layout version centralized so manifests and restore tooling agree.
MANIFEST_VERSION = "1.0"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "dbkeeper"
    log_level: str = "INFO"

    # Catalog of artifacts, runs, and alerts; any async SQLAlchemy URL works.
    database_url: str = "sqlite+aiosqlite:///./dbkeeper.db"
    # YAML file declaring targets, retention policy sets, and schedules.
    config_path: str = "./dbkeeper.yaml"

    # Local filesystem root for backup artifacts.
    backup_dir: str = "./backups"
    # Encrypt backup artifacts at rest when enabled.
    backup_encryption_enabled: bool = False
    # Provide a base64/hex encoded backup encryption key.
    backup_encryption_key: str | None = None
    # Sign backup manifests to detect tampering.
    backup_signing_enabled: bool = False
    # Provide an HMAC key for manifest signing.
    backup_signing_key: str | None = None
    # Refuse to start a snapshot when free space drops below this floor.
    backup_min_free_bytes: int = 1024 * 1024 * 1024
    # Multiply the estimated database size to leave headroom for compression spikes.
    backup_free_space_factor: float = 1.2
    # Binary locations for MySQL tooling; bare names resolve via PATH.
    mysqldump_bin: str = "mysqldump"
    mysql_bin: str = "mysql"
    xtrabackup_bin: str = "xtrabackup"
    docker_bin: str = "docker"
    # Extra mysqldump flags, e.g. ["--set-gtid-purged=OFF"] for servers without GTIDs.
    mysqldump_extra_args: list[str] = []

    # Retry transient snapshot failures for a bounded number of attempts.
    snapshot_retry_max_attempts: int = 4
    # Base backoff between snapshot attempts (ms), doubled and jittered per attempt.
    snapshot_retry_backoff_ms: int = 2000
    # Upper bound for a single snapshot attempt.
    snapshot_timeout_s: int = 6 * 3600

    # Select the ephemeral restore target used for verification (docker or scratch_schema).
    verify_provider: str = "docker"
    verify_docker_image: str = "mysql:8.0"
    # Wait this long for an ephemeral server to accept connections.
    verify_ready_timeout_s: int = 120
    # Scratch schema provider reuses an existing server reachable with these settings.
    verify_scratch_host: str = "127.0.0.1"
    verify_scratch_port: int = 3306
    verify_scratch_user: str = "root"
    verify_scratch_password: str | None = None
    # Verify every artifact immediately after creation when enabled.
    verify_after_snapshot: bool = True

    # Keep failed-verification artifacts this long for forensic inspection.
    retention_failed_artifact_max_age_days: int = 14

    # Poll cadence for scheduler loops waiting on the next cron fire time.
    scheduler_poll_interval_s: float = 30.0
    # Redis enables cross-process target locks; unset keeps locks in-process.
    redis_url: str | None = None
    # Bound target lock lifetime so crashed processes release ownership.
    target_lock_ttl_s: int = 8 * 3600
    target_lock_prefix: str = "dbkeeper:lock"

    # Forward alerts to a signed webhook when configured.
    alert_webhook_url: str | None = None
    alert_webhook_secret: str | None = None
    # Keep webhook timeouts short so alerting never stalls the pipeline.
    alert_webhook_timeout_ms: int = 5000
    alert_webhook_max_attempts: int = 3
    alert_webhook_backoff_ms: int = 500
    # Persist alerts in the catalog for the ops API.
    alert_persist_enabled: bool = True

    # Ops API bind address for `backup serve`.
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    # Documentation lint defaults.
    doclint_max_line_length: int = 400


@lru_cache
def get_settings() -> Settings:
    return Settings()
