from __future__ import annotations

from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from dbkeeper.core.errors import ArtifactImmutableError
from dbkeeper.domain.models import IMMUTABLE_ARTIFACT_COLUMNS, BackupArtifact


def _recorded_checksum(artifact: BackupArtifact) -> str | None:
    # Return the checksum persisted before the pending flush, if any.
    history = inspect(artifact).attrs.sha256.history
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return None


def changed_immutable_columns(artifact: BackupArtifact) -> list[str]:
    state = inspect(artifact)
    return [name for name in IMMUTABLE_ARTIFACT_COLUMNS if state.attrs[name].history.has_changes()]


def _guard_artifact_immutability(session: Session, flush_context: Any, instances: Any) -> None:
    # Reject flushes that rewrite artifact facts after the checksum landed.
    for obj in list(session.dirty):
        if not isinstance(obj, BackupArtifact):
            continue
        if _recorded_checksum(obj) is None:
            continue
        changed = changed_immutable_columns(obj)
        if changed:
            raise ArtifactImmutableError(
                f"artifact {obj.id} is immutable once checksummed; attempted to change {', '.join(changed)}"
            )
    for obj in list(session.deleted):
        if isinstance(obj, BackupArtifact) and obj.sha256 is not None:
            raise ArtifactImmutableError(f"artifact {obj.id} rows are kept; mark pruned instead of deleting")


def install_artifact_guards() -> None:
    # Register once per process; sqlalchemy listeners are global to the Session class.
    if not event.contains(Session, "before_flush", _guard_artifact_immutability):
        event.listen(Session, "before_flush", _guard_artifact_immutability)
