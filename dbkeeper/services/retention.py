from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import ConfigurationError
from dbkeeper.domain.types import (
    VERIFICATION_FAILED,
    VERIFICATION_PASSED,
    ArtifactSelector,
    ArtifactView,
    RetentionDecision,
    RetentionPolicy,
)
from dbkeeper.persistence.repos.artifacts import list_artifacts, mark_pruned, to_view
from dbkeeper.services.artifact_store import ArtifactStorage, default_storage


logger = logging.getLogger(__name__)


def _group_tiers(policies: Sequence[RetentionPolicy]) -> dict[ArtifactSelector, list[RetentionPolicy]]:
    # Bounded tiers youngest first; the unbounded catch-all (if any) goes last.
    groups: dict[ArtifactSelector, list[RetentionPolicy]] = defaultdict(list)
    for policy in policies:
        groups[policy.selector].append(policy)
    for selector, tiers in groups.items():
        unbounded = [tier.tier for tier in tiers if tier.max_age is None]
        if len(unbounded) > 1:
            raise ConfigurationError(
                f"selector {selector.target}/{selector.strategy or '*'} has several tiers without max_age: "
                f"{', '.join(unbounded)}"
            )
        tiers.sort(key=lambda tier: (tier.max_age is None, tier.max_age or timedelta(0)))
    return dict(groups)


def _selector_for(artifact: ArtifactView, selectors: Sequence[ArtifactSelector]) -> ArtifactSelector | None:
    # A strategy-specific selector wins over a target-wide one.
    matching = [selector for selector in selectors if selector.matches(artifact.target, artifact.strategy)]
    if not matching:
        return None
    matching.sort(key=lambda selector: selector.strategy is None)
    return matching[0]


def _tier_for(age: timedelta, tiers: Sequence[RetentionPolicy]) -> RetentionPolicy | None:
    for tier in tiers:
        if tier.max_age is None or age <= tier.max_age:
            return tier
    return None


def safety_floor_ids(artifacts: Sequence[ArtifactView]) -> set[str]:
    # Newest passed artifact per target.
    newest: dict[str, ArtifactView] = {}
    for artifact in artifacts:
        if artifact.verification_status != VERIFICATION_PASSED:
            continue
        current = newest.get(artifact.target)
        if current is None or artifact.created_at > current.created_at:
            newest[artifact.target] = artifact
    return {artifact.id for artifact in newest.values()}


def plan_retention(
    artifacts: Sequence[ArtifactView],
    policies: Sequence[RetentionPolicy],
    *,
    now: datetime,
    failed_max_age: timedelta | None = None,
) -> list[RetentionDecision]:
    """Decide keep/delete for every artifact covered by a policy.

    Artifacts are partitioned by age into the tiers of their selector; each
    tier keeps its ``keep`` most recent entries. Artifacts older than every
    bounded tier (and not caught by an unbounded one) expire. Artifacts that
    failed verification never occupy a keep slot and are only removed once
    they leave the forensic window. The newest passed artifact of each target
    is always kept.
    """
    if failed_max_age is None:
        failed_max_age = timedelta(days=get_settings().retention_failed_artifact_max_age_days)
    groups = _group_tiers(policies)
    protected = safety_floor_ids(artifacts)
    decisions: dict[str, RetentionDecision] = {}
    buckets: dict[tuple[ArtifactSelector, str], list[ArtifactView]] = defaultdict(list)
    tiers_by_key: dict[tuple[ArtifactSelector, str], RetentionPolicy] = {}

    for artifact in artifacts:
        selector = _selector_for(artifact, list(groups))
        if selector is None:
            continue
        age = now - artifact.created_at
        if artifact.verification_status == VERIFICATION_FAILED:
            if age > failed_max_age:
                decisions[artifact.id] = RetentionDecision(artifact.id, True, "failed verification; forensic window elapsed")
            else:
                decisions[artifact.id] = RetentionDecision(artifact.id, False, "failed verification; kept for forensics")
            continue
        tier = _tier_for(age, groups[selector])
        if tier is None:
            decisions[artifact.id] = RetentionDecision(artifact.id, True, "older than every retention tier")
            continue
        key = (selector, tier.tier)
        buckets[key].append(artifact)
        tiers_by_key[key] = tier

    for key, members in buckets.items():
        tier = tiers_by_key[key]
        members.sort(key=lambda artifact: artifact.created_at, reverse=True)
        keep = len(members) if tier.keep is None else tier.keep
        for index, artifact in enumerate(members):
            if index < keep:
                decisions[artifact.id] = RetentionDecision(artifact.id, False, f"within tier {tier.tier} (keep {keep})")
            else:
                decisions[artifact.id] = RetentionDecision(
                    artifact.id, True, f"beyond tier {tier.tier} keep count {keep}"
                )

    for artifact_id in protected:
        decision = decisions.get(artifact_id)
        if decision is not None and decision.delete:
            decisions[artifact_id] = RetentionDecision(artifact_id, False, "newest verified artifact (safety floor)")

    order = {artifact.id: index for index, artifact in enumerate(artifacts)}
    return sorted(decisions.values(), key=lambda decision: order[decision.artifact_id])


def select_for_deletion(
    artifacts: Sequence[ArtifactView],
    policies: Sequence[RetentionPolicy],
    *,
    now: datetime,
    failed_max_age: timedelta | None = None,
) -> list[RetentionDecision]:
    decisions = plan_retention(artifacts, policies, now=now, failed_max_age=failed_max_age)
    return [decision for decision in decisions if decision.delete]


async def apply_retention(
    *,
    session: AsyncSession,
    policies: Sequence[RetentionPolicy],
    now: datetime,
    target: str | None = None,
    storage: ArtifactStorage | None = None,
    dry_run: bool = False,
) -> list[RetentionDecision]:
    # Remove expired artifact files and mark their catalog rows pruned; rows themselves are kept.
    storage = storage or default_storage()
    rows = await list_artifacts(session, target=target)
    by_id = {row.id: row for row in rows}
    doomed = select_for_deletion([to_view(row) for row in rows], policies, now=now)
    if dry_run:
        for decision in doomed:
            logger.info("retention_dry_run artifact=%s reason=%s", decision.artifact_id, decision.reason)
        return doomed

    removed: list[RetentionDecision] = []
    for decision in doomed:
        row = by_id[decision.artifact_id]
        try:
            storage.remove(row.location)
        except Exception as exc:  # noqa: BLE001 - keep pruning other artifacts; this one stays cataloged
            logger.error("retention_remove_failed artifact=%s error=%s", row.id, exc)
            continue
        removed.append(decision)
        logger.info("retention_pruned target=%s artifact=%s reason=%s", row.target, row.id, decision.reason)
    await mark_pruned(session, [decision.artifact_id for decision in removed], pruned_at=now)
    await session.commit()
    return removed
