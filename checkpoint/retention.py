"""Tiered retention policy for archived versions.

Nothing in this module touches the filesystem.  Versions are classified by
their age relative to an explicit ``now`` and grouped per item; deletion is
requested from :meth:`checkpoint.store.SnapshotStore.prune`.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .types import ArchivedVersion, PruneCandidate, RetentionStats, Tier, TierStats


@dataclass(slots=True)
class RetentionPolicy:
    # Everything younger than a day is kept; shorter hourly windows are raised to it.
    hourly_hours: int = 24
    daily_days: int = 7
    weekly_weeks: int = 4
    monthly_months: int = 12

    @classmethod
    def from_settings(cls, block: Optional[Mapping[str, object]]) -> "RetentionPolicy":
        block = block or {}
        defaults = cls()
        return cls(
            hourly_hours=max(24, int(block.get("hourly_hours", defaults.hourly_hours))),
            daily_days=int(block.get("daily_days", defaults.daily_days)),
            weekly_weeks=int(block.get("weekly_weeks", defaults.weekly_weeks)),
            monthly_months=int(block.get("monthly_months", defaults.monthly_months)),
        )


def classify(age: timedelta, policy: Optional[RetentionPolicy] = None) -> Tier:
    """Return the tier for a version of the given age.

    Months are counted as 30 days.  A negative age (a version stamped in the
    future by a skewed clock) is treated as brand new.
    """

    policy = policy or RetentionPolicy()
    if age < timedelta(hours=policy.hourly_hours):
        return Tier.HOURLY
    if age < timedelta(days=policy.daily_days):
        return Tier.DAILY
    if age < timedelta(weeks=policy.weekly_weeks):
        return Tier.WEEKLY
    if age < timedelta(days=30 * policy.monthly_months):
        return Tier.MONTHLY
    return Tier.EXPIRED


def group_key(tier: Tier, moment: datetime) -> Optional[str]:
    if tier is Tier.DAILY:
        return moment.strftime("%Y%m%d")
    if tier is Tier.WEEKLY:
        year, week, _ = moment.isocalendar()
        return f"{year}-W{week:02d}"
    if tier is Tier.MONTHLY:
        return moment.strftime("%Y%m")
    return None


def _age_key(version: ArchivedVersion) -> Tuple[datetime, int, str]:
    return version.captured_at, version.name.disambiguator or 0, version.path.name


def _classify_all(
    versions: Iterable[ArchivedVersion], now: datetime, policy: RetentionPolicy
) -> List[Tuple[ArchivedVersion, Tier]]:
    # One evaluation instant for the whole pass so a version cannot cross a
    # tier boundary between grouping and representative selection.
    return [(version, classify(now - version.captured_at, policy)) for version in versions]


def find_pruning_candidates(
    versions: Iterable[ArchivedVersion],
    now: datetime,
    policy: Optional[RetentionPolicy] = None,
) -> List[PruneCandidate]:
    """Return the archived versions that pruning may delete.

    Versions are grouped per item, tier and bucket (day, ISO week or month).
    The oldest member of each group is its representative and is never a
    candidate.  Hourly versions are always kept and expired versions are
    always candidates.
    """

    policy = policy or RetentionPolicy()
    groups: Dict[Tuple[str, Tier, str], List[ArchivedVersion]] = {}
    candidates: List[PruneCandidate] = []
    for version, tier in _classify_all(versions, now, policy):
        if tier is Tier.HOURLY:
            continue
        if tier is Tier.EXPIRED:
            candidates.append(PruneCandidate(version=version, tier=tier, group=None))
            continue
        key = group_key(tier, version.captured_at)
        groups.setdefault((version.item, tier, key), []).append(version)

    for (_, tier, key), members in groups.items():
        members.sort(key=_age_key)
        for version in members[1:]:
            candidates.append(PruneCandidate(version=version, tier=tier, group=key))

    candidates.sort(key=lambda candidate: (candidate.version.item, _age_key(candidate.version)))
    return candidates


def retention_stats(
    versions: Iterable[ArchivedVersion],
    now: datetime,
    policy: Optional[RetentionPolicy] = None,
) -> RetentionStats:
    """Per-tier counts, sizes and reclaimable bytes without deleting anything."""

    policy = policy or RetentionPolicy()
    versions = list(versions)
    tiers: Dict[str, TierStats] = {tier.value: TierStats() for tier in Tier}
    for version, tier in _classify_all(versions, now, policy):
        stats = tiers[tier.value]
        stats.count += 1
        stats.size_bytes += version.size_bytes
    for candidate in find_pruning_candidates(versions, now, policy):
        stats = tiers[candidate.tier.value]
        stats.prunable += 1
        stats.reclaimable_bytes += candidate.version.size_bytes
    return RetentionStats(tiers=tiers, evaluated_at=now)


def prune_due(last_prune: Optional[datetime], now: datetime, interval_hours: float) -> bool:
    if last_prune is None:
        return True
    return now - last_prune >= timedelta(hours=max(0.0, float(interval_hours)))


__all__ = [
    "RetentionPolicy",
    "classify",
    "find_pruning_candidates",
    "group_key",
    "prune_due",
    "retention_stats",
]
