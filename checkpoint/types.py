"""Common dataclasses shared across checkpoint modules."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from .names import ArchiveName


class Outcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class Tier(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    EXPIRED = "expired"


@dataclass(slots=True)
class ItemFailure:
    """Single item that could not be captured."""

    path: str
    code: str
    message: str


@dataclass(slots=True)
class ArchivedVersion:
    """One immutable superseded copy of a tracked item (file or dump)."""

    item: str
    path: Path
    name: ArchiveName
    captured_at: datetime
    size_bytes: int
    timestamp_from_mtime: bool = False

    @property
    def stamp(self) -> str:
        return self.name.stamp or self.captured_at.strftime("%Y%m%d_%H%M%S")


@dataclass(slots=True)
class PruneCandidate:
    version: ArchivedVersion
    tier: Tier
    group: Optional[str]


@dataclass(slots=True)
class TierStats:
    count: int = 0
    size_bytes: int = 0
    prunable: int = 0
    reclaimable_bytes: int = 0


@dataclass(slots=True)
class RetentionStats:
    tiers: Dict[str, TierStats]
    evaluated_at: datetime

    @property
    def total_reclaimable_bytes(self) -> int:
        return sum(stats.reclaimable_bytes for stats in self.tiers.values())

    def as_dict(self) -> Dict[str, object]:
        return {
            "evaluated_at": self.evaluated_at.isoformat(),
            "tiers": {name: asdict(stats) for name, stats in self.tiers.items()},
            "reclaimable_bytes": self.total_reclaimable_bytes,
        }


@dataclass(slots=True)
class PruneSummary:
    removed: List[str]
    freed_bytes: int
    dry_run: bool = False


@dataclass(slots=True)
class StoreCapture:
    """What the snapshot store wrote during one capture."""

    timestamp: str
    pid: int
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    unchanged: int = 0
    archived: List[str] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    bytes_written: int = 0
    written: List[Path] = field(default_factory=list)

    @property
    def outcome(self) -> Outcome:
        if self.failures and not (self.added or self.modified or self.unchanged):
            return Outcome.FAILED
        if self.failures:
            return Outcome.PARTIAL
        return Outcome.SUCCESS


@dataclass(slots=True)
class CaptureResult:
    """Result of one capture run as exposed to status/dashboard tooling."""

    project: str
    timestamp: Optional[str]
    pid: int
    outcome: Outcome
    added: int = 0
    modified: int = 0
    removed: int = 0
    unchanged: int = 0
    archived: int = 0
    bytes_transferred: int = 0
    destination: Optional[str] = None
    queue_depth: int = 0
    delivered: int = 0
    enqueued: int = 0
    dumps: int = 0
    failures: List[ItemFailure] = field(default_factory=list)
    pruned: Optional[PruneSummary] = None
    queue: Optional["QueueReport"] = None
    duration_s: float = 0.0

    def to_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        payload["outcome"] = self.outcome.value
        return payload


@dataclass(slots=True)
class DiffResult:
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.added or self.modified or self.removed)


@dataclass(slots=True)
class VersionEntry:
    """One row of an item's history, newest first."""

    item: str
    path: Path
    captured_at: datetime
    size_bytes: int
    current: bool


@dataclass(slots=True)
class QueueReport:
    delivered: int = 0
    retried: int = 0
    dead_lettered: int = 0
    remaining: int = 0


@dataclass(slots=True)
class DeliveryOutcome:
    destination: str
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    local_only: bool = False


__all__ = [
    "ArchivedVersion",
    "CaptureResult",
    "DeliveryOutcome",
    "DiffResult",
    "ItemFailure",
    "Outcome",
    "PruneCandidate",
    "PruneSummary",
    "QueueReport",
    "RetentionStats",
    "StoreCapture",
    "Tier",
    "TierStats",
    "VersionEntry",
]
