"""Public API for checkpoint operations."""
from __future__ import annotations

import contextlib
import json
import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

import requests

from core.logging_utils import configure_json_logging
from core.paths import get_backup_dir, get_state_dir, resolve_project_root
from core.settings import load_settings, merge_defaults

from .delivery import DeliveryObligation, DeliveryQueue
from .destinations import Artifact, DestinationChain, build_chain
from .diff import diff_against_last_capture
from .errors import CaptureError, CheckpointError, classify_os_error
from .journal import CaptureJournal, CaptureRecord
from .locks import ProjectLock
from .logs import CheckpointLogger
from .names import format_timestamp, parse_timestamp
from .restore import restore_item, restore_point_in_time
from .retention import RetentionPolicy, find_pruning_candidates, prune_due, retention_stats
from .selection import SelectionRules, select_items
from .store import SnapshotStore
from .timeline import files_at, history, list_capture_points, parse_point_in_time, reconstruct, reconstruct_dump
from .types import (
    ArchivedVersion,
    CaptureResult,
    DeliveryOutcome,
    DiffResult,
    Outcome,
    PruneSummary,
    QueueReport,
    RetentionStats,
    VersionEntry,
)
from .verify import verify_mirror
from .wrapping import ContentHandle, ContentWrapper

PointInTime = Union[datetime, str]


class _ProjectGuard(contextlib.AbstractContextManager):
    """Hold the project lock for one phase; ``acquired`` is False on contention."""

    def __init__(self, backup_dir: Path, logger: CheckpointLogger, phase: str) -> None:
        self._lock = ProjectLock(backup_dir)
        self._logger = logger
        self._phase = phase
        self.acquired = False

    def __enter__(self) -> "_ProjectGuard":
        try:
            self.acquired = self._lock.acquire()
        except OSError as exc:
            code = classify_os_error(exc)
            raise CaptureError(f"{code}: cannot lock {self._lock.path}: {exc}") from exc
        if not self.acquired:
            self._logger.event(
                event=f"{self._phase}_skipped",
                phase=self._phase,
                ok=True,
                reason="locked",
                holder=self._lock.holder_pid(),
            )
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.acquired:
            self._lock.release()
        return False


class CheckpointService:
    """Coordinate capture, delivery, retention and restore for one project."""

    def __init__(
        self,
        project_root: Optional[Path] = None,
        *,
        settings: Optional[Mapping[str, object]] = None,
        wrapper: Optional[ContentWrapper] = None,
        chain: Optional[DestinationChain] = None,
        clock: Optional[Callable[[], datetime]] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._project_root = Path(project_root) if project_root is not None else resolve_project_root()
        if settings is None:
            self._settings = load_settings(self._project_root)
        else:
            self._settings = merge_defaults(dict(settings))
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        store_cfg = self._block("store")
        self._backup_dir = get_backup_dir(self._project_root, store_cfg.get("backup_dir"))
        self._logger = CheckpointLogger(self._backup_dir)

        encryption = self._block("encryption")
        if encryption.get("enabled") and wrapper is None:
            raise CheckpointError("ECONF001: encryption is enabled but no content wrapper was supplied")
        if wrapper is not None and encryption.get("extension") and wrapper.extension != encryption.get("extension"):
            self._logger.warning(
                "wrapper_extension_mismatch",
                configured=encryption.get("extension"),
                wrapper=wrapper.extension,
            )

        self._store = SnapshotStore(
            self._backup_dir,
            logger=self._logger,
            wrapper=wrapper,
            copy_retries=int(store_cfg.get("copy_retries") or 3),
            retry_delay_s=float(store_cfg.get("retry_delay_s") or 0.0),
            max_file_size=int(store_cfg.get("max_file_size") or 0),
            sleep=sleep,
        )
        self._journal = CaptureJournal(self._backup_dir)
        queue_cfg = self._block("queue")
        self._queue = DeliveryQueue(
            self._backup_dir,
            logger=self._logger,
            max_retries=int(queue_cfg.get("max_retries") or 5),
            clock=self._clock,
        )
        self._max_per_run = int(queue_cfg.get("max_per_run") or 10)
        self._chain = chain or build_chain(
            self._block("destinations"),
            project_root=self._project_root,
            backup_dir=self._backup_dir,
            logger=self._logger,
            session=session,
        )
        retention_cfg = self._block("retention")
        self._policy = RetentionPolicy.from_settings(retention_cfg)
        self._prune_interval_hours = float(retention_cfg.get("prune_interval_hours") or 0)
        self._rules = SelectionRules.from_settings(self._block("selection"))

    # ------------------------------------------------------------------
    @property
    def project_root(self) -> Path:
        return self._project_root

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    @property
    def store(self) -> SnapshotStore:
        return self._store

    @property
    def queue(self) -> DeliveryQueue:
        return self._queue

    @property
    def journal(self) -> CaptureJournal:
        return self._journal

    @property
    def logger(self) -> CheckpointLogger:
        return self._logger

    # ------------------------------------------------------------------
    def _block(self, name: str) -> Dict[str, object]:
        raw = self._settings.get(name)
        return raw if isinstance(raw, dict) else {}

    def _guard(self, phase: str) -> _ProjectGuard:
        return _ProjectGuard(self._backup_dir, self._logger, phase)

    def _point(self, at: PointInTime) -> datetime:
        if isinstance(at, datetime):
            return at if at.tzinfo else at.replace(tzinfo=timezone.utc)
        return parse_point_in_time(at, now=self._clock())

    def _next_timestamp(self) -> datetime:
        # Capture stamps never repeat or go backwards for a project, even if
        # the wall clock does.
        moment = self._clock().astimezone(timezone.utc).replace(microsecond=0)
        last = self._journal.last()
        previous = parse_timestamp(last.timestamp) if last else None
        if previous is not None and moment <= previous:
            moment = previous + timedelta(seconds=1)
        return moment

    def _removed_state_path(self) -> Path:
        return get_state_dir(self._backup_dir) / "removed.json"

    def _newly_removed(self) -> List[str]:
        """Mirrored items whose project file vanished since the previous capture.

        The mirror keeps deleted items so their last copy stays restorable;
        only the first capture after a deletion reports it.
        """

        removed = sorted(item for item in self._store.current_items() if not (self._project_root / item).exists())
        path = self._removed_state_path()
        try:
            known = set(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, TypeError):
            known = set()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(removed), encoding="utf-8")
        except OSError as exc:
            self._logger.warning("removed_state_write_failed", error=str(exc))
        return [item for item in removed if item not in known]

    # ------------------------------------------------------------------
    def capture_now(
        self,
        items: Optional[Iterable[str]] = None,
        *,
        dumps: Optional[Mapping[str, Path]] = None,
    ) -> CaptureResult:
        """Run one capture; a run already in progress makes this a no-op."""

        started = time.monotonic()
        with self._guard("capture") as guard:
            if not guard.acquired:
                return CaptureResult(
                    project=str(self._project_root),
                    timestamp=None,
                    pid=os.getpid(),
                    outcome=Outcome.SKIPPED,
                    queue_depth=self._queue.depth(),
                )
            result = self._capture_locked(items, dumps or {})
        result.duration_s = round(time.monotonic() - started, 3)
        return result

    def _capture_locked(self, items: Optional[Iterable[str]], dumps: Mapping[str, Path]) -> CaptureResult:
        pid = os.getpid()
        moment = self._next_timestamp()
        stamp = format_timestamp(moment)
        if items is None:
            selected = select_items(self._project_root, self._rules, backup_dir=self._backup_dir)
        else:
            selected = list(items)

        try:
            captured = self._store.capture(self._project_root, selected, now=moment, pid=pid)
        except CaptureError:
            self._journal.append(CaptureRecord(timestamp=stamp, pid=pid, outcome=Outcome.FAILED.value))
            raise

        written: List[Path] = list(captured.written)
        for name, dump_path in sorted(dumps.items()):
            try:
                written.append(self._store.store_dump(name, Path(dump_path), now=moment, pid=pid))
            except CheckpointError as exc:
                self._logger.warning("dump_skipped", name=name, error=str(exc))

        outcome = captured.outcome
        dump_count = len(written) - len(captured.written)
        if outcome is Outcome.FAILED and dump_count:
            outcome = Outcome.PARTIAL
        self._journal.append(
            CaptureRecord(
                timestamp=stamp,
                pid=pid,
                outcome=outcome.value,
                added=len(captured.added),
                modified=len(captured.modified),
                archived=len(captured.archived),
                failed=len(captured.failures),
                bytes_written=captured.bytes_written,
            )
        )

        queue_report: Optional[QueueReport] = None
        if self._chain.remote and self._queue.depth():
            queue_report = self._queue.process_queue(self._chain, self._max_per_run)
        artifacts = [(path, path.relative_to(self._backup_dir).as_posix()) for path in written]
        delivery = self._deliver(artifacts, moment)
        pruned = self._maybe_prune(moment)

        result = CaptureResult(
            project=str(self._project_root),
            timestamp=stamp,
            pid=pid,
            outcome=outcome,
            added=len(captured.added),
            modified=len(captured.modified),
            removed=len(self._newly_removed()),
            unchanged=captured.unchanged,
            archived=len(captured.archived),
            bytes_transferred=captured.bytes_written,
            destination=delivery.destination if artifacts else None,
            queue_depth=self._queue.depth(),
            delivered=len(delivery.delivered),
            enqueued=len(delivery.failed),
            dumps=dump_count,
            failures=list(captured.failures),
            pruned=pruned,
            queue=queue_report,
        )
        self._logger.event(event="capture_result", phase="capture", ok=outcome is Outcome.SUCCESS, **result.to_dict())
        return result

    def _deliver(self, artifacts: List[Artifact], moment: datetime) -> DeliveryOutcome:
        if not artifacts:
            return DeliveryOutcome(destination="none")
        outcome = self._chain.deliver(artifacts)
        remote = self._chain.remote
        if outcome.local_only:
            if not remote:
                return outcome
            # Landed only in the project's own store; remote copies are still owed.
            intended = remote[0].name
            owed = [target for _, target in artifacts]
            outcome = DeliveryOutcome(destination=outcome.destination, failed=owed, local_only=True)
        else:
            intended = outcome.destination
            owed = list(outcome.failed)
        sources = {target: source for source, target in artifacts}
        for target in owed:
            self._queue.enqueue(
                DeliveryObligation(
                    source=str(sources[target]),
                    target=target,
                    destination=intended,
                    enqueued_at=moment,
                )
            )
        return outcome

    # ------------------------------------------------------------------
    def store_dump(self, name: str, dump_path: Path, *, extension: Optional[str] = None) -> Optional[Path]:
        """Version one externally produced dump; None when a capture holds the lock."""

        with self._guard("dump") as guard:
            if not guard.acquired:
                return None
            moment = self._next_timestamp()
            target = self._store.store_dump(name, Path(dump_path), extension=extension, now=moment)
            self._journal.append(
                CaptureRecord(timestamp=format_timestamp(moment), pid=os.getpid(), outcome=Outcome.SUCCESS.value)
            )
            self._deliver([(target, target.relative_to(self._backup_dir).as_posix())], moment)
        return target

    def process_queue(self, max_entries: Optional[int] = None) -> Optional[QueueReport]:
        with self._guard("queue") as guard:
            if not guard.acquired:
                return None
            limit = self._max_per_run if max_entries is None else int(max_entries)
            return self._queue.process_queue(self._chain, limit)

    def queue_status(self) -> Dict[str, object]:
        totals = self._queue.totals()
        return {
            "depth": self._queue.depth(),
            "dead_letters": [path.name for path in self._queue.dead_letters()],
            **totals,
        }

    # ------------------------------------------------------------------
    # Retention
    def _retention_versions(self) -> List[ArchivedVersion]:
        versions = list(self._store.archived_versions())
        dumps = self._store.dump_versions()
        # The newest dump of each name is its current copy, not history.
        newest = {version.item: version.path for version in dumps}
        versions.extend(version for version in dumps if version.path != newest[version.item])
        return versions

    def _last_prune_path(self) -> Path:
        return get_state_dir(self._backup_dir) / "last_prune"

    def _last_prune(self) -> Optional[datetime]:
        try:
            return parse_timestamp(self._last_prune_path().read_text(encoding="utf-8").strip())
        except OSError:
            return None

    def _prune_locked(self, now: datetime, *, dry_run: bool) -> PruneSummary:
        candidates = find_pruning_candidates(self._retention_versions(), now, self._policy)
        summary = self._store.prune(candidates, dry_run=dry_run)
        if not dry_run:
            path = self._last_prune_path()
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(format_timestamp(now), encoding="utf-8")
        return summary

    def _maybe_prune(self, now: datetime) -> Optional[PruneSummary]:
        if not prune_due(self._last_prune(), now, self._prune_interval_hours):
            return None
        return self._prune_locked(now, dry_run=False)

    def prune(self, *, dry_run: bool = False, now: Optional[datetime] = None) -> Optional[PruneSummary]:
        """Prune archived versions now; None when the project is locked."""

        with self._guard("prune") as guard:
            if not guard.acquired:
                return None
            return self._prune_locked(now or self._clock(), dry_run=dry_run)

    def retention_stats(self, now: Optional[datetime] = None) -> RetentionStats:
        return retention_stats(self._retention_versions(), now or self._clock(), self._policy)

    # ------------------------------------------------------------------
    # Read-only inspection
    def diff(self, items: Optional[Iterable[str]] = None) -> DiffResult:
        if items is None:
            items = select_items(self._project_root, self._rules, backup_dir=self._backup_dir)
        return diff_against_last_capture(self._project_root, self._store, items)

    def capture_points(self) -> List[str]:
        return list_capture_points(self._store, self._journal)

    def reconstruct(self, item: str, at: PointInTime) -> Optional[ContentHandle]:
        return reconstruct(self._store, item, self._point(at))

    def reconstruct_dump(self, name: str, at: PointInTime) -> Optional[ContentHandle]:
        return reconstruct_dump(self._store, name, self._point(at))

    def files_at(self, at: PointInTime) -> Dict[str, ContentHandle]:
        return files_at(self._store, self._point(at))

    def history(self, item: str) -> List[VersionEntry]:
        return history(self._store, item)

    def verify(self) -> Dict[str, object]:
        return verify_mirror(self._store, logger=self._logger)

    def status(self) -> Dict[str, object]:
        last = self._journal.last()
        return {
            "project": str(self._project_root),
            "backup_dir": str(self._backup_dir),
            "last_capture": None if last is None else {"timestamp": last.timestamp, "outcome": last.outcome},
            "capture_points": len(self.capture_points()),
            "queue": self.queue_status(),
            "destinations": [destination.describe() for destination in self._chain.destinations],
        }

    # ------------------------------------------------------------------
    # Restore
    def restore(self, item: str, *, at: Optional[PointInTime] = None) -> Dict[str, object]:
        point = self._point(at) if at is not None else None
        return restore_item(self._store, self._project_root, item, logger=self._logger, at=point)

    def restore_point_in_time(self, at: PointInTime, *, items: Optional[Iterable[str]] = None) -> Dict[str, object]:
        wanted = list(items) if items is not None else None
        return restore_point_in_time(self._store, self._project_root, self._point(at), logger=self._logger, items=wanted)


def request_capture(project: Optional[Path] = None, **options: object) -> CaptureResult:
    """Entry point for external triggers (watchers, schedulers, editor hooks)."""

    service = CheckpointService(project, **options)
    configure_json_logging(service.backup_dir)
    return service.capture_now()


__all__ = [
    "CheckpointService",
    "request_capture",
]
