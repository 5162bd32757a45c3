"""Durable delivery queue for artifacts that have not reached a remote destination.

Each obligation is one JSON file under ``queue/``.  A drain claims an entry
by renaming it into ``queue/.claimed/`` (a single atomic step, so two
overlapping drains never process the same entry), then either deletes it on
success, renames it back with a bumped retry count, or moves it into
``queue/.failed/`` once the retry cap is reached.  ``queue/ledger.jsonl``
records every enqueue, delivery and dead-letter so the queue depth can be
checked against its history.
"""
from __future__ import annotations

import json
import os
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from core.paths import get_claims_dir, get_failed_queue_dir, get_queue_dir, safe_label

from .destinations import DestinationChain
from .errors import DeliveryError, QueueEntryError
from .logs import CheckpointLogger
from .names import format_timestamp
from .types import QueueReport

_ENTRY_PATTERN = re.compile(r"^(?P<ts>\d{8}_\d{6})_(?P<dest>[A-Za-z0-9_-]+?)(?:\.(?P<seq>\d+))?\.entry$")
_CLAIM_SEPARATOR = "__"


class DeliveryObligation(BaseModel):
    """A captured artifact that must still reach a remote destination."""

    source: str = Field(..., description="Absolute path of the stored artifact.")
    target: str = Field(..., description="Path relative to the destination root.")
    destination: str = Field(..., description="Destination the artifact was meant for.")
    retry_count: int = Field(0, ge=0)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_attempt: Optional[datetime] = None
    last_error: Optional[str] = None
    entry_id: str = Field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(slots=True)
class ClaimedEntry:
    name: str
    path: Path
    obligation: DeliveryObligation


def _entry_sort_key(name: str):
    match = _ENTRY_PATTERN.match(name)
    if not match:
        return ("", 0, name)
    return (match.group("ts"), int(match.group("seq") or 0), name)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":  # pragma: no cover - no signal-0 probe on Windows
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class DeliveryQueue:
    def __init__(
        self,
        backup_dir: Path,
        *,
        logger: CheckpointLogger,
        max_retries: int = 5,
        stale_claim_s: float = 3600.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._backup_dir = Path(backup_dir)
        self._logger = logger
        self._max_retries = max(1, int(max_retries))
        self._stale_claim_s = float(stale_claim_s)
        self._clock = clock

    # ------------------------------------------------------------------
    @property
    def queue_dir(self) -> Path:
        return get_queue_dir(self._backup_dir)

    @property
    def failed_dir(self) -> Path:
        return get_failed_queue_dir(self._backup_dir)

    @property
    def claims_dir(self) -> Path:
        return get_claims_dir(self._backup_dir)

    @property
    def ledger_path(self) -> Path:
        return self.queue_dir / "ledger.jsonl"

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def _ensure_dirs(self) -> None:
        for directory in (self.queue_dir, self.failed_dir, self.claims_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Ledger
    def _record(self, event: str, name: str) -> None:
        line = json.dumps({"event": event, "entry": name, "ts": self._clock().isoformat()}, sort_keys=True)
        with self.ledger_path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
            handle.flush()
            os.fsync(handle.fileno())

    def totals(self) -> Dict[str, int]:
        totals = {"enqueued": 0, "delivered": 0, "dead_lettered": 0}
        if not self.ledger_path.exists():
            return totals
        with self.ledger_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                try:
                    event = json.loads(line).get("event")
                except (json.JSONDecodeError, AttributeError):
                    continue
                if event in totals:
                    totals[event] += 1
        return totals

    # ------------------------------------------------------------------
    def _write_record(self, path: Path, obligation: DeliveryObligation) -> None:
        tmp = path.parent / f".{path.name}.{uuid.uuid4().hex[:8]}.tmp"
        tmp.write_text(obligation.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def _read_record(self, path: Path) -> DeliveryObligation:
        try:
            return DeliveryObligation.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as exc:
            raise QueueEntryError(f"unreadable queue entry {path.name}: {exc}") from exc

    def enqueue(self, obligation: DeliveryObligation) -> Path:
        """Persist *obligation*; the entry name never overwrites an existing one."""

        self._ensure_dirs()
        stamp = format_timestamp(obligation.enqueued_at)
        label = safe_label(obligation.destination)
        tmp = self.queue_dir / f".{obligation.entry_id}.tmp"
        tmp.write_text(obligation.model_dump_json(indent=2), encoding="utf-8")
        seq = 0
        try:
            while True:
                name = f"{stamp}_{label}.entry" if seq == 0 else f"{stamp}_{label}.{seq}.entry"
                target = self.queue_dir / name
                try:
                    os.link(tmp, target)
                except FileExistsError:
                    seq += 1
                    continue
                break
        finally:
            tmp.unlink(missing_ok=True)
        self._record("enqueued", name)
        self._logger.info("queue_enqueued", entry=name, target=obligation.target, destination=obligation.destination)
        return target

    def pending(self) -> List[str]:
        if not self.queue_dir.exists():
            return []
        names = [path.name for path in self.queue_dir.glob("*.entry") if path.is_file()]
        return sorted(names, key=_entry_sort_key)

    def claimed(self) -> List[Path]:
        if not self.claims_dir.exists():
            return []
        return sorted(path for path in self.claims_dir.glob("*.entry") if path.is_file())

    def depth(self) -> int:
        return len(self.pending()) + len(self.claimed())

    def dead_letters(self) -> List[Path]:
        if not self.failed_dir.exists():
            return []
        return sorted(path for path in self.failed_dir.glob("*.entry") if path.is_file())

    # ------------------------------------------------------------------
    def claim(self, *, skip: Optional[Set[str]] = None) -> Optional[ClaimedEntry]:
        """Atomically take the oldest pending entry, or return None when empty.

        An entry that cannot be parsed is dead-lettered and the next one is
        tried.
        """

        self._ensure_dirs()
        skip = skip or set()
        for name in self.pending():
            if name in skip:
                continue
            claimed_path = self.claims_dir / f"{os.getpid()}{_CLAIM_SEPARATOR}{name}"
            try:
                os.rename(self.queue_dir / name, claimed_path)
            except FileNotFoundError:
                # Another drain claimed it first.
                continue
            # Stale-claim age counts from the claim, not from the enqueue.
            os.utime(claimed_path)
            try:
                obligation = self._read_record(claimed_path)
            except QueueEntryError as exc:
                self._dead_letter(claimed_path, name, reason=str(exc))
                continue
            return ClaimedEntry(name=name, path=claimed_path, obligation=obligation)
        return None

    def recover_stale_claims(self) -> int:
        """Return claims left behind by a drain that died to the queue."""

        recovered = 0
        now = time.time()
        for path in self.claimed():
            pid_text, _, name = path.name.partition(_CLAIM_SEPARATOR)
            if not name:
                continue
            pid = int(pid_text) if pid_text.isdigit() else 0
            try:
                age = now - path.stat().st_mtime
            except FileNotFoundError:
                continue
            if _pid_alive(pid) and age < self._stale_claim_s:
                continue
            try:
                os.rename(path, self.queue_dir / name)
            except FileNotFoundError:
                continue
            recovered += 1
            self._logger.info("queue_claim_recovered", entry=name, pid=pid)
        return recovered

    def _dead_letter(self, claimed_path: Path, name: str, *, reason: str) -> None:
        target = self.failed_dir / name
        if target.exists():
            target = self.failed_dir / f"{target.stem}.{uuid.uuid4().hex[:6]}.entry"
        os.rename(claimed_path, target)
        reason_path = target.with_suffix(".reason.json")
        reason_path.write_text(
            json.dumps({"entry": name, "reason": reason, "ts": self._clock().isoformat()}, indent=2),
            encoding="utf-8",
        )
        self._record("dead_lettered", name)
        self._logger.event(event="queue_dead_letter", phase="delivery", ok=False, entry=target.name, reason=reason)

    def complete(self, entry: ClaimedEntry) -> bool:
        """Retire a delivered entry; False when the claim was taken back meanwhile."""

        try:
            entry.path.unlink()
        except FileNotFoundError:
            self._logger.warning("queue_claim_lost", entry=entry.name)
            return False
        self._record("delivered", entry.name)
        self._logger.info("queue_delivered", entry=entry.name, target=entry.obligation.target)
        return True

    def fail(self, entry: ClaimedEntry, error: str) -> bool:
        """Record a failed attempt; return True when the entry was dead-lettered."""

        if not entry.path.exists():
            self._logger.warning("queue_claim_lost", entry=entry.name)
            return False
        obligation = entry.obligation.model_copy(
            update={
                "retry_count": entry.obligation.retry_count + 1,
                "last_attempt": self._clock(),
                "last_error": error,
            }
        )
        self._write_record(entry.path, obligation)
        if obligation.retry_count >= self._max_retries:
            self._dead_letter(entry.path, entry.name, reason=f"retry cap reached: {error}")
            return True
        os.rename(entry.path, self.queue_dir / entry.name)
        self._logger.info("queue_retry", entry=entry.name, retry_count=obligation.retry_count, error=error)
        return False

    def requeue(self, dead_letter: Path) -> Path:
        """Return a dead-lettered entry to the queue with a fresh retry budget."""

        obligation = self._read_record(dead_letter)
        fresh = obligation.model_copy(update={"retry_count": 0, "last_error": None, "enqueued_at": self._clock()})
        target = self.enqueue(fresh)
        dead_letter.unlink()
        dead_letter.with_suffix(".reason.json").unlink(missing_ok=True)
        return target

    # ------------------------------------------------------------------
    def process_queue(self, chain: DestinationChain, max_entries: int = 10) -> QueueReport:
        """Retry up to *max_entries* pending obligations, oldest first.

        The chain is resolved afresh for every entry and only remote
        destinations count; the local fallback cannot discharge an obligation.
        """

        report = QueueReport()
        self.recover_stale_claims()
        seen: Set[str] = set()
        while len(seen) < max(0, int(max_entries)):
            entry = self.claim(skip=seen)
            if entry is None:
                break
            seen.add(entry.name)
            source = Path(entry.obligation.source)
            if not source.is_file():
                self._dead_letter(entry.path, entry.name, reason=f"EFILE001: source missing {source}")
                report.dead_lettered += 1
                continue
            destination = chain.resolve(include_local=False)
            if destination is None:
                error = "ENET001: no healthy remote destination"
            else:
                try:
                    chain.attempt(destination, source, entry.obligation.target)
                except DeliveryError as exc:
                    error = str(exc)
                else:
                    if self.complete(entry):
                        report.delivered += 1
                    continue
            if self.fail(entry, error):
                report.dead_lettered += 1
            else:
                report.retried += 1
        report.remaining = self.depth()
        return report


__all__ = ["ClaimedEntry", "DeliveryObligation", "DeliveryQueue"]
