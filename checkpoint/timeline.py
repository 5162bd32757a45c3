"""Capture points, point-in-time reconstruction and per-item history.

Archived versions are stamped with the capture that superseded them, so the
version that was live at time ``T`` is the archived version with the
smallest stamp strictly after ``T``; when none exists the current copy has
been live ever since.  Everything here is read-only.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from .journal import CaptureJournal
from .names import format_timestamp, parse_timestamp
from .store import SnapshotStore
from .types import ArchivedVersion, Outcome, VersionEntry
from .wrapping import ContentHandle

_AGO_PATTERN = re.compile(r"^(?P<amount>\d+)\s+(?P<unit>[a-z]+)\s+ago$")
_AGO_UNITS = {
    "second": 1,
    "seconds": 1,
    "sec": 1,
    "secs": 1,
    "minute": 60,
    "minutes": 60,
    "min": 60,
    "mins": 60,
    "hour": 3600,
    "hours": 3600,
    "hr": 3600,
    "hrs": 3600,
    "day": 86400,
    "days": 86400,
    "week": 604800,
    "weeks": 604800,
}


def list_capture_points(store: SnapshotStore, journal: Optional[CaptureJournal] = None) -> List[str]:
    """Distinct capture timestamps, newest first, with pid suffixes collapsed."""

    stamps = set()
    for version in [*store.archived_versions(), *store.dump_versions()]:
        # An mtime stands in for an unreadable name; it was never a capture.
        if not version.timestamp_from_mtime:
            stamps.add(format_timestamp(version.captured_at))
    if journal is not None:
        for record in journal.records():
            if record.outcome in (Outcome.SUCCESS.value, Outcome.PARTIAL.value):
                stamps.add(record.timestamp)
    return sorted(stamps, reverse=True)


def _live_at(versions: Iterable[ArchivedVersion], target: datetime) -> Optional[ArchivedVersion]:
    later = [version for version in versions if version.captured_at > target]
    if not later:
        return None
    return min(later, key=lambda version: (version.captured_at, version.name.disambiguator or 0))


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _handle_for(store: SnapshotStore, version: ArchivedVersion) -> ContentHandle:
    return ContentHandle(
        item=version.item,
        path=version.path,
        captured_at=version.captured_at,
        current=False,
        wrapper=store.wrapper,
    )


def reconstruct(store: SnapshotStore, item: str, target: datetime) -> Optional[ContentHandle]:
    """Return the copy of *item* that was live at *target*, or None.

    None means the item did not exist at that time, either because it was
    first captured later or because no copy of it is stored at all.
    """

    target = _as_utc(target)
    first = store.first_captured(item)
    if first is not None and target < first:
        return None
    version = _live_at(store.archived_versions(item), target)
    if version is not None:
        return _handle_for(store, version)
    return store.current_handle(item)


def reconstruct_dump(store: SnapshotStore, name: str, target: datetime) -> Optional[ContentHandle]:
    """Return the newest dump of *name* taken at or before *target*."""

    target = _as_utc(target)
    taken = [version for version in store.dump_versions(name) if version.captured_at <= target]
    if not taken:
        return None
    return _handle_for(store, taken[-1])


def files_at(store: SnapshotStore, target: datetime) -> Dict[str, ContentHandle]:
    """Reconstruct every tracked file as of *target*."""

    target = _as_utc(target)
    by_item: Dict[str, List[ArchivedVersion]] = {}
    for version in store.archived_versions():
        by_item.setdefault(version.item, []).append(version)
    items = set(by_item) | set(store.current_items())
    result: Dict[str, ContentHandle] = {}
    for item in sorted(items):
        first = store.first_captured(item)
        if first is not None and target < first:
            continue
        version = _live_at(by_item.get(item, []), target)
        handle = _handle_for(store, version) if version is not None else store.current_handle(item)
        if handle is not None:
            result[item] = handle
    return result


def history(store: SnapshotStore, item: str) -> List[VersionEntry]:
    """Every stored copy of *item*, newest first, current copy included.

    Archived entries carry the timestamp of the capture that replaced them.
    """

    entries: List[VersionEntry] = []
    current = store.current_handle(item)
    if current is not None:
        entries.append(
            VersionEntry(
                item=item,
                path=current.path,
                captured_at=current.captured_at,
                size_bytes=current.path.stat().st_size,
                current=True,
            )
        )
    for version in reversed(store.archived_versions(item)):
        entries.append(
            VersionEntry(
                item=item,
                path=version.path,
                captured_at=version.captured_at,
                size_bytes=version.size_bytes,
                current=False,
            )
        )
    return entries


def parse_point_in_time(text: str, now: Optional[datetime] = None) -> datetime:
    """Parse a user supplied point in time into an aware UTC datetime.

    Accepts ``YYYYMMDD_HHMMSS`` capture stamps, ISO dates and datetimes,
    epoch seconds, ``now``, ``yesterday``, ``last week``, ``last month`` and
    ``N <unit> ago``.  Raises ValueError for anything else.
    """

    now = _as_utc(now or datetime.now(timezone.utc))
    value = (text or "").strip().lower()
    if not value:
        raise ValueError("empty point in time")
    stamp = parse_timestamp(value)
    if stamp is not None:
        return stamp
    if value.isdigit() and len(value) >= 10:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    if value == "now":
        return now
    if value == "yesterday":
        return now - timedelta(days=1)
    if value == "last week":
        return now - timedelta(weeks=1)
    if value == "last month":
        return now - timedelta(days=30)
    match = _AGO_PATTERN.match(value)
    if match:
        seconds = _AGO_UNITS.get(match.group("unit"))
        if seconds is None:
            raise ValueError(f"unknown time unit in {text!r}")
        return now - timedelta(seconds=int(match.group("amount")) * seconds)
    try:
        parsed = datetime.fromisoformat(text.strip())
    except ValueError:
        raise ValueError(f"unrecognised point in time: {text!r}") from None
    return _as_utc(parsed)


__all__ = [
    "files_at",
    "history",
    "list_capture_points",
    "parse_point_in_time",
    "reconstruct",
    "reconstruct_dump",
]
