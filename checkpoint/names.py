"""Parse and format the names used inside the archive and database trees.

Every archived version is stored as ``<relative-path>.<TIMESTAMP>[_<pid>]``
optionally followed by trailing extensions added by a content wrapper (for
example ``.age`` when encryption is enabled).  Database dumps are stored as
``<name>_<TIMESTAMP>[_<pid>].<ext>``.  This module is the only place that
knows those grammars; retention, diff and reconstruction all work on the
typed records it returns.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Iterable, Optional, Tuple

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

KNOWN_WRAP_EXTENSIONS: Tuple[str, ...] = (".age", ".gpg", ".enc")

_ARCHIVE_PATTERN = re.compile(
    r"^(?P<base>.+)\.(?P<ts>\d{8}_\d{6})(?:_(?P<pid>\d+))?(?P<wrap>(?:\.[A-Za-z][A-Za-z0-9]*)*)$"
)
_DUMP_PATTERN = re.compile(
    r"^(?P<name>.+?)_(?P<ts>\d{8}_\d{6})(?:_(?P<pid>\d+))?(?P<ext>\..+)?$"
)
_TIMESTAMP_PATTERN = re.compile(r"^\d{8}_\d{6}$")


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(text: str) -> Optional[datetime]:
    """Return the UTC datetime for ``YYYYMMDD_HHMMSS`` or None when invalid."""

    if not _TIMESTAMP_PATTERN.match(text or ""):
        return None
    try:
        return datetime.strptime(text, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def strip_wrap_extension(name: str, extensions: Iterable[str] = KNOWN_WRAP_EXTENSIONS) -> Tuple[str, str]:
    """Split a wrapper suffix off *name*, returning ``(plain_name, suffix)``."""

    for ext in extensions:
        if ext and name.endswith(ext) and len(name) > len(ext):
            return name[: -len(ext)], ext
    return name, ""


@dataclass(frozen=True, slots=True)
class ArchiveName:
    """Typed view of one archived version's relative path."""

    logical_path: str
    timestamp: Optional[datetime]
    stamp: Optional[str]
    disambiguator: Optional[int] = None
    wrap_extension: str = ""

    @property
    def parsed(self) -> bool:
        return self.timestamp is not None

    @property
    def sort_key(self) -> Tuple[datetime, int]:
        moment = self.timestamp or datetime.min.replace(tzinfo=timezone.utc)
        return moment, self.disambiguator or 0

    def render(self) -> str:
        if not self.stamp:
            return self.logical_path + self.wrap_extension
        suffix = self.stamp
        if self.disambiguator is not None:
            suffix = f"{suffix}_{self.disambiguator}"
        return f"{self.logical_path}.{suffix}{self.wrap_extension}"


def archive_name_for(logical_path: str, moment: datetime, pid: Optional[int]) -> ArchiveName:
    stamp = format_timestamp(moment)
    return ArchiveName(
        logical_path=logical_path,
        timestamp=parse_timestamp(stamp),
        stamp=stamp,
        disambiguator=pid,
    )


def parse_archive_name(relative_path: str) -> ArchiveName:
    """Parse an archive-relative path into an :class:`ArchiveName`.

    Names that do not carry a valid timestamp come back with ``timestamp``
    set to None so callers can fall back to the file's modification time.
    Trailing extensions after the timestamp are treated as wrapper suffixes
    and never make parsing fail.
    """

    posix = PurePosixPath(relative_path.replace("\\", "/"))
    parent = "" if str(posix.parent) == "." else f"{posix.parent}/"
    match = _ARCHIVE_PATTERN.match(posix.name)
    if not match:
        plain, wrap = strip_wrap_extension(posix.name)
        return ArchiveName(logical_path=parent + plain, timestamp=None, stamp=None, wrap_extension=wrap)
    stamp = match.group("ts")
    pid = match.group("pid")
    timestamp = parse_timestamp(stamp)
    return ArchiveName(
        logical_path=parent + match.group("base"),
        timestamp=timestamp,
        stamp=stamp if timestamp else None,
        disambiguator=int(pid) if pid else None,
        wrap_extension=match.group("wrap") or "",
    )


@dataclass(frozen=True, slots=True)
class DumpName:
    """Typed view of one database dump file name."""

    name: str
    timestamp: Optional[datetime]
    stamp: Optional[str]
    disambiguator: Optional[int]
    extension: str
    wrap_extension: str = ""

    def render(self) -> str:
        suffix = self.stamp or ""
        if self.disambiguator is not None:
            suffix = f"{suffix}_{self.disambiguator}"
        return f"{self.name}_{suffix}{self.extension}{self.wrap_extension}"


def dump_name_for(name: str, moment: datetime, extension: str, pid: Optional[int] = None) -> DumpName:
    stamp = format_timestamp(moment)
    ext = extension if not extension or extension.startswith(".") else f".{extension}"
    return DumpName(
        name=name,
        timestamp=parse_timestamp(stamp),
        stamp=stamp,
        disambiguator=pid,
        extension=ext,
    )


def parse_dump_name(filename: str, wrap_extensions: Iterable[str] = KNOWN_WRAP_EXTENSIONS) -> DumpName:
    plain, wrap = strip_wrap_extension(filename, wrap_extensions)
    match = _DUMP_PATTERN.match(plain)
    if not match:
        stem, _, ext = plain.partition(".")
        return DumpName(
            name=stem,
            timestamp=None,
            stamp=None,
            disambiguator=None,
            extension=f".{ext}" if ext else "",
            wrap_extension=wrap,
        )
    stamp = match.group("ts")
    timestamp = parse_timestamp(stamp)
    pid = match.group("pid")
    return DumpName(
        name=match.group("name"),
        timestamp=timestamp,
        stamp=stamp if timestamp else None,
        disambiguator=int(pid) if pid else None,
        extension=match.group("ext") or "",
        wrap_extension=wrap,
    )


__all__ = [
    "ArchiveName",
    "DumpName",
    "KNOWN_WRAP_EXTENSIONS",
    "TIMESTAMP_FORMAT",
    "archive_name_for",
    "dump_name_for",
    "format_timestamp",
    "parse_archive_name",
    "parse_dump_name",
    "parse_timestamp",
    "strip_wrap_extension",
]
