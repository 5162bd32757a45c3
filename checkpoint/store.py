"""On-disk snapshot store: live mirror, archive of superseded versions, dumps.

The store is the single writer of the backup tree.  A capture never removes
the only readable copy of an item: the outgoing current copy is first
committed into ``archived/`` (temp file in the same directory, then atomic
rename) and only then is the new content swapped into ``files/`` with an
atomic replace.
"""
from __future__ import annotations

import errno
import hashlib
import json
import os
import shutil
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from core.paths import (
    ensure_backup_structure,
    get_archived_dir,
    get_databases_dir,
    get_files_dir,
    get_state_dir,
    is_writable_dir,
)

from .errors import PERMANENT_CODES, CaptureError, CheckpointError, classify_os_error, describe
from .logs import CheckpointLogger
from .names import (
    ArchiveName,
    archive_name_for,
    dump_name_for,
    format_timestamp,
    parse_archive_name,
    parse_dump_name,
    parse_timestamp,
)
from .types import ArchivedVersion, ItemFailure, PruneCandidate, PruneSummary, StoreCapture
from .wrapping import ContentHandle, ContentWrapper

_TEMP_MARKER = ".tmp-"
_STORE_SIDE_CODES = frozenset({"EPERM001", "EDISK001", "EDISK002", "EDISK003"})


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _is_temp(path: Path) -> bool:
    return path.name.startswith(".") and _TEMP_MARKER in path.name


def _temp_sibling(target: Path) -> Path:
    return target.parent / f".{target.name}{_TEMP_MARKER}{os.getpid()}-{uuid.uuid4().hex[:8]}"


def _fsync_file(path: Path) -> None:
    with path.open("rb+") as handle:
        os.fsync(handle.fileno())


class _StoreWriteError(OSError):
    """OSError raised while writing into the store rather than reading the source."""


class SnapshotStore:
    """Manage ``files/``, ``archived/`` and ``databases/`` for one project."""

    def __init__(
        self,
        backup_dir: Path,
        *,
        logger: CheckpointLogger,
        wrapper: Optional[ContentWrapper] = None,
        copy_retries: int = 3,
        retry_delay_s: float = 1.0,
        max_file_size: int = 0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._backup_dir = Path(backup_dir)
        self._logger = logger
        self._wrapper = wrapper
        self._copy_retries = max(1, int(copy_retries))
        self._retry_delay_s = max(0.0, float(retry_delay_s))
        self._max_file_size = max(0, int(max_file_size))
        self._sleep = sleep
        self._index_path = get_state_dir(self._backup_dir) / "mirror.json"

    # ------------------------------------------------------------------
    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    @property
    def files_dir(self) -> Path:
        return get_files_dir(self._backup_dir)

    @property
    def archived_dir(self) -> Path:
        return get_archived_dir(self._backup_dir)

    @property
    def databases_dir(self) -> Path:
        return get_databases_dir(self._backup_dir)

    @property
    def wrapper(self) -> Optional[ContentWrapper]:
        return self._wrapper

    def _wrap_suffixes(self) -> Tuple[str, ...]:
        return (self._wrapper.extension,) if self._wrapper else ()

    # ------------------------------------------------------------------
    # Mirror index: content identity of each current copy, keyed by the
    # stored file's size and mtime so a stale entry is never trusted.
    def _load_index(self) -> Dict[str, Dict[str, object]]:
        try:
            data = json.loads(self._index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError):
            self._logger.warning("mirror_index_unreadable", path=str(self._index_path))
            return {}
        return data if isinstance(data, dict) else {}

    def _save_index(self, index: Dict[str, Dict[str, object]]) -> None:
        self._index_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = _temp_sibling(self._index_path)
        tmp.write_text(json.dumps(index, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._index_path)

    def mirror_index(self) -> Dict[str, Dict[str, object]]:
        return self._load_index()

    # ------------------------------------------------------------------
    def current_path(self, item: str) -> Optional[Path]:
        plain = self.files_dir / item
        for suffix in self._wrap_suffixes():
            wrapped = plain.parent / (plain.name + suffix)
            if wrapped.is_file():
                return wrapped
        if plain.is_file():
            return plain
        return None

    def current_handle(self, item: str) -> Optional[ContentHandle]:
        path = self.current_path(item)
        if path is None:
            return None
        entry = self._load_index().get(item) or {}
        captured_at = parse_timestamp(str(entry.get("captured_at") or ""))
        if captured_at is None:
            captured_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return ContentHandle(item=item, path=path, captured_at=captured_at, current=True, wrapper=self._wrapper)

    def current_items(self) -> List[str]:
        items: List[str] = []
        root = self.files_dir
        if not root.exists():
            return items
        suffixes = self._wrap_suffixes()
        for path in sorted(root.rglob("*")):
            if not path.is_file() or _is_temp(path):
                continue
            rel = path.relative_to(root).as_posix()
            for suffix in suffixes:
                if rel.endswith(suffix):
                    rel = rel[: -len(suffix)]
                    break
            items.append(rel)
        return sorted(set(items))

    def content_identity(self, item: str, *, index: Optional[Dict[str, Dict[str, object]]] = None) -> Optional[Tuple[int, str]]:
        """Return ``(size, sha256)`` of the plain content of the current copy."""

        path = self.current_path(item)
        if path is None:
            return None
        index = self._load_index() if index is None else index
        entry = index.get(item)
        stat = path.stat()
        if isinstance(entry, dict) and entry.get("stored_size") == stat.st_size and entry.get("stored_mtime_ns") == stat.st_mtime_ns:
            return int(entry.get("size") or 0), str(entry.get("sha256") or "")
        if self._wrapper and path.name.endswith(self._wrapper.extension):
            # No trustworthy identity for an opaque wrapped copy.
            return None
        return stat.st_size, sha256_file(path)

    def first_captured(self, item: str) -> Optional[datetime]:
        entry = self._load_index().get(item) or {}
        return parse_timestamp(str(entry.get("first_captured_at") or ""))

    # ------------------------------------------------------------------
    def _copy_with_retry(self, source: Path, dest: Path) -> None:
        delay = self._retry_delay_s
        for attempt in range(1, self._copy_retries + 1):
            try:
                shutil.copyfile(source, dest)
                _fsync_file(dest)
                return
            except OSError as exc:
                dest.unlink(missing_ok=True)
                code = classify_os_error(exc)
                if code in PERMANENT_CODES or attempt >= self._copy_retries:
                    raise
                self._logger.info("copy_retry", source=str(source), attempt=attempt, code=code)
                self._sleep(delay)
                delay *= 2

    def _commit_archive(self, item: str, current: Path, moment: datetime, pid: int) -> Path:
        name = archive_name_for(item, moment, pid)
        wrap = ""
        for suffix in self._wrap_suffixes():
            if current.name.endswith(suffix):
                wrap = suffix
        target = self.archived_dir / (name.render() + wrap)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            raise _StoreWriteError(errno.EEXIST, f"archive entry already exists: {target}")
        tmp = _temp_sibling(target)
        try:
            shutil.copy2(current, tmp)
            _fsync_file(tmp)
            os.replace(tmp, target)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise _StoreWriteError(exc.errno, str(exc)) from exc
        return target

    def _write_current(self, item: str, source: Path) -> Tuple[Path, int, str]:
        final_plain = self.files_dir / item
        final_plain.parent.mkdir(parents=True, exist_ok=True)
        tmp = _temp_sibling(final_plain)
        try:
            self._copy_with_retry(source, tmp)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            if exc.filename and Path(str(exc.filename)) == source:
                raise
            raise _StoreWriteError(exc.errno, str(exc)) from exc
        size = tmp.stat().st_size
        digest = sha256_file(tmp)
        stored = tmp
        final = final_plain
        try:
            if self._wrapper:
                stored = Path(self._wrapper.wrap(tmp))
                final = final_plain.parent / (final_plain.name + self._wrapper.extension)
            os.replace(stored, final)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            stored.unlink(missing_ok=True)
            raise _StoreWriteError(exc.errno, str(exc)) from exc
        if final != final_plain:
            # A plain copy left from before wrapping was enabled; already archived.
            final_plain.unlink(missing_ok=True)
        return final, size, digest

    def _sweep_temp_files(self) -> None:
        for root in (self.files_dir, self.archived_dir, self.databases_dir):
            if not root.exists():
                continue
            for path in root.rglob(f".*{_TEMP_MARKER}*"):
                if path.is_file():
                    path.unlink(missing_ok=True)

    def _preflight(self) -> None:
        try:
            ensure_backup_structure(self._backup_dir)
        except OSError as exc:
            code = classify_os_error(exc)
            self._logger.event(event="capture_preflight", phase="capture", ok=False, code=code, error=str(exc))
            raise CaptureError(f"{code}: cannot prepare backup directory {self._backup_dir}: {exc}") from exc
        for directory in (self.files_dir, self.archived_dir):
            if not is_writable_dir(directory):
                self._logger.event(event="capture_preflight", phase="capture", ok=False, code="EPERM001", path=str(directory))
                raise CaptureError(f"EPERM001: {describe('EPERM001')}: {directory}")

    # ------------------------------------------------------------------
    def capture(
        self,
        project_root: Path,
        items: Iterable[str],
        *,
        now: Optional[datetime] = None,
        pid: Optional[int] = None,
    ) -> StoreCapture:
        """Bring the mirror up to date with *items* from *project_root*."""

        moment = now or datetime.now(timezone.utc)
        pid = os.getpid() if pid is None else int(pid)
        stamp = format_timestamp(moment)
        self._preflight()
        self._sweep_temp_files()

        result = StoreCapture(timestamp=stamp, pid=pid)
        index = self._load_index()
        store_side_failures = 0
        attempted = 0
        self._logger.event(event="capture_start", phase="capture", ok=True, timestamp=stamp, pid=pid)

        for item in sorted(set(items)):
            source = Path(project_root) / item
            if source.is_symlink():
                result.skipped.append(item)
                continue
            attempted += 1
            try:
                stat = source.stat()
            except OSError as exc:
                code = "EFILE001" if isinstance(exc, FileNotFoundError) else "EPERM002"
                result.failures.append(ItemFailure(path=item, code=code, message=str(exc)))
                self._logger.warning("item_failed", path=item, code=code, error=str(exc))
                continue
            if self._max_file_size and stat.st_size > self._max_file_size:
                attempted -= 1
                result.skipped.append(item)
                self._logger.info("item_skipped_large", path=item, size=stat.st_size)
                continue

            current = self.current_path(item)
            archived_path: Optional[Path] = None
            try:
                if current is not None:
                    identity = self.content_identity(item, index=index)
                    if identity is not None and identity[0] == stat.st_size and identity[1] == sha256_file(source):
                        result.unchanged += 1
                        continue
                    archived_path = self._commit_archive(item, current, moment, pid)
                    self._logger.info("archive_move", path=item, archive=str(archived_path))
                final, size, digest = self._write_current(item, source)
            except OSError as exc:
                if archived_path is not None:
                    # The current copy was never replaced; the archive entry is redundant.
                    archived_path.unlink(missing_ok=True)
                code = classify_os_error(exc)
                if isinstance(exc, _StoreWriteError):
                    if code not in _STORE_SIDE_CODES:
                        code = "EPERM001"
                    store_side_failures += 1
                elif code == "EPERM003":
                    code = "EPERM002"
                result.failures.append(ItemFailure(path=item, code=code, message=str(exc)))
                self._logger.warning("item_failed", path=item, code=code, error=str(exc))
                continue

            if archived_path is not None:
                result.archived.append(archived_path.relative_to(self.archived_dir).as_posix())
                result.written.append(archived_path)
                result.modified.append(item)
            else:
                result.added.append(item)
            result.written.append(final)
            result.bytes_written += size
            stored_stat = final.stat()
            previous = index.get(item) or {}
            index[item] = {
                "size": size,
                "sha256": digest,
                "stored_size": stored_stat.st_size,
                "stored_mtime_ns": stored_stat.st_mtime_ns,
                "captured_at": stamp,
                "first_captured_at": previous.get("first_captured_at") or stamp,
            }

        if attempted and store_side_failures == attempted:
            self._logger.event(event="capture_failed", phase="capture", ok=False, timestamp=stamp, failures=attempted)
            raise CaptureError(f"EPERM001: no item could be written to {self._backup_dir}")

        try:
            self._save_index(index)
        except OSError as exc:
            # Identities are recomputed from disk when the index is stale.
            self._logger.warning("mirror_index_write_failed", error=str(exc))

        self._logger.event(
            event="capture_complete",
            phase="capture",
            ok=not result.failures,
            timestamp=stamp,
            added=len(result.added),
            modified=len(result.modified),
            unchanged=result.unchanged,
            failed=len(result.failures),
            bytes=result.bytes_written,
        )
        return result

    # ------------------------------------------------------------------
    def store_dump(
        self,
        name: str,
        dump_path: Path,
        *,
        extension: Optional[str] = None,
        now: Optional[datetime] = None,
        pid: Optional[int] = None,
    ) -> Path:
        """Version a database dump produced by an external tool as an opaque blob."""

        dump_path = Path(dump_path)
        moment = now or datetime.now(timezone.utc)
        ext = extension
        if ext is None:
            ext = "".join(dump_path.suffixes) or ".dump"
        dump_name = dump_name_for(name, moment, ext, pid)
        target = self.databases_dir / dump_name.render()
        try:
            self.databases_dir.mkdir(parents=True, exist_ok=True)
            if target.exists() and pid is None:
                dump_name = dump_name_for(name, moment, ext, os.getpid())
                target = self.databases_dir / dump_name.render()
            if target.exists():
                raise FileExistsError(errno.EEXIST, "dump version already stored", str(target))
            tmp = _temp_sibling(target)
            self._copy_with_retry(dump_path, tmp)
            stored = tmp
            if self._wrapper:
                stored = Path(self._wrapper.wrap(tmp))
                target = target.parent / (target.name + self._wrapper.extension)
            os.replace(stored, target)
        except OSError as exc:
            code = classify_os_error(exc)
            self._logger.warning("dump_store_failed", name=name, code=code, error=str(exc))
            raise CheckpointError(f"{code}: could not store dump {name}: {exc}") from exc
        self._logger.info("dump_stored", name=name, path=str(target), size=target.stat().st_size)
        return target

    # ------------------------------------------------------------------
    def _version_from(self, item: str, path: Path, name: ArchiveName) -> ArchivedVersion:
        stat = path.stat()
        if name.timestamp is not None:
            return ArchivedVersion(item=item, path=path, name=name, captured_at=name.timestamp, size_bytes=stat.st_size)
        moment = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        return ArchivedVersion(
            item=item,
            path=path,
            name=name,
            captured_at=moment,
            size_bytes=stat.st_size,
            timestamp_from_mtime=True,
        )

    def archived_versions(self, item: Optional[str] = None) -> List[ArchivedVersion]:
        """Return archived versions (of *item*, or of every item) oldest first."""

        root = self.archived_dir
        if not root.exists():
            return []
        if item is None:
            candidates: Iterable[Path] = root.rglob("*")
        else:
            parent = (root / item).parent
            if not parent.is_dir():
                return []
            candidates = parent.glob(f"{_glob_escape(Path(item).name)}*")
        versions: List[ArchivedVersion] = []
        for path in candidates:
            if not path.is_file() or _is_temp(path):
                continue
            rel = path.relative_to(root).as_posix()
            name = parse_archive_name(rel)
            if item is not None and name.logical_path != item:
                continue
            try:
                versions.append(self._version_from(name.logical_path, path, name))
            except FileNotFoundError:
                continue
        versions.sort(key=lambda version: (version.captured_at, version.name.disambiguator or 0, version.path.name))
        return versions

    def dump_versions(self, name: Optional[str] = None) -> List[ArchivedVersion]:
        root = self.databases_dir
        if not root.exists():
            return []
        versions: List[ArchivedVersion] = []
        for path in root.iterdir():
            if not path.is_file() or _is_temp(path):
                continue
            dump = parse_dump_name(path.name)
            if name is not None and dump.name != name:
                continue
            archive_name = ArchiveName(
                logical_path=dump.name,
                timestamp=dump.timestamp,
                stamp=dump.stamp,
                disambiguator=dump.disambiguator,
                wrap_extension=dump.wrap_extension,
            )
            try:
                versions.append(self._version_from(dump.name, path, archive_name))
            except FileNotFoundError:
                continue
        versions.sort(key=lambda version: (version.captured_at, version.name.disambiguator or 0))
        return versions

    # ------------------------------------------------------------------
    def prune(self, candidates: Sequence[PruneCandidate], *, dry_run: bool = False) -> PruneSummary:
        """Delete the given archived versions; the only deletion path in the store."""

        removed: List[str] = []
        freed = 0
        roots = (self.archived_dir.resolve(), self.databases_dir.resolve())
        for candidate in candidates:
            path = candidate.version.path
            resolved = path.resolve()
            if not any(root in resolved.parents for root in roots):
                self._logger.warning("prune_refused", path=str(path), reason="outside_store")
                continue
            try:
                size = path.stat().st_size
            except FileNotFoundError:
                continue
            if not dry_run:
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue
                self._remove_empty_parents(path.parent)
            removed.append(str(path))
            freed += size
        self._logger.event(
            event="prune_applied",
            phase="retention",
            ok=True,
            removed=len(removed),
            freed_bytes=freed,
            dry_run=dry_run,
        )
        return PruneSummary(removed=removed, freed_bytes=freed, dry_run=dry_run)

    def _remove_empty_parents(self, directory: Path) -> None:
        stop = {self.archived_dir.resolve(), self.databases_dir.resolve()}
        current = directory
        while current.resolve() not in stop and current.exists():
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent


def _glob_escape(name: str) -> str:
    return "".join(f"[{char}]" if char in "*?[" else char for char in name)


__all__ = ["SnapshotStore", "sha256_file"]
