"""Per-project exclusive lock guarding the archive tree."""
from __future__ import annotations

import contextlib
import os
from pathlib import Path
from typing import Iterator, Optional

if os.name == "nt":  # pragma: no cover - exercised on Windows only
    import msvcrt
else:
    import fcntl

from core.paths import get_state_dir


class ProjectLock:
    """Acquire-or-fail advisory lock scoped to one project's backup directory.

    The lock is held through an OS advisory lock on ``state/capture.lock``.
    The kernel drops it when the owning process exits, so a crashed capture
    never wedges the project.  The owner pid is written into the file for
    status display only; it plays no part in deciding ownership.
    """

    def __init__(self, backup_dir: Path) -> None:
        self._path = get_state_dir(Path(backup_dir)) / "capture.lock"
        self._fd: Optional[int] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        """Try to take the lock without waiting; return False if it is held."""

        if self._fd is not None:
            return True
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            if os.name == "nt":  # pragma: no cover
                msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            return False
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode("ascii"))
        os.fsync(fd)
        self._fd = fd
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.ftruncate(fd, 0)
            if os.name == "nt":  # pragma: no cover
                os.lseek(fd, 0, os.SEEK_SET)
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def holder_pid(self) -> Optional[int]:
        """Return the pid recorded by the current holder, if the lock is held."""

        if self._fd is not None:
            return os.getpid()
        probe = ProjectLock(self._path.parent.parent)
        if probe.acquire():
            probe.release()
            return None
        try:
            text = self._path.read_text(encoding="ascii").strip()
        except OSError:
            return None
        return int(text) if text.isdigit() else None

    def __enter__(self) -> "ProjectLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False


@contextlib.contextmanager
def project_lock(backup_dir: Path) -> Iterator[Optional[ProjectLock]]:
    """Yield a held :class:`ProjectLock`, or None when another run owns it."""

    lock = ProjectLock(backup_dir)
    if not lock.acquire():
        yield None
        return
    try:
        yield lock
    finally:
        lock.release()


__all__ = ["ProjectLock", "project_lock"]
