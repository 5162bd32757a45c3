"""Error hierarchy and error-code catalog for checkpoint operations."""
from __future__ import annotations

import errno
from typing import Dict, Tuple


class CheckpointError(RuntimeError):
    """Base exception for checkpoint related failures."""


class CaptureError(CheckpointError):
    """Raised when a capture cannot write to the project's own store at all."""


class DeliveryError(CheckpointError):
    """Raised when one delivery attempt to a destination fails."""


class QueueEntryError(CheckpointError):
    """Raised when a delivery queue record cannot be read."""


class RestoreError(CheckpointError):
    """Raised when restoring a captured item fails."""


class VerificationError(CheckpointError):
    """Raised when verification of the current mirror fails."""


ERROR_CATALOG: Dict[str, Tuple[str, str]] = {
    "EPERM001": ("Cannot write to backup directory", "Check permissions on the backup directory"),
    "EPERM002": ("Cannot read source file", "Check the file exists and is readable"),
    "EPERM003": ("Permission denied during copy", "Check source and destination permissions"),
    "EDISK001": ("Backup directory full or quota exceeded", "Free space or increase the quota"),
    "EDISK002": ("External drive not mounted", "Mount the drive or update store.backup_dir"),
    "EDISK003": ("Insufficient space for backup", "Prune old versions or free disk space"),
    "ECONF001": ("Invalid backup configuration", "Validate .checkpoint.json"),
    "ECONF002": ("Missing required configuration", "Create .checkpoint.json for the project"),
    "ECONF003": ("Cloud folder path does not exist", "Check the sync agent is running and the folder exists"),
    "ENET001": ("Cloud sync destination unreachable", "Check connectivity and the destination path"),
    "ENET002": ("Cloud sync service not running", "Start the sync agent"),
    "EFILE001": ("Source file not found", "The file was deleted or moved during capture"),
    "EFILE002": ("Size mismatch after copy", "The file changed during capture; capture again"),
    "EFILE003": ("File too large for destination", "Raise store.max_file_size or exclude the file"),
    "EUNK000": ("Unknown error occurred", "Check logs/checkpoint.jsonl for details"),
}

_ERRNO_CODES = {
    errno.EACCES: "EPERM003",
    errno.EPERM: "EPERM003",
    errno.ENOSPC: "EDISK001",
    getattr(errno, "EDQUOT", errno.ENOSPC): "EDISK001",
    errno.EROFS: "EPERM001",
    errno.ENOENT: "EFILE001",
    errno.EFBIG: "EFILE003",
    errno.ENODEV: "EDISK002",
    errno.ESTALE: "ENET001",
    errno.ETIMEDOUT: "ENET001",
    errno.EIO: "EUNK000",
}

# Errors that will not go away by retrying the same copy.
PERMANENT_CODES = frozenset({"EPERM001", "EPERM002", "EPERM003", "EDISK001", "EFILE001", "EFILE003"})


def classify_os_error(exc: BaseException) -> str:
    """Return the catalog code that best describes *exc*."""

    if isinstance(exc, OSError) and exc.errno is not None:
        return _ERRNO_CODES.get(exc.errno, "EUNK000")
    return "EUNK000"


def describe(code: str) -> str:
    description, _ = ERROR_CATALOG.get(code, ERROR_CATALOG["EUNK000"])
    return description


def suggestion(code: str) -> str:
    _, fix = ERROR_CATALOG.get(code, ERROR_CATALOG["EUNK000"])
    return fix


__all__ = [
    "CaptureError",
    "CheckpointError",
    "DeliveryError",
    "ERROR_CATALOG",
    "PERMANENT_CODES",
    "QueueEntryError",
    "RestoreError",
    "VerificationError",
    "classify_os_error",
    "describe",
    "suggestion",
]
