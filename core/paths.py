from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

__all__ = [
    "ensure_backup_structure",
    "get_archived_dir",
    "get_backup_dir",
    "get_claims_dir",
    "get_databases_dir",
    "get_default_settings_paths",
    "get_failed_queue_dir",
    "get_files_dir",
    "get_logs_dir",
    "get_queue_dir",
    "get_state_dir",
    "is_writable_dir",
    "resolve_project_root",
    "safe_label",
]

_CONFIG_FILENAME = ".checkpoint.json"


def _expand_path(value: str) -> Path:
    expanded = os.path.expandvars(os.path.expanduser(value))
    return Path(expanded).resolve()


def is_writable_dir(path: Path, *, create: bool = False) -> bool:
    """Return True if *path* exists and accepts a real write-then-delete probe."""

    if create:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
    if not path.is_dir():
        return False
    test_file = path / f".checkpoint-health-check_{os.getpid()}"
    try:
        with open(test_file, "w", encoding="utf-8") as handle:
            handle.write("ok")
            handle.flush()
            os.fsync(handle.fileno())
        test_file.unlink()
        return True
    except OSError:
        try:
            if test_file.exists():
                test_file.unlink()
        except OSError:  # pragma: no cover - cleanup of a broken mount
            pass
        return False


def resolve_project_root(value: Optional[str | os.PathLike[str]] = None) -> Path:
    """Resolve the project root from *value*, ``CHECKPOINT_PROJECT`` or the cwd."""

    if value:
        return _expand_path(str(value))
    env_value = os.environ.get("CHECKPOINT_PROJECT")
    if env_value:
        return _expand_path(env_value)
    return Path.cwd().resolve()


def get_backup_dir(project_root: Path, configured: Optional[str] = None) -> Path:
    if configured:
        candidate = Path(os.path.expandvars(os.path.expanduser(configured)))
        if not candidate.is_absolute():
            candidate = project_root / candidate
        return candidate
    return project_root / "backups"


def get_files_dir(backup_dir: Path) -> Path:
    return backup_dir / "files"


def get_archived_dir(backup_dir: Path) -> Path:
    return backup_dir / "archived"


def get_databases_dir(backup_dir: Path) -> Path:
    return backup_dir / "databases"


def get_queue_dir(backup_dir: Path) -> Path:
    return backup_dir / "queue"


def get_failed_queue_dir(backup_dir: Path) -> Path:
    return get_queue_dir(backup_dir) / ".failed"


def get_claims_dir(backup_dir: Path) -> Path:
    return get_queue_dir(backup_dir) / ".claimed"


def get_state_dir(backup_dir: Path) -> Path:
    return backup_dir / "state"


def get_logs_dir(backup_dir: Path) -> Path:
    return backup_dir / "logs"


_SAFE_LABEL_PATTERN = re.compile(r"[^A-Za-z0-9_-]+")


def safe_label(label: str) -> str:
    """Return a filesystem-safe label used for destination and dump names."""

    cleaned = _SAFE_LABEL_PATTERN.sub("-", label.strip()).strip("-")
    return cleaned or "destination"


def ensure_backup_structure(backup_dir: Path) -> None:
    for directory in (
        backup_dir,
        get_files_dir(backup_dir),
        get_archived_dir(backup_dir),
        get_databases_dir(backup_dir),
        get_queue_dir(backup_dir),
        get_failed_queue_dir(backup_dir),
        get_claims_dir(backup_dir),
        get_state_dir(backup_dir),
        get_logs_dir(backup_dir),
    ):
        directory.mkdir(parents=True, exist_ok=True)


def _config_home() -> Path:
    env_home = os.environ.get("CHECKPOINT_CONFIG_HOME")
    if env_home:
        return _expand_path(env_home)
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return _expand_path(xdg) / "checkpoint"
    return Path.home() / ".config" / "checkpoint"


def get_default_settings_paths(project_root: Path) -> list[Path]:
    """Return the search order for settings files."""

    return [project_root / _CONFIG_FILENAME, _config_home() / "settings.json"]
