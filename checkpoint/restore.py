"""Restore captured items into the working tree with automatic rollback."""
from __future__ import annotations

import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import RestoreError
from .logs import CheckpointLogger
from .names import format_timestamp
from .store import SnapshotStore
from .timeline import files_at, reconstruct
from .wrapping import ContentHandle


def _safety_root(store: SnapshotStore) -> Path:
    return store.backup_dir / "safety"


def _restore_handles(
    store: SnapshotStore,
    project_root: Path,
    handles: Dict[str, ContentHandle],
    *,
    logger: CheckpointLogger,
    label: str,
) -> Dict[str, object]:
    project_root = Path(project_root)
    stamp = format_timestamp(datetime.now(timezone.utc))
    safety_dir = _safety_root(store) / f"{stamp}-{label}"
    safety_dir.mkdir(parents=True, exist_ok=True)

    safety_copies: List[Tuple[str, Path, Path]] = []
    created: List[Path] = []
    for rel in handles:
        target = project_root / rel
        if target.is_symlink():
            raise RestoreError(f"Refusing to restore over symlink {rel}")
        if target.exists():
            backup_path = safety_dir / rel
            backup_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(target, backup_path)
            safety_copies.append((rel, backup_path, target))
        else:
            created.append(target)

    try:
        for rel, handle in handles.items():
            logger.info("restore_copy", path=rel, source=str(handle.path), current=handle.current)
            handle.copy_to(project_root / rel)
    except Exception as exc:
        logger.error("restore_failed", label=label, error=str(exc))
        for rel, backup_path, target in reversed(safety_copies):
            if backup_path.exists():
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(backup_path, target)
        for target in created:
            target.unlink(missing_ok=True)
        raise RestoreError(f"Restore of {label} failed and was rolled back: {exc}") from exc

    logger.event(event="restore_complete", phase="restore", ok=True, label=label, restored=len(handles))
    return {
        "label": label,
        "restored": sorted(handles),
        "safety_dir": str(safety_dir),
    }


def restore_item(
    store: SnapshotStore,
    project_root: Path,
    item: str,
    *,
    logger: CheckpointLogger,
    at: Optional[datetime] = None,
) -> Dict[str, object]:
    """Restore one item, either its current copy or the copy live at *at*."""

    handle = reconstruct(store, item, at) if at is not None else store.current_handle(item)
    if handle is None:
        when = f" at {format_timestamp(at)}" if at is not None else ""
        raise RestoreError(f"{item} has no captured copy{when}")
    return _restore_handles(store, project_root, {item: handle}, logger=logger, label=item.replace("/", "_"))


def restore_point_in_time(
    store: SnapshotStore,
    project_root: Path,
    at: datetime,
    *,
    logger: CheckpointLogger,
    items: Optional[Sequence[str]] = None,
) -> Dict[str, object]:
    """Restore every item (or just *items*) to its state at *at*."""

    handles = files_at(store, at)
    if items is not None:
        wanted = set(items)
        handles = {rel: handle for rel, handle in handles.items() if rel in wanted}
    if not handles:
        raise RestoreError(f"Nothing was captured at or before {format_timestamp(at)}")
    return _restore_handles(store, project_root, handles, logger=logger, label=format_timestamp(at))


__all__ = ["restore_item", "restore_point_in_time"]
