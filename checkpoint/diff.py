"""Compare the working tree with the current mirror."""
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from .store import SnapshotStore, sha256_file
from .types import DiffResult


def _stored_identity(store: SnapshotStore, item: str, index: Dict[str, Dict[str, object]]) -> Optional[Tuple[int, str]]:
    identity = store.content_identity(item, index=index)
    if identity is not None:
        return identity
    handle = store.current_handle(item)
    if handle is None:
        return None
    data = handle.read_bytes()
    return len(data), hashlib.sha256(data).hexdigest()


def diff_against_last_capture(project_root: Path, store: SnapshotStore, items: Iterable[str]) -> DiffResult:
    """Report what a capture of *items* would change in the mirror.

    Comparison is by content identity only: size first, then sha256.
    Permission bits and timestamps never make an item modified.  Removed
    items are mirrored items whose working-tree file no longer exists.
    """

    project_root = Path(project_root)
    index = store.mirror_index()
    result = DiffResult()
    wanted = sorted(set(items))
    for item in wanted:
        source = project_root / item
        if source.is_symlink() or not source.is_file():
            continue
        if store.current_path(item) is None:
            result.added.append(item)
            continue
        stored = _stored_identity(store, item, index)
        size = source.stat().st_size
        if stored is None or stored[0] != size:
            result.modified.append(item)
            continue
        if stored[1] != sha256_file(source):
            result.modified.append(item)
    for item in store.current_items():
        if not (project_root / item).exists():
            result.removed.append(item)
    return result


def diff_to_dict(result: DiffResult) -> Dict[str, object]:
    return {
        "added": list(result.added),
        "removed": list(result.removed),
        "modified": list(result.modified),
        "summary": {
            "added": len(result.added),
            "removed": len(result.removed),
            "modified": len(result.modified),
        },
    }


def format_diff_json(result: DiffResult) -> str:
    return json.dumps(diff_to_dict(result), ensure_ascii=False)


def format_diff_text(result: DiffResult) -> str:
    if result.empty:
        return "No changes since last capture."
    lines = [f"+  {item}" for item in result.added]
    lines.extend(f"-  {item}" for item in result.removed)
    lines.extend(f"M  {item}" for item in result.modified)
    lines.append("")
    lines.append(
        f"Files: {len(result.added)} new, {len(result.removed)} removed, {len(result.modified)} modified"
    )
    return "\n".join(lines)


__all__ = ["diff_against_last_capture", "diff_to_dict", "format_diff_json", "format_diff_text"]
