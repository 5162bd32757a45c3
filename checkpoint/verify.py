"""Verify the current mirror against its recorded content identities."""
from __future__ import annotations

import hashlib
from typing import Dict, List, Optional, Sequence

from .errors import VerificationError
from .logs import CheckpointLogger
from .store import SnapshotStore, sha256_file


def _plain_identity(store: SnapshotStore, item: str):
    handle = store.current_handle(item)
    if handle is None:
        return None
    if not handle.wrapped:
        return handle.path.stat().st_size, sha256_file(handle.path)
    data = handle.read_bytes()
    return len(data), hashlib.sha256(data).hexdigest()


def verify_mirror(
    store: SnapshotStore,
    *,
    logger: CheckpointLogger,
    items: Optional[Sequence[str]] = None,
) -> Dict[str, object]:
    index = store.mirror_index()
    wanted = sorted(items) if items is not None else store.current_items()
    problems: List[str] = []
    unindexed: List[str] = []
    verified = 0
    for item in wanted:
        identity = _plain_identity(store, item)
        if identity is None:
            problems.append(f"missing current copy: {item}")
            continue
        entry = index.get(item)
        if not isinstance(entry, dict):
            unindexed.append(item)
            continue
        size, digest = identity
        if int(entry.get("size") or 0) != size:
            problems.append(f"size mismatch for {item}")
        elif str(entry.get("sha256") or "") != digest:
            problems.append(f"checksum mismatch for {item}")
        else:
            verified += 1

    unparsed = [version.path.name for version in store.archived_versions() if version.timestamp_from_mtime]
    if problems:
        logger.event(event="verify_failed", phase="verify", ok=False, problems=problems)
        raise VerificationError("; ".join(problems))
    logger.event(event="verify_ok", phase="verify", ok=True, verified=verified, unindexed=len(unindexed))
    return {
        "verified": verified,
        "unindexed": unindexed,
        "archived_without_timestamp": unparsed,
    }


__all__ = ["verify_mirror"]
