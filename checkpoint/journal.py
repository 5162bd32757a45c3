"""Append-only journal of capture runs."""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.paths import get_state_dir

from .names import parse_timestamp


@dataclass(slots=True)
class CaptureRecord:
    timestamp: str
    pid: int
    outcome: str
    added: int = 0
    modified: int = 0
    archived: int = 0
    failed: int = 0
    bytes_written: int = 0


class CaptureJournal:
    def __init__(self, backup_dir: Path) -> None:
        self._path = get_state_dir(Path(backup_dir)) / "captures.jsonl"

    @property
    def path(self) -> Path:
        return self._path

    def append(self, record: CaptureRecord) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload: Dict[str, Any] = {
            "timestamp": record.timestamp,
            "pid": record.pid,
            "outcome": record.outcome,
            "added": record.added,
            "modified": record.modified,
            "archived": record.archived,
            "failed": record.failed,
            "bytes_written": record.bytes_written,
        }
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, sort_keys=True) + "\n")

    def records(self) -> List[CaptureRecord]:
        if not self._path.exists():
            return []
        records: List[CaptureRecord] = []
        with self._path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    # A torn final line from an interrupted append.
                    continue
                if not isinstance(data, dict) or parse_timestamp(str(data.get("timestamp"))) is None:
                    continue
                records.append(
                    CaptureRecord(
                        timestamp=str(data["timestamp"]),
                        pid=int(data.get("pid") or 0),
                        outcome=str(data.get("outcome") or "success"),
                        added=int(data.get("added") or 0),
                        modified=int(data.get("modified") or 0),
                        archived=int(data.get("archived") or 0),
                        failed=int(data.get("failed") or 0),
                        bytes_written=int(data.get("bytes_written") or 0),
                    )
                )
        return records

    def last(self) -> Optional[CaptureRecord]:
        records = self.records()
        return records[-1] if records else None


__all__ = ["CaptureJournal", "CaptureRecord"]
