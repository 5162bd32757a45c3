"""Structured logging helpers for checkpoint operations."""
from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any, Dict

from core.logging_utils import configure_json_logging
from core.paths import get_logs_dir

EVENT_LOG_NAME = "checkpoint.jsonl"


def _events_logger_name(backup_dir: Path) -> str:
    digest = hashlib.sha1(str(backup_dir.resolve()).encode("utf-8")).hexdigest()[:12]
    return f"checkpoint.events.{digest}"


class CheckpointLogger:
    """Write structured JSONL entries for capture, prune and delivery events.

    Each store gets its own ``checkpoint.events.<digest>`` logger writing to
    ``<backups>/logs/checkpoint.jsonl`` through
    :class:`core.logging_utils.JsonLogFormatter`, so credential-named fields
    such as ``token`` never reach disk in clear.
    """

    def __init__(self, backup_dir: Path) -> None:
        self._backup_dir = Path(backup_dir)
        self._log_path = get_logs_dir(self._backup_dir) / EVENT_LOG_NAME
        self._logger = configure_json_logging(
            self._backup_dir,
            name=_events_logger_name(self._backup_dir),
            filename=EVENT_LOG_NAME,
        )

    @property
    def log_path(self) -> Path:
        return self._log_path

    # ------------------------------------------------------------------
    def _write(self, payload: Dict[str, Any], *, level: int) -> None:
        self._logger.log(level, payload["event"], extra={"event_payload": payload})

    def event(self, *, event: str, phase: str, ok: bool, **extra: Any) -> None:
        payload = {
            "event": event,
            "phase": phase,
            "ok": bool(ok),
        }
        if extra:
            payload.update(extra)
        level = logging.INFO if ok else logging.ERROR
        self._write(payload, level=level)

    def info(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": True}, level=logging.INFO)

    def warning(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": False}, level=logging.WARNING)

    def error(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": False}, level=logging.ERROR)


__all__ = ["CheckpointLogger", "EVENT_LOG_NAME"]
