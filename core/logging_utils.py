from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping

from .paths import get_logs_dir

PROCESS_LOG_NAME = "checkpoint.log.jsonl"
_SECRET_MARKERS = ("token", "secret", "password", "authorization", "api_key", "apikey")
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def redact_secret(value: str | None) -> str:
    if not value:
        return ""
    if len(value) <= 6:
        return "***"
    return f"{value[:3]}***{value[-2:]}"


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def redact_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy *payload* with credential-named string values masked."""

    cleaned: Dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, str) and is_secret_key(key):
            cleaned[key] = redact_secret(value)
        elif isinstance(value, Mapping):
            cleaned[key] = redact_fields(value)
        else:
            cleaned[key] = value
    return cleaned


def _utc_iso(created: float) -> str:
    return datetime.fromtimestamp(created, tz=timezone.utc).isoformat()


class JsonLogFormatter(logging.Formatter):
    """Render a record as one JSON object per line.

    Records carrying an ``event_payload`` dict (see
    :class:`checkpoint.logs.CheckpointLogger`) are written as that payload.
    Anything else becomes ``ts``/``level``/``name``/``message`` plus the
    extras passed through ``extra=``. Credential-named fields are masked
    either way.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        event_payload = getattr(record, "event_payload", None)
        if isinstance(event_payload, Mapping):
            payload: Dict[str, Any] = dict(event_payload)
            payload.setdefault("ts", _utc_iso(record.created))
            payload.setdefault("level", record.levelname)
        else:
            payload = {
                "ts": _utc_iso(record.created),
                "level": record.levelname,
                "name": record.name,
                "message": record.getMessage(),
            }
            for key, value in record.__dict__.items():
                if key in _RECORD_ATTRS or key.startswith("_") or key in payload:
                    continue
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(redact_fields(payload), ensure_ascii=False, sort_keys=True, default=str)


class _StoreFileHandler(logging.FileHandler):
    """File handler that creates its directory on first write.

    An unwritable store goes through ``handleError`` instead of raising
    into the operation that logged.
    """

    def __init__(self, path: Path) -> None:
        super().__init__(path, encoding="utf-8", delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            Path(self.baseFilename).parent.mkdir(parents=True, exist_ok=True)
            super().emit(record)
        except OSError:
            self.handleError(record)


def configure_json_logging(
    backup_dir: Path,
    name: str = "checkpoint",
    filename: str = PROCESS_LOG_NAME,
) -> logging.Logger:
    log_path = get_logs_dir(backup_dir) / filename
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", None) == os.path.abspath(log_path):
            break
    else:
        handler = _StoreFileHandler(log_path)
        handler.setFormatter(JsonLogFormatter())
        logger.addHandler(handler)
    logger.propagate = False
    return logger


__all__ = [
    "JsonLogFormatter",
    "PROCESS_LOG_NAME",
    "configure_json_logging",
    "is_secret_key",
    "redact_fields",
    "redact_secret",
]
