"""Snapshot store, retention and delivery for unattended project checkpoints."""
from __future__ import annotations

from .api import CheckpointService, request_capture
from .errors import CaptureError, CheckpointError
from .retention import RetentionPolicy
from .types import CaptureResult, DiffResult, Outcome, QueueReport, Tier
from .wrapping import ContentHandle, ContentWrapper

__all__ = [
    "CaptureError",
    "CaptureResult",
    "CheckpointError",
    "CheckpointService",
    "ContentHandle",
    "ContentWrapper",
    "DiffResult",
    "Outcome",
    "QueueReport",
    "RetentionPolicy",
    "Tier",
    "request_capture",
]
