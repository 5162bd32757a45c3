"""Content wrapper protocol and read handles for stored copies."""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class ContentWrapper(Protocol):
    """Transparent transform applied to stored copies (for example encryption).

    ``wrap`` replaces a plain file with its wrapped form and returns the new
    path, which carries ``extension`` as a suffix.  ``unwrap`` produces a plain
    copy of a wrapped file and returns its path, leaving the input untouched.
    """

    extension: str

    def wrap(self, path: Path) -> Path: ...

    def unwrap(self, path: Path) -> Path: ...


@dataclass(slots=True)
class ContentHandle:
    """Readable reference to one stored copy of an item."""

    item: str
    path: Path
    captured_at: Optional[datetime]
    current: bool
    wrapper: Optional[ContentWrapper] = None

    @property
    def wrapped(self) -> bool:
        return bool(self.wrapper and self.path.name.endswith(self.wrapper.extension))

    def read_bytes(self) -> bytes:
        if not self.wrapped:
            return self.path.read_bytes()
        plain = self.wrapper.unwrap(self.path)
        try:
            return Path(plain).read_bytes()
        finally:
            if Path(plain) != self.path:
                Path(plain).unlink(missing_ok=True)

    def copy_to(self, target: Path) -> Path:
        target.parent.mkdir(parents=True, exist_ok=True)
        if not self.wrapped:
            shutil.copy2(self.path, target)
            return target
        plain = Path(self.wrapper.unwrap(self.path))
        try:
            shutil.copyfile(plain, target)
        finally:
            if plain != self.path:
                plain.unlink(missing_ok=True)
        return target


__all__ = ["ContentHandle", "ContentWrapper"]
