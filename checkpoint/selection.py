"""Decide which files of a project take part in a capture."""
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Set

from core.settings import DEFAULT_CRITICAL_PATTERNS, DEFAULT_EXCLUDES

LOGGER = logging.getLogger("checkpoint.selection")

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


@dataclass(slots=True)
class SelectionRules:
    mode: str = "all"
    excludes: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDES))
    critical_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_CRITICAL_PATTERNS))
    critical_max_depth: int = 3

    @classmethod
    def from_settings(cls, block: Optional[Mapping[str, object]]) -> "SelectionRules":
        block = block or {}
        rules = cls()
        mode = str(block.get("mode") or rules.mode).lower()
        rules.mode = mode if mode in {"all", "untracked"} else "all"
        excludes = block.get("excludes")
        if isinstance(excludes, list):
            rules.excludes = [str(entry) for entry in excludes]
        patterns = block.get("critical_patterns")
        if isinstance(patterns, list):
            rules.critical_patterns = [str(entry) for entry in patterns]
        try:
            rules.critical_max_depth = max(1, int(block.get("critical_max_depth", rules.critical_max_depth)))
        except (TypeError, ValueError):
            pass
        return rules


def _dir_patterns(patterns: Sequence[str]) -> List[str]:
    return [pattern.rstrip("/") for pattern in patterns if pattern.endswith("/")]


def _file_patterns(patterns: Sequence[str]) -> List[str]:
    return [pattern for pattern in patterns if not pattern.endswith("/")]


def matches_any(path: str, patterns: Sequence[str]) -> bool:
    for pattern in patterns:
        if fnmatch(os.path.basename(path), pattern) or fnmatch(path, pattern):
            return True
    return False


def is_excluded(rel_path: str, excludes: Sequence[str]) -> bool:
    """Return True when *rel_path* (posix, project relative) is excluded."""

    parts = rel_path.split("/")
    dir_patterns = _dir_patterns(excludes)
    for index, part in enumerate(parts[:-1]):
        prefix = "/".join(parts[: index + 1])
        if matches_any(part, dir_patterns) or matches_any(prefix, dir_patterns):
            return True
    return matches_any(rel_path, _file_patterns(excludes))


def _walk(
    project_root: Path,
    excludes: Sequence[str],
    skip_dirs: Set[Path],
    max_depth: Optional[int] = None,
    file_excludes: bool = True,
) -> Iterable[str]:
    dir_patterns = _dir_patterns(excludes)
    file_patterns = _file_patterns(excludes) if file_excludes else []
    for dirpath, dirnames, filenames in os.walk(project_root, followlinks=False):
        current = Path(dirpath)
        rel_dir = current.relative_to(project_root)
        depth = 0 if str(rel_dir) == "." else len(rel_dir.parts)
        kept = []
        for name in dirnames:
            child = current / name
            rel = (rel_dir / name).as_posix()
            if child in skip_dirs or child.is_symlink():
                continue
            if matches_any(name, dir_patterns) or matches_any(rel, dir_patterns):
                continue
            if max_depth is not None and depth + 1 >= max_depth:
                continue
            kept.append(name)
        dirnames[:] = sorted(kept)
        for name in sorted(filenames):
            rel = (rel_dir / name).as_posix()
            if (current / name).is_symlink() or matches_any(rel, file_patterns):
                continue
            yield rel


def git_untracked(project_root: Path, *, runner: Runner = subprocess.run, timeout: float = 30.0) -> Optional[List[str]]:
    """Return untracked, non-ignored files, or None when git is unavailable."""

    try:
        proc = runner(
            ["git", "ls-files", "--others", "--exclude-standard", "-z"],
            cwd=str(project_root),
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        LOGGER.warning("git ls-files timed out in %s", project_root)
        return None
    except FileNotFoundError:
        LOGGER.info("git not found; selecting all files in %s", project_root)
        return None
    if proc.returncode != 0:
        LOGGER.info("not a git work tree: %s", (proc.stderr or "").strip())
        return None
    return [entry for entry in proc.stdout.split("\0") if entry]


def critical_files(project_root: Path, rules: SelectionRules, skip_dirs: Set[Path]) -> List[str]:
    """Files matching the critical patterns, found even when git ignores them."""

    found = []
    walker = _walk(project_root, rules.excludes, skip_dirs, max_depth=rules.critical_max_depth, file_excludes=False)
    for rel in walker:
        if matches_any(rel, rules.critical_patterns):
            found.append(rel)
    return found


def select_items(
    project_root: Path,
    rules: Optional[SelectionRules] = None,
    *,
    backup_dir: Optional[Path] = None,
    runner: Runner = subprocess.run,
) -> List[str]:
    """Return the sorted, project-relative item set for one capture."""

    rules = rules or SelectionRules()
    project_root = Path(project_root)
    skip_dirs: Set[Path] = {project_root / ".git"}
    if backup_dir is not None:
        skip_dirs.add(Path(backup_dir))

    items: Set[str] = set()
    listed = git_untracked(project_root, runner=runner) if rules.mode == "untracked" else None
    if listed is None:
        items.update(_walk(project_root, rules.excludes, skip_dirs))
    else:
        for rel in listed:
            rel = rel.replace("\\", "/")
            path = project_root / rel
            if is_excluded(rel, rules.excludes) or path.is_symlink() or not path.is_file():
                continue
            if any(skip == path or skip in path.parents for skip in skip_dirs):
                continue
            items.add(rel)
    items.update(critical_files(project_root, rules, skip_dirs))
    return sorted(items)


__all__ = [
    "SelectionRules",
    "critical_files",
    "git_untracked",
    "is_excluded",
    "matches_any",
    "select_items",
]
