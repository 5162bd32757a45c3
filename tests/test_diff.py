import json
import os
from datetime import datetime, timezone

from checkpoint.diff import diff_against_last_capture, format_diff_json, format_diff_text
from checkpoint.logs import CheckpointLogger
from checkpoint.store import SnapshotStore
from checkpoint.types import DiffResult

T0 = datetime(2026, 1, 1, 9, 0, 0, tzinfo=timezone.utc)


def _captured(tmp_path, files):
    project = tmp_path / "project"
    project.mkdir()
    for name, text in files.items():
        path = project / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    backup_dir = project / "backups"
    store = SnapshotStore(backup_dir, logger=CheckpointLogger(backup_dir))
    store.capture(project, list(files), now=T0, pid=1)
    return project, store


def test_diff_is_empty_right_after_capture(tmp_path):
    project, store = _captured(tmp_path, {"a.txt": "a", "conf/b.json": "{}"})

    result = diff_against_last_capture(project, store, ["a.txt", "conf/b.json"])

    assert result.empty
    assert format_diff_text(result) == "No changes since last capture."


def test_same_size_content_change_is_modified(tmp_path):
    project, store = _captured(tmp_path, {"a.txt": "abc"})
    (project / "a.txt").write_text("xyz", encoding="utf-8")

    result = diff_against_last_capture(project, store, ["a.txt"])

    assert result.modified == ["a.txt"]


def test_metadata_changes_are_not_modifications(tmp_path):
    project, store = _captured(tmp_path, {"a.txt": "abc"})
    os.utime(project / "a.txt", (1_000_000, 1_000_000))
    os.chmod(project / "a.txt", 0o600)

    assert diff_against_last_capture(project, store, ["a.txt"]).empty


def test_added_and_removed_items(tmp_path):
    project, store = _captured(tmp_path, {"a.txt": "a", "old.txt": "o"})
    (project / "old.txt").unlink()
    (project / "new.txt").write_text("n", encoding="utf-8")

    result = diff_against_last_capture(project, store, ["a.txt", "new.txt"])

    assert result.added == ["new.txt"]
    assert result.removed == ["old.txt"]
    assert result.modified == []


def test_text_and_json_rendering():
    result = DiffResult(added=["new.txt"], modified=["a.txt"], removed=["old.txt"])

    text = format_diff_text(result)
    payload = json.loads(format_diff_json(result))

    assert text.splitlines() == [
        "+  new.txt",
        "-  old.txt",
        "M  a.txt",
        "",
        "Files: 1 new, 1 removed, 1 modified",
    ]
    assert payload["added"] == ["new.txt"]
    assert payload["summary"] == {"added": 1, "removed": 1, "modified": 1}
