import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core import paths as core_paths


class CorePathsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_backup_dir_defaults_inside_project(self) -> None:
        self.assertEqual(core_paths.get_backup_dir(self.root), self.root / "backups")

    def test_backup_dir_relative_and_absolute(self) -> None:
        self.assertEqual(core_paths.get_backup_dir(self.root, ".snap"), self.root / ".snap")
        absolute = str(self.root / "elsewhere")
        self.assertEqual(core_paths.get_backup_dir(self.root, absolute), Path(absolute))

    def test_ensure_backup_structure_creates_layout(self) -> None:
        backup_dir = self.root / "backups"
        core_paths.ensure_backup_structure(backup_dir)
        for name in ("files", "archived", "databases", "queue", "state", "logs"):
            self.assertTrue((backup_dir / name).is_dir(), name)
        self.assertTrue(core_paths.get_failed_queue_dir(backup_dir).is_dir())
        self.assertTrue(core_paths.get_claims_dir(backup_dir).is_dir())

    def test_is_writable_dir_probe(self) -> None:
        missing = self.root / "missing"
        self.assertFalse(core_paths.is_writable_dir(missing))
        self.assertTrue(core_paths.is_writable_dir(missing, create=True))
        self.assertEqual(list(missing.iterdir()), [])

    @unittest.skipIf(os.name == "nt" or (hasattr(os, "geteuid") and os.geteuid() == 0), "root ignores mode bits")
    def test_is_writable_dir_rejects_read_only(self) -> None:
        locked = self.root / "locked"
        locked.mkdir()
        locked.chmod(0o500)
        try:
            self.assertFalse(core_paths.is_writable_dir(locked))
        finally:
            locked.chmod(0o700)

    def test_safe_label(self) -> None:
        self.assertEqual(core_paths.safe_label("Google Drive/Work"), "Google-Drive-Work")
        self.assertEqual(core_paths.safe_label("  ***  "), "destination")

    def test_settings_search_order(self) -> None:
        with mock.patch.dict(os.environ, {"CHECKPOINT_CONFIG_HOME": str(self.root / "cfg")}):
            paths = core_paths.get_default_settings_paths(self.root)
        self.assertEqual(paths[0], self.root / ".checkpoint.json")
        self.assertEqual(paths[1], (self.root / "cfg").resolve() / "settings.json")

    def test_resolve_project_root_from_environment(self) -> None:
        with mock.patch.dict(os.environ, {"CHECKPOINT_PROJECT": str(self.root)}):
            self.assertEqual(core_paths.resolve_project_root(), self.root.resolve())
        self.assertEqual(core_paths.resolve_project_root(self.root), self.root.resolve())


if __name__ == "__main__":
    unittest.main()
