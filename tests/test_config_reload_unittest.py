import asyncio
import os
import tempfile
import unittest
from pathlib import Path

from watchdog.events import FileModifiedEvent, FileMovedEvent

from threadrelay.config_reload import ConfigReloadWatcher, _ConfigEventHandler, watchdog_path_matches_config


class WatchdogPathMatchTests(unittest.TestCase):
    def test_matches_same_filename_for_absolute_path(self) -> None:
        self.assertTrue(watchdog_path_matches_config("/tmp/work/config.yaml", "config.yaml"))

    def test_matches_bytes_path(self) -> None:
        self.assertTrue(watchdog_path_matches_config(b"/tmp/work/config.yaml", "config.yaml"))

    def test_does_not_match_different_filename(self) -> None:
        self.assertFalse(watchdog_path_matches_config("/tmp/work/other.yaml", "config.yaml"))

    def test_does_not_match_none(self) -> None:
        self.assertFalse(watchdog_path_matches_config(None, "config.yaml"))


class ConfigEventHandlerTests(unittest.TestCase):
    def test_notifies_for_watched_file_including_move_target(self) -> None:
        hits: list[int] = []
        handler = _ConfigEventHandler("config.yaml", lambda: hits.append(1))

        handler.on_any_event(FileModifiedEvent("/etc/app/other.yaml"))
        handler.on_any_event(FileModifiedEvent("/etc/app/config.yaml"))
        handler.on_any_event(FileMovedEvent("/etc/app/.config.yaml.swp", "/etc/app/config.yaml"))

        self.assertEqual(len(hits), 2)


class ReloadIfChangedTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "config.yaml"
        self.path.write_text("upstream_model: a\n", encoding="utf-8")
        self.reloaded: list[Path] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def _on_reload(self, path: Path) -> None:
        self.reloaded.append(path)

    def test_reloads_only_after_mtime_changes(self) -> None:
        watcher = ConfigReloadWatcher(self.path, self._on_reload)

        self.assertFalse(asyncio.run(watcher.reload_if_changed()))
        stat = self.path.stat()
        os.utime(self.path, (stat.st_atime, stat.st_mtime + 5))
        self.assertTrue(asyncio.run(watcher.reload_if_changed()))
        self.assertFalse(asyncio.run(watcher.reload_if_changed()))
        self.assertEqual(self.reloaded, [self.path])

    def test_failed_reload_is_retried_on_next_change(self) -> None:
        async def failing(path: Path) -> None:
            raise ValueError("bad yaml")

        watcher = ConfigReloadWatcher(self.path, failing)
        stat = self.path.stat()
        os.utime(self.path, (stat.st_atime, stat.st_mtime + 5))

        with self.assertRaises(ValueError):
            asyncio.run(watcher.reload_if_changed())
        watcher._on_reload = self._on_reload
        self.assertTrue(asyncio.run(watcher.reload_if_changed()))

    def test_force_reload_ignores_mtime(self) -> None:
        watcher = ConfigReloadWatcher(self.path, self._on_reload)

        self.assertTrue(asyncio.run(watcher.reload_if_changed(force=True)))
        self.assertEqual(len(self.reloaded), 1)


if __name__ == "__main__":
    unittest.main()
