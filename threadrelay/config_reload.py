"""Watchdog-based config file watcher driving service hot reload."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

LOG = logging.getLogger(__name__)


def watchdog_path_matches_config(path: str | bytes | Path | None, watch_name: str) -> bool:
    """Return true when a filesystem event path names the watched config file."""
    if not path:
        return False
    if isinstance(path, bytes):
        path = path.decode("utf-8", errors="replace")
    return Path(path).name == watch_name


class _ConfigEventHandler(FileSystemEventHandler):
    """Forward events touching one file name to a thread-safe callback."""

    def __init__(self, watch_name: str, notify: Callable[[], None]) -> None:
        super().__init__()
        self._watch_name = watch_name
        self._notify = notify

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in {"modified", "created", "moved", "deleted", "closed"}:
            return
        paths = (event.src_path, getattr(event, "dest_path", None))
        if any(watchdog_path_matches_config(path, self._watch_name) for path in paths):
            self._notify()


class ConfigReloadWatcher:
    """Watch one config file and await `on_reload(path)` after it changes.

    Bursts of events are folded into one reload after `debounce_seconds` of quiet.
    """

    def __init__(
        self,
        config_file: Path,
        on_reload: Callable[[Path], Awaitable[None]],
        *,
        debounce_seconds: float = 0.2,
    ) -> None:
        self.config_file = config_file
        self._on_reload = on_reload
        self._debounce_seconds = debounce_seconds
        self._mtime: float | None = self._current_mtime()

    def _current_mtime(self) -> float | None:
        return self.config_file.stat().st_mtime if self.config_file.exists() else None

    async def reload_if_changed(self, *, force: bool = False) -> bool:
        """Reload when the file mtime changed (or `force`); returns whether a reload ran."""
        mtime = self._current_mtime()
        if not force and (mtime is None or mtime == self._mtime):
            return False

        LOG.info("configuration change detected path=%s, reloading", self.config_file)
        await self._on_reload(self.config_file)
        self._mtime = mtime
        LOG.info("configuration reloaded path=%s", self.config_file)
        return True

    async def _watch_once(self) -> None:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        handler = _ConfigEventHandler(self.config_file.name, lambda: loop.call_soon_threadsafe(changed.set))

        observer = Observer()
        observer.schedule(handler, str(self.config_file.parent.resolve()), recursive=False)
        observer.start()
        try:
            while True:
                await changed.wait()
                changed.clear()
                await asyncio.sleep(self._debounce_seconds)
                changed.clear()
                try:
                    await self.reload_if_changed()
                except Exception as exc:
                    LOG.warning("configuration reload failed, keeping current config: %s", exc)
        finally:
            observer.stop()
            with contextlib.suppress(Exception):
                await asyncio.to_thread(observer.join, 2.0)

    async def run_forever(self) -> None:
        """Run the watch loop and restart it after watcher failures."""
        while True:
            try:
                await self._watch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.warning("config watcher failed (%s), retrying in 1s", exc)
                await asyncio.sleep(1.0)
