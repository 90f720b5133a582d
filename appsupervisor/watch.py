"""
File watching for apps with watch enabled.

A watchdog observer thread reports changes under the app's working directory.
Changes are handed to the asyncio loop and debounced there, so a burst of
writes (an editor save, a git checkout) produces a single restart request.
"""

import asyncio
import logging
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

RELEVANT_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED}


class Debouncer:
    """Calls `callback` once, `delay` seconds after the last of a burst of triggers."""

    def __init__(self, delay: float, callback: Callable[[], None], loop: asyncio.AbstractEventLoop = None):
        self.delay = delay
        self._callback = callback
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self):
        """Restart the quiet period. Must run on the event loop thread."""
        loop = self._loop or asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self._fire)

    def trigger_threadsafe(self):
        self._loop.call_soon_threadsafe(self.trigger)

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self):
        self._handle = None
        self._callback()


class ChangeHandler(FileSystemEventHandler):
    """Forwards relevant, non-ignored filesystem events to `on_change`."""

    def __init__(self, root: Path, ignore: list[str], on_change: Callable[[str], None]):
        super().__init__()
        self.root = Path(root)
        self.ignore = list(ignore)
        self._on_change = on_change

    def is_ignored(self, path_str: str) -> bool:
        path = Path(path_str)
        try:
            parts = path.relative_to(self.root).parts
        except ValueError:
            parts = path.parts
        return any(fnmatch(part, pattern) for part in parts for pattern in self.ignore)

    def on_any_event(self, event):
        if event.event_type not in RELEVANT_EVENTS:
            return
        # Directory mtime changes accompany every file change inside them
        if event.is_directory and event.event_type == EVENT_TYPE_MODIFIED:
            return
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        if all(not p or self.is_ignored(p) for p in paths):
            return
        logger.debug(f"Watch event: {event.event_type} on {event.src_path}")
        self._on_change(event.src_path)


class DirectoryWatcher:
    """Watches one app's working directory and calls `on_settled` after each burst of changes."""

    def __init__(
        self,
        app_name: str,
        root: Path,
        ignore: list[str],
        debounce: float,
        on_settled: Callable[[str], None],
        loop: asyncio.AbstractEventLoop,
    ):
        self.app_name = app_name
        self.root = Path(root)
        self.debouncer = Debouncer(debounce, lambda: on_settled(app_name), loop=loop)
        self.handler = ChangeHandler(self.root, ignore, lambda _path: self.debouncer.trigger_threadsafe())
        self._observer = None

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self):
        if self._observer is not None:
            return
        self._observer = Observer()
        self._observer.schedule(self.handler, str(self.root), recursive=True)
        self._observer.start()
        logger.info(f"Watching {self.root} for changes to {self.app_name}")

    def stop(self):
        self.debouncer.cancel()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info(f"Stopped watching {self.root} for {self.app_name}")
