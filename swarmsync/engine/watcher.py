"""Filesystem change notifications for signal, question and task files.

watchdog delivers events on its observer thread; each path is handed
to the event loop with ``call_soon_threadsafe`` so every consumer runs
on the loop and never touches engine state from another thread.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

PathCallback = Callable[[Path], None]


class _LoopForwarder(FileSystemEventHandler):
    """Forwards file events for watched names onto the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, callback: PathCallback) -> None:
        self._loop = loop
        self._callback = callback

    def _forward(self, raw_path: str | bytes) -> None:
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode("utf-8", errors="replace")
        path = Path(raw_path)
        try:
            self._loop.call_soon_threadsafe(self._callback, path)
        except RuntimeError:
            # Loop closed during shutdown.
            pass

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writers rename a temp file over the target.
        if not event.is_directory:
            self._forward(event.dest_path)


class ChangeWatcher:
    """Watches a set of directories (non-recursive) while running."""

    def __init__(self, directories: list[Path], callback: PathCallback) -> None:
        self._directories = sorted({Path(d) for d in directories})
        self._callback = callback
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        loop = asyncio.get_running_loop()
        handler = _LoopForwarder(loop, self._callback)
        observer = Observer()
        watched = 0
        for directory in self._directories:
            if not directory.is_dir():
                logger.warning("Not watching missing directory %s", directory)
                continue
            observer.schedule(handler, str(directory), recursive=False)
            watched += 1
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("File watcher started dirs=%d", watched)

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=2.0)
        logger.info("File watcher stopped")
