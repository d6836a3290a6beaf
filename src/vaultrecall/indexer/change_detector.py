from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TYPE_CHECKING

from ..utils import is_excluded, relpath
from .idle import ActivityMonitor

if TYPE_CHECKING:
    from .manager import IndexManager

logger = logging.getLogger(__name__)


@dataclass
class ChangeDetector:
    """Filesystem change detector using watchdog.

    Watchdog delivers events on its own thread; each one is handed to the
    manager's loop, where edits go through the manager's debouncer and
    deletions are applied at once. Every event also counts as activity for
    the idle timer.
    """
    root: Path
    manager: "IndexManager"
    loop: asyncio.AbstractEventLoop
    activity: Optional[ActivityMonitor] = None

    def _accepts(self, rel: str) -> bool:
        if any(part.startswith(".") for part in rel.split("/")):
            return False
        if not rel.lower().endswith(tuple(e.lower() for e in self.manager.cfg.extensions)):
            return False
        return not is_excluded(rel, self.manager.cfg.exclude_folders)

    def _touch(self) -> None:
        if self.activity is not None:
            self.activity.notify()

    def _changed(self, rel: str) -> None:
        self._touch()
        self.manager.debounced_update(rel)

    def _deleted(self, rel: str) -> None:
        self._touch()
        self.manager.remove_file(rel)

    def schedule_update(self, rel: str) -> None:
        if self._accepts(rel):
            self.loop.call_soon_threadsafe(self._changed, rel)

    def schedule_delete(self, rel: str) -> None:
        if self._accepts(rel):
            self.loop.call_soon_threadsafe(self._deleted, rel)

    def start(self):
        """Start a watchdog observer on the vault. Returns it; the caller stops and joins it."""
        from watchdog.observers import Observer  # type: ignore
        from watchdog.events import FileSystemEventHandler  # type: ignore

        # Resolve symlinks to match watchdog's resolved paths (e.g., /tmp -> /private/tmp on macOS)
        root = self.root.resolve()

        class Handler(FileSystemEventHandler):
            def __init__(self, outer: "ChangeDetector") -> None:
                self.outer = outer

            def _rel(self, path) -> Optional[str]:
                try:
                    return relpath(root, Path(path))
                except ValueError:
                    return None

            def on_created(self, event):  # noqa
                if event.is_directory:
                    return
                rel = self._rel(event.src_path)
                if rel:
                    self.outer.schedule_update(rel)

            def on_modified(self, event):  # noqa
                if event.is_directory:
                    return
                rel = self._rel(event.src_path)
                if rel:
                    self.outer.schedule_update(rel)

            def on_deleted(self, event):  # noqa
                if event.is_directory:
                    return
                rel = self._rel(event.src_path)
                if rel:
                    self.outer.schedule_delete(rel)

            def on_moved(self, event):  # noqa
                if event.is_directory:
                    return
                rel_src = self._rel(event.src_path)
                rel_dst = self._rel(event.dest_path)
                if rel_src:
                    self.outer.schedule_delete(rel_src)
                if rel_dst:
                    self.outer.schedule_update(rel_dst)

        observer = Observer()
        observer.schedule(Handler(self), str(root), recursive=True)
        observer.start()
        logger.info(f"Watching {root}")
        return observer
