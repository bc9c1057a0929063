"""Live folder watching with per-file debouncing.

Editors often write a file several times in quick succession (autosave, swap
files, atomic renames). Each path gets its own timer; every new event for the
path restarts it, and only when the quiet period passes is a single re-index
or removal dispatched.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Sequence, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from notefinder.utils.files import DEFAULT_EXTENSIONS, is_note_path

LOGGER = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.5


class WatcherUnavailable(RuntimeError):
    """Raised when the folder cannot be observed for changes."""


class ChangeKind(str, Enum):
    UPSERT = "upsert"
    REMOVE = "remove"


class Debouncer:
    """Coalesces bursts of actions per key into the last one.

    Each ``submit`` for a key cancels the pending timer for that key and starts
    a new one. A generation token guards against a superseded timer that had
    already started firing when it was cancelled.
    """

    def __init__(
        self,
        delay: float = DEFAULT_DEBOUNCE_SECONDS,
        *,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self.delay = delay
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._pending: Dict[str, Tuple[int, threading.Timer]] = {}
        self._generation = 0
        self._closed = False

    def submit(self, key: str, action: Callable[[], Any]) -> None:
        with self._lock:
            if self._closed:
                return
            self._generation += 1
            token = self._generation
            previous = self._pending.get(key)
            if previous is not None:
                previous[1].cancel()
            timer = self._timer_factory(self.delay, self._fire, args=(key, token, action))
            timer.daemon = True
            self._pending[key] = (token, timer)
            timer.start()

    def _fire(self, key: str, token: int, action: Callable[[], Any]) -> None:
        with self._lock:
            current = self._pending.get(key)
            if current is None or current[0] != token:
                return
            del self._pending[key]
        try:
            action()
        except Exception:
            LOGGER.exception("Debounced action for %s failed", key)

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def cancel_all(self) -> None:
        with self._lock:
            self._closed = True
            for _, timer in self._pending.values():
                timer.cancel()
            self._pending.clear()

    def reopen(self) -> None:
        """Accept submissions again after ``cancel_all``."""
        with self._lock:
            self._closed = False


class ChangeWatcher(FileSystemEventHandler):
    """Keeps the index in step with create/modify/delete/move events.

    ``on_upsert`` and ``on_remove`` receive absolute paths. They run on
    ``executor`` when given, otherwise on the debounce timer thread.
    """

    def __init__(
        self,
        folder: Path | str,
        on_upsert: Callable[[str], Any],
        on_remove: Callable[[str], Any],
        *,
        extensions: Sequence[str] = DEFAULT_EXTENSIONS,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        executor: Executor | None = None,
        recursive: bool = True,
    ) -> None:
        super().__init__()
        self.folder = Path(folder).absolute()
        self.on_upsert = on_upsert
        self.on_remove = on_remove
        self.extensions = tuple(extensions)
        self.executor = executor
        self.recursive = recursive
        self.debouncer = Debouncer(debounce)
        self._observer: Observer | None = None

    @classmethod
    def for_indexer(cls, folder: Path | str, indexer, **kwargs) -> "ChangeWatcher":
        kwargs.setdefault("extensions", indexer.extensions)
        kwargs.setdefault("executor", indexer.executor)
        return cls(folder, indexer.process_file, indexer.remove_file, **kwargs)

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        if not self.folder.is_dir():
            raise WatcherUnavailable(f"Not a directory: {self.folder}")
        self.debouncer.reopen()
        observer = Observer()
        try:
            observer.schedule(self, str(self.folder), recursive=self.recursive)
            observer.start()
        except OSError as exc:
            raise WatcherUnavailable(f"Cannot watch {self.folder}: {exc}") from exc
        self._observer = observer
        LOGGER.info("Watching %s for note changes", self.folder)

    def stop(self, timeout: float | None = None) -> None:
        self.debouncer.cancel_all()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout)
            self._observer = None

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.schedule(event.src_path, ChangeKind.UPSERT)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.schedule(event.src_path, ChangeKind.UPSERT)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.schedule(event.src_path, ChangeKind.REMOVE)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self.schedule(event.src_path, ChangeKind.REMOVE)
        self.schedule(event.dest_path, ChangeKind.UPSERT)

    def schedule(self, path: str | bytes, kind: ChangeKind) -> None:
        """Debounce a change for ``path``; the latest kind wins."""
        if isinstance(path, bytes):
            path = path.decode("utf-8", "surrogateescape")
        if not path or not is_note_path(path, self.extensions):
            return
        full_path = str(Path(path).absolute())
        LOGGER.debug("Change (%s) for %s", kind.value, full_path)
        self.debouncer.submit(full_path, lambda: self._dispatch(full_path, kind))

    def _dispatch(self, path: str, kind: ChangeKind) -> None:
        handler = self.on_upsert if kind is ChangeKind.UPSERT else self.on_remove
        if self.executor is not None:
            future = self.executor.submit(handler, path)
            future.add_done_callback(lambda f: _log_failure(f, path))
        else:
            handler(path)


def _log_failure(future, path: str) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        LOGGER.error("Failed to apply change for %s: %s", path, exc)
