"""Persistent scan checkpoint (a single row) with change notification."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List

from notefinder.index.storage import SQLiteStore
from notefinder.models import ScanCheckpoint, ScanStatus

LOGGER = logging.getLogger(__name__)

CheckpointListener = Callable[[ScanCheckpoint], None]


class CheckpointStore:
    def __init__(self, store: SQLiteStore, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock
        self._listeners: List[CheckpointListener] = []
        self._listeners_lock = threading.Lock()

    def get(self) -> ScanCheckpoint | None:
        """Current checkpoint, or None when absent or unreadable."""
        with self.store.reading() as conn:
            row = conn.execute("SELECT * FROM scan_progress WHERE id = 1").fetchone()
        if row is None:
            return None
        try:
            return ScanCheckpoint(
                folder_path=row["folder_path"],
                total_files=int(row["total_files"]),
                processed_files=int(row["processed_files"]),
                last_processed_path=row["last_processed_path"],
                started_at=float(row["started_at"]),
                updated_at=float(row["updated_at"]),
                status=ScanStatus(row["status"]),
            )
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Ignoring unreadable scan checkpoint: %s", exc)
            return None

    def start(self, folder: str, total_files: int, *, processed: int = 0,
              last_path: str | None = None) -> ScanCheckpoint:
        now = self.clock()
        checkpoint = ScanCheckpoint(
            folder_path=folder,
            total_files=total_files,
            processed_files=processed,
            last_processed_path=last_path,
            started_at=now,
            updated_at=now,
            status=ScanStatus.IN_PROGRESS,
        )
        self.save(checkpoint)
        return checkpoint

    def save(self, checkpoint: ScanCheckpoint) -> None:
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO scan_progress(id, folder_path, total_files,
                    processed_files, last_processed_path, started_at, updated_at, status)
                VALUES (1, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    checkpoint.folder_path,
                    checkpoint.total_files,
                    checkpoint.processed_files,
                    checkpoint.last_processed_path,
                    checkpoint.started_at,
                    checkpoint.updated_at,
                    checkpoint.status.value,
                ),
            )
        self._notify(checkpoint)

    def update_progress(self, checkpoint: ScanCheckpoint, processed: int,
                        last_path: str | None) -> ScanCheckpoint:
        checkpoint.processed_files = processed
        checkpoint.last_processed_path = last_path
        checkpoint.updated_at = self.clock()
        self.save(checkpoint)
        return checkpoint

    def finish(self, checkpoint: ScanCheckpoint, status: ScanStatus) -> ScanCheckpoint:
        checkpoint.status = status
        checkpoint.updated_at = self.clock()
        self.save(checkpoint)
        return checkpoint

    def clear(self) -> None:
        with self.store.transaction() as conn:
            conn.execute("DELETE FROM scan_progress WHERE id = 1")

    def subscribe(self, listener: CheckpointListener) -> Callable[[], None]:
        """Call ``listener`` after every save. Returns an unsubscribe function."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, checkpoint: ScanCheckpoint) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(checkpoint)
            except Exception:
                LOGGER.exception("Checkpoint listener failed")
