"""Full, incremental and resumable folder scans with persisted checkpoints."""

from __future__ import annotations

import bisect
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Sequence

from notefinder.index.checkpoint import CheckpointStore
from notefinder.index.indexer import Indexer, IndexStats
from notefinder.models import ProgressEvent, ScanCheckpoint, ScanStatus
from notefinder.utils.files import list_note_files
from notefinder.watch.watcher import ChangeWatcher, WatcherUnavailable

LOGGER = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressEvent], None]


class ScanMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    RESUME = "resume"
    REEMBED = "reembed"
    REEMBED_ALL = "reembed-all"


class ScanFailedError(RuntimeError):
    """Raised once a scan has failed on every allowed attempt."""


@dataclass(slots=True)
class ScanReport:
    mode: ScanMode
    folder: str
    total_files: int = 0
    processed_files: int = 0
    removed: int = 0
    status: ScanStatus = ScanStatus.IN_PROGRESS
    stats: IndexStats = field(default_factory=IndexStats)


class ProgressThrottle:
    """Decides when a progress update is worth persisting and publishing."""

    def __init__(
        self,
        every: int = 10,
        interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.every = max(1, every)
        self.interval = interval
        self.clock = clock
        self._since_last = 0
        self._last_emit = clock()

    def tick(self, *, final: bool = False) -> bool:
        """Record one processed file and return True if an update is due."""
        self._since_last += 1
        now = self.clock()
        if final or self._since_last >= self.every or now - self._last_emit >= self.interval:
            self._since_last = 0
            self._last_emit = now
            return True
        return False


def files_after(files: Sequence[str], last_processed_path: str | None) -> List[str]:
    """Files strictly after the resume cursor, ``files`` being sorted."""
    if last_processed_path is None:
        return list(files)
    return list(files[bisect.bisect_right(files, last_processed_path):])


class ScanManager:
    """Runs scans over a notes folder and keeps the checkpoint current.

    States move ``NotStarted -> IN_PROGRESS -> COMPLETED | FAILED``. A failed or
    killed scan leaves its checkpoint behind for :meth:`resume`.
    """

    def __init__(
        self,
        indexer: Indexer,
        checkpoints: CheckpointStore,
        *,
        progress_every: int = 10,
        progress_interval: float = 2.0,
        progress_sink: ProgressSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.indexer = indexer
        self.checkpoints = checkpoints
        self.progress_every = progress_every
        self.progress_interval = progress_interval
        self.progress_sink = progress_sink
        self.clock = clock
        self._scan_lock = threading.Lock()

    def scan(self, folder: Path | str, mode: ScanMode = ScanMode.INCREMENTAL) -> ScanReport:
        if mode is ScanMode.FULL:
            return self.full_scan(folder)
        if mode is ScanMode.RESUME:
            return self.resume(folder)
        if mode is ScanMode.REEMBED:
            return self.reembed(folder)
        if mode is ScanMode.REEMBED_ALL:
            return self.reembed(folder, everything=True)
        return self.incremental_scan(folder)

    def full_scan(self, folder: Path | str) -> ScanReport:
        """Drop everything indexed and process every file again."""
        folder = _folder_key(folder)
        with self._scan_lock:
            files = self._list_files(folder)
            LOGGER.info("Full scan of %s: %d files", folder, len(files))
            self.indexer.clear()
            report = ScanReport(mode=ScanMode.FULL, folder=folder, total_files=len(files))
            checkpoint = self.checkpoints.start(folder, len(files))
            return self._run(report, checkpoint, files, remove_missing_from=None)

    def incremental_scan(self, folder: Path | str) -> ScanReport:
        """Process every file (unchanged ones short-circuit) and prune deleted ones."""
        folder = _folder_key(folder)
        with self._scan_lock:
            files = self._list_files(folder)
            LOGGER.info("Incremental scan of %s: %d files", folder, len(files))
            report = ScanReport(mode=ScanMode.INCREMENTAL, folder=folder, total_files=len(files))
            checkpoint = self.checkpoints.start(folder, len(files))
            return self._run(report, checkpoint, files, remove_missing_from=files)

    def resume(self, folder: Path | str) -> ScanReport:
        """Continue an interrupted scan after its last processed path.

        Without a usable unfinished checkpoint for this folder this is an
        incremental scan.
        """
        folder = _folder_key(folder)
        previous = self.checkpoints.get()
        if previous is None or previous.is_complete or previous.folder_path != folder:
            LOGGER.info("No interrupted scan to resume for %s, scanning incrementally", folder)
            return self.incremental_scan(folder)

        with self._scan_lock:
            files = self._list_files(folder)
            remaining = files_after(files, previous.last_processed_path)
            done = previous.processed_files
            LOGGER.info(
                "Resuming scan of %s after %s: %d of %d files left",
                folder,
                previous.last_processed_path,
                len(remaining),
                len(files),
            )
            report = ScanReport(mode=ScanMode.RESUME, folder=folder, total_files=len(files))
            report.processed_files = done
            checkpoint = self.checkpoints.start(
                folder, len(files), processed=done, last_path=previous.last_processed_path
            )
            return self._run(report, checkpoint, remaining, remove_missing_from=files)

    def reembed(self, folder: Path | str, *, everything: bool = False) -> ScanReport:
        """Fill in vectors for chunks stored while the model was unavailable.

        With ``everything`` every stored vector is regenerated instead.
        """
        folder = _folder_key(folder)
        with self._scan_lock:
            if everything:
                report = ScanReport(mode=ScanMode.REEMBED_ALL, folder=folder)
                report.processed_files = self.indexer.reembed_all()
            else:
                report = ScanReport(mode=ScanMode.REEMBED, folder=folder)
                report.processed_files = self.indexer.reembed_missing()
            report.status = ScanStatus.COMPLETED
            return report

    def _list_files(self, folder: str) -> List[str]:
        if not Path(folder).is_dir():
            raise FileNotFoundError(f"Notes folder not found: {folder}")
        return list_note_files(Path(folder), self.indexer.extensions)

    def _run(
        self,
        report: ScanReport,
        checkpoint: ScanCheckpoint,
        files: Sequence[str],
        *,
        remove_missing_from: Sequence[str] | None,
    ) -> ScanReport:
        throttle = ProgressThrottle(self.progress_every, self.progress_interval, self.clock)
        processed = report.processed_files
        last_path = checkpoint.last_processed_path
        try:
            # map yields in submission order, so the cursor only ever moves forward
            outcomes = self.indexer.executor.map(self.indexer.process_file, files)
            for position, (path, outcome) in enumerate(zip(files, outcomes), start=1):
                report.stats.increment(outcome, Path(path))
                processed += 1
                last_path = path
                if throttle.tick(final=position == len(files)):
                    self._emit(checkpoint, processed, report.total_files, last_path)

            if remove_missing_from is not None:
                report.removed = self.indexer.remove_missing(remove_missing_from)
        except Exception:
            LOGGER.exception("Scan of %s failed after %d files", report.folder, processed)
            self.checkpoints.update_progress(checkpoint, processed, last_path)
            self.checkpoints.finish(checkpoint, ScanStatus.FAILED)
            report.processed_files = processed
            report.status = ScanStatus.FAILED
            raise

        if not files:
            self._emit(checkpoint, processed, report.total_files, last_path)
        self.checkpoints.finish(checkpoint, ScanStatus.COMPLETED)
        report.processed_files = processed
        report.status = ScanStatus.COMPLETED
        LOGGER.info(
            "Scan of %s complete: %d processed, %d skipped, %d failed, %d removed",
            report.folder,
            report.stats.processed,
            report.stats.skipped,
            report.stats.failed,
            report.removed + report.stats.removed,
        )
        return report

    def _emit(self, checkpoint: ScanCheckpoint, processed: int, total: int, last_path: str | None) -> None:
        self.checkpoints.update_progress(checkpoint, processed, last_path)
        if self.progress_sink is not None:
            try:
                self.progress_sink(ProgressEvent(processed=processed, total=total, last_path=last_path))
            except Exception:
                LOGGER.exception("Progress sink failed")

    def start_background_sync(
        self,
        folder: Path | str,
        watcher: ChangeWatcher,
        *,
        rescan_interval: float = 900.0,
        initial_scan: bool = True,
    ):
        """Keep ``folder`` indexed: live watching, or periodic rescans as fallback.

        Returns the running watcher, or a :class:`PeriodicRescan` when the
        watcher cannot observe the folder.
        """
        if initial_scan:
            self.resume(folder)
        try:
            watcher.start()
            return watcher
        except WatcherUnavailable as exc:
            LOGGER.warning(
                "Live watching unavailable (%s); rescanning every %.0fs instead", exc, rescan_interval
            )
        rescanner = PeriodicRescan(lambda: self.incremental_scan(folder), rescan_interval)
        rescanner.start()
        return rescanner


class PeriodicRescan:
    """Calls ``action`` every ``interval`` seconds on a daemon thread."""

    def __init__(self, action: Callable[[], object], interval: float) -> None:
        self.action = action
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="periodic-rescan", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.action()
            except Exception:
                LOGGER.exception("Periodic rescan failed")


def run_scan_job(
    manager: ScanManager,
    folder: Path | str,
    mode: ScanMode = ScanMode.INCREMENTAL,
    *,
    max_attempts: int = 3,
    retry_delay: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> ScanReport:
    """Run a scan, retrying failed attempts from the checkpoint.

    Raises:
        ScanFailedError: once ``max_attempts`` attempts have failed; the
            checkpoint is left in the failed state.
    """
    attempt = 1
    current = mode
    while True:
        try:
            return manager.scan(folder, current)
        except Exception as exc:
            if attempt >= max_attempts:
                raise ScanFailedError(
                    f"Scan of {folder} failed after {attempt} attempts: {exc}"
                ) from exc
            LOGGER.warning("Scan attempt %d/%d failed: %s; retrying", attempt, max_attempts, exc)
            attempt += 1
            if current not in (ScanMode.REEMBED, ScanMode.REEMBED_ALL):
                current = ScanMode.RESUME
            if retry_delay:
                sleep(retry_delay)


def _folder_key(folder: Path | str) -> str:
    return str(Path(folder).absolute())
