"""Tests for scans, resume, retries and the background sync fallback."""

from __future__ import annotations

import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from notefinder.index.checkpoint import CheckpointStore
from notefinder.index.indexer import Indexer
from notefinder.index.lexical import FTSIndex
from notefinder.index.scanner import (
    PeriodicRescan,
    ProgressThrottle,
    ScanFailedError,
    ScanManager,
    ScanMode,
    ScanReport,
    files_after,
    run_scan_job,
)
from notefinder.index.storage import SQLiteStore
from notefinder.index.vector_index import VectorIndex
from notefinder.models import ProcessOutcome, ScanStatus
from notefinder.watch.watcher import WatcherUnavailable


@pytest.fixture
def store(tmp_path: Path):
    db = SQLiteStore(tmp_path / "scan.db")
    yield db
    db.close()


@pytest.fixture
def indexer(store: SQLiteStore):
    embedder = MagicMock()
    embedder.embed.return_value = np.array([1.0, 0.0, 0.0], dtype=np.float32)
    idx = Indexer(embedder, store, VectorIndex(store, dimension=3), FTSIndex(store))
    yield idx
    idx.close()


@pytest.fixture
def checkpoints(store: SQLiteStore) -> CheckpointStore:
    return CheckpointStore(store)


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def manager(indexer: Indexer, checkpoints: CheckpointStore, events: list) -> ScanManager:
    return ScanManager(
        indexer,
        checkpoints,
        progress_every=10,
        progress_interval=2.0,
        progress_sink=events.append,
        clock=lambda: 0.0,
    )


@pytest.fixture
def folder(tmp_path: Path) -> Path:
    notes = tmp_path / "notes"
    notes.mkdir()
    for name in ["a.md", "b.md", "c.md", "d.md"]:
        (notes / name).write_text(f"Note {name}", encoding="utf-8")
    return notes


class TestFilesAfter:
    """Test the resume cursor."""

    def test_strictly_after_cursor(self) -> None:
        files = ["notes/a.md", "notes/b.md", "notes/c.md", "notes/d.md"]

        assert files_after(files, "notes/b.md") == ["notes/c.md", "notes/d.md"]

    def test_no_cursor(self) -> None:
        assert files_after(["a", "b"], None) == ["a", "b"]

    def test_cursor_no_longer_present(self) -> None:
        """A deleted cursor file still resumes at the next path in order."""
        assert files_after(["a", "c", "d"], "b") == ["c", "d"]

    def test_cursor_at_end(self) -> None:
        assert files_after(["a", "b"], "b") == []


class TestProgressThrottle:
    def test_every_n_files(self) -> None:
        throttle = ProgressThrottle(every=10, interval=1000.0, clock=lambda: 0.0)

        emitted = [i for i in range(1, 26) if throttle.tick()]

        assert emitted == [10, 20]

    def test_interval_elapsed(self) -> None:
        now = [0.0]
        throttle = ProgressThrottle(every=10, interval=2.0, clock=lambda: now[0])

        assert throttle.tick() is False
        now[0] = 2.5
        assert throttle.tick() is True
        assert throttle.tick() is False

    def test_final_always_emits(self) -> None:
        throttle = ProgressThrottle(every=10, interval=1000.0, clock=lambda: 0.0)
        assert throttle.tick(final=True) is True


class TestScans:
    """Test full and incremental scans."""

    def test_incremental_scan_indexes_everything(
        self, manager: ScanManager, folder: Path, checkpoints: CheckpointStore, store: SQLiteStore
    ) -> None:
        report = manager.scan(folder, ScanMode.INCREMENTAL)

        assert report.status is ScanStatus.COMPLETED
        assert report.total_files == 4
        assert report.processed_files == 4
        assert report.stats.processed == 4
        assert store.get_stats()["document_count"] == 4

        checkpoint = checkpoints.get()
        assert checkpoint.status is ScanStatus.COMPLETED
        assert checkpoint.processed_files == 4
        assert checkpoint.last_processed_path == str(folder / "d.md")

    def test_second_incremental_scan_skips_unchanged(self, manager: ScanManager, folder: Path) -> None:
        manager.scan(folder)

        report = manager.scan(folder)

        assert report.stats.skipped == 4
        assert report.stats.processed == 0

    def test_incremental_scan_prunes_deleted_files(
        self, manager: ScanManager, folder: Path, store: SQLiteStore
    ) -> None:
        manager.scan(folder)
        (folder / "a.md").unlink()

        report = manager.scan(folder)

        assert report.removed == 1
        assert str(folder / "a.md") not in store.all_paths()

    def test_full_scan_clears_previous_index(
        self, manager: ScanManager, folder: Path, store: SQLiteStore
    ) -> None:
        manager.scan(folder)

        report = manager.scan(folder, ScanMode.FULL)

        assert report.stats.processed == 4
        assert report.stats.skipped == 0
        assert store.get_stats()["document_count"] == 4

    def test_empty_folder_completes(
        self, manager: ScanManager, tmp_path: Path, checkpoints: CheckpointStore, events: list
    ) -> None:
        empty = tmp_path / "empty"
        empty.mkdir()

        report = manager.scan(empty)

        assert report.status is ScanStatus.COMPLETED
        assert checkpoints.get().status is ScanStatus.COMPLETED
        assert [(e.processed, e.total) for e in events] == [(0, 0)]

    def test_missing_folder(self, manager: ScanManager, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            manager.scan(tmp_path / "missing")

    def test_progress_events_are_throttled(
        self, manager: ScanManager, tmp_path: Path, events: list
    ) -> None:
        many = tmp_path / "many"
        many.mkdir()
        for i in range(25):
            (many / f"note{i:02d}.md").write_text(f"note {i}", encoding="utf-8")

        manager.scan(many)

        assert [e.processed for e in events] == [10, 20, 25]
        assert events[-1].total == 25
        assert events[-1].last_path == str(many / "note24.md")

    def test_failure_marks_checkpoint_failed(
        self, manager: ScanManager, indexer: Indexer, folder: Path, checkpoints: CheckpointStore
    ) -> None:
        real = indexer.process_file

        def flaky(path):
            if Path(path).name == "c.md":
                raise OSError("disk error")
            return real(path)

        with patch.object(indexer, "process_file", side_effect=flaky):
            with pytest.raises(OSError):
                manager.scan(folder)

        checkpoint = checkpoints.get()
        assert checkpoint.status is ScanStatus.FAILED
        assert checkpoint.processed_files == 2
        assert checkpoint.last_processed_path == str(folder / "b.md")

    def test_reembed_mode(self, manager: ScanManager, indexer: Indexer, folder: Path) -> None:
        with patch.object(indexer, "reembed_missing", return_value=3):
            report = manager.scan(folder, ScanMode.REEMBED)

        assert report.processed_files == 3
        assert report.status is ScanStatus.COMPLETED

    def test_reembed_all_mode(self, manager: ScanManager, indexer: Indexer, folder: Path) -> None:
        with patch.object(indexer, "reembed_all", return_value=4) as everything, patch.object(
            indexer, "reembed_missing"
        ) as missing:
            report = manager.scan(folder, ScanMode.REEMBED_ALL)

        assert report.mode is ScanMode.REEMBED_ALL
        assert report.processed_files == 4
        everything.assert_called_once_with()
        missing.assert_not_called()


class TestResume:
    """Test resuming an interrupted scan."""

    def test_resume_processes_only_remaining_files(
        self, manager: ScanManager, indexer: Indexer, folder: Path, checkpoints: CheckpointStore
    ) -> None:
        checkpoints.start(str(folder), 4, processed=2, last_path=str(folder / "b.md"))

        with patch.object(indexer, "process_file", return_value=ProcessOutcome.PROCESSED) as process:
            report = manager.scan(folder, ScanMode.RESUME)

        processed = sorted(call.args[0] for call in process.call_args_list)
        assert processed == [str(folder / "c.md"), str(folder / "d.md")]
        assert report.processed_files == 4
        assert checkpoints.get().status is ScanStatus.COMPLETED
        assert checkpoints.get().processed_files == 4

    def test_resume_after_failure(
        self, manager: ScanManager, indexer: Indexer, folder: Path, checkpoints: CheckpointStore
    ) -> None:
        checkpoints.finish(
            checkpoints.start(str(folder), 4, processed=3, last_path=str(folder / "c.md")),
            ScanStatus.FAILED,
        )

        with patch.object(indexer, "process_file", return_value=ProcessOutcome.PROCESSED) as process:
            manager.resume(folder)

        assert [call.args[0] for call in process.call_args_list] == [str(folder / "d.md")]

    def test_completed_checkpoint_falls_back_to_incremental(
        self, manager: ScanManager, folder: Path, checkpoints: CheckpointStore
    ) -> None:
        manager.scan(folder)

        report = manager.resume(folder)

        assert report.mode is ScanMode.INCREMENTAL
        assert report.stats.skipped == 4

    def test_other_folder_checkpoint_ignored(
        self, manager: ScanManager, folder: Path, checkpoints: CheckpointStore
    ) -> None:
        checkpoints.start("/somewhere/else", 10, processed=5, last_path="/somewhere/else/e.md")

        report = manager.resume(folder)

        assert report.mode is ScanMode.INCREMENTAL
        assert report.stats.processed == 4

    def test_no_checkpoint(self, manager: ScanManager, folder: Path) -> None:
        assert manager.resume(folder).mode is ScanMode.INCREMENTAL


class TestRunScanJob:
    """Test retry policy."""

    def test_retries_in_resume_mode(self) -> None:
        manager = MagicMock()
        report = ScanReport(mode=ScanMode.RESUME, folder="/notes", status=ScanStatus.COMPLETED)
        manager.scan.side_effect = [RuntimeError("first"), report]

        assert run_scan_job(manager, "/notes", ScanMode.FULL) is report
        assert [c.args[1] for c in manager.scan.call_args_list] == [ScanMode.FULL, ScanMode.RESUME]

    def test_gives_up_after_max_attempts(self) -> None:
        manager = MagicMock()
        manager.scan.side_effect = RuntimeError("always")
        sleep = MagicMock()

        with pytest.raises(ScanFailedError):
            run_scan_job(manager, "/notes", max_attempts=3, retry_delay=1.5, sleep=sleep)

        assert manager.scan.call_count == 3
        assert sleep.call_count == 2
        sleep.assert_called_with(1.5)

    def test_end_to_end_recovery(
        self, manager: ScanManager, indexer: Indexer, folder: Path, checkpoints: CheckpointStore
    ) -> None:
        """A transient failure is retried and the scan finishes from the checkpoint."""
        real = indexer.process_file
        failed = []

        def flaky(path):
            if Path(path).name == "c.md" and not failed:
                failed.append(path)
                raise OSError("transient")
            return real(path)

        with patch.object(indexer, "process_file", side_effect=flaky):
            report = run_scan_job(manager, folder, ScanMode.INCREMENTAL)

        assert report.mode is ScanMode.RESUME
        assert report.status is ScanStatus.COMPLETED
        assert checkpoints.get().processed_files == 4


class TestBackgroundSync:
    def test_uses_watcher_when_available(self, manager: ScanManager, folder: Path) -> None:
        watcher = MagicMock()

        with patch.object(manager, "resume") as resume:
            handle = manager.start_background_sync(folder, watcher)

        resume.assert_called_once_with(folder)
        watcher.start.assert_called_once()
        assert handle is watcher

    def test_falls_back_to_periodic_rescan(self, manager: ScanManager, folder: Path) -> None:
        watcher = MagicMock()
        watcher.start.side_effect = WatcherUnavailable("no inotify")

        handle = manager.start_background_sync(
            folder, watcher, rescan_interval=60.0, initial_scan=False
        )
        try:
            assert isinstance(handle, PeriodicRescan)
            assert handle.running
        finally:
            handle.stop(timeout=1.0)
        assert not handle.running


class TestPeriodicRescan:
    def test_runs_action_repeatedly(self) -> None:
        calls = []
        done = threading.Event()

        def action():
            calls.append(1)
            if len(calls) >= 2:
                done.set()

        rescanner = PeriodicRescan(action, 0.01)
        rescanner.start()
        try:
            assert done.wait(2.0)
        finally:
            rescanner.stop(timeout=1.0)

    def test_action_errors_do_not_stop_loop(self) -> None:
        calls = []
        done = threading.Event()

        def action():
            calls.append(1)
            if len(calls) >= 2:
                done.set()
            raise RuntimeError("scan failed")

        rescanner = PeriodicRescan(action, 0.01)
        rescanner.start()
        try:
            assert done.wait(2.0)
        finally:
            rescanner.stop(timeout=1.0)
