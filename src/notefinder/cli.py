"""Command line interface for NoteFinder."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from notefinder.config import AppConfig
from notefinder.index.scanner import ScanFailedError, ScanMode, run_scan_job
from notefinder.models import ProgressEvent
from notefinder.services import build_services
from notefinder.web.app import app as web_app

console = Console()
app = typer.Typer(help="NoteFinder - local hybrid search for markdown and text notes")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _config(db: Path | None, model_dir: Path | None = None) -> AppConfig:
    defaults = AppConfig()
    return AppConfig(
        db_path=db if db is not None else defaults.db_path,
        model_dir=model_dir if model_dir is not None else defaults.model_dir,
    )


def _print_progress(event: ProgressEvent) -> None:
    console.print(f"[dim]{event.processed}/{event.total}[/dim] {event.last_path or ''}")


@app.command()
def scan(
    folder: Path = typer.Argument(..., help="Notes folder to index.", resolve_path=True),
    mode: ScanMode = typer.Option(ScanMode.INCREMENTAL, "--mode", "-m", help="Scan mode"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model_dir: Path = typer.Option(None, "--model-dir", help="Directory with the ONNX model and vocab.txt"),
    chunk_chars: int = typer.Option(AppConfig().chunk_chars, help="Chunk size in characters"),
    overlap: int = typer.Option(AppConfig().overlap, help="Chunk overlap"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Index a notes folder (incremental, full, resume, reembed or reembed-all)."""
    _setup_logging(verbose)
    if not folder.is_dir():
        raise typer.BadParameter(f"Folder not found: {folder}")

    config = _config(db, model_dir)
    config.chunk_chars = chunk_chars
    config.overlap = overlap
    resolved_db = config.resolve_db_path(Path.cwd())
    _ensure_db_parent(resolved_db)

    services = build_services(config, db_path=resolved_db, progress_sink=_print_progress)
    console.print(f"Indexing [bold]{folder}[/bold] into [bold]{resolved_db}[/bold] ({mode.value})...")
    try:
        report = run_scan_job(services.scanner, folder, mode, max_attempts=config.max_attempts)
    except ScanFailedError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        services.close()

    stats = report.stats
    console.print(
        f"Processed: {stats.processed}, skipped: {stats.skipped}, failed: {stats.failed}, "
        f"removed: {stats.removed + report.removed}"
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model_dir: Path = typer.Option(None, "--model-dir", help="Directory with the ONNX model and vocab.txt"),
    top_k: int = typer.Option(10, help="Number of results to display"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Run a hybrid keyword and semantic search."""
    _setup_logging(verbose)
    config = _config(db, model_dir)
    resolved_db = config.resolve_db_path(Path.cwd())

    if not resolved_db.exists():
        raise typer.BadParameter(f"Database not found: {resolved_db}")

    services = build_services(config, db_path=resolved_db)
    try:
        results = services.searcher.search(query, limit=top_k)
    finally:
        services.close()

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Match")
    table.add_column("Note")
    table.add_column("Snippet")

    for result in results:
        snippet = result.text.replace("\n", " ")
        table.add_row(f"{result.score:.4f}", result.match_type.value, result.title, snippet[:180])

    console.print(table)


@app.command()
def watch(
    folder: Path = typer.Argument(..., help="Notes folder to watch.", resolve_path=True),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model_dir: Path = typer.Option(None, "--model-dir", help="Directory with the ONNX model and vocab.txt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Keep a folder indexed until interrupted."""
    _setup_logging(verbose)
    if not folder.is_dir():
        raise typer.BadParameter(f"Folder not found: {folder}")

    config = _config(db, model_dir)
    resolved_db = config.resolve_db_path(Path.cwd())
    _ensure_db_parent(resolved_db)

    services = build_services(config, db_path=resolved_db, progress_sink=_print_progress)
    handle = services.scanner.start_background_sync(
        folder, services.watcher_for(folder), rescan_interval=config.rescan_interval
    )
    console.print(f"Watching [bold]{folder}[/bold]. Press Ctrl+C to stop.")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        console.print("Stopping...")
    finally:
        handle.stop()
        services.close()


@app.command()
def status(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Show index statistics and the last scan checkpoint."""
    config = _config(db)
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]Database not found, nothing indexed yet.[/yellow]")
        return

    services = build_services(config, db_path=resolved_db)
    try:
        stats = services.store.get_stats()
        checkpoint = services.checkpoints.get()
    finally:
        services.close()

    console.print(
        f"Notes: {stats['document_count']}, chunks: {stats['chunk_count']}, "
        f"missing vectors: {stats['missing_embeddings']}"
    )
    if checkpoint is None:
        console.print("No scan recorded.")
    else:
        console.print(
            f"Last scan of {checkpoint.folder_path}: {checkpoint.status.value} "
            f"({checkpoint.processed_files}/{checkpoint.total_files}, {checkpoint.progress_percent}%)"
        )


@app.command()
def documents(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    limit: int = typer.Option(20, help="Number of notes to list"),
) -> None:
    """List indexed notes, most recently modified first."""
    config = _config(db)
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]Database not found, nothing indexed yet.[/yellow]")
        return

    services = build_services(config, db_path=resolved_db)
    try:
        rows = services.store.list_documents(limit=limit)
    finally:
        services.close()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Title")
    table.add_column("Words")
    table.add_column("Chunks")
    table.add_column("Path")
    for row in rows:
        table.add_row(row["title"], str(row["word_count"]), str(row["chunk_count"]), row["path"])
    console.print(table)


@app.command()
def prune(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Remove notes whose files no longer exist."""
    config = _config(db)
    resolved_db = config.resolve_db_path(Path.cwd())

    if not resolved_db.exists():
        console.print("[yellow]Database not found, nothing to prune.[/yellow]")
        return

    services = build_services(config, db_path=resolved_db)
    try:
        removed = services.indexer.remove_missing()
    finally:
        services.close()
    console.print(f"Removed {removed} orphaned notes.")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
) -> None:
    """Start the HTTP API."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover - optional extra
        raise typer.BadParameter(
            "uvicorn is not installed. Install the web extras with \"python -m pip install '.[web]'\""
        ) from exc

    console.print(f"Starting API on http://{host}:{port}")
    uvicorn.run(web_app, host=host, port=port, reload=False, log_level="info")
