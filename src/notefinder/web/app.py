"""FastAPI application exposing search, note listing and scans over HTTP."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from notefinder.config import AppConfig
from notefinder.index.scanner import ScanFailedError, ScanMode, run_scan_job
from notefinder.services import build_services

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="NoteFinder API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class SearchPayload(BaseModel):
    query: str
    db: Path | None = None
    limit: int = 10


class SearchHit(BaseModel):
    document_id: str
    title: str
    file_name: str
    path: str
    text: str
    score: float
    match_type: str


class ScanPayload(BaseModel):
    folder: str
    mode: ScanMode = ScanMode.INCREMENTAL
    db: Path | None = None


def _resolve_db_path(db: Path | None) -> Path:
    config = AppConfig(db_path=db if db is not None else AppConfig().db_path)
    return config.resolve_db_path(Path.cwd())


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _require_db(db: Path | None) -> Path:
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        raise HTTPException(
            status_code=404,
            detail=f"Database not found at {resolved_db}. Scan a notes folder first.",
        )
    return resolved_db


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.post("/search")
async def search_notes(payload: SearchPayload) -> dict[str, List[SearchHit]]:
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Empty query")

    limit = max(1, min(payload.limit, 50))
    resolved_db = _require_db(payload.db)

    def _search() -> list:
        services = build_services(AppConfig(), db_path=resolved_db)
        try:
            return services.searcher.search(query, limit=limit)
        finally:
            services.close()

    results = await asyncio.to_thread(_search)
    return {
        "results": [
            SearchHit(
                document_id=r.document_id,
                title=r.title,
                file_name=r.file_name,
                path=str(r.path),
                text=r.text,
                score=r.score,
                match_type=r.match_type.value,
            )
            for r in results
        ]
    }


@app.get("/documents")
async def list_documents(db: Path | None = None, limit: int | None = None) -> dict[str, Any]:
    """List indexed notes with index statistics."""
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        return {
            "documents": [],
            "stats": {
                "document_count": 0,
                "chunk_count": 0,
                "missing_embeddings": 0,
                "total_size_bytes": 0,
            },
        }

    services = build_services(AppConfig(), db_path=resolved_db)
    try:
        documents = services.store.list_documents(limit=limit)
        stats = services.store.get_stats()
    finally:
        services.close()
    return {"documents": documents, "stats": stats}


@app.delete("/documents/{doc_id}")
async def delete_document(doc_id: str, db: Path | None = None) -> dict[str, Any]:
    resolved_db = _require_db(db)
    services = build_services(AppConfig(), db_path=resolved_db)
    try:
        deleted = services.store.delete_document(doc_id)
    finally:
        services.close()

    if not deleted:
        raise HTTPException(status_code=404, detail=f"Document {doc_id} not found")
    return {"status": "ok", "deleted_id": doc_id}


@app.get("/scan/status")
async def scan_status(db: Path | None = None) -> dict[str, Any]:
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        return {"checkpoint": None}

    services = build_services(AppConfig(), db_path=resolved_db)
    try:
        checkpoint = services.checkpoints.get()
    finally:
        services.close()
    if checkpoint is None:
        return {"checkpoint": None}
    return {
        "checkpoint": {
            "folder_path": checkpoint.folder_path,
            "total_files": checkpoint.total_files,
            "processed_files": checkpoint.processed_files,
            "last_processed_path": checkpoint.last_processed_path,
            "status": checkpoint.status.value,
            "progress_percent": checkpoint.progress_percent,
            "started_at": checkpoint.started_at,
            "updated_at": checkpoint.updated_at,
        }
    }


def _run_scan_job(folder: Path, mode: ScanMode, config: AppConfig, resolved_db: Path) -> dict[str, Any]:
    services = build_services(config, db_path=resolved_db)
    try:
        report = run_scan_job(services.scanner, folder, mode, max_attempts=config.max_attempts)
    finally:
        services.close()

    return {
        "mode": report.mode.value,
        "status": report.status.value,
        "total_files": report.total_files,
        "processed": report.stats.processed,
        "skipped": report.stats.skipped,
        "failed": report.stats.failed,
        "removed": report.stats.removed + report.removed,
    }


@app.post("/scan")
async def scan_folder(payload: ScanPayload) -> dict[str, Any]:
    clean_path = payload.folder.strip().replace("\r", "").replace("\n", "")
    if not clean_path:
        raise HTTPException(status_code=400, detail="No folder provided")
    if "\0" in clean_path:
        raise HTTPException(status_code=400, detail="Invalid path: contains null byte")

    folder = Path(clean_path).expanduser().resolve()
    if not folder.is_dir():
        raise HTTPException(status_code=404, detail=f"Folder not found: {clean_path}")

    config = AppConfig()
    resolved_db = _resolve_db_path(payload.db)
    _ensure_db_parent(resolved_db)

    try:
        stats = await asyncio.to_thread(_run_scan_job, folder, payload.mode, config, resolved_db)
    except ScanFailedError as exc:
        LOGGER.error("Scan failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return {"status": "ok", "db": str(resolved_db), "stats": stats}
