"""FastAPI application backing the filescout web UI."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from filescout.config import AppConfig, ScanRuleSet
from filescout.embedding.encoder import EmbeddingClient
from filescout.errors import InvalidRule, ScanAlreadyRunning
from filescout.index.pipeline import ScanPipeline, ScanRunner
from filescout.index.search import HybridSearcher
from filescout.index.storage import SQLiteFileStore
from filescout.models import Category, FileRecord, ScanPhase, SearchFilters, SearchResult
from filescout.progress import QueueSink
from filescout.web.frontend import router as frontend_router

LOGGER = logging.getLogger(__name__)


@dataclass
class Services:
    """Long-lived objects shared by the endpoints for one database."""

    config: AppConfig
    store: SQLiteFileStore
    client: EmbeddingClient
    searcher: HybridSearcher
    runner: ScanRunner
    progress: QueueSink

    def close(self) -> None:
        self.runner.shutdown()
        self.searcher.close()
        self.client.close()
        self.store.close()


_SERVICES: Dict[Path, Services] = {}
_SERVICES_LOCK = threading.Lock()


def _resolve_db_path(db: Path | None) -> Path:
    config = AppConfig.from_env()
    if db is not None:
        config.db_path = Path(db)
    return config.resolve_db_path(Path.cwd())


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _build_services(db_path: Path) -> Services:
    config = AppConfig.from_env()
    config.db_path = db_path
    client = EmbeddingClient.from_config(config)
    store = SQLiteFileStore(db_path, dimension=config.embedding_dimension)
    progress = QueueSink()
    pipeline = ScanPipeline(client, store, config, ScanRuleSet.default(), progress)
    return Services(
        config=config,
        store=store,
        client=client,
        searcher=HybridSearcher(client, store),
        runner=ScanRunner(pipeline),
        progress=progress,
    )


def get_services(db: Path | None = None) -> Services:
    resolved_db = _resolve_db_path(db)
    with _SERVICES_LOCK:
        services = _SERVICES.get(resolved_db)
        if services is None:
            _ensure_db_parent(resolved_db)
            services = _build_services(resolved_db)
            _SERVICES[resolved_db] = services
        return services


def close_services() -> None:
    with _SERVICES_LOCK:
        for services in _SERVICES.values():
            services.close()
        _SERVICES.clear()


@asynccontextmanager
async def lifespan(_: FastAPI):
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    yield
    close_services()


app = FastAPI(title="filescout Web", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(frontend_router)


class SearchPayload(BaseModel):
    query: str
    db: Path | None = None
    top_k: int = 10
    extension: str | None = None
    path_prefix: str | None = None
    min_score: float | None = None


class ScanPayload(BaseModel):
    phase: ScanPhase = ScanPhase.VIP
    paths: List[str] = Field(default_factory=list)
    rules: Dict[str, List[str]] | None = None
    db: Path | None = None


def _record_to_dict(record: FileRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "path": str(record.path),
        "name": record.name,
        "extension": record.extension,
        "category": record.category.value,
        "content_processed": record.content_processed,
        "needs_retry": record.needs_retry,
        "drive": record.drive,
        "size": record.size,
        "modified_at": record.modified_at,
        "importance": record.importance,
        "updated_at": record.record_updated_at,
    }


def _result_to_dict(result: SearchResult) -> dict[str, Any]:
    data = _record_to_dict(result.record)
    data.update(
        score=result.score,
        vector_score=result.vector_score,
        text_score=result.text_score,
        match_type=result.match_type,
        snippet=result.snippet,
    )
    return data


def _safe_base_dir() -> Path:
    return Path(os.path.realpath(str(Path.home())))


def _validate_scan_paths(raw_paths: List[str]) -> List[Path]:
    """Resolve user-supplied folders, keeping them inside the home directory."""
    safe_base = str(_safe_base_dir()) + os.sep
    resolved: List[Path] = []
    for raw in raw_paths:
        clean = raw.strip().replace("\r", "").replace("\n", "")
        if not clean:
            continue
        if "\0" in clean:
            raise HTTPException(status_code=400, detail="Invalid path: contains null byte")
        real_path = os.path.realpath(os.path.expanduser(clean))
        if not (real_path + os.sep).startswith(safe_base):
            raise HTTPException(
                status_code=403, detail="Access denied: path is outside allowed directory"
            )
        path = Path(real_path)
        if not path.exists():
            raise HTTPException(status_code=404, detail=f"Path not found: {clean}")
        if not path.is_dir():
            raise HTTPException(status_code=400, detail=f"Path must be a directory: {clean}")
        resolved.append(path)
    return resolved


@app.post("/search")
async def search_files(payload: SearchPayload) -> dict[str, Any]:
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Empty query")
    top_k = max(1, min(payload.top_k, 50))

    resolved_db = _resolve_db_path(payload.db)
    if not resolved_db.exists():
        raise HTTPException(
            status_code=404,
            detail=f"Database not found at {resolved_db}. Run a scan first.",
        )
    services = get_services(payload.db)
    filters = SearchFilters.build(payload.extension, payload.path_prefix, payload.min_score)
    results = await asyncio.to_thread(
        services.searcher.search, query, top_k, filters=filters
    )
    return {"results": [_result_to_dict(result) for result in results]}


@app.post("/scan")
async def start_scan(payload: ScanPayload) -> dict[str, Any]:
    raw_rules = dict(payload.rules or {})
    # Included paths from the rule payload get the same home-directory check.
    paths = _validate_scan_paths([*payload.paths, *raw_rules.pop("included_paths", [])])
    try:
        base = ScanRuleSet.from_dict(raw_rules) if payload.rules else ScanRuleSet.default()
        rules = base.with_included_paths(paths)
        rules.validate()
    except InvalidRule as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if payload.phase is ScanPhase.VIP and not rules.included_paths:
        raise HTTPException(status_code=400, detail="No path provided")

    services = get_services(payload.db)
    try:
        services.runner.start(payload.phase, rules)
    except ScanAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"status": "started", "phase": payload.phase.value}


@app.get("/scan/status")
async def scan_status(db: Path | None = None) -> dict[str, Any]:
    services = get_services(db)
    events = services.progress.drain()
    status = services.runner.status()
    if events:
        last = events[-1]
        status["progress"] = {
            "stage": last.stage.value,
            "current": last.current,
            "total": last.total,
            "current_file": last.current_file,
        }
    return status


@app.post("/scan/cancel")
async def cancel_scan(db: Path | None = None) -> dict[str, Any]:
    services = get_services(db)
    return {"status": "ok", "cancelled": services.runner.cancel()}


@app.get("/files")
async def list_files(
    db: Path | None = None,
    limit: int = 100,
    offset: int = 0,
    category: Category | None = None,
) -> dict[str, Any]:
    """List indexed files with database statistics."""
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        return {"files": [], "stats": {"files": 0, "content_processed": 0, "embeddings": 0}}
    services = get_services(db)
    records = await asyncio.to_thread(
        services.store.list_records,
        limit=max(1, min(limit, 1000)),
        offset=max(0, offset),
        category=category,
    )
    stats = await asyncio.to_thread(services.store.get_stats)
    return {"files": [_record_to_dict(record) for record in records], "stats": stats}


@app.delete("/files/cleanup")
async def cleanup_missing_files(db: Path | None = None) -> dict[str, Any]:
    """Remove records whose files no longer exist on disk."""
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        raise HTTPException(status_code=404, detail="Database not found")
    services = get_services(db)
    removed_count = await asyncio.to_thread(services.store.remove_missing_files)
    return {"status": "ok", "removed_count": removed_count}


@app.delete("/files/{file_id}")
async def delete_file(file_id: int, db: Path | None = None) -> dict[str, Any]:
    """Delete a record and its embedding by ID."""
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        raise HTTPException(status_code=404, detail="Database not found")
    services = get_services(db)
    deleted = await asyncio.to_thread(services.store.delete_record, file_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"File with ID {file_id} not found")
    return {"status": "ok", "deleted_id": file_id}


@app.get("/stats")
async def get_stats(db: Path | None = None) -> dict[str, Any]:
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        raise HTTPException(status_code=404, detail="Database not found")
    services = get_services(db)
    return await asyncio.to_thread(services.store.get_stats)
