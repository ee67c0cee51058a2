# knowledge_index/main.py
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import redis.asyncio as aioredis
import uvicorn
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError

from knowledge_index import db
from knowledge_index.config import settings
from knowledge_index.deepinfra import DeepInfraEmbedder, close_default_client
from knowledge_index.embeddings import EmbeddingBatcher
from knowledge_index.exceptions import DocumentNotFound, EmbeddingProviderFailure
from knowledge_index.ingest import IngestionOrchestrator
from knowledge_index.metrics import search_requests_total, uploads_total
from knowledge_index.progress import create_progress_store
from knowledge_index.schemas import (ContextResponse, DeleteResponse, DocumentCreateRequest, IngestAccepted,
                                     IngestionSource, SearchRequest, SearchResponse, StatsResponse,
                                     StatusResponse)
from knowledge_index.search import SearchService
from knowledge_index.storage import UploadTooLarge, remove_file, safe_filename, save_upload
from knowledge_index.vector_store import VectorStore

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ---- component wiring (overridable via app.dependency_overrides) ----

_redis = None
_store: Optional[VectorStore] = None
_batcher: Optional[EmbeddingBatcher] = None
_orchestrator: Optional[IngestionOrchestrator] = None
_search: Optional[SearchService] = None


def get_redis():
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


def get_store() -> VectorStore:
    global _store
    if _store is None:
        _store = VectorStore()
    return _store


def get_batcher() -> EmbeddingBatcher:
    global _batcher
    if _batcher is None:
        _batcher = EmbeddingBatcher(DeepInfraEmbedder())
    return _batcher


def get_orchestrator() -> IngestionOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        client = get_redis() if settings.progress_backend == "redis" else None
        _orchestrator = IngestionOrchestrator(
            store=get_store(),
            batcher=get_batcher(),
            progress=create_progress_store(client=client),
        )
    return _orchestrator


def get_search_service() -> SearchService:
    global _search
    if _search is None:
        _search = SearchService(get_batcher(), get_store())
    return _search


@asynccontextmanager
async def lifespan(app: FastAPI):
    await db.init_models()
    if not settings.deepinfra_token:
        logger.warning("DEEPINFRA_TOKEN is not set; ingestion and search will fail until set in env.")
    yield
    if _orchestrator is not None:
        await _orchestrator.shutdown()
    await close_default_client()
    if _redis is not None:
        try:
            await _redis.aclose()
        except Exception:
            logger.exception("Failed to close redis on shutdown")
    await db.close_engine()


app = FastAPI(title="Knowledge Index", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DocumentNotFound)
async def document_not_found_handler(request: Request, exc: DocumentNotFound):
    return JSONResponse({"detail": exc.message}, status_code=404)


def _accepted(document_id: uuid.UUID) -> IngestAccepted:
    return IngestAccepted(document_id=document_id, status_url=f"/status/{document_id}")


@app.post("/documents", status_code=202, response_model=IngestAccepted)
async def create_document(body: DocumentCreateRequest,
                          orchestrator: IngestionOrchestrator = Depends(get_orchestrator)):
    uploads_total.inc()
    try:
        doc = await orchestrator.submit(
            title=body.title,
            source=body.to_source(),
            category=body.category,
            file_type=body.file_type,
            original_filename=body.original_file_name,
            file_size=body.byte_size(),
        )
    except SQLAlchemyError:
        logger.exception("Failed to create document")
        raise HTTPException(status_code=500, detail="Failed to create document")
    return _accepted(doc.id)


@app.post("/documents/upload", status_code=202, response_model=IngestAccepted)
async def upload_document(file: UploadFile = File(...), title: Optional[str] = Form(None),
                          category: str = Form("general"),
                          orchestrator: IngestionOrchestrator = Depends(get_orchestrator)):
    uploads_total.inc()
    filename = safe_filename(file.filename)
    ext = Path(filename).suffix.lower()
    if settings.allowed_extensions and ext not in settings.allowed_extensions:
        raise HTTPException(status_code=400, detail="Invalid file extension")

    try:
        path, filename, size = await save_upload(file)
    except UploadTooLarge:
        raise HTTPException(status_code=413, detail="Payload too large")
    except OSError:
        logger.exception("Failed to write uploaded file")
        raise HTTPException(status_code=500, detail="Failed to save file")

    file_type = ext.lstrip(".")
    try:
        doc = await orchestrator.submit(
            title=title or Path(filename).stem,
            source=IngestionSource(file_path=path, file_type=file_type),
            category=category,
            file_type=file_type,
            original_filename=filename,
            file_size=size,
        )
    except SQLAlchemyError:
        remove_file(path)
        logger.exception("Failed to create document for upload %s", filename)
        raise HTTPException(status_code=500, detail="Failed to create document")
    return _accepted(doc.id)


@app.get("/status/{document_id}", response_model=StatusResponse)
async def status(document_id: uuid.UUID,
                 orchestrator: IngestionOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_status(document_id)


@app.post("/search", response_model=SearchResponse)
async def search(body: SearchRequest, service: SearchService = Depends(get_search_service)):
    search_requests_total.inc()
    try:
        results = await service.search(body.query, category=body.category,
                                       threshold=body.threshold, limit=body.limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except EmbeddingProviderFailure:
        logger.exception("Query embedding failed")
        raise HTTPException(status_code=502, detail="Embedding service error")
    except SQLAlchemyError:
        logger.exception("Vector search failed")
        raise HTTPException(status_code=502, detail="Vector DB error")
    return SearchResponse(query=body.query, result_count=len(results), results=results)


@app.post("/search/context", response_model=ContextResponse)
async def search_context(body: SearchRequest, service: SearchService = Depends(get_search_service)):
    search_requests_total.inc()
    try:
        return await service.build_context(body.query, category=body.category,
                                           threshold=body.threshold, limit=body.limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except EmbeddingProviderFailure:
        logger.exception("Query embedding failed")
        raise HTTPException(status_code=502, detail="Embedding service error")
    except SQLAlchemyError:
        logger.exception("Vector search failed")
        raise HTTPException(status_code=502, detail="Vector DB error")


@app.delete("/documents/{document_id}", response_model=DeleteResponse)
async def delete_document(document_id: uuid.UUID, store: VectorStore = Depends(get_store),
                          orchestrator: IngestionOrchestrator = Depends(get_orchestrator)):
    if orchestrator.is_running(document_id):
        raise HTTPException(status_code=409, detail="Document is still being ingested")
    deleted = await store.delete_document(document_id)
    return DeleteResponse(document_id=document_id, deleted_chunks=deleted)


@app.get("/stats", response_model=StatsResponse)
async def stats(store: VectorStore = Depends(get_store)):
    counts = await store.get_stats()
    setup = await store.check_setup()
    return StatsResponse(**counts, **setup)


@app.get("/healthz")
async def healthz():
    ok = {"database": False}
    try:
        ok["database"] = await db.ping()
    except Exception:
        logger.exception("Database health check failed")
    if settings.progress_backend == "redis" or settings.ingest_runner == "celery":
        ok["redis"] = False
        try:
            await get_redis().ping()
            ok["redis"] = True
        except Exception:
            logger.exception("Redis ping failed")
    status_code = 200 if all(ok.values()) else 503
    return JSONResponse(ok, status_code=status_code)


@app.get("/metrics")
def metrics():
    if not settings.prometheus_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def run() -> None:
    uvicorn.run("knowledge_index.main:app", host=settings.host, port=settings.port)
