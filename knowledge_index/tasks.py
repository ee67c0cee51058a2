# knowledge_index/tasks.py
import asyncio
import logging
from typing import Any, Dict

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_index.celery_app import celery_app
from knowledge_index.config import settings
from knowledge_index.db import create_worker_engine
from knowledge_index.deepinfra import DeepInfraEmbedder
from knowledge_index.embeddings import EmbeddingBatcher
from knowledge_index.ingest import IngestionOrchestrator, IngestResult
from knowledge_index.progress import create_progress_store
from knowledge_index.schemas import IngestionSource
from knowledge_index.vector_store import VectorStore

logger = logging.getLogger(__name__)


async def run_ingest(document_id: str, source: IngestionSource) -> IngestResult:
    """Build a private set of clients for this event loop and run one document."""
    engine = create_worker_engine()
    progress = create_progress_store()
    try:
        async with httpx.AsyncClient(timeout=settings.embed_timeout) as http_client:
            orchestrator = IngestionOrchestrator(
                store=VectorStore(async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)),
                batcher=EmbeddingBatcher(DeepInfraEmbedder(client=http_client)),
                progress=progress,
                runner="inline",
            )
            return await orchestrator.run(document_id, source)
    finally:
        await progress.close()
        await engine.dispose()


@celery_app.task(name="knowledge_index.tasks.process_document_task")
def process_document_task(document_id: str, source: Dict[str, Any]):
    # failures are already recorded on the document; never retried
    try:
        result = asyncio.run(run_ingest(document_id, IngestionSource.model_validate(source)))
    except Exception:
        logger.exception("process_document failed for %s", document_id)
        raise
    return {"status": "completed", "document_id": document_id, "chunks": result.chunk_count}
