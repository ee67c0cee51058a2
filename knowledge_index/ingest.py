# knowledge_index/ingest.py
"""
Ingestion orchestrator:
 - create the document row (status=processing) and hand back its id at once
 - run extract -> chunk -> embed -> save as a tracked background job
 - publish stage/percent to the progress store as it goes
 - on any error: record the failing stage, mark the document failed, re-raise

In-process jobs share one semaphore (the concurrency ceiling), can be
cancelled, and may carry a deadline. With INGEST_RUNNER=celery the same
`run()` executes on a worker instead.
"""
import asyncio
import functools
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Union

from knowledge_index.chunking import (Chunk, PageText, SectionText, chunk_pages, chunk_sections,
                                      chunk_text, get_chunk_stats, validate_chunks)
from knowledge_index.config import settings
from knowledge_index.embeddings import EmbeddingBatcher, EmbeddingProgress
from knowledge_index.exceptions import (ChunkingFailure, DocumentNotFound, EmbeddingProviderFailure,
                                        ExtractionFailure, IngestionError, InvalidStatusTransition,
                                        PersistenceFailure)
from knowledge_index.extract import ExtractedText, clean_text, extract_file
from knowledge_index.metrics import ingest_duration_seconds, ingests_failed, ingests_total
from knowledge_index.models import Document, DocumentStatus
from knowledge_index.progress import (STAGE_PROGRESS, IngestionStage, ProgressStore, TaskProgress,
                                      embedding_progress)
from knowledge_index.schemas import (FailedMetadata, IngestionSource, ReadyMetadata,
                                     StatusResponse, parse_metadata)
from knowledge_index.storage import remove_file
from knowledge_index.vector_store import VectorStore

logger = logging.getLogger(__name__)

DocumentId = Union[uuid.UUID, str]

_FAILURE_BY_STAGE = {
    IngestionStage.EXTRACTING: ExtractionFailure,
    IngestionStage.CHUNKING: ChunkingFailure,
    IngestionStage.EMBEDDING: EmbeddingProviderFailure,
    IngestionStage.SAVING: PersistenceFailure,
}


@dataclass
class IngestResult:
    document_id: str
    chunk_count: int
    duration_ms: int


def wrap_error(exc: BaseException, stage: IngestionStage) -> IngestionError:
    """Map any exception onto the taxonomy error for the stage it escaped from."""
    if isinstance(exc, IngestionError):
        return exc
    cls = _FAILURE_BY_STAGE.get(stage, IngestionError)
    err = cls(str(exc) or exc.__class__.__name__, details={"type": exc.__class__.__name__})
    err.stage = stage.value
    return err


class IngestionOrchestrator:
    def __init__(self, store: VectorStore, batcher: EmbeddingBatcher, progress: ProgressStore,
                 chunk_size: Optional[int] = None, overlap: Optional[int] = None,
                 max_concurrent: Optional[int] = None, timeout: Optional[float] = None,
                 runner: Optional[str] = None, remove_source_files: Optional[bool] = None,
                 extractor: Callable[..., ExtractedText] = extract_file):
        self.store = store
        self.batcher = batcher
        self.progress = progress
        self.chunk_size = chunk_size or settings.chunk_size
        self.overlap = settings.chunk_overlap if overlap is None else overlap
        self.timeout = timeout if timeout is not None else settings.ingest_timeout_seconds
        self.runner = runner or settings.ingest_runner
        self.remove_source_files = (settings.remove_uploads_after_ingest
                                    if remove_source_files is None else remove_source_files)
        self.extractor = extractor
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.max_concurrent_ingestions)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._sources: Dict[str, IngestionSource] = {}
        self._deadlines: Dict[str, asyncio.TimerHandle] = {}
        self._cancel_reasons: Dict[str, str] = {}
        self._cleanups: Set[asyncio.Task] = set()

    # ---- submission ----

    async def submit(self, title: str, source: IngestionSource, category: str = "general",
                     file_type: Optional[str] = None, original_filename: Optional[str] = None,
                     file_size: int = 0) -> Document:
        """
        Create the document row, record it as queued and start the pipeline.
        Returns as soon as the row exists; the pipeline keeps running.
        """
        doc = await self.store.create_document(
            title=title,
            category=category,
            file_type=file_type or source.file_type,
            original_filename=original_filename,
            file_size=file_size,
        )
        key = str(doc.id)
        await self._record(key, IngestionStage.QUEUED)
        ingests_total.inc()

        if self.runner == "celery":
            from knowledge_index.tasks import process_document_task
            process_document_task.apply_async(args=[key, source.model_dump(mode="json")],
                                              queue=settings.celery_queue)
            logger.info("Queued ingest for doc_id=%s on %s", key, settings.celery_queue)
        else:
            self.start(key, source)
        return doc

    def start(self, document_id: DocumentId, source: IngestionSource) -> asyncio.Task:
        key = str(document_id)
        task = asyncio.create_task(self.run(key, source), name=f"ingest-{key}")
        self._tasks[key] = task
        self._sources[key] = source
        task.add_done_callback(functools.partial(self._on_done, key))
        if self.timeout:
            loop = asyncio.get_running_loop()
            self._deadlines[key] = loop.call_later(
                self.timeout, self.cancel, key, f"timed out after {self.timeout:g}s"
            )
        return task

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        self._tasks.pop(key, None)
        source = self._sources.pop(key, None)
        handle = self._deadlines.pop(key, None)
        if handle is not None:
            handle.cancel()
        if task.cancelled():
            logger.warning("Ingest for doc_id=%s was cancelled", key)
            reason = self._cancel_reasons.pop(key, None)
            if reason is not None:
                # cancelled before run() got its first step in
                if source is not None and source.file_path and self.remove_source_files:
                    remove_file(source.file_path)
                stage = IngestionStage.QUEUED
                cleanup = asyncio.ensure_future(self._fail(key, stage, wrap_error(RuntimeError(reason), stage)))
                self._cleanups.add(cleanup)
                cleanup.add_done_callback(self._cleanups.discard)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Ingest for doc_id=%s failed: %s", key, exc, exc_info=exc)

    def cancel(self, document_id: DocumentId, reason: str = "cancelled") -> bool:
        key = str(document_id)
        task = self._tasks.get(key)
        if task is None or task.done():
            return False
        self._cancel_reasons.setdefault(key, reason)
        task.cancel()
        logger.info("Cancelling ingest for doc_id=%s (%s)", key, reason)
        return True

    def is_running(self, document_id: DocumentId) -> bool:
        task = self._tasks.get(str(document_id))
        return task is not None and not task.done()

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for key in list(self._tasks):
            self.cancel(key, "service shutting down")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._cleanups:
            await asyncio.gather(*list(self._cleanups), return_exceptions=True)

    # ---- the pipeline ----

    async def _record(self, key: str, stage: IngestionStage, percent: Optional[int] = None) -> None:
        await self.progress.update(TaskProgress(
            document_id=key,
            stage=stage,
            progress=STAGE_PROGRESS[stage] if percent is None else percent,
        ))

    async def _extract(self, source: IngestionSource) -> ExtractedText:
        if source.file_path is not None:
            return await asyncio.to_thread(self.extractor, source.file_path, source.file_type)
        if source.pages is not None:
            pages = [PageText(p.page_number, clean_text(p.text)) for p in source.pages]
            text = "\n\n".join(p.text for p in pages if p.text)
            extracted = ExtractedText(text=text, pages=pages)
        elif source.sections is not None:
            sections = [SectionText(s.title, clean_text(s.text)) for s in source.sections]
            text = "\n\n".join(s.text for s in sections if s.text)
            extracted = ExtractedText(text=text, sections=sections)
        else:
            extracted = ExtractedText(text=clean_text(source.text))
        if not extracted.text:
            raise ExtractionFailure("Document contains no text")
        return extracted

    def _chunk(self, extracted: ExtractedText) -> List[Chunk]:
        if extracted.sections:
            return chunk_sections(extracted.sections, self.chunk_size, self.overlap)
        if extracted.pages:
            return chunk_pages(extracted.pages, self.chunk_size, self.overlap)
        return chunk_text(extracted.text, self.chunk_size, self.overlap)

    async def run(self, document_id: DocumentId, source: IngestionSource) -> IngestResult:
        """
        Drive one document through the state machine. Errors are caught once here,
        written to the document as failed metadata and re-raised.
        """
        key = str(document_id)
        stage = IngestionStage.QUEUED
        started = time.perf_counter()
        committed = False
        try:
            async with self._semaphore:
                logger.info("Started ingest for doc_id=%s", key)

                stage = IngestionStage.EXTRACTING
                await self._record(key, stage)
                extracted = await self._extract(source)

                stage = IngestionStage.CHUNKING
                await self._record(key, stage)
                chunks = await asyncio.to_thread(self._chunk, extracted)
                valid, issues = validate_chunks(chunks)
                if not valid:
                    raise ChunkingFailure("; ".join(issues[:5]), details={"issues": len(issues)})
                logger.info("Document %s produced %d chunks", key, len(chunks))

                stage = IngestionStage.EMBEDDING
                await self._record(key, stage)

                async def on_progress(p: EmbeddingProgress) -> None:
                    await self._record(key, IngestionStage.EMBEDDING, embedding_progress(p.percentage))

                vectors = await self.batcher.embed_batch([c.content for c in chunks], on_progress)

                stage = IngestionStage.SAVING
                await self._record(key, stage)
                inserted = await self.store.insert_chunks(chunks, vectors, key)
                if inserted != len(chunks):
                    raise PersistenceFailure(
                        f"Inserted {inserted} chunks, expected {len(chunks)}",
                        details={"inserted": inserted, "expected": len(chunks)},
                    )
                stats = get_chunk_stats(chunks)
                duration_ms = int((time.perf_counter() - started) * 1000)
                await self.store.set_status(key, DocumentStatus.READY, ReadyMetadata(
                    chunk_count=inserted,
                    chunk_stats=stats.to_dict(),
                    estimated_tokens=stats.estimated_tokens,
                    processing_duration_ms=duration_ms,
                    text_length=len(extracted.text),
                    embedding_dimension=len(vectors[0]) if vectors else self.batcher.dimension,
                ), total_chunks=inserted)
                committed = True

                stage = IngestionStage.COMPLETED
                try:
                    await self._record(key, stage)
                except Exception:
                    # the document is ready; status falls back to the row
                    logger.exception("Could not record completion for doc_id=%s", key)
        except asyncio.CancelledError:
            reason = self._cancel_reasons.pop(key, "cancelled")
            if committed:
                logger.warning("Ingest for doc_id=%s cancelled after it was marked ready (%s)", key, reason)
                raise
            await self._fail(key, stage, wrap_error(RuntimeError(reason), stage))
            raise
        except Exception as e:
            err = wrap_error(e, stage)
            await self._fail(key, stage, err)
            if err is e:
                raise
            raise err from e
        finally:
            if source.file_path and self.remove_source_files:
                remove_file(source.file_path)

        ingest_duration_seconds.observe(time.perf_counter() - started)
        logger.info("Completed ingest for doc_id=%s (chunks=%d, %dms)", key, inserted, duration_ms)
        return IngestResult(document_id=key, chunk_count=inserted, duration_ms=duration_ms)

    async def _fail(self, key: str, stage: IngestionStage, err: IngestionError) -> None:
        """Best-effort failure bookkeeping; the caller re-raises the original error."""
        ingests_failed.labels(stage=stage.value).inc()
        logger.error("Ingest failed for doc_id=%s at stage=%s: %s", key, stage.value, err.message)
        try:
            await self.progress.update(TaskProgress(
                document_id=key,
                stage=IngestionStage.FAILED,
                progress=STAGE_PROGRESS.get(stage, 0),
                error=err.message,
                failed_stage=stage.value,
            ))
        except Exception:
            logger.exception("Failed to record failed progress for doc_id=%s", key)
        try:
            await self.store.set_status(key, DocumentStatus.FAILED,
                                        FailedMetadata(stage=stage.value, error=err.message))
        except InvalidStatusTransition as e:
            logger.warning("Document %s already terminal (%s); failure not recorded", key, e.current)
        except Exception:
            logger.exception("Failed to mark document %s as failed", key)

    # ---- status ----

    async def get_status(self, document_id: DocumentId) -> StatusResponse:
        """
        Live progress is authoritative while it exists and agrees with the
        document row. A terminal row wins over a live record that names a
        different outcome.
        """
        key = str(document_id)
        live = await self.progress.get(key)
        doc = await self.store.get_document(key)
        if live is None and doc is None:
            raise DocumentNotFound(key)

        chunk_count = None
        if doc is not None and doc.status == DocumentStatus.READY.value:
            chunk_count = doc.total_chunks

        if live is not None and not _live_contradicts_row(live, doc):
            return StatusResponse(
                document_id=key,
                status=live.stage.value,
                progress_percent=live.progress,
                document_status=doc.status if doc is not None else None,
                chunk_count=chunk_count,
                stage=live.failed_stage or live.stage.value,
                error=live.error,
            )

        meta = parse_metadata(doc.meta)
        stage = error = None
        if isinstance(meta, FailedMetadata):
            stage, error = meta.stage, meta.error
        return StatusResponse(
            document_id=key,
            status=doc.status,
            progress_percent=100 if doc.status == DocumentStatus.READY.value else 0,
            document_status=doc.status,
            chunk_count=chunk_count,
            stage=stage,
            error=error,
        )


def _live_contradicts_row(live: TaskProgress, doc: Optional[Document]) -> bool:
    if doc is None or doc.status == DocumentStatus.PROCESSING.value:
        return False
    if doc.status == DocumentStatus.READY.value:
        return live.stage != IngestionStage.COMPLETED
    return live.stage != IngestionStage.FAILED
