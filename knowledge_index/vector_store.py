# knowledge_index/vector_store.py
"""
Postgres + pgvector persistence for documents and their embedded chunks.

Similarity is `1 - cosine_distance(embedding, query)`; results are ordered
by the raw distance so the ivfflat/hnsw index can be used, with
(document_id, chunk_index) as a stable tie-breaker.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy import delete, func, insert, select, text, update
from sqlalchemy.exc import SQLAlchemyError

from knowledge_index.chunking import Chunk as TextChunk
from knowledge_index.config import settings
from knowledge_index.embeddings import batch_iterable
from knowledge_index.exceptions import (DocumentNotFound, InvalidStatusTransition,
                                        PersistenceFailure)
from knowledge_index.models import Chunk, Document, DocumentStatus
from knowledge_index.schemas import FailedMetadata, ProcessingMetadata, ReadyMetadata

logger = logging.getLogger(__name__)

DocumentId = Union[uuid.UUID, str]


@dataclass
class SearchHit:
    content: str
    document_title: str
    document_id: uuid.UUID
    category: str
    chunk_index: int
    page_number: Optional[int]
    section_title: Optional[str]
    similarity: float


def _as_uuid(document_id: DocumentId) -> uuid.UUID:
    return document_id if isinstance(document_id, uuid.UUID) else uuid.UUID(str(document_id))


def build_search_query(query_vector: Sequence[float], category: Optional[str] = None,
                       threshold: float = 0.5, limit: int = 10):
    distance = Chunk.embedding.cosine_distance(list(query_vector))
    similarity = (1 - distance).label("similarity")
    stmt = (
        select(
            Chunk.content,
            Chunk.chunk_index,
            Chunk.page_number,
            Chunk.section_title,
            Document.id.label("document_id"),
            Document.title.label("document_title"),
            Document.category,
            similarity,
        )
        .join(Document, Chunk.document_id == Document.id)
        .where(Document.status == DocumentStatus.READY.value)
        .where(1 - distance >= threshold)
    )
    if category:
        stmt = stmt.where(Document.category == category)
    return stmt.order_by(distance, Document.id, Chunk.chunk_index).limit(limit)


def build_status_update(document_id: uuid.UUID, status: DocumentStatus, meta: Dict[str, Any],
                        total_chunks: Optional[int] = None):
    """Conditional UPDATE: only a document still in processing may move."""
    values = {Document.status: status.value, Document.meta: meta, Document.updated_at: func.now()}
    if total_chunks is not None:
        values[Document.total_chunks] = total_chunks
    return (
        update(Document)
        .where(Document.id == document_id, Document.status == DocumentStatus.PROCESSING.value)
        .values(values)
        .returning(Document.id)
    )


class VectorStore:
    def __init__(self, session_factory=None, insert_batch: Optional[int] = None):
        if session_factory is None:
            from knowledge_index.db import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.insert_batch = max(1, insert_batch or settings.insert_batch)

    async def create_document(self, title: str, category: str = "general",
                              file_type: Optional[str] = None,
                              original_filename: Optional[str] = None,
                              file_size: int = 0) -> Document:
        meta = ProcessingMetadata(original_filename=original_filename, file_type=file_type,
                                  file_size=file_size)
        doc = Document(
            id=uuid.uuid4(),
            title=title,
            category=category or "general",
            file_type=file_type,
            original_filename=original_filename,
            file_size=file_size,
            total_chunks=0,
            status=DocumentStatus.PROCESSING.value,
            meta=meta.model_dump(mode="json"),
        )
        async with self.session_factory() as session:
            session.add(doc)
            await session.commit()
        logger.info("Created document %s (%s, category=%s)", doc.id, title, doc.category)
        return doc

    async def get_document(self, document_id: DocumentId) -> Optional[Document]:
        async with self.session_factory() as session:
            return await session.get(Document, _as_uuid(document_id))

    async def insert_chunks(self, chunks: Sequence[TextChunk], vectors: Sequence[Sequence[float]],
                            document_id: DocumentId) -> int:
        """
        Write all chunks for one document in a single transaction using
        multi-row INSERT ... RETURNING batches. Returns the number of rows written.
        """
        if len(chunks) != len(vectors):
            raise PersistenceFailure(
                f"chunk/vector count mismatch: {len(chunks)} vs {len(vectors)}",
                details={"document_id": str(document_id)},
            )
        doc_uuid = _as_uuid(document_id)
        rows = [
            {
                "id": uuid.uuid4(),
                "document_id": doc_uuid,
                "content": c.content,
                "chunk_index": c.index,
                "page_number": c.page_number,
                "section_title": c.section_title,
                "token_count": c.token_count,
                "embedding": list(v),
            }
            for c, v in zip(chunks, vectors)
        ]
        if not rows:
            return 0

        inserted = 0
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for batch in batch_iterable(rows, self.insert_batch):
                        result = await session.execute(insert(Chunk).values(batch).returning(Chunk.id))
                        inserted += len(result.fetchall())
                        logger.info("Inserted %d/%d chunks for document %s", inserted, len(rows), doc_uuid)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Chunk insert failed: {e}",
                                     details={"document_id": str(doc_uuid)}) from e
        return inserted

    async def set_status(self, document_id: DocumentId, status: Union[DocumentStatus, str],
                         metadata: Union[ReadyMetadata, FailedMetadata],
                         total_chunks: Optional[int] = None) -> None:
        """
        Move a processing document to ready or failed. Terminal documents never move;
        a missing row raises DocumentNotFound.
        """
        status = DocumentStatus(status)
        doc_uuid = _as_uuid(document_id)
        if status is DocumentStatus.PROCESSING:
            raise InvalidStatusTransition(doc_uuid, "processing", status.value)
        expected = ReadyMetadata if status is DocumentStatus.READY else FailedMetadata
        if not isinstance(metadata, expected):
            raise TypeError(f"{status.value} status requires {expected.__name__}")

        stmt = build_status_update(doc_uuid, status, metadata.model_dump(mode="json"), total_chunks)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            if result.first() is None:
                current = await session.scalar(select(Document.status).where(Document.id == doc_uuid))
                await session.rollback()
                if current is None:
                    raise DocumentNotFound(doc_uuid)
                raise InvalidStatusTransition(doc_uuid, current, status.value)
            await session.commit()
        logger.info("Document %s marked %s", doc_uuid, status.value)

    async def search(self, query_vector: Sequence[float], category: Optional[str] = None,
                     threshold: float = 0.5, limit: int = 10) -> List[SearchHit]:
        stmt = build_search_query(query_vector, category=category, threshold=threshold, limit=limit)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.mappings().all()
        return [
            SearchHit(
                content=r["content"],
                document_title=r["document_title"],
                document_id=r["document_id"],
                category=r["category"],
                chunk_index=r["chunk_index"],
                page_number=r["page_number"],
                section_title=r["section_title"],
                similarity=float(r["similarity"]),
            )
            for r in rows
        ]

    async def delete_document(self, document_id: DocumentId) -> int:
        """Delete a document; its chunks go with it (FK cascade). Returns the chunk count removed."""
        doc_uuid = _as_uuid(document_id)
        async with self.session_factory() as session:
            async with session.begin():
                count = await session.scalar(
                    select(func.count()).select_from(Chunk).where(Chunk.document_id == doc_uuid)
                )
                result = await session.execute(
                    delete(Document).where(Document.id == doc_uuid).returning(Document.id)
                )
                if result.first() is None:
                    raise DocumentNotFound(doc_uuid)
        logger.info("Deleted document %s with %d chunks", doc_uuid, count or 0)
        return int(count or 0)

    async def get_stats(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            total_chunks = await session.scalar(select(func.count()).select_from(Chunk))
            with_embedding = await session.scalar(
                select(func.count()).select_from(Chunk).where(Chunk.embedding.is_not(None))
            )
            result = await session.execute(
                select(Document.status, func.count()).group_by(Document.status)
            )
            by_status = {status: int(n) for status, n in result.all()}
        return {
            "total_chunks": int(total_chunks or 0),
            "chunks_with_embedding": int(with_embedding or 0),
            "total_documents": by_status.get(DocumentStatus.READY.value, 0),
            "documents_by_status": by_status,
        }

    async def check_setup(self) -> Dict[str, bool]:
        async with self.session_factory() as session:
            extension = await session.scalar(text(
                "SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'vector')"
            ))
            column = await session.scalar(text(
                "SELECT EXISTS (SELECT 1 FROM information_schema.columns "
                "WHERE table_name = 'chunks' AND column_name = 'embedding')"
            ))
        return {"extension_exists": bool(extension), "column_exists": bool(column)}
