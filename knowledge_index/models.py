# knowledge_index/models.py
import enum
import uuid

from pgvector.sqlalchemy import Vector
from sqlalchemy import (BigInteger, Column, ForeignKey, Index, Integer, String, Text,
                        TIMESTAMP, UniqueConstraint)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from knowledge_index.config import settings

Base = declarative_base()


class DocumentStatus(str, enum.Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not DocumentStatus.PROCESSING


class Document(Base):
    __tablename__ = "documents"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(String(512), nullable=False)
    category = Column(String(128), nullable=False, default="general")
    file_type = Column(String(32), nullable=True)
    original_filename = Column(String(1024), nullable=True)
    file_size = Column(BigInteger, nullable=False, default=0)  # bytes
    total_chunks = Column(Integer, nullable=False, default=0)
    status = Column(String(32), nullable=False, default=DocumentStatus.PROCESSING.value)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(),
                        nullable=False)

    chunks = relationship("Chunk", back_populates="document", cascade="all, delete-orphan",
                          passive_deletes=True)

    __table_args__ = (
        Index("idx_documents_status", "status"),
        Index("idx_documents_category", "category"),
    )


class Chunk(Base):
    __tablename__ = "chunks"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("documents.id", ondelete="CASCADE"),
                         nullable=False)
    content = Column(Text, nullable=False)
    chunk_index = Column(Integer, nullable=False)
    page_number = Column(Integer, nullable=True)
    section_title = Column(String(512), nullable=True)
    token_count = Column(Integer, nullable=True)
    embedding = Column(Vector(settings.embedding_dimension), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(),
                        nullable=False)

    document = relationship("Document", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunks_document_index"),
        Index("idx_chunks_document", "document_id"),
    )
