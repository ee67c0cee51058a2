# knowledge_index/schemas.py
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---- document metadata (tagged by "kind") ----

class ProcessingMetadata(BaseModel):
    kind: Literal["processing"] = "processing"
    original_filename: Optional[str] = None
    file_type: Optional[str] = None
    file_size: int = 0
    uploaded_at: datetime = Field(default_factory=utcnow)


class ReadyMetadata(BaseModel):
    kind: Literal["ready"] = "ready"
    chunk_count: int
    chunk_stats: Dict[str, int]
    estimated_tokens: int
    processing_duration_ms: int
    text_length: int
    embedding_dimension: int


class FailedMetadata(BaseModel):
    kind: Literal["failed"] = "failed"
    stage: str
    error: str
    failed_at: datetime = Field(default_factory=utcnow)


DocumentMetadata = Annotated[
    Union[ProcessingMetadata, ReadyMetadata, FailedMetadata],
    Field(discriminator="kind"),
]
metadata_adapter: TypeAdapter = TypeAdapter(DocumentMetadata)


def parse_metadata(raw: Optional[Dict[str, Any]]):
    """Parse a stored metadata blob; returns None for empty or legacy rows."""
    if not raw or "kind" not in raw:
        return None
    return metadata_adapter.validate_python(raw)


# ---- ingestion input ----

class PageIn(CamelModel):
    page_number: int = Field(..., ge=1)
    text: str


class SectionIn(CamelModel):
    title: str
    text: str


class IngestionSource(CamelModel):
    """Exactly one of text / pages / sections / file_path."""

    text: Optional[str] = None
    pages: Optional[List[PageIn]] = None
    sections: Optional[List[SectionIn]] = None
    file_path: Optional[str] = None
    file_type: Optional[str] = None

    @model_validator(mode="after")
    def _one_source(self):
        given = [f for f in ("text", "pages", "sections", "file_path") if getattr(self, f) is not None]
        if len(given) != 1:
            raise ValueError("provide exactly one of text, pages, sections or file_path")
        return self


# ---- API models ----

class DocumentCreateRequest(CamelModel):
    title: str = Field(..., min_length=1, max_length=512)
    category: str = Field("general", min_length=1, max_length=128)
    file_type: str = "txt"
    original_file_name: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)
    text: Optional[str] = None
    pages: Optional[List[PageIn]] = None
    sections: Optional[List[SectionIn]] = None

    @model_validator(mode="after")
    def _one_body(self):
        given = [f for f in ("text", "pages", "sections") if getattr(self, f) is not None]
        if len(given) != 1:
            raise ValueError("provide exactly one of text, pages or sections")
        return self

    def to_source(self) -> IngestionSource:
        return IngestionSource(text=self.text, pages=self.pages, sections=self.sections,
                               file_type=self.file_type)

    def byte_size(self) -> int:
        if self.file_size is not None:
            return self.file_size
        if self.text is not None:
            return len(self.text.encode("utf-8"))
        parts = self.pages or self.sections or []
        return sum(len(p.text.encode("utf-8")) for p in parts)


class IngestAccepted(CamelModel):
    document_id: UUID
    status_url: str


class StatusResponse(CamelModel):
    document_id: UUID
    status: str
    progress_percent: int
    document_status: Optional[str] = None
    chunk_count: Optional[int] = None
    stage: Optional[str] = None
    error: Optional[str] = None


class SearchRequest(CamelModel):
    query: str = Field(..., min_length=1)
    category: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1)
    threshold: Optional[float] = Field(None, ge=-1.0, le=1.0)


class SearchResultItem(CamelModel):
    content: str
    document_title: str
    document_id: UUID
    category: str
    chunk_index: int
    page_number: Optional[int] = None
    section_title: Optional[str] = None
    similarity: float


class SearchResponse(CamelModel):
    query: str
    result_count: int
    results: List[SearchResultItem]


class ContextResponse(CamelModel):
    query: str
    should_search: bool
    result_count: int
    avg_similarity: float
    sources: List[str]
    context: str


class DeleteResponse(CamelModel):
    document_id: UUID
    deleted_chunks: int


class StatsResponse(CamelModel):
    total_chunks: int
    chunks_with_embedding: int
    total_documents: int
    documents_by_status: Dict[str, int]
    extension_exists: bool
    column_exists: bool
