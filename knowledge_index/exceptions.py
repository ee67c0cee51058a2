# knowledge_index/exceptions.py
"""
Error taxonomy for the ingestion pipeline and the vector store.

Every pipeline error carries the stage it happened in so the orchestrator can
write it into the document's failed metadata and the status endpoint can show it.
"""
from typing import Any, Dict, Optional


class KnowledgeIndexError(Exception):
    """Base exception for all knowledge index errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class IngestionError(KnowledgeIndexError):
    """Fatal error for one document, annotated with the pipeline stage."""

    stage = "unknown"

    def __init__(self, message: str, stage: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        if stage is not None:
            self.stage = stage


class ExtractionFailure(IngestionError):
    """Source is unreadable or produced no text."""

    stage = "extracting"


class ChunkingFailure(IngestionError):
    stage = "chunking"


class EmbeddingProviderFailure(IngestionError):
    """Network, quota or validation error from the embedding provider."""

    stage = "embedding"


class EmbeddingDimensionError(EmbeddingProviderFailure):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}",
            details={"expected": expected, "actual": actual},
        )


class PersistenceFailure(IngestionError):
    stage = "saving"


class DocumentNotFound(KnowledgeIndexError):
    def __init__(self, document_id: Any) -> None:
        super().__init__(f"Document not found: {document_id}", {"document_id": str(document_id)})
        self.document_id = document_id


class InvalidStatusTransition(KnowledgeIndexError):
    """Raised when a terminal document is asked to change status."""

    def __init__(self, document_id: Any, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move document {document_id} from {current} to {target}",
            {"document_id": str(document_id), "current": current, "target": target},
        )
        self.current = current
        self.target = target
