# knowledge_index/progress.py
"""
Live ingestion progress, keyed by document id.

Entries are TTL-bounded. The Redis store makes progress visible across API
instances and Celery workers; the in-memory store is for single-process runs
and tests. Only the orchestrator working on a document writes its entry, and
every write must move forward: stages never regress, percent never drops and
terminal entries are frozen.
"""
import enum
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis

from knowledge_index.config import settings

logger = logging.getLogger(__name__)


class IngestionStage(str, enum.Enum):
    QUEUED = "queued"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    SAVING = "saving"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IngestionStage.COMPLETED, IngestionStage.FAILED)


STAGE_ORDER = (
    IngestionStage.QUEUED,
    IngestionStage.EXTRACTING,
    IngestionStage.CHUNKING,
    IngestionStage.EMBEDDING,
    IngestionStage.SAVING,
    IngestionStage.COMPLETED,
)

STAGE_PROGRESS = {
    IngestionStage.QUEUED: 0,
    IngestionStage.EXTRACTING: 10,
    IngestionStage.CHUNKING: 30,
    IngestionStage.EMBEDDING: 50,
    IngestionStage.SAVING: 90,
    IngestionStage.COMPLETED: 100,
}

# embedding sub-progress is scaled into [50, 85]
EMBEDDING_PROGRESS_SPAN = 35


def embedding_progress(percentage: int) -> int:
    return STAGE_PROGRESS[IngestionStage.EMBEDDING] + round(percentage * EMBEDDING_PROGRESS_SPAN / 100)


@dataclass
class TaskProgress:
    document_id: str
    stage: IngestionStage
    progress: int
    error: Optional[str] = None
    failed_stage: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    def to_mapping(self) -> Dict[str, str]:
        data = {
            "document_id": self.document_id,
            "stage": self.stage.value,
            "progress": str(self.progress),
            "updated_at": repr(self.updated_at),
        }
        if self.error is not None:
            data["error"] = self.error
        if self.failed_stage is not None:
            data["failed_stage"] = self.failed_stage
        return data

    @classmethod
    def from_mapping(cls, data: Dict[str, str]) -> "TaskProgress":
        return cls(
            document_id=data["document_id"],
            stage=IngestionStage(data["stage"]),
            progress=int(data.get("progress", 0)),
            error=data.get("error"),
            failed_stage=data.get("failed_stage"),
            updated_at=float(data.get("updated_at", 0.0)),
        )


def check_transition(current: Optional[TaskProgress], new: TaskProgress) -> None:
    """Raise ValueError if `new` would move the record backwards."""
    if current is None:
        return
    if current.is_terminal:
        raise ValueError(f"progress for {current.document_id} is terminal ({current.stage.value})")
    if new.stage is IngestionStage.FAILED:
        return
    if STAGE_ORDER.index(new.stage) < STAGE_ORDER.index(current.stage):
        raise ValueError(f"stage cannot go from {current.stage.value} back to {new.stage.value}")
    if new.progress < current.progress:
        raise ValueError(f"progress cannot drop from {current.progress} to {new.progress}")


class ProgressStore(ABC):
    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = ttl_seconds or settings.progress_ttl_seconds

    @abstractmethod
    async def get(self, document_id: str) -> Optional[TaskProgress]:
        ...

    @abstractmethod
    async def _write(self, record: TaskProgress) -> None:
        ...

    @abstractmethod
    async def delete(self, document_id: str) -> None:
        ...

    async def update(self, record: TaskProgress) -> TaskProgress:
        current = await self.get(record.document_id)
        check_transition(current, record)
        await self._write(record)
        return record

    async def close(self) -> None:
        return None


class InMemoryProgressStore(ProgressStore):
    def __init__(self, ttl_seconds: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Tuple[TaskProgress, float]] = {}

    async def get(self, document_id: str) -> Optional[TaskProgress]:
        entry = self._entries.get(str(document_id))
        if entry is None:
            return None
        record, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[str(document_id)]
            return None
        return record

    async def _write(self, record: TaskProgress) -> None:
        self._entries[record.document_id] = (record, self._clock() + self.ttl_seconds)

    async def delete(self, document_id: str) -> None:
        self._entries.pop(str(document_id), None)


class RedisProgressStore(ProgressStore):
    """Hash per document at `ingest:{document_id}` with a sliding TTL."""

    key_prefix = "ingest:"

    def __init__(self, redis, ttl_seconds: Optional[int] = None):
        super().__init__(ttl_seconds)
        self.redis = redis

    def _key(self, document_id: str) -> str:
        return f"{self.key_prefix}{document_id}"

    async def get(self, document_id: str) -> Optional[TaskProgress]:
        data = await self.redis.hgetall(self._key(document_id))
        if not data:
            return None
        return TaskProgress.from_mapping(data)

    async def _write(self, record: TaskProgress) -> None:
        key = self._key(record.document_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(key, mapping=record.to_mapping())
            pipe.expire(key, self.ttl_seconds)
            await pipe.execute()

    async def delete(self, document_id: str) -> None:
        await self.redis.delete(self._key(document_id))

    async def close(self) -> None:
        await self.redis.aclose()


def create_progress_store(backend: Optional[str] = None, client=None) -> ProgressStore:
    backend = backend or settings.progress_backend
    if backend == "memory":
        if settings.ingest_runner == "celery":
            logger.warning("In-memory progress store with Celery runner: worker progress won't be visible")
        return InMemoryProgressStore()
    if client is None:
        client = aioredis.from_url(settings.redis_url, decode_responses=True)
    return RedisProgressStore(client)
