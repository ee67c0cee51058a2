# knowledge_index/embeddings.py
"""
EmbeddingBatcher: ordered, paced fan-out over an embedding provider.

Texts are split into fixed-size batches. Calls inside one batch run
concurrently; batches run strictly one after another with a fixed delay in
between. Vector i always belongs to text i.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from knowledge_index.config import settings
from knowledge_index.deepinfra import EmbeddingProvider
from knowledge_index.exceptions import EmbeddingDimensionError, EmbeddingProviderFailure

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingProgress:
    processed: int
    total: int
    percentage: int


ProgressCallback = Callable[[EmbeddingProgress], Union[None, Awaitable[None]]]


def batch_iterable(items: Sequence, batch_size: int):
    """Yield consecutive slices of up to batch_size items."""
    for i in range(0, len(items), batch_size):
        yield items[i:i + batch_size]


class EmbeddingBatcher:
    def __init__(self, provider: EmbeddingProvider, batch_size: Optional[int] = None,
                 delay_ms: Optional[int] = None, dimension: Optional[int] = None,
                 strict_dimension: Optional[bool] = None, query_prefix: Optional[str] = None):
        self.provider = provider
        self.batch_size = max(1, batch_size or settings.embed_batch)
        self.delay_ms = settings.embed_batch_delay_ms if delay_ms is None else delay_ms
        self.dimension = dimension or settings.embedding_dimension
        self.strict_dimension = (settings.strict_embedding_dimension
                                 if strict_dimension is None else strict_dimension)
        self.query_prefix = settings.query_prefix if query_prefix is None else query_prefix

    def _check_dimension(self, vector: List[float]) -> None:
        if len(vector) == self.dimension:
            return
        if self.strict_dimension:
            raise EmbeddingDimensionError(self.dimension, len(vector))
        logger.warning("Embedding dimension mismatch: expected %d, got %d", self.dimension, len(vector))

    async def _embed_one(self, text: str) -> List[float]:
        try:
            vector = await self.provider.embed(text)
        except EmbeddingProviderFailure:
            raise
        except Exception as e:
            raise EmbeddingProviderFailure(f"Embedding call failed: {e}") from e
        self._check_dimension(vector)
        return vector

    async def _run_batch(self, texts: Sequence[str]) -> List[List[float]]:
        tasks = [asyncio.ensure_future(self._embed_one(t)) for t in texts]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            # one failure fails the batch; don't leave siblings running
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def embed_batch(self, texts: Sequence[str],
                          on_progress: Optional[ProgressCallback] = None) -> List[List[float]]:
        total = len(texts)
        vectors: List[List[float]] = []
        if total == 0:
            return vectors

        batches = list(batch_iterable(list(texts), self.batch_size))
        for i, batch in enumerate(batches):
            vectors.extend(await self._run_batch(batch))
            processed = len(vectors)
            logger.info("Embedded %d/%d texts (batch %d/%d)", processed, total, i + 1, len(batches))
            if on_progress is not None:
                result = on_progress(EmbeddingProgress(
                    processed=processed,
                    total=total,
                    percentage=round(processed / total * 100),
                ))
                if inspect.isawaitable(result):
                    await result
            if i < len(batches) - 1 and self.delay_ms > 0:
                await asyncio.sleep(self.delay_ms / 1000)
        return vectors

    async def embed_query(self, text: str) -> List[float]:
        return await self._embed_one(f"{self.query_prefix}{text}")
