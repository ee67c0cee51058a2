# knowledge_index/deepinfra.py
import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from knowledge_index.config import settings
from knowledge_index.exceptions import EmbeddingProviderFailure
from knowledge_index.metrics import embed_errors_total

logger = logging.getLogger(__name__)

_default_client: Optional[httpx.AsyncClient] = None


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


def _get_client() -> httpx.AsyncClient:
    global _default_client
    if _default_client is None:
        _default_client = httpx.AsyncClient(timeout=settings.embed_timeout)
    return _default_client


async def close_default_client() -> None:
    global _default_client
    if _default_client is not None:
        await _default_client.aclose()
        _default_client = None


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return isinstance(exc, httpx.TransportError)


async def _post_with_retry(client: httpx.AsyncClient, url: str, json: Dict[str, Any],
                           headers: Dict[str, str], timeout: float = 30.0,
                           retries: int = 3, backoff: float = 1.0) -> Dict[str, Any]:
    """
    POST with exponential backoff on transport errors, 429 and 5xx.
    Other 4xx responses fail on the first attempt.
    """
    delay = backoff
    for attempt in range(1, retries + 1):
        try:
            resp = await client.post(url, json=json, headers=headers, timeout=timeout)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPStatusError, httpx.TransportError) as e:
            if not _is_retryable(e):
                raise EmbeddingProviderFailure(f"Embedding request rejected: {e}") from e
            if attempt == retries:
                logger.error("Request failed after %s attempts to %s: %s", retries, url, e)
                raise EmbeddingProviderFailure(
                    f"Embedding request failed after {retries} attempts: {e}",
                    details={"url": url, "attempts": retries},
                ) from e
            logger.warning("Request attempt %s failed, retrying in %.1fs: %s", attempt, delay, e)
            await asyncio.sleep(delay)
            delay *= 2
        except ValueError as e:
            raise EmbeddingProviderFailure(f"Embedding provider returned invalid JSON: {e}") from e
    raise EmbeddingProviderFailure("Embedding request was not attempted (retries < 1)")


class DeepInfraEmbedder:
    """
    Embedding provider backed by DeepInfra's OpenAI-compatible /embeddings endpoint.
    One text per call; batching and pacing live in EmbeddingBatcher.
    """

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 model: Optional[str] = None, timeout: Optional[float] = None,
                 retries: Optional[int] = None, backoff: Optional[float] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or settings.deepinfra_base).rstrip("/")
        self.token = settings.deepinfra_token if token is None else token
        self.model = model or settings.embedding_model
        self.timeout = timeout or settings.embed_timeout
        self.retries = retries or settings.embed_max_retries
        self.backoff = settings.embed_retry_backoff if backoff is None else backoff
        self._client = client
        if not self.token:
            logger.warning("DEEPINFRA_TOKEN is not set; embedding calls will fail until set in env.")

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or _get_client()

    async def embed(self, text: str) -> List[float]:
        url = f"{self.base_url}/embeddings"
        headers = {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}
        payload = {"model": self.model, "input": [text], "encoding_format": "float"}
        try:
            data = await _post_with_retry(self.client, url, payload, headers,
                                          timeout=self.timeout, retries=self.retries,
                                          backoff=self.backoff)
        except EmbeddingProviderFailure:
            embed_errors_total.inc()
            raise
        items = data.get("data") if isinstance(data, dict) else None
        if not items or "embedding" not in items[0]:
            embed_errors_total.inc()
            raise EmbeddingProviderFailure("Invalid embedding response", details={"keys": list(data or {})})
        return [float(x) for x in items[0]["embedding"]]
