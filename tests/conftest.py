"""Shared pytest configuration and fixtures."""
import os

# keep imports side-effect free: no Redis, no provider token warnings
os.environ.setdefault("PROGRESS_BACKEND", "memory")
os.environ.setdefault("INGEST_RUNNER", "inline")
os.environ.setdefault("DEEPINFRA_TOKEN", "test-token")
os.environ.setdefault("REMOVE_UPLOADS_AFTER_INGEST", "false")

import asyncio  # noqa: E402
from typing import List  # noqa: E402

import pytest  # noqa: E402


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring a live Postgres with pgvector")


class FakeProvider:
    """Deterministic embedding provider: vector[0] encodes the text length."""

    def __init__(self, dimension: int = 8, fail_on: str = None, delay: float = 0.0):
        self.dimension = dimension
        self.fail_on = fail_on
        self.delay = delay
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_on is not None and self.fail_on in text:
                raise RuntimeError(f"provider rejected {text!r}")
            return [float(len(text))] + [0.5] * (self.dimension - 1)
        finally:
            self.active -= 1


class BlockingProvider(FakeProvider):
    """Never returns until `release` is set; `started` fires on the first call."""

    def __init__(self, dimension: int = 8):
        super().__init__(dimension)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def embed(self, text: str) -> List[float]:
        self.started.set()
        await self.release.wait()
        return await super().embed(text)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def provider_cls():
    return FakeProvider


@pytest.fixture
def blocking_provider() -> BlockingProvider:
    return BlockingProvider()
