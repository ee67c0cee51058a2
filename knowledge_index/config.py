# knowledge_index/config.py
from typing import Annotated, List, Optional
from pydantic_settings import BaseSettings, NoDecode
from pydantic import Field, field_validator, model_validator


class Settings(BaseSettings):
    # DB (Postgres + pgvector)
    database_url: str = Field("postgresql+asyncpg://localhost:5432/knowledge")
    db_pool_size: int = Field(5)
    db_max_overflow: int = Field(10)
    db_echo: bool = Field(False)

    # Celery / Redis
    redis_url: str = Field("redis://localhost:6379/0")
    celery_queue: str = Field("ingest_queue")
    ingest_runner: str = Field("inline")  # "inline" (asyncio task) or "celery"

    # DeepInfra embeddings (OpenAI-compatible endpoint)
    deepinfra_base: str = Field("https://api.deepinfra.com/v1/openai")
    deepinfra_token: str = Field("")
    embedding_model: str = Field("BAAI/bge-base-en-v1.5")
    embedding_dimension: int = Field(768)
    embed_timeout: float = Field(30.0)
    embed_max_retries: int = Field(3)
    embed_retry_backoff: float = Field(1.0)
    strict_embedding_dimension: bool = Field(False)
    query_prefix: str = Field("search query: ")

    # batching
    embed_batch: int = Field(100)
    embed_batch_delay_ms: int = Field(100)
    insert_batch: int = Field(100)

    # chunking
    chunk_size: int = Field(1000)
    chunk_overlap: int = Field(200)

    # search defaults
    search_default_threshold: float = Field(0.5)
    search_default_limit: int = Field(10)
    search_max_limit: int = Field(100)
    context_default_limit: int = Field(5)

    # progress / jobs
    progress_backend: str = Field("redis")  # "redis" or "memory"
    progress_ttl_seconds: int = Field(60 * 60 * 24)
    max_concurrent_ingestions: int = Field(4)
    ingest_timeout_seconds: Optional[float] = Field(None)

    # Uploads
    upload_dir: str = Field(".data")
    max_upload_size: int = Field(500 * 1024 * 1024)
    allowed_extensions: Annotated[List[str], NoDecode] = Field([".pdf", ".txt", ".md"])
    remove_uploads_after_ingest: bool = Field(True)

    # CORS
    cors_origins: Annotated[List[str], NoDecode] = Field(["*"])

    host: str = Field("0.0.0.0")
    port: int = Field(8000)
    log_level: str = Field("INFO")

    # Prometheus
    prometheus_enabled: bool = Field(True)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("allowed_extensions", mode="before")
    def _split_allowed_extensions(cls, v):
        """
        Allows ALLOWED_EXTENSIONS as comma-separated string in env, or as a list.
        Extensions are lower-cased and always carry a leading dot.
        """
        if isinstance(v, str):
            v = [s.strip() for s in v.split(",") if s.strip()]
        return [e.lower() if e.startswith(".") else f".{e.lower()}" for e in v]

    @field_validator("cors_origins", mode="before")
    def _split_cors_origins(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("embedding_dimension", "embed_batch", "insert_batch", "chunk_size",
                     "max_concurrent_ingestions", "embed_max_retries", "context_default_limit", mode="before")
    def _positive_int(cls, v, info):
        if isinstance(v, str) and v.strip().isdigit():
            v = int(v)
        if not isinstance(v, int) or v <= 0:
            raise ValueError(f"{info.field_name.upper()} must be a positive integer")
        return v

    @field_validator("ingest_runner")
    def _check_runner(cls, v):
        if v not in ("inline", "celery"):
            raise ValueError("INGEST_RUNNER must be 'inline' or 'celery'")
        return v

    @field_validator("progress_backend")
    def _check_progress_backend(cls, v):
        if v not in ("redis", "memory"):
            raise ValueError("PROGRESS_BACKEND must be 'redis' or 'memory'")
        return v

    @field_validator("ingest_timeout_seconds", mode="before")
    def _empty_timeout(cls, v):
        if v == "" or v == 0:
            return None
        return v

    @model_validator(mode="after")
    def _check_overlap(self):
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("CHUNK_OVERLAP must be >= 0 and smaller than CHUNK_SIZE")
        return self


settings = Settings()
