"""Document ingestion and semantic retrieval over Postgres + pgvector."""

__version__ = "1.0.0"
