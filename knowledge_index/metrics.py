# knowledge_index/metrics.py
from prometheus_client import Counter, Histogram

uploads_total = Counter("knowledge_uploads_total", "Total uploads accepted")
ingests_total = Counter("knowledge_ingests_total", "Total ingests started")
ingests_failed = Counter("knowledge_ingests_failed_total", "Ingest failures", ["stage"])
embed_errors_total = Counter("knowledge_embed_errors_total", "Embedding errors")
search_requests_total = Counter("knowledge_search_requests_total", "Search requests")

ingest_duration_seconds = Histogram(
    "knowledge_ingest_duration_seconds",
    "Wall time of a successful ingest",
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, 1800),
)
