"""HTTP surface tests with the pipeline components replaced via dependency_overrides."""
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from knowledge_index.config import settings
from knowledge_index.exceptions import DocumentNotFound, EmbeddingProviderFailure
from knowledge_index.main import app, get_orchestrator, get_search_service, get_store
from knowledge_index.schemas import ContextResponse, SearchResultItem, StatusResponse


@pytest.fixture
def doc_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def orchestrator(doc_id) -> MagicMock:
    orch = MagicMock()
    orch.submit = AsyncMock(return_value=SimpleNamespace(id=doc_id))
    orch.get_status = AsyncMock()
    orch.is_running.return_value = False
    return orch


@pytest.fixture
def store() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def search_service() -> MagicMock:
    service = MagicMock()
    service.search = AsyncMock(return_value=[])
    service.build_context = AsyncMock()
    return service


@pytest.fixture
def client(orchestrator, store, search_service):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_search_service] = lambda: search_service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "upload_dir", str(tmp_path))
    return tmp_path


class TestCreateDocument:
    def test_accepts_text_and_returns_status_url(self, client, orchestrator, doc_id) -> None:
        resp = client.post("/documents", json={"title": "Handbook", "category": "labor",
                                               "text": "Annual leave is 15 days."})

        assert resp.status_code == 202
        assert resp.json() == {"documentId": str(doc_id), "statusUrl": f"/status/{doc_id}"}
        kwargs = orchestrator.submit.await_args.kwargs
        assert kwargs["title"] == "Handbook"
        assert kwargs["category"] == "labor"
        assert kwargs["source"].text == "Annual leave is 15 days."
        assert kwargs["file_size"] == len("Annual leave is 15 days.")

    def test_pages_body(self, client, orchestrator) -> None:
        resp = client.post("/documents", json={"title": "Scan", "fileType": "pdf",
                                               "pages": [{"pageNumber": 1, "text": "one"}]})

        assert resp.status_code == 202
        assert orchestrator.submit.await_args.kwargs["source"].pages[0].page_number == 1

    def test_body_without_content_is_rejected(self, client, orchestrator) -> None:
        resp = client.post("/documents", json={"title": "Empty"})
        assert resp.status_code == 422
        orchestrator.submit.assert_not_awaited()


class TestUpload:
    def test_saves_file_and_submits_path(self, client, orchestrator, upload_dir) -> None:
        resp = client.post("/documents/upload", files={"file": ("notes.txt", b"hello world", "text/plain")},
                           data={"category": "misc"})

        assert resp.status_code == 202
        kwargs = orchestrator.submit.await_args.kwargs
        assert kwargs["title"] == "notes"
        assert kwargs["category"] == "misc"
        assert kwargs["file_type"] == "txt"
        assert kwargs["original_filename"] == "notes.txt"
        assert kwargs["file_size"] == 11
        saved = kwargs["source"].file_path
        assert saved.startswith(str(upload_dir))
        with open(saved, "rb") as f:
            assert f.read() == b"hello world"

    def test_explicit_title(self, client, orchestrator, upload_dir) -> None:
        client.post("/documents/upload", files={"file": ("a.md", b"# hi", "text/markdown")},
                    data={"title": "Readme"})
        assert orchestrator.submit.await_args.kwargs["title"] == "Readme"

    def test_rejects_unknown_extension(self, client, orchestrator, upload_dir) -> None:
        resp = client.post("/documents/upload", files={"file": ("tool.exe", b"MZ", "application/octet-stream")})

        assert resp.status_code == 400
        orchestrator.submit.assert_not_awaited()
        assert list(upload_dir.iterdir()) == []

    def test_rejects_oversized_upload(self, client, orchestrator, upload_dir, monkeypatch) -> None:
        monkeypatch.setattr(settings, "max_upload_size", 10)

        resp = client.post("/documents/upload", files={"file": ("big.txt", b"x" * 100, "text/plain")})

        assert resp.status_code == 413
        orchestrator.submit.assert_not_awaited()
        assert list(upload_dir.iterdir()) == []


class TestStatus:
    def test_returns_progress(self, client, orchestrator, doc_id) -> None:
        orchestrator.get_status.return_value = StatusResponse(
            document_id=doc_id, status="embedding", progress_percent=64, document_status="processing")

        resp = client.get(f"/status/{doc_id}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "embedding"
        assert body["progressPercent"] == 64
        assert body["documentStatus"] == "processing"

    def test_unknown_document_is_404(self, client, orchestrator, doc_id) -> None:
        orchestrator.get_status.side_effect = DocumentNotFound(doc_id)
        assert client.get(f"/status/{doc_id}").status_code == 404

    def test_malformed_id_is_422(self, client) -> None:
        assert client.get("/status/not-a-uuid").status_code == 422


class TestSearch:
    def test_returns_results(self, client, search_service, doc_id) -> None:
        search_service.search.return_value = [SearchResultItem(
            content="Annual leave is 15 days.", document_title="Handbook", document_id=doc_id,
            category="labor", chunk_index=0, page_number=2, similarity=0.9123)]

        resp = client.post("/search", json={"query": "annual leave", "category": "labor", "limit": 5})

        assert resp.status_code == 200
        body = resp.json()
        assert body["query"] == "annual leave"
        assert body["resultCount"] == 1
        assert body["results"][0]["documentTitle"] == "Handbook"
        assert body["results"][0]["similarity"] == 0.9123
        search_service.search.assert_awaited_once_with("annual leave", category="labor",
                                                       threshold=None, limit=5)

    def test_empty_query_is_422(self, client) -> None:
        assert client.post("/search", json={"query": ""}).status_code == 422

    def test_blank_query_is_400(self, client, search_service) -> None:
        search_service.search.side_effect = ValueError("query must not be empty")
        assert client.post("/search", json={"query": "   "}).status_code == 400

    def test_provider_failure_is_502(self, client, search_service) -> None:
        search_service.search.side_effect = EmbeddingProviderFailure("quota exceeded")
        assert client.post("/search", json={"query": "q"}).status_code == 502


class TestSearchContext:
    def test_returns_context_block(self, client, search_service) -> None:
        search_service.build_context.return_value = ContextResponse(
            query="How do I request leave?", should_search=True, result_count=1, avg_similarity=0.91,
            sources=["Handbook"], context="\n\n[Knowledge Base]\nSources: Handbook\n---\n...---\n")

        resp = client.post("/search/context", json={"query": "How do I request leave?", "threshold": 0.6})

        assert resp.status_code == 200
        body = resp.json()
        assert body["shouldSearch"] is True
        assert body["avgSimilarity"] == 0.91
        assert body["sources"] == ["Handbook"]
        assert body["context"].startswith("\n\n[Knowledge Base]")
        search_service.build_context.assert_awaited_once_with("How do I request leave?", category=None,
                                                              threshold=0.6, limit=None)

    def test_provider_failure_is_502(self, client, search_service) -> None:
        search_service.build_context.side_effect = EmbeddingProviderFailure("quota exceeded")
        assert client.post("/search/context", json={"query": "what is this?"}).status_code == 502


class TestDelete:
    def test_returns_deleted_chunk_count(self, client, store, doc_id) -> None:
        store.delete_document.return_value = 4

        resp = client.delete(f"/documents/{doc_id}")

        assert resp.status_code == 200
        assert resp.json() == {"documentId": str(doc_id), "deletedChunks": 4}

    def test_unknown_document_is_404(self, client, store, doc_id) -> None:
        store.delete_document.side_effect = DocumentNotFound(doc_id)
        assert client.delete(f"/documents/{doc_id}").status_code == 404

    def test_running_ingest_is_409(self, client, store, orchestrator, doc_id) -> None:
        orchestrator.is_running.return_value = True

        assert client.delete(f"/documents/{doc_id}").status_code == 409
        store.delete_document.assert_not_awaited()


def test_stats(client, store) -> None:
    store.get_stats.return_value = {"total_chunks": 12, "chunks_with_embedding": 12, "total_documents": 2,
                                    "documents_by_status": {"ready": 2}}
    store.check_setup.return_value = {"extension_exists": True, "column_exists": True}

    resp = client.get("/stats")

    assert resp.status_code == 200
    assert resp.json()["totalChunks"] == 12
    assert resp.json()["documentsByStatus"] == {"ready": 2}
    assert resp.json()["extensionExists"] is True


class TestHealthAndMetrics:
    def test_healthy(self, client) -> None:
        with patch("knowledge_index.db.ping", new=AsyncMock(return_value=True)):
            resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json() == {"database": True}

    def test_database_down(self, client) -> None:
        with patch("knowledge_index.db.ping", new=AsyncMock(side_effect=OSError("refused"))):
            resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.json() == {"database": False}

    def test_metrics_exposed(self, client) -> None:
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "knowledge_uploads_total" in resp.text

    def test_metrics_disabled(self, client, monkeypatch) -> None:
        monkeypatch.setattr(settings, "prometheus_enabled", False)
        assert client.get("/metrics").status_code == 404
