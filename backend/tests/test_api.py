"""
HTTP API のテスト（FastAPI TestClient + 依存関係の差し替え）

main.app はライフスパンで ~/.ragdesk に実コンテナを作るため使わず、
同じルーターを載せたテスト用アプリで確認する
"""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from ragdesk.core.diagnostics import RagDiagnostics
from ragdesk.dependencies import get_diagnostics, get_rag_service
from ragdesk.docs.models import ChatHistory
from ragdesk.docs.store import DocumentStore
from ragdesk.llm.base import CircuitOpenError, LLMTimeoutError
from ragdesk.llm.prompt import PromptComposer
from ragdesk.rag.chunking import ChunkingEngine
from ragdesk.rag.indexer import DocumentProcessingService
from ragdesk.rag.retrieval import RetrievalService
from ragdesk.rag.service import RagService
from ragdesk.rag.vectorstore import InMemoryVectorStore
from ragdesk.routers import ask, diagnostics, documents, health

from conftest import FakeEmbedder, FakeGenerator


def build_app(tmp_path, generator: FakeGenerator, diag: RagDiagnostics) -> FastAPI:
    embedder = FakeEmbedder()
    document_store = DocumentStore(tmp_path / "storage")
    vector_store = InMemoryVectorStore()
    processing = DocumentProcessingService(
        document_store,
        ChunkingEngine(chunk_size=200, chunk_overlap=20),
        embedder,
        vector_store,
        diagnostics=diag,
    )
    service = RagService(
        document_store=document_store,
        vector_store=vector_store,
        processing=processing,
        retrieval=RetrievalService(embedder, vector_store, diagnostics=diag),
        composer=PromptComposer(),
        generator=generator,
        chat_history=ChatHistory(),
        diagnostics=diag,
    )

    test_app = FastAPI()
    test_app.include_router(health.router, prefix="/health", tags=["health"])
    test_app.include_router(documents.router, prefix="/documents", tags=["documents"])
    test_app.include_router(ask.router, prefix="/ask", tags=["ask"])
    test_app.include_router(diagnostics.router, prefix="/diagnostics", tags=["diagnostics"])
    test_app.dependency_overrides[get_rag_service] = lambda: service
    test_app.dependency_overrides[get_diagnostics] = lambda: diag
    return test_app


@pytest.fixture
def diag():
    instance = RagDiagnostics(level="INFO")
    instance.attach()
    yield instance
    instance.detach()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator(answer="Cats purr.")


@pytest.fixture
def client(tmp_path, generator, diag):
    with TestClient(build_app(tmp_path, generator, diag)) as test_client:
        yield test_client


@pytest.fixture
def cat_file(tmp_path):
    path = tmp_path / "cats.txt"
    path.write_text("Cats purr when happy.\n\nA cat sleeps most of the day.", encoding="utf-8")
    return path


def _error_code(resp) -> str:
    return resp.json()["detail"]["error"]["code"]


class TestHealth:
    def test_health_reports_counts(self, client):
        resp = client.get("/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["documents"] == 0
        assert body["chunks"] == 0
        assert body["http"] is None


class TestDocumentsApi:
    def test_add_process_select_flow(self, client, cat_file):
        # Arrange / Act
        created = client.post("/documents", json={"path": str(cat_file)})

        # Assert
        assert created.status_code == 201
        document_id = created.json()["id"]
        assert created.json()["is_processed"] is False

        listed = client.get("/documents")
        assert [d["id"] for d in listed.json()] == [document_id]

        processed = client.post(f"/documents/{document_id}/process")
        assert processed.status_code == 200
        assert processed.json()["is_processed"] is True
        assert processed.json()["is_selected"] is True

        deselected = client.patch(f"/documents/{document_id}/selection", json={"selected": False})
        assert deselected.json()["is_selected"] is False

        detail = client.get(f"/documents/{document_id}")
        assert detail.json()["content"].startswith("Cats purr")

    def test_missing_file_is_invalid_input(self, client, tmp_path):
        resp = client.post("/documents", json={"path": str(tmp_path / "nope.txt")})

        assert resp.status_code == 400
        assert _error_code(resp) == "INVALID_INPUT"

    def test_unsupported_file_type_is_invalid_input(self, client, tmp_path):
        path = tmp_path / "archive.zip"
        path.write_bytes(b"PK\x03\x04")

        resp = client.post("/documents", json={"path": str(path)})

        assert resp.status_code == 400
        assert _error_code(resp) == "INVALID_INPUT"

    def test_unknown_document_is_not_found(self, client):
        resp = client.get("/documents/missing")

        assert resp.status_code == 404
        assert _error_code(resp) == "NOT_FOUND"

    def test_delete_then_get_is_not_found(self, client, cat_file):
        document_id = client.post("/documents", json={"path": str(cat_file)}).json()["id"]

        deleted = client.delete(f"/documents/{document_id}")

        assert deleted.status_code == 204
        assert client.get(f"/documents/{document_id}").status_code == 404
        assert client.delete(f"/documents/{document_id}").status_code == 404


class TestAskApi:
    def test_ask_with_processed_document_returns_sources(self, client, cat_file):
        document_id = client.post("/documents", json={"path": str(cat_file)}).json()["id"]
        client.post(f"/documents/{document_id}/process")

        resp = client.post("/ask", json={"question": "Why does a  cat purr?"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["answer"] == "Cats purr."
        assert body["used_rag"] is True
        assert body["sources"][0]["document_id"] == document_id
        assert body["sources"][0]["source"] == "cats.txt"

        history = client.get("/ask/history").json()
        assert history[0]["user_query"] == "Why does a cat purr?"

    def test_ask_without_documents(self, client, generator):
        resp = client.post("/ask", json={"question": "Hello"})

        assert resp.status_code == 200
        assert resp.json()["used_rag"] is False
        assert resp.json()["sources"] == []
        assert generator.prompts == ["Hello"]

    def test_blank_question_is_rejected(self, client):
        resp = client.post("/ask", json={"question": "   "})

        assert resp.status_code == 400
        assert _error_code(resp) == "INVALID_INPUT"

    @pytest.mark.parametrize(
        "error, status_code, code",
        [
            (LLMTimeoutError("timed out", "generate"), 408, "TIMEOUT"),
            (CircuitOpenError("generate", 12.0), 503, "UNAVAILABLE"),
            (RuntimeError("boom"), 500, "INTERNAL_ERROR"),
        ],
    )
    def test_generation_errors_are_mapped(self, client, generator, error, status_code, code):
        generator.error = error

        resp = client.post("/ask", json={"question": "Hello"})

        assert resp.status_code == status_code
        assert _error_code(resp) == code

    def test_clear_history(self, client):
        client.post("/ask", json={"question": "Hello"})

        assert client.delete("/ask/history").status_code == 204
        assert client.get("/ask/history").json() == []


class TestDiagnosticsApi:
    def test_entries_include_service_logs(self, client, cat_file):
        client.post("/documents", json={"path": str(cat_file)})

        resp = client.get("/diagnostics/entries", params={"limit": 50})

        assert resp.status_code == 200
        assert any("ドキュメント追加" in e["message"] for e in resp.json())

    def test_invalid_level_is_rejected(self, client):
        resp = client.get("/diagnostics/entries", params={"min_level": "LOUD"})

        assert resp.status_code == 400

    def test_performance_counts_operations(self, client, cat_file):
        document_id = client.post("/documents", json={"path": str(cat_file)}).json()["id"]
        client.post(f"/documents/{document_id}/process")

        body = client.get("/diagnostics/performance").json()

        assert body["enabled"] is True
        assert body["operations"]["add_document"]["count"] == 1
        assert body["status"]["processed_documents"] == 1

    def test_settings_toggle(self, client, diag):
        resp = client.put("/diagnostics/settings", json={"enabled": True, "level": "warning"})

        assert resp.json() == {"enabled": True, "level": "WARNING"}
        assert diag.level == 30

        client.put("/diagnostics/settings", json={"enabled": False})
        assert diag.enabled is False
