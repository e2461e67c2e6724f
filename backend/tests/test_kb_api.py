"""
Tests for the knowledge-base HTTP API.

Pipelines and the crawl service are replaced through FastAPI dependency
overrides; Celery tasks are patched so nothing is queued.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import InMemoryDocumentService, make_session_factory
from kb_ingest.api.v1.routers import kb_ingest as kb_ingest_router
from kb_ingest.api.v1.routers import kb_scan as kb_scan_router
from kb_ingest.connectors.scrape.crawl_service import ScanResult
from kb_ingest.core.database.models import ExtractionLog, KBDocument
from kb_ingest.core.ingestion.ingestion_pipeline import KB_NOT_FOUND_ERROR, IngestResult
from kb_ingest.main import app


@pytest.fixture
def pipeline():
    mock = MagicMock()
    mock.ingest = AsyncMock()
    return mock


@pytest.fixture
def crawl():
    mock = MagicMock()
    mock.start_scan = AsyncMock()
    mock.get_status = AsyncMock()
    mock.cancel_scan = AsyncMock()
    return mock


@pytest.fixture
def client(pipeline, crawl):
    app.dependency_overrides[kb_ingest_router.get_pipeline] = lambda: pipeline
    app.dependency_overrides[kb_ingest_router.get_session_factory] = lambda: make_session_factory()
    app.dependency_overrides[kb_scan_router.get_crawl_service] = lambda: crawl
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def document_store():
    store = InMemoryDocumentService()
    with patch.object(kb_ingest_router, "document_service", store):
        yield store


def _ingest_body(**overrides):
    body = {
        "sourceKind": "file",
        "content": "SGVsbG8gd29ybGQ=",
        "filename": "hello.txt",
        "knowledgeBaseId": str(uuid.uuid4()),
        "organizationId": str(uuid.uuid4()),
    }
    body.update(overrides)
    return body


# =============================================================================
# POST /kb/ingest
# =============================================================================


class TestIngestEndpoint:

    def test_success(self, client, pipeline):
        pipeline.ingest.return_value = IngestResult(
            True, "doc-1", chunk_count=2, embedding_count=2,
            metadata={"originalFormat": "txt", "wordCount": 2},
        )

        response = client.post("/api/v1/kb/ingest", json=_ingest_body(options={"chunkSize": 500, "chunkOverlap": 50}))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["documentId"] == "doc-1"
        assert body["chunkCount"] == 2
        request = pipeline.ingest.await_args.args[0]
        assert request.options.chunk_size == 500
        assert request.options.chunk_overlap == 50
        assert request.filename == "hello.txt"

    def test_pipeline_failure_is_500(self, client, pipeline):
        pipeline.ingest.return_value = IngestResult(False, "doc-1", error="Embedding quota exceeded")

        response = client.post("/api/v1/kb/ingest", json=_ingest_body())

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "documentId": "doc-1",
            "chunkCount": 0,
            "embeddingCount": 0,
            "metadata": {},
            "error": "Embedding quota exceeded",
        }

    def test_unknown_knowledge_base_is_404(self, client, pipeline):
        pipeline.ingest.return_value = IngestResult(False, error=KB_NOT_FOUND_ERROR)
        response = client.post("/api/v1/kb/ingest", json=_ingest_body())
        assert response.status_code == 404

    @pytest.mark.parametrize(
        "overrides",
        [
            {"sourceKind": "email"},
            {"content": ""},
            {"filename": ""},
            {"knowledgeBaseId": "not-a-uuid"},
            {"options": {"chunkSize": 100, "chunkOverlap": 100}},
            {"options": {"chunkSize": 0}},
        ],
    )
    def test_invalid_request_is_422(self, client, pipeline, overrides):
        response = client.post("/api/v1/kb/ingest", json=_ingest_body(**overrides))

        assert response.status_code == 422
        assert response.json()["error"] == "Validation Error"
        pipeline.ingest.assert_not_awaited()

    def test_url_source_needs_no_filename(self, client, pipeline):
        pipeline.ingest.return_value = IngestResult(True, "doc-2")
        response = client.post(
            "/api/v1/kb/ingest",
            json=_ingest_body(sourceKind="url", content="https://example.com/faq", filename=""),
        )
        assert response.status_code == 200

    def test_async_queues_task(self, client, pipeline, document_store):
        kb = document_store.add_knowledge_base()
        with patch.object(kb_ingest_router, "ingest_document_task") as mock_task:
            mock_task.apply_async.return_value = MagicMock(id="task-123")

            response = client.post(
                "/api/v1/kb/ingest?async=true",
                json=_ingest_body(knowledgeBaseId=str(kb.id), organizationId=str(kb.organization_id)),
            )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "processing"
        assert body["jobId"] == "task-123"
        document = document_store.documents[body["documentId"]]
        assert document.extraction_status == "pending"
        assert document.source_locator == f"{kb.organization_id}/kb-documents/hello.txt"

        payload = mock_task.apply_async.call_args.kwargs["args"][0]
        assert payload["document_id"] == body["documentId"]
        assert payload["options"]["generate_embeddings"] is True
        pipeline.ingest.assert_not_awaited()

    def test_async_unknown_knowledge_base(self, client, document_store):
        with patch.object(kb_ingest_router, "ingest_document_task") as mock_task:
            response = client.post("/api/v1/kb/ingest?async=true", json=_ingest_body())

        assert response.status_code == 404
        mock_task.apply_async.assert_not_called()


# =============================================================================
# GET /kb/documents/{id}
# =============================================================================


class TestDocumentStatusEndpoint:

    def test_status_of_known_document(self, client, document_store):
        kb = document_store.add_knowledge_base()
        document = KBDocument(
            id=uuid.uuid4(), kb_id=kb.id, organization_id=kb.organization_id,
            file_name="faq.md", source_kind="file", source_locator="org/kb-documents/faq.md",
            status="processing", extraction_status="processing", embedding_status="pending",
            chunk_count=0, embedding_count=0,
        )
        document_store.documents[str(document.id)] = document
        document_store.logs.append(
            ExtractionLog(document_id=document.id, extraction_method="direct_text", status="completed")
        )

        response = client.get(f"/api/v1/kb/documents/{document.id}", params={"organizationId": str(kb.organization_id)})

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == str(document.id)
        assert body["knowledgeBaseId"] == str(kb.id)
        assert body["extractionStatus"] == "processing"
        assert body["embeddingStatus"] == "pending"
        assert body["lastExtraction"]["method"] == "direct_text"
        assert body["lastExtraction"]["status"] == "completed"

    def test_unknown_document(self, client, document_store):
        response = client.get(f"/api/v1/kb/documents/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"] == "Document not found"


# =============================================================================
# POST /kb/scan
# =============================================================================


class TestScanEndpoint:

    def _scan_body(self, **overrides):
        body = {
            "action": "scan",
            "websiteUrl": "https://example.com",
            "knowledgeBaseId": str(uuid.uuid4()),
            "organizationId": str(uuid.uuid4()),
            "options": {"maxPages": 5, "excludePatterns": ["*/blog/*"]},
        }
        body.update(overrides)
        return body

    def test_start_scan(self, client, crawl):
        crawl.start_scan.return_value = ScanResult(
            True, "run-1", "crawling", data={"externalRunId": "crawl-1", "maxPages": 5},
        )

        response = client.post("/api/v1/kb/scan", json=self._scan_body())

        assert response.status_code == 200
        assert response.json()["runId"] == "run-1"
        request = crawl.start_scan.await_args.args[0]
        assert request.max_pages == 5
        assert request.exclude_patterns == ["*/blog/*"]
        assert crawl.start_scan.await_args.kwargs["enqueue"] is kb_scan_router.enqueue_scan_run

    @pytest.mark.parametrize("url", [None, "ftp://example.com", "example.com"])
    def test_scan_requires_http_url(self, client, crawl, url):
        response = client.post("/api/v1/kb/scan", json=self._scan_body(websiteUrl=url))
        assert response.status_code == 400
        crawl.start_scan.assert_not_awaited()

    def test_scan_requires_knowledge_base(self, client, crawl):
        response = client.post("/api/v1/kb/scan", json=self._scan_body(knowledgeBaseId=None))
        assert response.status_code == 400

    def test_unknown_knowledge_base_is_404(self, client, crawl):
        crawl.start_scan.return_value = ScanResult(False, error="Knowledge base not found")
        response = client.post("/api/v1/kb/scan", json=self._scan_body())
        assert response.status_code == 404

    @pytest.mark.parametrize("action", ["status", "cancel"])
    def test_run_id_required(self, client, action):
        response = client.post("/api/v1/kb/scan", json={"action": action})
        assert response.status_code == 400
        assert response.json()["error"] == f"runId is required for action '{action}'"

    def test_status(self, client, crawl):
        crawl.get_status.return_value = ScanResult(
            True, "run-1", "processing",
            stats={"totalPages": 4, "processedPages": 2, "indexedPages": 2, "failedPages": 0},
        )

        response = client.post("/api/v1/kb/scan", json={"action": "status", "runId": "run-1"})

        assert response.status_code == 200
        assert response.json()["stats"]["processedPages"] == 2
        crawl.get_status.assert_awaited_once_with("run-1", None)

    def test_status_of_unknown_run(self, client, crawl):
        crawl.get_status.return_value = ScanResult(False, "run-x", error="Scan run not found")
        response = client.post("/api/v1/kb/scan", json={"action": "status", "runId": "run-x"})
        assert response.status_code == 404

    def test_cancel(self, client, crawl):
        crawl.cancel_scan.return_value = ScanResult(True, "run-1", "cancelled")
        response = client.post("/api/v1/kb/scan", json={"action": "cancel", "runId": "run-1"})
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    def test_cancel_finished_run_is_conflict(self, client, crawl):
        crawl.cancel_scan.return_value = ScanResult(False, "run-1", "completed", error="Scan run already completed")
        response = client.post("/api/v1/kb/scan", json={"action": "cancel", "runId": "run-1"})
        assert response.status_code == 409

    def test_unknown_action(self, client):
        response = client.post("/api/v1/kb/scan", json={"action": "pause", "runId": "run-1"})
        assert response.status_code == 422


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "running"
