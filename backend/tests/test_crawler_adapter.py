"""
Tests for the crawler API client.

Requests are answered by httpx.MockTransport handlers patched in through
CrawlerClient._get_client.
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from kb_ingest.connectors.adapters.crawler_adapter import (
    DEFAULT_EXCLUDE_GLOBS,
    CrawledPage,
    CrawlerClient,
    CrawlerError,
    CrawlRunInfo,
    CrawlSubmitError,
    build_crawl_input,
)


def _client(**kwargs):
    kwargs.setdefault("base_url", "https://crawler.test/v2")
    kwargs.setdefault("api_token", "token-1234")
    kwargs.setdefault("actor_id", "acme~crawler")
    kwargs.setdefault("max_retries", 0)
    return CrawlerClient(**kwargs)


def _serve(client, handler):
    return patch.object(
        client,
        "_get_client",
        side_effect=lambda: httpx.AsyncClient(
            base_url=client.base_url, transport=httpx.MockTransport(handler)
        ),
    )


# =============================================================================
# CRAWL INPUT
# =============================================================================


class TestBuildCrawlInput:

    def test_defaults(self):
        run_input = build_crawl_input("https://example.com/docs")

        assert run_input["startUrls"] == [{"url": "https://example.com/docs"}]
        assert run_input["maxCrawlPages"] == 100
        assert run_input["maxCrawlDepth"] == 5
        assert run_input["includeUrlGlobs"] == ["https://example.com/docs*"]
        assert run_input["excludeUrlGlobs"] == DEFAULT_EXCLUDE_GLOBS

    def test_caller_patterns_come_first(self):
        run_input = build_crawl_input(
            "https://example.com",
            max_pages=5,
            include_patterns=["https://example.com/help/*"],
            exclude_patterns=["*/blog/*", "*.pdf"],
        )

        assert run_input["maxCrawlPages"] == 5
        assert run_input["includeUrlGlobs"] == ["https://example.com/help/*"]
        excludes = run_input["excludeUrlGlobs"]
        assert excludes[:2] == ["*/blog/*", "*.pdf"]
        assert excludes.count("*.pdf") == 1
        assert "*privacy*" in excludes


# =============================================================================
# RESPONSE MODELS
# =============================================================================


class TestModels:

    def test_run_info_status_flags(self):
        assert CrawlRunInfo(id="r", status="SUCCEEDED").succeeded
        assert CrawlRunInfo(id="r", status="ABORTED").aborted
        assert CrawlRunInfo(id="r", status="TIMED-OUT").failed
        running = CrawlRunInfo(id="r", status="RUNNING")
        assert not (running.succeeded or running.aborted or running.failed)

    def test_page_lifts_nested_metadata(self):
        page = CrawledPage.model_validate({
            "url": "https://example.com/a",
            "markdown": None,
            "metadata": {"title": "About us", "description": "Who we are"},
        })
        assert page.title == "About us"
        assert page.description == "Who we are"
        assert page.markdown == ""

    def test_top_level_title_wins(self):
        page = CrawledPage.model_validate({
            "url": "https://example.com/a",
            "title": "Top",
            "metadata": {"title": "Nested"},
        })
        assert page.title == "Top"


# =============================================================================
# CLIENT
# =============================================================================


class TestCrawlerClient:

    @pytest.mark.asyncio
    async def test_submit_posts_input_with_bearer_token(self):
        client = _client()
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"data": {"id": "run-1", "status": "READY"}})

        with _serve(client, handler):
            run = await client.submit_crawl(build_crawl_input("https://example.com", max_pages=3))

        assert run.id == "run-1"
        assert seen["path"] == "/v2/acts/acme~crawler/runs"
        assert seen["body"]["maxCrawlPages"] == 3

    def test_real_client_sends_authorization(self):
        headers = _client()._get_client().headers
        assert headers["authorization"] == "Bearer token-1234"

    @pytest.mark.asyncio
    async def test_submit_without_token(self):
        client = _client(api_token="")
        with pytest.raises(CrawlSubmitError, match="not configured"):
            await client.submit_crawl({})

    @pytest.mark.asyncio
    async def test_submit_http_error_becomes_submit_error(self):
        client = _client()
        with _serve(client, lambda request: httpx.Response(402, text="payment required")):
            with pytest.raises(CrawlSubmitError) as exc_info:
                await client.submit_crawl({})
        assert exc_info.value.status_code == 402

    @pytest.mark.asyncio
    async def test_get_run_accepts_unwrapped_body(self):
        client = _client()
        body = {"id": "run-1", "status": "SUCCEEDED", "defaultDatasetId": "ds-1"}
        with _serve(client, lambda request: httpx.Response(200, json=body)):
            run = await client.get_run("run-1")
        assert run.succeeded
        assert run.default_dataset_id == "ds-1"

    @pytest.mark.asyncio
    async def test_dataset_items_drop_entries_without_url(self):
        client = _client()
        seen = {}
        items = [
            {"url": "https://example.com/", "markdown": "# Home", "metadata": {"title": "Home"}},
            {"markdown": "orphan"},
            "not a dict",
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json=items)

        with _serve(client, handler):
            pages = await client.fetch_dataset_items("run-1", limit=10)

        assert [p.url for p in pages] == ["https://example.com/"]
        assert pages[0].title == "Home"
        assert seen["params"]["limit"] == "10"

    @pytest.mark.asyncio
    async def test_malformed_dataset_items_dropped(self):
        client = _client()
        items = [
            {"url": "https://example.com/a", "markdown": "A", "processingTimeMs": 12.5},
            {"url": "https://example.com/b", "markdown": "B", "title": ["a", "b"]},
            {"url": "https://example.com/c", "markdown": "C", "processingTimeMs": 40},
        ]

        with _serve(client, lambda request: httpx.Response(200, json=items)):
            pages = await client.fetch_dataset_items("run-1")

        assert [p.url for p in pages] == ["https://example.com/c"]
        assert pages[0].processing_time_ms == 40

    @pytest.mark.asyncio
    async def test_dataset_must_be_a_list(self):
        client = _client()
        with _serve(client, lambda request: httpx.Response(200, json={"items": []})):
            with pytest.raises(CrawlerError, match="not a list"):
                await client.fetch_dataset_items("run-1")

    @pytest.mark.asyncio
    async def test_transport_errors_retried_then_raised(self):
        client = _client(max_retries=2)
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            raise httpx.ConnectError("refused", request=request)

        with _serve(client, handler), \
                patch("kb_ingest.connectors.adapters.crawler_adapter.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(CrawlerError) as exc_info:
                await client.get_run("run-1")

        assert calls["n"] == 3
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_abort_reports_failure_as_false(self):
        client = _client()
        with _serve(client, lambda request: httpx.Response(404, text="gone")):
            assert await client.abort_run("run-1") is False
        with _serve(client, lambda request: httpx.Response(200, json={"data": {"id": "run-1"}})):
            assert await client.abort_run("run-1") is True

    def test_resolve_config_masks_token(self):
        assert _client().resolve_config()["api_token"] == "***1234"
