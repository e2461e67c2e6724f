"""
Crawler Adapter - ServiceAdapter implementation for the external website crawler.

HTTP client for an Apify-style actor API. The crawl service submits a
website-content crawl, polls the run, and reads the pages from the run's
dataset once it succeeds.

Endpoints:
    POST {base}/acts/{actor}/runs                   submit a crawl
    GET  {base}/actor-runs/{run_id}                 run status
    GET  {base}/actor-runs/{run_id}/dataset/items   crawled pages
    POST {base}/actor-runs/{run_id}/abort           abort a run

The API token is sent as a Bearer header. Responses may or may not be wrapped
in a {"data": ...} envelope; both are accepted.

Usage:
    from kb_ingest.connectors.adapters.crawler_adapter import get_crawler_client, build_crawl_input

    client = get_crawler_client()
    run = await client.submit_crawl(build_crawl_input("https://example.com", max_pages=50))
    info = await client.get_run(run.id)
    pages = await client.fetch_dataset_items(run.id, limit=50)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from kb_ingest.config import settings
from kb_ingest.connectors.adapters.base import ServiceAdapter, mask_secret

logger = logging.getLogger("kb_ingest.crawler_client")

# Crawler run statuses
RUN_SUCCEEDED = "SUCCEEDED"
RUN_ABORTED = "ABORTED"
RUN_FAILED_STATUSES = frozenset({"FAILED", "TIMED-OUT", "TIMED_OUT"})

REMOVE_TAGS = [
    "script", "style", "nav", "footer", "aside",
    ".sidebar", "#sidebar", ".navigation", "#navigation",
]
REMOVE_ELEMENTS_SELECTOR = (
    "nav, footer, aside, .sidebar, #sidebar, .navigation, #navigation, .cookie-banner, .popup"
)
# Always excluded: binary documents, images and legal boilerplate
DEFAULT_EXCLUDE_GLOBS = [
    "*.pdf", "*.doc", "*.docx", "*.xls", "*.xlsx", "*.ppt", "*.pptx",
    "*.jpg", "*.jpeg", "*.png", "*.gif", "*.svg",
    "*privacy*", "*terms*", "*cookie*", "*legal*",
]


class CrawlerError(RuntimeError):
    """Raised when the crawler API fails or returns an invalid response."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class CrawlSubmitError(CrawlerError):
    """Raised when a crawl could not be submitted."""


# ============================================================================
# RESPONSE MODELS
# ============================================================================


class CrawlRunInfo(BaseModel):
    """Status of one crawler run."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    status: str = "READY"
    default_dataset_id: Optional[str] = Field(default=None, alias="defaultDatasetId")
    stats: Dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == RUN_SUCCEEDED

    @property
    def aborted(self) -> bool:
        return self.status == RUN_ABORTED

    @property
    def failed(self) -> bool:
        return self.status in RUN_FAILED_STATUSES


class CrawledPage(BaseModel):
    """One item of a crawl run's dataset."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    url: str
    text: str = ""
    markdown: str = ""
    title: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    date: Optional[str] = None
    processing_time_ms: Optional[int] = Field(default=None, alias="processingTimeMs")

    @model_validator(mode="before")
    @classmethod
    def _lift_nested_metadata(cls, data: Any) -> Any:
        # Some actor versions nest title/description/author under "metadata"
        if isinstance(data, dict) and isinstance(data.get("metadata"), dict):
            data = dict(data)
            for key in ("title", "description", "author"):
                if not data.get(key) and data["metadata"].get(key):
                    data[key] = data["metadata"][key]
        if isinstance(data, dict):
            for key in ("markdown", "text"):
                if data.get(key) is None:
                    data = {**data, key: ""}
        return data


def build_crawl_input(
    website_url: str,
    max_pages: int = None,
    include_patterns: Optional[List[str]] = None,
    exclude_patterns: Optional[List[str]] = None,
    max_depth: int = None,
) -> Dict[str, Any]:
    """
    Build the crawler run input for a website scan.

    Include globs default to everything under the start URL; exclude globs are
    the caller's patterns followed by DEFAULT_EXCLUDE_GLOBS.
    """
    include_globs = list(include_patterns) if include_patterns else [f"{website_url}*"]
    exclude_globs = list(exclude_patterns or []) + [
        g for g in DEFAULT_EXCLUDE_GLOBS if g not in (exclude_patterns or [])
    ]

    return {
        "startUrls": [{"url": website_url}],
        "maxCrawlPages": max_pages or settings.crawl_default_max_pages,
        "maxCrawlDepth": max_depth or settings.crawl_max_depth,
        "removeTags": REMOVE_TAGS,
        "removeElementsCssSelector": REMOVE_ELEMENTS_SELECTOR,
        "includeUrlGlobs": include_globs,
        "excludeUrlGlobs": exclude_globs,
        "maxScrollHeightPixels": 5000,
        "readableTextCharThreshold": 100,
    }


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body and isinstance(body["data"], (dict, list)):
        return body["data"]
    return body


# ============================================================================
# CLIENT
# ============================================================================


class CrawlerClient(ServiceAdapter):
    """Async client for the crawler actor API."""

    CONNECTION_TYPE = "crawler"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        actor_id: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self.base_url = (base_url or settings.crawler_base_url).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.crawler_api_token
        self.actor_id = actor_id or settings.crawler_actor_id
        self.timeout = timeout or settings.crawler_timeout
        self.max_retries = max_retries if max_retries is not None else settings.crawler_max_retries

    def _get_client(self) -> httpx.AsyncClient:
        """Create a fresh HTTP client per call to avoid event-loop-closed errors in Celery."""
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=headers,
        )

    # ========================================================================
    # ServiceAdapter interface
    # ========================================================================

    def resolve_config(self) -> Dict[str, Any]:
        return {
            "service_url": self.base_url,
            "api_token": mask_secret(self.api_token),
            "actor_id": self.actor_id,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
        }

    async def test_connection(self) -> Dict[str, Any]:
        """Test the crawler API token."""
        if not self.is_available:
            return {
                "success": False,
                "message": "Crawler API token not configured",
                "service_url": self.base_url,
            }
        try:
            response = await self._request("GET", "/users/me", retries=0)
            ok = response.status_code == 200
            return {
                "success": ok,
                "message": "Crawler API reachable" if ok else f"Crawler API HTTP {response.status_code}",
                "service_url": self.base_url,
            }
        except CrawlerError as e:
            return {
                "success": False,
                "message": f"Crawler connection test failed: {e}",
                "service_url": self.base_url,
            }

    @property
    def is_available(self) -> bool:
        return bool(self.base_url and self.api_token)

    # ========================================================================
    # HTTP
    # ========================================================================

    async def _request(
        self, method: str, path: str, retries: Optional[int] = None, **kwargs
    ) -> httpx.Response:
        """Send a request, retrying transport errors with exponential backoff."""
        retries = max(0, self.max_retries if retries is None else retries)
        attempt = 0
        last_error: Optional[BaseException] = None

        while attempt <= retries:
            try:
                async with self._get_client() as client:
                    return await client.request(method, path, **kwargs)
            except httpx.RequestError as e:
                last_error = e
                if attempt >= retries:
                    break
                sleep_for = min(2**attempt * 0.5, 6.0)
                logger.warning(
                    f"Crawler request {method} {path} failed (attempt {attempt + 1}/{retries + 1}), "
                    f"retrying in {sleep_for}s: {e}"
                )
                await asyncio.sleep(sleep_for)
                attempt += 1

        raise CrawlerError(
            f"Crawler request failed after {retries + 1} attempt(s): {last_error!s}",
            status_code=502,
        )

    @staticmethod
    def _check(response: httpx.Response, action: str) -> Any:
        if response.status_code >= 400:
            raise CrawlerError(
                f"Crawler {action} HTTP {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        try:
            return _unwrap(response.json())
        except ValueError as e:
            raise CrawlerError(f"Crawler {action} returned invalid JSON: {e}", status_code=502)

    # ========================================================================
    # Crawler operations
    # ========================================================================

    async def submit_crawl(self, run_input: Dict[str, Any]) -> CrawlRunInfo:
        """
        Start a crawler run.

        Raises:
            CrawlSubmitError: If the token is missing or the submission fails
        """
        if not self.api_token:
            raise CrawlSubmitError("Crawler API token not configured", status_code=401)

        try:
            response = await self._request("POST", f"/acts/{self.actor_id}/runs", json=run_input)
            data = self._check(response, "submit")
            run = CrawlRunInfo.model_validate(data)
        except CrawlSubmitError:
            raise
        except CrawlerError as e:
            raise CrawlSubmitError(f"Failed to start crawler: {e}", status_code=e.status_code) from e
        except ValueError as e:
            raise CrawlSubmitError(f"Unexpected crawler submit response: {e}", status_code=502) from e

        logger.info(f"Submitted crawler run {run.id} (actor={self.actor_id}, status={run.status})")
        return run

    async def get_run(self, run_id: str) -> CrawlRunInfo:
        """Get the status of a crawler run."""
        response = await self._request("GET", f"/actor-runs/{run_id}")
        data = self._check(response, "status")
        try:
            return CrawlRunInfo.model_validate(data)
        except ValueError as e:
            raise CrawlerError(f"Unexpected crawler status response: {e}", status_code=502) from e

    async def fetch_dataset_items(self, run_id: str, limit: Optional[int] = None) -> List[CrawledPage]:
        """Read the pages produced by a crawler run. Items without a URL or that fail validation are dropped."""
        params: Dict[str, Any] = {"format": "json", "clean": "true"}
        if limit:
            params["limit"] = limit

        response = await self._request("GET", f"/actor-runs/{run_id}/dataset/items", params=params)
        data = self._check(response, "dataset")
        if not isinstance(data, list):
            raise CrawlerError("Crawler dataset response is not a list", status_code=502)

        pages: List[CrawledPage] = []
        for item in data:
            if not isinstance(item, dict) or not item.get("url"):
                logger.debug(f"Dropping dataset item without url from run {run_id}")
                continue
            try:
                pages.append(CrawledPage.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Dropping malformed dataset item {item.get('url')} from run {run_id}: {e}")
        return pages

    async def abort_run(self, run_id: str) -> bool:
        """
        Ask the crawler to abort a run.

        Returns:
            True if the crawler accepted the abort. Failures are logged and
            reported as False, never raised.
        """
        try:
            response = await self._request("POST", f"/actor-runs/{run_id}/abort", retries=0)
        except CrawlerError as e:
            logger.warning(f"Failed to abort crawler run {run_id}: {e}")
            return False

        if response.status_code >= 400:
            logger.warning(f"Failed to abort crawler run {run_id}: HTTP {response.status_code}")
            return False
        return True


def get_crawler_client() -> CrawlerClient:
    """Get a CrawlerClient configured from settings."""
    return CrawlerClient()
