"""
Crawl Service for Website Scanning.

Drives multi-page website scans through the external crawler and feeds every
crawled page into the ingestion pipeline.

Scan lifecycle (ScanRun.status):
    started -> crawling -> processing -> completed | failed

Key Features:
- Submission of the crawl to the external crawler with include/exclude globs
- Bounded, cancellable polling driven by an injected clock
- Page cap at the scan config's max pages
- Content hash-based change detection: unchanged pages are not re-embedded
- Bounded page concurrency, each page in its own database session
- Partial-failure tolerance: a failing page is tallied, never fatal to the run
- Counters persisted periodically so status reads show progress mid-run
- Cancellation from the API (crawler abort + run marked failed)

Usage:
    from kb_ingest.connectors.scrape.crawl_service import crawl_service, ScanRequest

    result = await crawl_service.start_scan(ScanRequest(
        organization_id=org_id,
        knowledge_base_id=kb_id,
        website_url="https://example.com",
        max_pages=50,
    ), enqueue=lambda run_id: process_scan_run_task.delay(run_id))

    # In the worker
    summary = await crawl_service.process_run(run_id)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from kb_ingest.config import settings
from kb_ingest.connectors.adapters.crawler_adapter import (
    CrawledPage,
    CrawlerClient,
    CrawlerError,
    CrawlRunInfo,
    build_crawl_input,
    get_crawler_client,
)
from kb_ingest.core.database.models import KnowledgeBase, ScanConfig, ScanRun
from kb_ingest.core.ingestion.document_service import DocumentService, document_service
from kb_ingest.core.ingestion.extraction_service import METHOD_CRAWLER
from kb_ingest.core.ingestion.ingestion_pipeline import (
    IngestionPipeline,
    IngestOptions,
    ingestion_pipeline,
)
from kb_ingest.core.search.content_hasher import compute_content_hash
from kb_ingest.core.shared.database_service import database_service
from kb_ingest.core.shared.scan_job_service import (
    TERMINAL_RUN_STATUSES,
    RunCounters,
    ScanJobService,
    scan_job_service,
    website_domain,
)
from kb_ingest.core.utils.text_utils import count_words

logger = logging.getLogger("kb_ingest.crawl_service")

CANCELLED_MESSAGE = "Cancelled by user"
NO_PAGES_INDEXED_MESSAGE = "No pages were indexed successfully"

# Page outcomes
PAGE_INDEXED = "indexed"
PAGE_UNCHANGED = "unchanged"
PAGE_TOO_SHORT = "too_short"
PAGE_FAILED = "failed"


class CrawlTimeoutError(RuntimeError):
    """The crawler run did not finish within the allowed number of polls."""


class CrawlAbortedError(RuntimeError):
    """The crawler reports the run as aborted."""


class CrawlFailedError(RuntimeError):
    """The crawler reports the run as failed or timed out on its side."""


class ScanCancelledError(RuntimeError):
    """The run was cancelled while this worker was processing it."""


# ============================================================================
# Timing and cancellation primitives
# ============================================================================


class CancellationToken:
    """In-process cancellation signal for one scan run."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class SystemClock:
    """Monotonic wall clock with a cancellable sleep."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> bool:
        """
        Sleep for `seconds`.

        Returns:
            True when the full interval elapsed, False if the token fired first
        """
        if token is None:
            await asyncio.sleep(seconds)
            return True
        if token.is_cancelled:
            return False
        try:
            await asyncio.wait_for(token.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False


@dataclass(frozen=True)
class PollState:
    """Explicit state of the crawler poll loop, advanced by value."""

    attempt: int
    max_attempts: int
    interval: float
    deadline: float

    @classmethod
    def start(cls, clock, max_attempts: int, interval: float) -> "PollState":
        return cls(0, max_attempts, interval, clock.now() + max_attempts * interval)

    def advance(self) -> "PollState":
        return replace(self, attempt=self.attempt + 1)

    def exhausted(self, now: float) -> bool:
        return self.attempt >= self.max_attempts or now > self.deadline


# ============================================================================
# Requests and results
# ============================================================================


@dataclass
class ScanRequest:
    organization_id: Any
    knowledge_base_id: Any
    website_url: str
    max_pages: Optional[int] = None
    include_patterns: Optional[List[str]] = None
    exclude_patterns: Optional[List[str]] = None
    scan_type: str = "full"


@dataclass
class ScanResult:
    """Response of a scan/status/cancel action."""

    success: bool
    run_id: Optional[str] = None
    status: Optional[str] = None
    stats: Optional[Dict[str, int]] = None
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success, "runId": self.run_id, "status": self.status}
        if self.stats is not None:
            body["stats"] = self.stats
        if self.data:
            body["data"] = self.data
        if self.error:
            body["error"] = self.error
        return body


class CrawlService:
    """
    Orchestrates website scans: submit, poll, fetch, per-page ingestion.

    Collaborators and timing are injected so workers and tests can swap them.
    """

    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        store: Optional[ScanJobService] = None,
        documents: Optional[DocumentService] = None,
        pipeline: Optional[IngestionPipeline] = None,
        crawler: Optional[CrawlerClient] = None,
        clock=None,
        poll_interval: Optional[float] = None,
        max_poll_attempts: Optional[int] = None,
        page_concurrency: Optional[int] = None,
        progress_interval: Optional[int] = None,
        min_page_chars: Optional[int] = None,
    ):
        self._session_factory = session_factory or database_service.get_session
        self.store = store or scan_job_service
        self.documents = documents or document_service
        self.pipeline = pipeline or ingestion_pipeline
        self._crawler = crawler
        self.clock = clock or SystemClock()
        self.poll_interval = settings.crawl_poll_interval_seconds if poll_interval is None else poll_interval
        self.max_poll_attempts = max_poll_attempts or settings.crawl_max_poll_attempts
        self.page_concurrency = max(1, min(4, page_concurrency or settings.crawl_page_concurrency))
        self.progress_interval = max(1, progress_interval or settings.crawl_progress_interval)
        self.min_page_chars = settings.crawl_min_page_chars if min_page_chars is None else min_page_chars
        self._tokens: Dict[str, CancellationToken] = {}

    @property
    def crawler(self) -> CrawlerClient:
        if self._crawler is None:
            self._crawler = get_crawler_client()
        return self._crawler

    # =========================================================================
    # SUBMIT
    # =========================================================================

    async def start_scan(
        self,
        request: ScanRequest,
        enqueue: Optional[Callable[[str], Any]] = None,
    ) -> ScanResult:
        """
        Create/refresh the scan config, create a run and submit the crawl.

        Args:
            request: Scan parameters
            enqueue: Called with the run id once the crawl is submitted, to
                schedule background processing

        Returns:
            ScanResult with status "crawling", or "failed" if submission failed
        """
        async with self._session_factory() as session:
            kb = await self.documents.get_knowledge_base(
                session, request.knowledge_base_id, request.organization_id
            )
            if kb is None:
                return ScanResult(False, error="Knowledge base not found")

            config = await self.store.upsert_scan_config(
                session,
                request.organization_id,
                kb.id,
                request.website_url,
                max_pages=request.max_pages,
                include_patterns=request.include_patterns,
                exclude_patterns=request.exclude_patterns,
            )
            run = await self.store.create_run(
                session, config, scan_type=request.scan_type, actor_id=self.crawler.actor_id
            )
            await session.commit()
            run_id, config_id = str(run.id), config.id
            max_pages = config.max_pages
            run_input = build_crawl_input(
                request.website_url,
                max_pages=config.max_pages,
                include_patterns=config.include_patterns,
                exclude_patterns=config.exclude_patterns,
            )

        logger.info(f"Starting scan {run_id} of {request.website_url} (max {max_pages} pages)")

        try:
            crawl_run = await self.crawler.submit_crawl(run_input)
        except CrawlerError as e:
            message = str(e)
            logger.error(f"Crawl submission failed for run {run_id}: {message}")
            await self.fail_run(run_id, message)
            return ScanResult(False, run_id, "failed", error=message)

        async with self._session_factory() as session:
            run = await self.store.get_run(session, run_id)
            await self.store.advance_run(session, run, "crawling", external_run_id=crawl_run.id)

        if enqueue is not None:
            enqueue(run_id)

        return ScanResult(
            True,
            run_id,
            "crawling",
            data={
                "scanConfigId": str(config_id),
                "externalRunId": crawl_run.id,
                "websiteDomain": website_domain(request.website_url),
                "maxPages": max_pages,
            },
        )

    # =========================================================================
    # PROCESS (background)
    # =========================================================================

    async def process_run(self, run_id: str, token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        """
        Poll the crawler until the run finishes, then ingest every page.

        Run-level failures (crawler failure, abort, poll timeout, no page
        indexed) mark the run and its config failed. Other exceptions
        propagate to the caller.

        Returns:
            Final status snapshot of the run
        """
        token = token or CancellationToken()
        self._tokens[run_id] = token

        try:
            async with self._session_factory() as session:
                run = await self.store.get_run(session, run_id)
                if run is None:
                    raise ValueError(f"Scan run {run_id} not found")
                if run.status in TERMINAL_RUN_STATUSES:
                    logger.info(f"Scan run {run_id} already {run.status}, nothing to process")
                    return await self.store.get_status(session, run_id)
                config = await self.store.get_scan_config(session, run.scan_config_id)
                kb = await self.documents.get_knowledge_base(session, config.kb_id)
                if kb is None:
                    raise ValueError(f"Knowledge base {config.kb_id} not found")

            try:
                await self._poll_until_finished(run, token)
                pages = await self.crawler.fetch_dataset_items(run.external_run_id, limit=config.max_pages)
                pages = pages[: config.max_pages]
                counters = RunCounters(total_pages=len(pages))

                async with self._session_factory() as session:
                    await self.store.update_counters(session, run, counters)
                    if not await self.store.advance_run(session, run, "processing"):
                        raise ScanCancelledError(f"Scan run {run_id} is no longer active")

                logger.info(f"Scan run {run_id}: processing {len(pages)} pages")
                await self._process_pages(run, config, kb, pages, counters, token)
                await self._finish_run(run, config, counters)

            except ScanCancelledError as e:
                logger.info(f"Scan run {run_id} stopped: {e}")
            except CrawlTimeoutError as e:
                logger.error(f"Scan run {run_id} failed: {e}, aborting crawler run {run.external_run_id}")
                await self.crawler.abort_run(run.external_run_id)
                await self.fail_run(run_id, str(e))
            except (CrawlAbortedError, CrawlFailedError, CrawlerError) as e:
                logger.error(f"Scan run {run_id} failed: {e}")
                await self.fail_run(run_id, str(e))

            async with self._session_factory() as session:
                return await self.store.get_status(session, run_id)
        finally:
            self._tokens.pop(run_id, None)

    async def _poll_until_finished(self, run: ScanRun, token: CancellationToken) -> CrawlRunInfo:
        state = PollState.start(self.clock, self.max_poll_attempts, self.poll_interval)

        while not state.exhausted(self.clock.now()):
            if token.is_cancelled or await self._is_cancelled(run.id):
                raise ScanCancelledError("cancelled while crawling")

            try:
                info = await self.crawler.get_run(run.external_run_id)
            except CrawlerError as e:
                logger.warning(
                    f"Crawler status check failed for run {run.id} "
                    f"(attempt {state.attempt + 1}/{state.max_attempts}): {e}"
                )
                info = None

            if info is not None:
                if info.succeeded:
                    logger.info(f"Crawler run {run.external_run_id} succeeded after {state.attempt + 1} polls")
                    return info
                if info.aborted:
                    raise CrawlAbortedError("Crawler run was aborted")
                if info.failed:
                    raise CrawlFailedError(f"Crawler run failed ({info.status})")

            state = state.advance()
            if state.exhausted(self.clock.now()):
                break
            if not await self.clock.sleep(state.interval, token):
                raise ScanCancelledError("cancelled while crawling")

        raise CrawlTimeoutError("Crawler run timeout")

    async def _is_cancelled(self, run_id) -> bool:
        async with self._session_factory() as session:
            return await self.store.is_run_terminal(session, run_id)

    async def _process_pages(
        self,
        run: ScanRun,
        config: ScanConfig,
        kb: KnowledgeBase,
        pages: List[CrawledPage],
        counters: RunCounters,
        token: CancellationToken,
    ) -> None:
        semaphore = asyncio.Semaphore(self.page_concurrency)
        counter_lock = asyncio.Lock()
        stopped = False

        async def handle(page: CrawledPage) -> None:
            nonlocal stopped
            async with semaphore:
                if stopped or token.is_cancelled:
                    return
                if await self._is_cancelled(run.id):
                    stopped = True
                    return

                outcome = await self._process_page(run, config, kb, page)

                async with counter_lock:
                    counters.processed += 1
                    if outcome == PAGE_INDEXED:
                        counters.indexed += 1
                    elif outcome == PAGE_FAILED:
                        counters.failed += 1
                    elif outcome == PAGE_UNCHANGED:
                        counters.skipped_unchanged += 1
                    elif outcome == PAGE_TOO_SHORT:
                        counters.skipped_short += 1

                    if counters.processed % self.progress_interval == 0:
                        async with self._session_factory() as session:
                            await self.store.update_counters(session, run, counters)

        await asyncio.gather(*(handle(page) for page in pages))

        if stopped or token.is_cancelled:
            async with self._session_factory() as session:
                await self.store.update_counters(session, run, counters)
            raise ScanCancelledError(f"cancelled after {counters.processed} pages")

    async def _process_page(
        self, run: ScanRun, config: ScanConfig, kb: KnowledgeBase, page: CrawledPage
    ) -> str:
        markdown = page.markdown or ""
        if len(markdown) < self.min_page_chars:
            logger.debug(f"Skipping {page.url}: only {len(markdown)} chars")
            return PAGE_TOO_SHORT

        content_hash = compute_content_hash(markdown)
        word_count = count_words(markdown)
        extraction_metadata = {
            "originalFormat": "html",
            "wordCount": word_count,
            "fileSize": len(markdown),
            "convertApiUsed": False,
            "extractionMethod": METHOD_CRAWLER,
            "crawlerProcessingTimeMs": page.processing_time_ms,
            "author": page.author,
            "date": page.date,
        }

        try:
            async with self._session_factory() as session:
                existing = await self.store.get_page(session, config.id, page.url)
                if existing is not None and existing.content_hash == content_hash and existing.status == "indexed":
                    logger.debug(f"Unchanged page {page.url}, skipping")
                    return PAGE_UNCHANGED

                web_page = await self.store.upsert_page(
                    session, config, page.url, page.title, page.description,
                    content_hash, word_count, extraction_metadata,
                )
                document = await self._page_document(session, kb, web_page, page, markdown, extraction_metadata)
                web_page.document_id = document.id
                log = await self.documents.create_extraction_log(session, document, METHOD_CRAWLER)
                await session.commit()

                result = await self.pipeline.index_extracted(
                    session, kb, document, markdown, extraction_metadata,
                    options=IngestOptions(),
                    log=log,
                    vector_metadata={
                        "page_url": page.url,
                        "page_title": page.title,
                        "scan_config_id": str(config.id),
                        "scan_run_id": str(run.id),
                    },
                )

                now = datetime.utcnow()
                if result.success:
                    web_page.status = "indexed"
                    web_page.embedding_count = result.embedding_count
                    web_page.last_indexed_at = now
                else:
                    web_page.status = "failed"
                    web_page.error_message = result.error
                web_page.updated_at = now
                await session.commit()

            if not result.success:
                logger.warning(f"Failed to index page {page.url}: {result.error}")
                return PAGE_FAILED
            return PAGE_INDEXED

        except Exception as e:
            logger.warning(f"Error processing page {page.url}: {e}", exc_info=True)
            await self._mark_page_failed(config.id, page.url, str(e))
            return PAGE_FAILED

    async def _page_document(self, session, kb: KnowledgeBase, web_page, page: CrawledPage, markdown: str, metadata):
        document = None
        if web_page.document_id:
            document = await self.documents.get_document(session, web_page.document_id)
        if document is None:
            document = await self.documents.find_document_by_locator(session, kb.id, "url", page.url)

        file_name = f"{page.title or 'Webpage'} - {page.url}"
        if document is None:
            return await self.documents.create_document(
                session, kb,
                file_name=file_name,
                source_kind="url",
                source_locator=page.url,
                extraction_status="completed",
                extracted_content=markdown,
                extraction_metadata=metadata,
                file_size=len(markdown),
            )

        self.documents.reset_document(document)
        document.extraction_status = "completed"
        document.file_name = file_name
        document.file_size = len(markdown)
        return document

    async def _mark_page_failed(self, config_id, url: str, message: str) -> None:
        try:
            async with self._session_factory() as session:
                web_page = await self.store.get_page(session, config_id, url)
                if web_page is None:
                    return
                web_page.status = "failed"
                web_page.error_message = message[:2000]
                web_page.updated_at = datetime.utcnow()
                if web_page.document_id:
                    await self.documents.mark_document_failed(session, web_page.document_id, message)
        except SQLAlchemyError as e:
            logger.error(f"Could not record failure of page {url}: {e}")

    async def _finish_run(self, run: ScanRun, config: ScanConfig, counters: RunCounters) -> None:
        attempted = counters.processed - counters.skipped_short
        succeeded = counters.indexed + counters.skipped_unchanged
        status = "failed" if attempted > 0 and succeeded == 0 else "completed"
        error = NO_PAGES_INDEXED_MESSAGE if status == "failed" else None

        async with self._session_factory() as session:
            await self.store.update_counters(session, run, counters)
            moved = await self.store.advance_run(session, run, status, error_message=error)
            if not moved:
                return
            await self.store.set_config_status(
                session,
                config.id,
                status,
                scan_metadata={
                    **counters.as_metadata(),
                    "last_run_id": str(run.id),
                    "completed_at": datetime.utcnow().isoformat(),
                },
            )

        logger.info(
            f"Scan run {run.id} {status}: {counters.processed} processed, {counters.indexed} indexed, "
            f"{counters.skipped_unchanged} unchanged, {counters.failed} failed"
        )

    async def fail_run(self, run_id, message: str) -> bool:
        """Mark a run and its scan config failed. Returns False if the run was already terminal."""
        async with self._session_factory() as session:
            run = await self.store.get_run(session, run_id)
            if run is None:
                return False
            moved = await self.store.advance_run(session, run, "failed", error_message=message)
            if moved:
                await self.store.set_config_status(session, run.scan_config_id, "failed")
            return moved

    # =========================================================================
    # STATUS / CANCEL
    # =========================================================================

    async def get_status(self, run_id, organization_id=None) -> ScanResult:
        async with self._session_factory() as session:
            status = await self.store.get_status(session, run_id, organization_id)

        if status is None:
            return ScanResult(False, str(run_id), error="Scan run not found")

        return ScanResult(
            True,
            status["runId"],
            status["status"],
            stats={
                "totalPages": status["totalPages"],
                "processedPages": status["processedPages"],
                "indexedPages": status["indexedPages"],
                "failedPages": status["failedPages"],
            },
            data={
                "startedAt": status["startedAt"],
                "completedAt": status["completedAt"],
                "processingTimeMs": status["processingTimeMs"],
                "errorMessage": status["errorMessage"],
            },
        )

    async def cancel_scan(self, run_id, organization_id=None) -> ScanResult:
        """
        Cancel a scan: abort the crawler run and mark the scan run failed.

        A failed abort is logged, not raised. The background worker notices
        the terminal status at its next check and stops.
        """
        async with self._session_factory() as session:
            run = await self.store.get_run(session, run_id, organization_id)
            if run is None:
                return ScanResult(False, str(run_id), error="Scan run not found")
            if run.status in TERMINAL_RUN_STATUSES:
                return ScanResult(False, str(run.id), run.status, error=f"Scan run already {run.status}")
            run_uuid, external_run_id = str(run.id), run.external_run_id

        if external_run_id:
            await self.crawler.abort_run(external_run_id)

        await self.fail_run(run_uuid, CANCELLED_MESSAGE)

        token = self._tokens.get(run_uuid)
        if token is not None:
            token.cancel()

        logger.info(f"Scan run {run_uuid} cancelled")
        return ScanResult(True, run_uuid, "cancelled")


# Global service instance
crawl_service = CrawlService()
