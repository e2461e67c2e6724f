# backend/kb_ingest/core/shared/scan_job_service.py
"""
Scan job persistence for website crawls.

Stores ScanConfig, ScanRun and WebsitePage rows and answers status reads.
Run status only moves forward:

    started (0) -> crawling (1) -> processing (2) -> completed | failed (3)

advance_run() applies a transition with a conditional UPDATE, so a run that
was cancelled (failed) by another process is never moved back to an earlier
state by a background worker still holding an old copy of the row.

Usage:
    from kb_ingest.core.shared.scan_job_service import scan_job_service

    config = await scan_job_service.upsert_scan_config(session, org_id, kb_id, url)
    run = await scan_job_service.create_run(session, config)
    moved = await scan_job_service.advance_run(session, run, "crawling", external_run_id="abc")
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kb_ingest.config import settings
from kb_ingest.core.database.models import ScanConfig, ScanRun, WebsitePage

logger = logging.getLogger("kb_ingest.scan_job_service")

RUN_STATUS_ORDER = {
    "started": 0,
    "crawling": 1,
    "processing": 2,
    "completed": 3,
    "failed": 3,
}
TERMINAL_RUN_STATUSES = frozenset({"completed", "failed"})

DEFAULT_EXCLUDE_PATTERNS = ["*/privacy", "*/terms", "*/cookie-policy", "*/legal/*"]


def website_domain(url: str) -> str:
    """Host of a URL, lower-cased, without a leading www."""
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def _as_uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


@dataclass
class RunCounters:
    """Per-run page counters, passed by value between the orchestrator and the store."""

    total_pages: int = 0
    processed: int = 0
    indexed: int = 0
    failed: int = 0
    skipped_unchanged: int = 0
    skipped_short: int = 0

    def as_metadata(self) -> Dict[str, int]:
        return {
            "total_pages": self.total_pages,
            "pages_processed": self.processed,
            "pages_indexed": self.indexed,
            "pages_failed": self.failed,
            "pages_unchanged": self.skipped_unchanged,
            "pages_too_short": self.skipped_short,
        }


class ScanJobService:
    """Persistence for scan configs, runs and pages."""

    # ========================================================================
    # Scan configs
    # ========================================================================

    async def upsert_scan_config(
        self,
        session: AsyncSession,
        organization_id,
        kb_id,
        website_url: str,
        max_pages: Optional[int] = None,
        include_patterns: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
    ) -> ScanConfig:
        """
        Create or update the scan config of (kb, website) and mark it scanning.

        Options left as None keep their stored values (or defaults on create).
        """
        result = await session.execute(
            select(ScanConfig).where(
                ScanConfig.kb_id == _as_uuid(kb_id),
                ScanConfig.website_url == website_url,
            )
        )
        config = result.scalar_one_or_none()
        now = datetime.utcnow()

        if config is None:
            config = ScanConfig(
                id=uuid.uuid4(),
                organization_id=_as_uuid(organization_id),
                kb_id=_as_uuid(kb_id),
                website_url=website_url,
                website_domain=website_domain(website_url),
                max_pages=max_pages or settings.crawl_default_max_pages,
                include_patterns=list(include_patterns or []),
                exclude_patterns=list(
                    DEFAULT_EXCLUDE_PATTERNS if exclude_patterns is None else exclude_patterns
                ),
                scan_metadata={},
                created_at=now,
            )
            session.add(config)
        else:
            if max_pages:
                config.max_pages = max_pages
            if include_patterns is not None:
                config.include_patterns = list(include_patterns)
            if exclude_patterns is not None:
                config.exclude_patterns = list(exclude_patterns)

        config.scan_status = "scanning"
        config.last_scan_at = now
        config.updated_at = now
        await session.flush()
        return config

    async def get_scan_config(self, session: AsyncSession, config_id) -> Optional[ScanConfig]:
        return await session.get(ScanConfig, _as_uuid(config_id))

    async def set_config_status(
        self,
        session: AsyncSession,
        config_id,
        status: str,
        scan_metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        values: Dict[str, Any] = {"scan_status": status, "updated_at": datetime.utcnow()}
        if scan_metadata is not None:
            values["scan_metadata"] = scan_metadata
        await session.execute(
            update(ScanConfig)
            .where(ScanConfig.id == _as_uuid(config_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    # ========================================================================
    # Scan runs
    # ========================================================================

    async def create_run(
        self,
        session: AsyncSession,
        config: ScanConfig,
        scan_type: str = "full",
        actor_id: Optional[str] = None,
    ) -> ScanRun:
        now = datetime.utcnow()
        run = ScanRun(
            id=uuid.uuid4(),
            organization_id=config.organization_id,
            scan_config_id=config.id,
            crawler_actor_id=actor_id or settings.crawler_actor_id,
            scan_type=scan_type or "full",
            status="started",
            total_pages_found=0,
            pages_processed=0,
            pages_indexed=0,
            pages_failed=0,
            started_at=now,
            updated_at=now,
        )
        session.add(run)
        await session.flush()
        return run

    async def get_run(self, session: AsyncSession, run_id, organization_id=None) -> Optional[ScanRun]:
        """
        Load a run by its id, or by the crawler's run id.

        Always re-reads the row so status changes made by other workers are
        visible.
        """
        run_uuid = _as_uuid(run_id)
        if run_uuid is not None:
            query = select(ScanRun).where(ScanRun.id == run_uuid)
        else:
            query = select(ScanRun).where(ScanRun.external_run_id == str(run_id))
        if organization_id is not None:
            query = query.where(ScanRun.organization_id == _as_uuid(organization_id))

        result = await session.execute(query.execution_options(populate_existing=True))
        return result.scalars().first()

    async def get_run_status(self, session: AsyncSession, run_id) -> Optional[str]:
        result = await session.execute(
            select(ScanRun.status).where(ScanRun.id == _as_uuid(run_id))
        )
        return result.scalar_one_or_none()

    async def is_run_terminal(self, session: AsyncSession, run_id) -> bool:
        """True once the run is completed or failed (including cancelled)."""
        return (await self.get_run_status(session, run_id)) in TERMINAL_RUN_STATUSES

    async def advance_run(self, session: AsyncSession, run: ScanRun, status: str, **fields) -> bool:
        """
        Move a run to a later status, updating extra columns with it.

        Returns:
            False (and logs) when the stored status is not earlier than
            `status`; nothing is written in that case.
        """
        if status not in RUN_STATUS_ORDER:
            raise ValueError(f"Unknown run status: {status}")

        earlier = [s for s, rank in RUN_STATUS_ORDER.items() if rank < RUN_STATUS_ORDER[status]]
        now = datetime.utcnow()
        values = {"status": status, "updated_at": now, **fields}
        if status in TERMINAL_RUN_STATUSES:
            values.setdefault("completed_at", now)
            if run.started_at:
                values.setdefault(
                    "processing_time_ms", int((now - run.started_at).total_seconds() * 1000)
                )

        result = await session.execute(
            update(ScanRun)
            .where(ScanRun.id == run.id, ScanRun.status.in_(earlier))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Refusing run {run.id} transition to {status} (not after current status)")
            return False

        for key, value in values.items():
            setattr(run, key, value)
        return True

    async def update_counters(self, session: AsyncSession, run: ScanRun, counters: RunCounters) -> None:
        """Persist page counters without touching the run status."""
        values = {
            "total_pages_found": counters.total_pages,
            "pages_processed": counters.processed,
            "pages_indexed": counters.indexed,
            "pages_failed": counters.failed,
            "updated_at": datetime.utcnow(),
        }
        await session.execute(
            update(ScanRun)
            .where(ScanRun.id == run.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def get_status(self, session: AsyncSession, run_id, organization_id=None) -> Optional[Dict[str, Any]]:
        """Status snapshot of a run, readable at any time including mid-run."""
        run = await self.get_run(session, run_id, organization_id)
        if run is None:
            return None
        return {
            "runId": str(run.id),
            "status": run.status,
            "totalPages": run.total_pages_found or 0,
            "processedPages": run.pages_processed or 0,
            "indexedPages": run.pages_indexed or 0,
            "failedPages": run.pages_failed or 0,
            "startedAt": run.started_at.isoformat() if run.started_at else None,
            "completedAt": run.completed_at.isoformat() if run.completed_at else None,
            "processingTimeMs": run.processing_time_ms,
            "errorMessage": run.error_message,
            "scanConfigId": str(run.scan_config_id),
            "externalRunId": run.external_run_id,
        }

    # ========================================================================
    # Pages
    # ========================================================================

    async def get_page(self, session: AsyncSession, config_id, url: str) -> Optional[WebsitePage]:
        result = await session.execute(
            select(WebsitePage).where(
                WebsitePage.scan_config_id == _as_uuid(config_id),
                WebsitePage.page_url == url,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_page(
        self,
        session: AsyncSession,
        config: ScanConfig,
        url: str,
        title: Optional[str],
        description: Optional[str],
        content_hash: str,
        word_count: int,
        extraction_metadata: Optional[Dict[str, Any]] = None,
    ) -> WebsitePage:
        """Create or update the page of (config, url) in `processing` state."""
        page = await self.get_page(session, config.id, url)
        now = datetime.utcnow()
        if page is None:
            page = WebsitePage(
                id=uuid.uuid4(),
                organization_id=config.organization_id,
                scan_config_id=config.id,
                kb_id=config.kb_id,
                page_url=url,
                embedding_count=0,
                created_at=now,
            )
            session.add(page)

        page.page_path = urlparse(url).path or "/"
        page.page_title = title or "Untitled"
        page.page_description = description
        page.content_hash = content_hash
        page.word_count = word_count
        page.status = "processing"
        page.error_message = None
        page.extraction_metadata = dict(extraction_metadata or {})
        page.last_crawled_at = now
        page.updated_at = now
        await session.flush()
        return page


# Global service instance
scan_job_service = ScanJobService()
