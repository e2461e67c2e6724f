"""
Tests for scan job persistence: monotonic run transitions, counters and the
config upsert. The AsyncSession is mocked; the tests inspect what it is asked
to execute.
"""

import uuid
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from kb_ingest.core.database.models import ScanConfig, ScanRun
from kb_ingest.core.shared.scan_job_service import (
    DEFAULT_EXCLUDE_PATTERNS,
    RunCounters,
    ScanJobService,
    website_domain,
)


@pytest.fixture
def service():
    return ScanJobService()


@pytest.fixture
def mock_session():
    session = AsyncMock()
    session.add = MagicMock()
    session.execute = AsyncMock(return_value=MagicMock(rowcount=1))
    return session


@pytest.fixture
def run():
    return ScanRun(
        id=uuid.uuid4(),
        organization_id=uuid.uuid4(),
        scan_config_id=uuid.uuid4(),
        status="crawling",
        started_at=datetime.utcnow() - timedelta(seconds=2),
    )


class TestWebsiteDomain:

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://www.Example.com/docs", "example.com"),
            ("http://help.example.com:8080/", "help.example.com"),
            ("not a url", ""),
        ],
    )
    def test_domain(self, url, expected):
        assert website_domain(url) == expected


class TestRunCounters:

    def test_as_metadata(self):
        counters = RunCounters(total_pages=10, processed=8, indexed=5, failed=1, skipped_unchanged=1, skipped_short=1)
        assert counters.as_metadata() == {
            "total_pages": 10,
            "pages_processed": 8,
            "pages_indexed": 5,
            "pages_failed": 1,
            "pages_unchanged": 1,
            "pages_too_short": 1,
        }


# =============================================================================
# Run transitions
# =============================================================================


class TestAdvanceRun:

    @pytest.mark.asyncio
    async def test_forward_transition_applied(self, service, mock_session, run):
        moved = await service.advance_run(mock_session, run, "processing")

        assert moved is True
        assert run.status == "processing"
        assert run.completed_at is None
        statement = str(mock_session.execute.await_args.args[0])
        assert "UPDATE website_scan_runs" in statement

    @pytest.mark.asyncio
    async def test_stale_transition_refused(self, service, mock_session, run):
        mock_session.execute.return_value = MagicMock(rowcount=0)

        moved = await service.advance_run(mock_session, run, "processing")

        assert moved is False
        assert run.status == "crawling"

    @pytest.mark.asyncio
    async def test_terminal_status_records_completion(self, service, mock_session, run):
        moved = await service.advance_run(mock_session, run, "failed", error_message="Crawler run timeout")

        assert moved is True
        assert run.status == "failed"
        assert run.error_message == "Crawler run timeout"
        assert run.completed_at is not None
        assert run.processing_time_ms >= 2000

    @pytest.mark.asyncio
    async def test_unknown_status(self, service, mock_session, run):
        with pytest.raises(ValueError):
            await service.advance_run(mock_session, run, "paused")
        mock_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_is_run_terminal(self, service, mock_session, run):
        mock_session.execute.return_value = MagicMock(scalar_one_or_none=MagicMock(return_value="failed"))
        assert await service.is_run_terminal(mock_session, run.id) is True

        mock_session.execute.return_value = MagicMock(scalar_one_or_none=MagicMock(return_value="processing"))
        assert await service.is_run_terminal(mock_session, run.id) is False


# =============================================================================
# Configs and status
# =============================================================================


class TestScanConfig:

    @pytest.mark.asyncio
    async def test_new_config_gets_defaults(self, service, mock_session):
        mock_session.execute.return_value = MagicMock(scalar_one_or_none=MagicMock(return_value=None))

        config = await service.upsert_scan_config(
            mock_session, uuid.uuid4(), uuid.uuid4(), "https://www.example.com"
        )

        mock_session.add.assert_called_once_with(config)
        assert config.website_domain == "example.com"
        assert config.max_pages == 100
        assert config.exclude_patterns == DEFAULT_EXCLUDE_PATTERNS
        assert config.scan_status == "scanning"

    @pytest.mark.asyncio
    async def test_existing_config_keeps_unset_options(self, service, mock_session):
        existing = ScanConfig(
            id=uuid.uuid4(),
            website_url="https://example.com",
            max_pages=25,
            include_patterns=["*/docs/*"],
            exclude_patterns=[],
            scan_status="completed",
        )
        mock_session.execute.return_value = MagicMock(scalar_one_or_none=MagicMock(return_value=existing))

        config = await service.upsert_scan_config(
            mock_session, uuid.uuid4(), uuid.uuid4(), "https://example.com", max_pages=None,
            exclude_patterns=["*/blog/*"],
        )

        assert config is existing
        assert config.max_pages == 25
        assert config.include_patterns == ["*/docs/*"]
        assert config.exclude_patterns == ["*/blog/*"]
        assert config.scan_status == "scanning"
        mock_session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_status_snapshot(self, service, mock_session, run):
        run.total_pages_found = 4
        run.pages_processed = 2
        run.pages_indexed = 1
        run.pages_failed = 1
        mock_session.execute.return_value = MagicMock(
            scalars=MagicMock(return_value=MagicMock(first=MagicMock(return_value=run)))
        )

        status = await service.get_status(mock_session, run.id)

        assert status["runId"] == str(run.id)
        assert status["status"] == "crawling"
        assert (status["totalPages"], status["processedPages"], status["indexedPages"], status["failedPages"]) == (4, 2, 1, 1)
        assert status["completedAt"] is None

    @pytest.mark.asyncio
    async def test_status_of_missing_run(self, service, mock_session):
        mock_session.execute.return_value = MagicMock(
            scalars=MagicMock(return_value=MagicMock(first=MagicMock(return_value=None)))
        )
        assert await service.get_status(mock_session, uuid.uuid4()) is None
