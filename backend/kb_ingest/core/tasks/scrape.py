"""
Celery tasks for website scan runs.
"""
import asyncio
import logging
from typing import Any, Dict

from kb_ingest.celery_app import app as celery_app

from kb_ingest.connectors.scrape.crawl_service import crawl_service

logger = logging.getLogger("kb_ingest.tasks.scrape")


# ============================================================================
# WEBSITE SCAN TASKS
# ============================================================================

@celery_app.task(bind=True, name="kb_ingest.tasks.process_scan_run_task", soft_time_limit=3600, time_limit=3900)  # 60 minute soft limit, 65 minute hard limit
def process_scan_run_task(self, run_id: str) -> Dict[str, Any]:
    """
    Poll the crawler for a submitted scan run and index every crawled page.

    Args:
        run_id: ScanRun UUID string

    Returns:
        Final status snapshot of the run
    """
    logger.info(f"Starting background processing of scan run {run_id}")

    try:
        result = asyncio.run(crawl_service.process_run(run_id))
        logger.info(f"Scan run {run_id} finished: {result}")
        return result

    except Exception as e:
        logger.error(f"Scan run {run_id} failed: {e}", exc_info=True)
        asyncio.run(_fail_scan_run(run_id, str(e)))
        raise


async def _fail_scan_run(run_id: str, error: str) -> None:
    """Mark the run and its scan config failed after an unexpected error."""
    try:
        await crawl_service.fail_run(run_id, f"Scan processing error: {error}")
    except Exception as e:
        logger.error(f"Could not mark scan run {run_id} failed: {e}")
