# backend/kb_ingest/api/v1/routers/kb_scan.py
"""
Website scan API router.

A single endpoint drives the scan lifecycle through its `action` field:
    scan    submit a crawl and queue background processing
    status  counters and timestamps of a run (available mid-run)
    cancel  abort the crawler run and mark the scan run failed
"""

import logging
from urllib.parse import urlparse

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from kb_ingest.api.v1.models import CrawlRequestModel, CrawlResultModel
from kb_ingest.connectors.scrape.crawl_service import CrawlService, ScanResult, crawl_service
from kb_ingest.core.tasks.scrape import process_scan_run_task

logger = logging.getLogger("kb_ingest.api.kb_scan")

router = APIRouter(prefix="/kb", tags=["knowledge-base"])

NOT_FOUND_ERRORS = {"Knowledge base not found", "Scan run not found"}


def get_crawl_service() -> CrawlService:
    return crawl_service


def enqueue_scan_run(run_id: str) -> None:
    task = process_scan_run_task.apply_async(args=[run_id])
    logger.info(f"Queued processing of scan run {run_id} (task {task.id})")


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": message})


def _respond(result: ScanResult) -> JSONResponse:
    if result.success:
        status_code = 200
    elif result.error in NOT_FOUND_ERRORS:
        status_code = 404
    elif result.error and result.error.startswith("Scan run already"):
        status_code = 409
    else:
        status_code = 500
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.post(
    "/scan",
    summary="Scan a website into a knowledge base",
    description="Start a website scan, read its status, or cancel it.",
    responses={200: {"model": CrawlResultModel}, 400: {"model": CrawlResultModel}},
)
async def scan_website(
    body: CrawlRequestModel,
    service: CrawlService = Depends(get_crawl_service),
) -> JSONResponse:
    if body.action == "scan":
        if not body.website_url or urlparse(body.website_url).scheme not in ("http", "https"):
            return _bad_request("A valid http(s) websiteUrl is required to start a scan")
        if body.knowledge_base_id is None or body.organization_id is None:
            return _bad_request("knowledgeBaseId and organizationId are required to start a scan")
        result = await service.start_scan(body.to_domain(), enqueue=enqueue_scan_run)
        return _respond(result)

    if not body.run_id:
        return _bad_request(f"runId is required for action '{body.action}'")

    if body.action == "status":
        result = await service.get_status(body.run_id, body.organization_id)
    else:
        result = await service.cancel_scan(body.run_id, body.organization_id)
    return _respond(result)
