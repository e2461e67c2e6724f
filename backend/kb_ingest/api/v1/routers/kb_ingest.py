# backend/kb_ingest/api/v1/routers/kb_ingest.py
"""
Knowledge-base ingestion API router.

Endpoints:
    POST /kb/ingest                 Ingest one file or URL (sync, or queued with ?async=true)
    GET  /kb/documents/{id}         Ingestion status of one document
"""

import logging
from dataclasses import asdict
from typing import Callable, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from kb_ingest.api.v1.models import (
    DocumentStatusModel,
    ErrorResponse,
    IngestQueuedModel,
    IngestRequestModel,
    IngestResultModel,
)
from kb_ingest.core.ingestion.document_service import document_service, file_storage_path
from kb_ingest.core.ingestion.ingestion_pipeline import (
    KB_NOT_FOUND_ERROR,
    IngestionPipeline,
    IngestRequest,
    ingestion_pipeline,
)
from kb_ingest.core.shared.database_service import database_service
from kb_ingest.core.tasks.ingestion import ingest_document_task

logger = logging.getLogger("kb_ingest.api.kb_ingest")

router = APIRouter(prefix="/kb", tags=["knowledge-base"])


def get_pipeline() -> IngestionPipeline:
    return ingestion_pipeline


def get_session_factory() -> Callable:
    return database_service.get_session


@router.post(
    "/ingest",
    summary="Ingest a document",
    description="Extract, chunk, embed and index one file or URL into a knowledge base.",
    responses={
        200: {"model": IngestResultModel},
        202: {"model": IngestQueuedModel},
        404: {"model": IngestResultModel},
        500: {"model": IngestResultModel},
    },
)
async def ingest_document(
    body: IngestRequestModel,
    run_async: bool = Query(False, alias="async", description="Queue the ingestion and return immediately"),
    pipeline: IngestionPipeline = Depends(get_pipeline),
    session_factory: Callable = Depends(get_session_factory),
) -> JSONResponse:
    request = body.to_domain()

    if run_async:
        return await _queue_ingestion(request, session_factory)

    result = await pipeline.ingest(request)
    if result.success:
        status_code = 200
    elif result.error == KB_NOT_FOUND_ERROR:
        status_code = 404
    else:
        status_code = 500
    return JSONResponse(status_code=status_code, content=result.to_dict())


async def _queue_ingestion(request: IngestRequest, session_factory: Callable) -> JSONResponse:
    """Create (or reuse) the document row so its id can be returned, then queue the task."""
    async with session_factory() as session:
        kb = await document_service.get_knowledge_base(
            session, request.knowledge_base_id, request.organization_id
        )
        if kb is None:
            return JSONResponse(
                status_code=404,
                content={"success": False, "documentId": None, "error": KB_NOT_FOUND_ERROR},
            )

        document = None
        if request.document_id:
            document = await document_service.get_document(
                session, request.document_id, request.organization_id
            )
        if document is None:
            if request.source_kind == "url":
                locator = request.content.strip()
                file_name = request.filename or locator
            else:
                locator = file_storage_path(kb.organization_id, request.filename)
                file_name = request.filename
            document = await document_service.create_document(
                session, kb,
                file_name=file_name,
                source_kind=request.source_kind,
                source_locator=locator,
                document_id=request.document_id,
                extraction_status="pending",
            )
        document_id = str(document.id)

    payload = {
        "source_kind": request.source_kind,
        "content": request.content,
        "filename": request.filename,
        "knowledge_base_id": str(request.knowledge_base_id),
        "organization_id": str(request.organization_id),
        "document_id": document_id,
        "options": asdict(request.options),
    }
    task = ingest_document_task.apply_async(args=[payload])
    logger.info(f"Queued ingestion of document {document_id} (task {task.id})")

    queued = IngestQueuedModel(document_id=document_id, job_id=task.id)
    return JSONResponse(status_code=202, content=queued.model_dump(by_alias=True))


@router.get(
    "/documents/{document_id}",
    response_model=DocumentStatusModel,
    response_model_by_alias=True,
    summary="Get document ingestion status",
    responses={404: {"model": ErrorResponse}},
)
async def get_document_status(
    document_id: UUID,
    organization_id: Optional[UUID] = Query(None, alias="organizationId"),
    session_factory: Callable = Depends(get_session_factory),
):
    async with session_factory() as session:
        document = await document_service.get_document(session, document_id, organization_id)
        if document is None:
            return JSONResponse(status_code=404, content={"success": False, "error": "Document not found"})
        log = await document_service.get_latest_extraction_log(session, document.id)

        return DocumentStatusModel(
            id=str(document.id),
            knowledge_base_id=str(document.kb_id),
            file_name=document.file_name,
            source_kind=document.source_kind,
            source_locator=document.source_locator,
            status=document.status,
            extraction_status=document.extraction_status,
            embedding_status=document.embedding_status,
            chunk_count=document.chunk_count or 0,
            embedding_count=document.embedding_count or 0,
            content_hash=document.content_hash,
            error_message=document.error_message,
            indexed_at=document.indexed_at,
            updated_at=document.updated_at,
            last_extraction={
                "method": log.extraction_method,
                "status": log.status,
                "processingTimeMs": log.processing_time_ms,
                "errorMessage": log.error_message,
            } if log else None,
        )
