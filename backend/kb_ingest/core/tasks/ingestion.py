"""
Celery tasks for single-document ingestion.
"""
import asyncio
import logging
from typing import Any, Dict

from kb_ingest.celery_app import app as celery_app

from kb_ingest.core.ingestion.ingestion_pipeline import (
    IngestOptions,
    IngestRequest,
    ingestion_pipeline,
)

logger = logging.getLogger("kb_ingest.tasks.ingestion")


def request_from_payload(payload: Dict[str, Any]) -> IngestRequest:
    """Rebuild an IngestRequest from the JSON payload queued by the API."""
    options = payload.get("options") or {}
    return IngestRequest(
        source_kind=payload["source_kind"],
        content=payload["content"],
        filename=payload["filename"],
        knowledge_base_id=payload["knowledge_base_id"],
        organization_id=payload["organization_id"],
        document_id=payload.get("document_id"),
        options=IngestOptions(
            chunk_size=options.get("chunk_size"),
            chunk_overlap=options.get("chunk_overlap"),
            generate_embeddings=options.get("generate_embeddings", True),
        ),
    )


@celery_app.task(bind=True, name="kb_ingest.tasks.ingest_document_task", soft_time_limit=600, time_limit=900)
def ingest_document_task(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Ingest one document in the background.

    The pipeline records failures on the document row and in the result, so
    a failed ingestion is returned, not raised. No automatic retries:
    re-submitting the same document id is safe.

    Args:
        payload: IngestRequest fields (snake_case), with `document_id` set

    Returns:
        IngestResult as a camelCase dict
    """
    document_id = payload.get("document_id")
    logger.info(f"Starting background ingestion of document {document_id} ({payload.get('filename')})")

    try:
        result = asyncio.run(ingestion_pipeline.ingest(request_from_payload(payload)))
    except Exception as e:
        logger.error(f"Background ingestion of document {document_id} crashed: {e}", exc_info=True)
        raise

    if result.success:
        logger.info(
            f"Document {document_id} ingested: {result.chunk_count} chunks, "
            f"{result.embedding_count} embeddings"
        )
    else:
        logger.warning(f"Document {document_id} ingestion failed: {result.error}")
    return result.to_dict()
