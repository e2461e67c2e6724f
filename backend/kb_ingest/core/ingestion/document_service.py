# backend/kb_ingest/core/ingestion/document_service.py
"""
Persistence helpers for knowledge bases, documents and extraction logs.

All methods take the caller's AsyncSession and only flush; committing is up
to the caller so each pipeline stage decides when its state becomes visible.
"""

import logging
import mimetypes
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kb_ingest.core.database.models import ExtractionLog, KBDocument, KnowledgeBase

logger = logging.getLogger("kb_ingest.document_service")


def _as_uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def file_storage_path(organization_id, filename: str) -> str:
    """Storage locator for an uploaded file."""
    return f"{organization_id}/kb-documents/{filename}"


class DocumentService:
    """CRUD for KnowledgeBase, KBDocument and ExtractionLog rows."""

    async def get_knowledge_base(
        self, session: AsyncSession, kb_id, organization_id=None
    ) -> Optional[KnowledgeBase]:
        kb_uuid = _as_uuid(kb_id)
        if kb_uuid is None:
            return None
        query = select(KnowledgeBase).where(KnowledgeBase.id == kb_uuid)
        if organization_id is not None:
            query = query.where(KnowledgeBase.organization_id == _as_uuid(organization_id))
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def get_document(
        self, session: AsyncSession, document_id, organization_id=None
    ) -> Optional[KBDocument]:
        doc_uuid = _as_uuid(document_id)
        if doc_uuid is None:
            return None
        query = select(KBDocument).where(KBDocument.id == doc_uuid)
        if organization_id is not None:
            query = query.where(KBDocument.organization_id == _as_uuid(organization_id))
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def find_document_by_locator(
        self, session: AsyncSession, kb_id, source_kind: str, source_locator: str
    ) -> Optional[KBDocument]:
        result = await session.execute(
            select(KBDocument)
            .where(
                KBDocument.kb_id == _as_uuid(kb_id),
                KBDocument.source_kind == source_kind,
                KBDocument.source_locator == source_locator,
            )
            .order_by(KBDocument.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_document(
        self,
        session: AsyncSession,
        knowledge_base: KnowledgeBase,
        file_name: str,
        source_kind: str,
        source_locator: str,
        document_id=None,
        extraction_status: str = "processing",
        embedding_status: str = "pending",
        extracted_content: Optional[str] = None,
        extraction_metadata: Optional[Dict[str, Any]] = None,
        file_size: Optional[int] = None,
    ) -> KBDocument:
        """Create a document in `processing` state."""
        mime_type = None
        if source_kind == "file":
            mime_type, _ = mimetypes.guess_type(file_name)
        elif source_kind == "url":
            mime_type = "text/html"

        now = datetime.utcnow()
        document = KBDocument(
            id=_as_uuid(document_id) or uuid.uuid4(),
            kb_id=knowledge_base.id,
            organization_id=knowledge_base.organization_id,
            file_name=file_name,
            source_kind=source_kind,
            source_locator=source_locator,
            mime_type=mime_type,
            file_size=file_size,
            extracted_content=extracted_content,
            extraction_metadata=extraction_metadata or {},
            chunk_count=0,
            embedding_count=0,
            extraction_status=extraction_status,
            embedding_status=embedding_status,
            status="processing",
            created_at=now,
            updated_at=now,
        )
        session.add(document)
        await session.flush()
        logger.debug(f"Created document {document.id} ({source_kind}: {source_locator[:80]})")
        return document

    @staticmethod
    def reset_document(document: KBDocument) -> None:
        """Put an existing document back into the start state of a new run."""
        document.extraction_status = "processing"
        document.embedding_status = "pending"
        document.status = "processing"
        document.error_message = None
        document.updated_at = datetime.utcnow()

    async def create_extraction_log(
        self, session: AsyncSession, document: KBDocument, method: str
    ) -> ExtractionLog:
        log = ExtractionLog(
            id=uuid.uuid4(),
            document_id=document.id,
            organization_id=document.organization_id,
            extraction_method=method,
            status="processing",
            extraction_metadata={},
            created_at=datetime.utcnow(),
        )
        session.add(log)
        await session.flush()
        return log

    @staticmethod
    def finish_extraction_log(
        log: Optional[ExtractionLog],
        status: str,
        processing_time_ms: int,
        metadata: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        if log is None:
            return
        log.status = status
        log.processing_time_ms = processing_time_ms
        log.extraction_metadata = dict(metadata or {})
        log.error_message = error
        log.updated_at = datetime.utcnow()

    async def mark_document_failed(
        self,
        session: AsyncSession,
        document_id,
        message: str,
        processing_time_ms: int = 0,
    ) -> Optional[KBDocument]:
        """
        Record an error that interrupted a run on the document.

        The stage that was in progress is marked failed and an extraction log
        still open for the document is finished as failed.
        """
        document = await self.get_document(session, document_id)
        if document is None:
            return None

        if document.extraction_status == "processing":
            document.extraction_status = "failed"
        elif document.embedding_status in ("pending", "processing"):
            document.embedding_status = "failed"
        document.status = "failed"
        document.error_message = message[:2000]
        document.updated_at = datetime.utcnow()

        log = await self.get_latest_extraction_log(session, document.id)
        if log is not None and log.status == "processing":
            self.finish_extraction_log(
                log, "failed", processing_time_ms, log.extraction_metadata, error=message,
            )
        return document

    async def get_latest_extraction_log(
        self, session: AsyncSession, document_id
    ) -> Optional[ExtractionLog]:
        result = await session.execute(
            select(ExtractionLog)
            .where(ExtractionLog.document_id == _as_uuid(document_id))
            .order_by(ExtractionLog.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


# Global service instance
document_service = DocumentService()
