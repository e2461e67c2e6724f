# ============================================================================
# backend/kb_ingest/core/ingestion/ingestion_pipeline.py
# ============================================================================
"""
Ingestion Pipeline for KB Ingest - Single Document Indexing

Runs one document through extraction, change detection, chunking, embedding
and vector storage, recording the state of every stage on the document row so
pollers can follow progress.

Document lifecycle:
    pending -> extracting -> {extraction failed | extracted}
            -> embedding -> {embedding failed | completed}

Key Features:
    - Content-hash short-circuit: unchanged content that is already embedded
      is not re-embedded
    - Delete-then-insert vector writes per document, in a savepoint
    - Per-document Redis lock when a document id is supplied
    - Never raises: every outcome is returned as an IngestResult

Usage:
    from kb_ingest.core.ingestion.ingestion_pipeline import ingestion_pipeline, IngestRequest

    result = await ingestion_pipeline.ingest(IngestRequest(
        source_kind="file",
        content=b64,
        filename="handbook.pdf",
        knowledge_base_id=kb_id,
        organization_id=org_id,
    ))

Author: KB Ingest Development Team
Version: 1.0.0
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from kb_ingest.config import settings
from kb_ingest.connectors.adapters.conversion_adapter import CONVERTIBLE_FORMATS
from kb_ingest.core.database.models import ExtractionLog, KBDocument, KnowledgeBase
from kb_ingest.core.ingestion.document_service import (
    DocumentService,
    document_service,
    file_storage_path,
)
from kb_ingest.core.ingestion.extraction_service import (
    METHOD_CONVERSION,
    METHOD_DIRECT_TEXT,
    METHOD_WEB_FETCH,
    ExtractionError,
    ExtractionService,
    extraction_service,
    file_extension,
)
from kb_ingest.core.search.chunking_service import ChunkingService, chunking_service
from kb_ingest.core.search.content_hasher import compute_content_hash
from kb_ingest.core.search.embedding_service import (
    EmbeddingError,
    EmbeddingService,
    embedding_service,
)
from kb_ingest.core.search.vector_store_service import (
    StoreError,
    VectorNamespace,
    VectorRecord,
    VectorStoreService,
    vector_store_service,
)
from kb_ingest.core.shared.database_service import database_service
from kb_ingest.core.shared.lock_service import LockService, document_lock_name, lock_service

logger = logging.getLogger("kb_ingest.ingestion_pipeline")

DOCUMENT_BUSY_ERROR = "Document is already being ingested"
KB_NOT_FOUND_ERROR = "Knowledge base not found"


@dataclass
class IngestOptions:
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None
    generate_embeddings: bool = True


@dataclass
class IngestRequest:
    """One ingestion request (file upload or single URL)."""

    source_kind: str
    content: Union[str, bytes]
    filename: str
    knowledge_base_id: Any
    organization_id: Any
    document_id: Any = None
    options: IngestOptions = field(default_factory=IngestOptions)


@dataclass
class IngestResult:
    """Outcome of one ingestion run."""

    success: bool
    document_id: Optional[str] = None
    chunk_count: int = 0
    embedding_count: int = 0
    tokens_used: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    skipped_unchanged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "success": self.success,
            "documentId": self.document_id,
            "chunkCount": self.chunk_count,
            "embeddingCount": self.embedding_count,
            "metadata": self.metadata,
        }
        if self.error:
            body["error"] = self.error
        return body


def resolve_chunk_params(options: IngestOptions, knowledge_base: KnowledgeBase) -> Tuple[int, int]:
    """Request option, then knowledge base setting, then service default."""
    size = options.chunk_size or knowledge_base.chunk_size or settings.default_chunk_size
    if options.chunk_overlap is not None:
        overlap = options.chunk_overlap
    elif knowledge_base.chunk_overlap is not None:
        overlap = knowledge_base.chunk_overlap
    else:
        overlap = settings.default_chunk_overlap
    return size, overlap


def extraction_method_for(source_kind: str, filename: str) -> str:
    if source_kind == "url":
        return METHOD_WEB_FETCH
    if file_extension(filename) in CONVERTIBLE_FORMATS:
        return METHOD_CONVERSION
    return METHOD_DIRECT_TEXT


def _result_metadata(extraction_metadata: Dict[str, Any], elapsed_ms: int) -> Dict[str, Any]:
    return {
        "originalFormat": extraction_metadata.get("originalFormat"),
        "wordCount": extraction_metadata.get("wordCount", 0),
        "fileSizeBytes": extraction_metadata.get("fileSize", 0),
        "externalConverterUsed": bool(extraction_metadata.get("convertApiUsed", False)),
        "extractionTimeMs": elapsed_ms,
    }


class IngestionPipeline:
    """
    Orchestrates hashing, chunking, embedding and vector storage for documents.

    Collaborators are injected so workers and tests can swap them; the
    defaults are the global service instances.
    """

    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        documents: Optional[DocumentService] = None,
        extraction: Optional[ExtractionService] = None,
        chunking: Optional[ChunkingService] = None,
        embeddings: Optional[EmbeddingService] = None,
        vector_store: Optional[VectorStoreService] = None,
        locks: Optional[LockService] = None,
    ):
        self._session_factory = session_factory or database_service.get_session
        self.documents = documents or document_service
        self.extraction = extraction or extraction_service
        self.chunking = chunking or chunking_service
        self.embeddings = embeddings or embedding_service
        self.vector_store = vector_store or vector_store_service
        self.locks = locks or lock_service

    # ========================================================================
    # Entry points
    # ========================================================================

    async def ingest(self, request: IngestRequest) -> IngestResult:
        """
        Ingest one file or URL into its knowledge base.

        Returns:
            IngestResult; failures are reported in the result, never raised
        """
        started = time.monotonic()
        document_id = str(request.document_id) if request.document_id else None

        try:
            if document_id:
                async with self.locks.lock(
                    document_lock_name(document_id),
                    timeout=settings.document_lock_timeout,
                ) as acquired:
                    if not acquired:
                        logger.warning(f"Document {document_id} is locked by another ingestion")
                        return IngestResult(False, document_id, error=DOCUMENT_BUSY_ERROR)
                    return await self._ingest(request, started)
            return await self._ingest(request, started)
        except Exception as e:
            logger.error(f"Ingestion of {request.filename} failed unexpectedly: {e}", exc_info=True)
            return IngestResult(False, document_id, error=f"Ingestion failed: {e}")

    async def index_extracted(
        self,
        session,
        knowledge_base: KnowledgeBase,
        document: KBDocument,
        markdown: str,
        extraction_metadata: Dict[str, Any],
        options: Optional[IngestOptions] = None,
        log: Optional[ExtractionLog] = None,
        started: Optional[float] = None,
        vector_metadata: Optional[Dict[str, Any]] = None,
    ) -> IngestResult:
        """
        Hash, chunk, embed and store already-extracted content.

        Used by ingest() after extraction and by the crawl service for pages
        that arrive pre-extracted. Commits the session at each stage.
        """
        options = options or IngestOptions()
        started = started if started is not None else time.monotonic()
        doc_id = str(document.id)

        # indexed_at is only set once this exact content has been embedded and stored
        content_hash = compute_content_hash(markdown)
        if (
            document.content_hash == content_hash
            and (document.indexed_at is not None or not options.generate_embeddings)
        ):
            # a failed run in between may have left other text on the row
            document.extracted_content = markdown
            document.extraction_metadata = dict(extraction_metadata)
            document.extraction_status = "completed"
            if document.indexed_at is not None:
                document.embedding_status = "completed"
            document.status = "completed"
            document.error_message = None
            elapsed = self._elapsed_ms(started)
            self.documents.finish_extraction_log(
                log, "completed", elapsed,
                {**extraction_metadata, "skippedUnchanged": True},
            )
            await session.commit()
            logger.info(f"Document {doc_id} unchanged, skipping re-embedding")
            return IngestResult(
                True, doc_id,
                chunk_count=document.chunk_count or 0,
                embedding_count=document.embedding_count or 0,
                metadata=_result_metadata(extraction_metadata, elapsed),
                skipped_unchanged=True,
            )

        document.extracted_content = markdown
        document.extraction_metadata = dict(extraction_metadata)
        document.extraction_status = "completed"
        document.error_message = None
        await session.commit()

        try:
            chunk_size, chunk_overlap = resolve_chunk_params(options, knowledge_base)
            chunks = self.chunking.chunk_text(markdown, chunk_size, chunk_overlap, document_id=doc_id)
        except ValueError as e:
            return await self._fail_embedding(
                session, document, log, extraction_metadata, started, f"Invalid chunking options: {e}",
                embedding_status=document.embedding_status,
            )

        if not options.generate_embeddings:
            if document.indexed_at is not None:
                # vectors of the previous content would no longer match the document
                try:
                    await self.vector_store.delete_document(
                        session, VectorNamespace.for_knowledge_base(knowledge_base), document.id
                    )
                except StoreError as e:
                    return await self._fail_embedding(
                        session, document, log, extraction_metadata, started, str(e), chunk_count=len(chunks),
                    )
            document.chunk_count = len(chunks)
            document.content_hash = content_hash
            document.embedding_count = 0
            document.indexed_at = None
            document.status = "completed"
            elapsed = self._elapsed_ms(started)
            self.documents.finish_extraction_log(
                log, "completed", elapsed, {**extraction_metadata, "chunks": len(chunks), "embeddings": 0},
            )
            await session.commit()
            return IngestResult(
                True, doc_id, chunk_count=len(chunks),
                metadata=_result_metadata(extraction_metadata, elapsed),
            )

        document.embedding_status = "processing"
        await session.commit()

        base_metadata = {
            **extraction_metadata,
            "document_id": doc_id,
            "kb_id": str(knowledge_base.id),
            "source_kind": document.source_kind,
            "source_locator": document.source_locator,
            "file_name": document.file_name,
            **(vector_metadata or {}),
        }

        try:
            embedded = await self.embeddings.embed(
                [chunk.content for chunk in chunks], model=knowledge_base.embedding_model,
            )
            records: List[VectorRecord] = [
                VectorRecord(
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    embedding=vector,
                    metadata={
                        **base_metadata,
                        "chunk_index": chunk.chunk_index,
                        "chunk_size": len(chunk.content),
                        "char_start": chunk.char_start,
                        "char_end": chunk.char_end,
                    },
                )
                for chunk, vector in zip(chunks, embedded.vectors)
            ]
            namespace = VectorNamespace.for_knowledge_base(knowledge_base)
            async with session.begin_nested():
                stored = await self.vector_store.upsert(session, namespace, document.id, records)
        except (EmbeddingError, StoreError) as e:
            return await self._fail_embedding(
                session, document, log, extraction_metadata, started, str(e), chunk_count=len(chunks),
            )

        elapsed = self._elapsed_ms(started)
        document.chunk_count = len(chunks)
        document.embedding_count = stored
        document.content_hash = content_hash
        document.indexed_at = datetime.utcnow()
        document.embedding_status = "completed"
        document.status = "completed"
        self.documents.finish_extraction_log(
            log, "completed", elapsed,
            {
                **extraction_metadata,
                "chunks": len(chunks),
                "embeddings": stored,
                "tokensUsed": embedded.tokens_used,
            },
        )
        await session.commit()

        logger.info(
            f"Indexed document {doc_id}: {len(chunks)} chunks, {stored} vectors, "
            f"{embedded.tokens_used} tokens in {elapsed}ms"
        )
        return IngestResult(
            True, doc_id,
            chunk_count=len(chunks),
            embedding_count=stored,
            tokens_used=embedded.tokens_used,
            metadata=_result_metadata(extraction_metadata, elapsed),
        )

    # ========================================================================
    # Internals
    # ========================================================================

    async def _ingest(self, request: IngestRequest, started: float) -> IngestResult:
        async with self._session_factory() as session:
            kb = await self.documents.get_knowledge_base(
                session, request.knowledge_base_id, request.organization_id
            )
            if kb is None:
                return IngestResult(
                    False, str(request.document_id) if request.document_id else None,
                    error=KB_NOT_FOUND_ERROR,
                )

            document = await self._prepare_document(session, kb, request)
            if document is None:
                return IngestResult(False, str(request.document_id), error="Document not found")

            log = await self.documents.create_extraction_log(
                session, document, extraction_method_for(request.source_kind, request.filename)
            )
            await session.commit()
            document_id = document.id

            try:
                return await self._extract_and_index(session, kb, document, log, request, started)
            except Exception as e:
                message = f"Ingestion failed: {e}"
                logger.error(f"Ingestion of document {document_id} failed unexpectedly: {e}", exc_info=True)
                await session.rollback()
                await self._record_failure(document_id, message, started)
                return IngestResult(False, str(document_id), error=message)

    async def _extract_and_index(
        self, session, kb: KnowledgeBase, document: KBDocument, log: ExtractionLog,
        request: IngestRequest, started: float,
    ) -> IngestResult:
        try:
            extraction = await self.extraction.extract(
                request.source_kind, request.content, request.filename
            )
        except ExtractionError as e:
            message = str(e)
            logger.warning(f"Extraction failed for document {document.id}: {message}")
            document.extraction_status = "failed"
            document.status = "failed"
            document.error_message = message
            self.documents.finish_extraction_log(
                log, "failed", self._elapsed_ms(started), error=message
            )
            await session.commit()
            return IngestResult(False, str(document.id), error=message)

        log.extraction_method = extraction.method
        if extraction.metadata.get("fileSize") is not None:
            document.file_size = extraction.metadata["fileSize"]

        return await self.index_extracted(
            session, kb, document, extraction.markdown, extraction.metadata,
            options=request.options, log=log, started=started,
        )

    async def _prepare_document(self, session, kb: KnowledgeBase, request: IngestRequest) -> Optional[KBDocument]:
        if request.document_id:
            document = await self.documents.get_document(
                session, request.document_id, request.organization_id
            )
            if document is None:
                return None
            self.documents.reset_document(document)
            return document

        if request.source_kind == "url":
            locator = (request.content.decode("utf-8") if isinstance(request.content, bytes) else request.content).strip()
            file_name = request.filename or locator
        else:
            locator = file_storage_path(kb.organization_id, request.filename)
            file_name = request.filename

        return await self.documents.create_document(
            session, kb, file_name=file_name, source_kind=request.source_kind, source_locator=locator,
        )

    async def _record_failure(self, document_id, message: str, started: float) -> None:
        """Mark the document failed in a fresh session after an unexpected error."""
        try:
            async with self._session_factory() as session:
                await self.documents.mark_document_failed(
                    session, document_id, message, self._elapsed_ms(started)
                )
        except SQLAlchemyError as e:
            logger.error(f"Could not record failure of document {document_id}: {e}")

    async def _fail_embedding(
        self,
        session,
        document: KBDocument,
        log: Optional[ExtractionLog],
        extraction_metadata: Dict[str, Any],
        started: float,
        message: str,
        chunk_count: int = 0,
        embedding_status: str = "failed",
    ) -> IngestResult:
        logger.warning(f"Indexing failed for document {document.id}: {message}")
        document.embedding_status = embedding_status
        document.status = "failed"
        document.error_message = message
        elapsed = self._elapsed_ms(started)
        self.documents.finish_extraction_log(
            log, "failed", elapsed, {**extraction_metadata, "chunks": chunk_count}, error=message,
        )
        await session.commit()
        return IngestResult(
            False, str(document.id),
            chunk_count=chunk_count,
            metadata=_result_metadata(extraction_metadata, elapsed),
            error=message,
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)


# Global pipeline instance
ingestion_pipeline = IngestionPipeline()
