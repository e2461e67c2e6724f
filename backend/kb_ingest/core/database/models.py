# backend/kb_ingest/core/database/models.py
"""
SQLAlchemy ORM models for KB Ingest persistence.

Models:
    - KnowledgeBase: Per-tenant knowledge base with chunking/embedding settings
    - KBDocument: One ingested unit (uploaded file, single URL, crawled page)
    - ExtractionLog: Audit row for each ingestion attempt
    - ScanConfig: Website crawl settings for one knowledge base + website
    - ScanRun: One crawl submission to the external crawler
    - WebsitePage: One crawled URL within a scan config

Vector records live in the kb_vector_records table, which is managed with raw
SQL by the vector store service (pgvector column, see Alembic migration).

All models use UUID primary keys and include timestamps for auditing.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from .base import Base


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class KnowledgeBase(Base):
    """
    KnowledgeBase model holding per-KB ingestion settings.

    The knowledge base belongs to one tenant (organization). Its vectors are
    written to the tenant's namespace unless vector_namespace overrides it.

    Attributes:
        id: Unique knowledge base identifier
        organization_id: Owning tenant
        name: Display name
        chunk_size: Characters per chunk (None = service default)
        chunk_overlap: Overlap between chunks (None = service default)
        embedding_model: Embedding model (None = service default)
        vector_namespace: Explicit namespace override for vector records
    """

    __tablename__ = "kb_configurations"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    chunk_size = Column(Integer, nullable=True)
    chunk_overlap = Column(Integer, nullable=True)
    embedding_model = Column(String(100), nullable=True)
    vector_namespace = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<KnowledgeBase(id={self.id}, name={self.name})>"


class KBDocument(Base):
    """
    KBDocument model for one ingested unit.

    Status columns track the pipeline stages independently so pollers can see
    progress:
    - extraction_status: pending, processing, completed, failed
    - embedding_status: pending, processing, completed, failed
      (only leaves pending once extraction_status is completed)
    - status: processing, completed, failed

    Attributes:
        id: Unique document identifier
        kb_id: Parent knowledge base
        organization_id: Owning tenant
        file_name: Display/original file name
        source_kind: file or url
        source_locator: Storage path (files) or URL (urls, crawled pages)
        extracted_content: Normalized markdown (None until extraction completes)
        extraction_metadata: originalFormat, wordCount, fileSize, convertApiUsed...
        content_hash: SHA-256 of the indexed content (None until indexed)
        chunk_count: Chunks produced by the last successful run
        embedding_count: Vectors stored by the last successful run
        error_message: Last failure message
        indexed_at: When vectors were last written
    """

    __tablename__ = "kb_documents"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    kb_id = Column(
        UUID(), ForeignKey("kb_configurations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organization_id = Column(UUID(), nullable=False, index=True)

    file_name = Column(String(1024), nullable=False)
    source_kind = Column(String(20), nullable=False)  # file, url
    source_locator = Column(String(2048), nullable=False)
    mime_type = Column(String(255), nullable=True)
    file_size = Column(Integer, nullable=True)

    extracted_content = Column(Text, nullable=True)
    extraction_metadata = Column(JSON, nullable=False, default=dict, server_default="{}")
    content_hash = Column(String(64), nullable=True)

    chunk_count = Column(Integer, nullable=False, default=0)
    embedding_count = Column(Integer, nullable=False, default=0)

    extraction_status = Column(String(20), nullable=False, default="pending")
    embedding_status = Column(String(20), nullable=False, default="pending")
    status = Column(String(20), nullable=False, default="processing", index=True)
    error_message = Column(Text, nullable=True)

    indexed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    knowledge_base = relationship("KnowledgeBase")

    __table_args__ = (
        Index("ix_kb_documents_kb_source", "kb_id", "source_kind", "source_locator"),
    )

    def __repr__(self) -> str:
        return f"<KBDocument(id={self.id}, source={self.source_kind}, status={self.status})>"


class ExtractionLog(Base):
    """
    ExtractionLog model recording one ingestion attempt for a document.

    Attributes:
        document_id: Document being ingested
        organization_id: Owning tenant
        extraction_method: conversion_service, direct_text, web_fetch, crawler
        status: processing, completed, failed
        extraction_metadata: Format, word count, chunks, embeddings, tokensUsed
        processing_time_ms: Wall time of the attempt
    """

    __tablename__ = "kb_extraction_logs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    document_id = Column(
        UUID(), ForeignKey("kb_documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organization_id = Column(UUID(), nullable=False, index=True)

    extraction_method = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="processing")
    error_message = Column(Text, nullable=True)
    extraction_metadata = Column(JSON, nullable=False, default=dict, server_default="{}")
    processing_time_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<ExtractionLog(id={self.id}, method={self.extraction_method}, status={self.status})>"


# ============================================================================
# Website Scanning Models
# ============================================================================


class ScanConfig(Base):
    """
    ScanConfig model holding crawl settings for one knowledge base + website.

    Attributes:
        website_url: Root URL the crawl starts from
        website_domain: Host without www., lower-cased
        max_pages: Page limit per scan
        include_patterns: URL globs to include (empty = everything under root)
        exclude_patterns: URL globs to exclude
        scan_status: idle, scanning, completed, failed
        last_scan_at: When the last scan was requested
        scan_metadata: Aggregate counters of the last finished run
    """

    __tablename__ = "website_scan_configs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(), nullable=False, index=True)
    kb_id = Column(
        UUID(), ForeignKey("kb_configurations.id", ondelete="CASCADE"), nullable=False, index=True
    )

    website_url = Column(String(2048), nullable=False)
    website_domain = Column(String(255), nullable=False)
    max_pages = Column(Integer, nullable=False, default=100)
    include_patterns = Column(JSON, nullable=False, default=list, server_default="[]")
    exclude_patterns = Column(JSON, nullable=False, default=list, server_default="[]")

    scan_status = Column(String(20), nullable=False, default="idle")
    last_scan_at = Column(DateTime, nullable=True)
    scan_metadata = Column(JSON, nullable=False, default=dict, server_default="{}")

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    runs = relationship("ScanRun", back_populates="scan_config", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_website_scan_configs_kb_url", "kb_id", "website_url", unique=True),
    )

    def __repr__(self) -> str:
        return f"<ScanConfig(id={self.id}, domain={self.website_domain}, status={self.scan_status})>"


class ScanRun(Base):
    """
    ScanRun model for one crawl submission.

    Status only moves forward: started -> crawling -> processing ->
    completed | failed. Counters are persisted periodically during processing.
    """

    __tablename__ = "website_scan_runs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(), nullable=False, index=True)
    scan_config_id = Column(
        UUID(), ForeignKey("website_scan_configs.id", ondelete="CASCADE"), nullable=False, index=True
    )

    external_run_id = Column(String(255), nullable=True, index=True)
    crawler_actor_id = Column(String(255), nullable=True)
    scan_type = Column(String(20), nullable=False, default="full")  # full, incremental, single_page

    status = Column(String(20), nullable=False, default="started", index=True)
    total_pages_found = Column(Integer, nullable=False, default=0)
    pages_processed = Column(Integer, nullable=False, default=0)
    pages_indexed = Column(Integer, nullable=False, default=0)
    pages_failed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    scan_config = relationship("ScanConfig", back_populates="runs")

    def __repr__(self) -> str:
        return f"<ScanRun(id={self.id}, status={self.status}, processed={self.pages_processed})>"


class WebsitePage(Base):
    """
    WebsitePage model for one crawled URL within a scan config.

    The content hash drives change detection: a re-crawl with an identical
    hash is skipped without re-embedding.
    """

    __tablename__ = "website_pages"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(), nullable=False, index=True)
    scan_config_id = Column(
        UUID(), ForeignKey("website_scan_configs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kb_id = Column(UUID(), nullable=False, index=True)
    document_id = Column(
        UUID(), ForeignKey("kb_documents.id", ondelete="SET NULL"), nullable=True
    )

    page_url = Column(String(2048), nullable=False)
    page_path = Column(String(2048), nullable=True)
    page_title = Column(String(1024), nullable=False, default="Untitled")
    page_description = Column(Text, nullable=True)

    content_hash = Column(String(64), nullable=True)
    word_count = Column(Integer, nullable=False, default=0)
    embedding_count = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="processing")  # processing, indexed, failed
    error_message = Column(Text, nullable=True)
    extraction_metadata = Column(JSON, nullable=False, default=dict, server_default="{}")

    last_crawled_at = Column(DateTime, nullable=True)
    last_indexed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    document = relationship("KBDocument")

    __table_args__ = (
        # Ensure no duplicate URLs within a scan config
        Index("ix_website_pages_config_url", "scan_config_id", "page_url", unique=True),
        Index("ix_website_pages_config_status", "scan_config_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<WebsitePage(id={self.id}, url={self.page_url[:50]}, status={self.status})>"
