"""
Pydantic request/response models for the v1 knowledge-base API.

Wire names are camelCase; Python attributes are snake_case. Both spellings
are accepted on input.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from kb_ingest.connectors.scrape.crawl_service import ScanRequest
from kb_ingest.core.ingestion.ingestion_pipeline import IngestOptions, IngestRequest


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# =========================================================================
# INGESTION MODELS
# =========================================================================

class IngestOptionsModel(_CamelModel):
    chunk_size: Optional[int] = Field(default=None, alias="chunkSize", gt=0, description="Max characters per chunk")
    chunk_overlap: Optional[int] = Field(default=None, alias="chunkOverlap", ge=0, description="Characters shared by consecutive chunks")
    generate_embeddings: bool = Field(default=True, alias="generateEmbeddings")

    @model_validator(mode="after")
    def check_overlap(self):
        if self.chunk_size is not None and self.chunk_overlap is not None and self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunkOverlap must be smaller than chunkSize")
        return self


class IngestRequestModel(_CamelModel):
    """Body of POST /kb/ingest."""

    source_kind: Literal["file", "url"] = Field(alias="sourceKind")
    content: str = Field(min_length=1, description="Base64 file content, or the URL to fetch")
    filename: str = Field(default="", description="Original file name (required for files)")
    knowledge_base_id: UUID = Field(alias="knowledgeBaseId")
    organization_id: UUID = Field(alias="organizationId")
    document_id: Optional[UUID] = Field(default=None, alias="documentId")
    options: Optional[IngestOptionsModel] = None

    @model_validator(mode="after")
    def check_filename(self):
        if self.source_kind == "file" and not self.filename.strip():
            raise ValueError("filename is required for file sources")
        return self

    def to_domain(self) -> IngestRequest:
        options = self.options or IngestOptionsModel()
        return IngestRequest(
            source_kind=self.source_kind,
            content=self.content,
            filename=self.filename,
            knowledge_base_id=self.knowledge_base_id,
            organization_id=self.organization_id,
            document_id=self.document_id,
            options=IngestOptions(
                chunk_size=options.chunk_size,
                chunk_overlap=options.chunk_overlap,
                generate_embeddings=options.generate_embeddings,
            ),
        )


class IngestMetadataModel(_CamelModel):
    original_format: Optional[str] = Field(default=None, alias="originalFormat")
    word_count: int = Field(default=0, alias="wordCount")
    file_size_bytes: int = Field(default=0, alias="fileSizeBytes")
    external_converter_used: bool = Field(default=False, alias="externalConverterUsed")
    extraction_time_ms: int = Field(default=0, alias="extractionTimeMs")


class IngestResultModel(_CamelModel):
    success: bool
    document_id: Optional[str] = Field(default=None, alias="documentId")
    chunk_count: int = Field(default=0, alias="chunkCount")
    embedding_count: int = Field(default=0, alias="embeddingCount")
    metadata: Optional[IngestMetadataModel] = None
    error: Optional[str] = None


class IngestQueuedModel(_CamelModel):
    success: bool = True
    document_id: str = Field(alias="documentId")
    status: str = "processing"
    job_id: Optional[str] = Field(default=None, alias="jobId")


class DocumentStatusModel(_CamelModel):
    """Ingestion state of one document, for pollers."""

    id: str
    knowledge_base_id: str = Field(alias="knowledgeBaseId")
    file_name: str = Field(alias="fileName")
    source_kind: str = Field(alias="sourceKind")
    source_locator: Optional[str] = Field(default=None, alias="sourceLocator")
    status: str
    extraction_status: str = Field(alias="extractionStatus")
    embedding_status: str = Field(alias="embeddingStatus")
    chunk_count: int = Field(default=0, alias="chunkCount")
    embedding_count: int = Field(default=0, alias="embeddingCount")
    content_hash: Optional[str] = Field(default=None, alias="contentHash")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    indexed_at: Optional[datetime] = Field(default=None, alias="indexedAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    last_extraction: Optional[Dict[str, Any]] = Field(default=None, alias="lastExtraction")


# =========================================================================
# WEBSITE SCAN MODELS
# =========================================================================

class CrawlOptionsModel(_CamelModel):
    max_pages: Optional[int] = Field(default=None, alias="maxPages", ge=1, le=10000)
    include_patterns: Optional[List[str]] = Field(default=None, alias="includePatterns")
    exclude_patterns: Optional[List[str]] = Field(default=None, alias="excludePatterns")
    scan_type: Literal["full", "incremental"] = Field(default="full", alias="scanType")


class CrawlRequestModel(_CamelModel):
    """Body of POST /kb/scan."""

    action: Literal["scan", "status", "cancel"]
    website_url: Optional[str] = Field(default=None, alias="websiteUrl")
    knowledge_base_id: Optional[UUID] = Field(default=None, alias="knowledgeBaseId")
    organization_id: Optional[UUID] = Field(default=None, alias="organizationId")
    options: Optional[CrawlOptionsModel] = None
    run_id: Optional[str] = Field(default=None, alias="runId")

    def to_domain(self) -> ScanRequest:
        options = self.options or CrawlOptionsModel()
        return ScanRequest(
            organization_id=self.organization_id,
            knowledge_base_id=self.knowledge_base_id,
            website_url=self.website_url,
            max_pages=options.max_pages,
            include_patterns=options.include_patterns,
            exclude_patterns=options.exclude_patterns,
            scan_type=options.scan_type,
        )


class CrawlStatsModel(_CamelModel):
    total_pages: int = Field(default=0, alias="totalPages")
    processed_pages: int = Field(default=0, alias="processedPages")
    indexed_pages: int = Field(default=0, alias="indexedPages")
    failed_pages: int = Field(default=0, alias="failedPages")


class CrawlResultModel(_CamelModel):
    success: bool
    run_id: Optional[str] = Field(default=None, alias="runId")
    status: Optional[str] = None
    stats: Optional[CrawlStatsModel] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    detail: Optional[Any] = None
