"""Add knowledge-base ingestion and website scan tables.

Revision ID: 20261018_0900
Revises:
Create Date: 2026-10-18 09:00:00.000000

This migration:
1. Enables the pgvector extension
2. Creates knowledge base, document and extraction log tables
3. Creates website scan config, run and page tables
4. Creates kb_vector_records with a vector(1536) embedding column
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision = "20261018_0900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    # Enable pgvector extension (requires pgvector/pgvector Docker image)
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "kb_configurations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("chunk_size", sa.Integer(), nullable=True),
        sa.Column("chunk_overlap", sa.Integer(), nullable=True),
        sa.Column("embedding_model", sa.String(100), nullable=True),
        sa.Column("vector_namespace", sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_kb_configurations_organization_id", "kb_configurations", ["organization_id"])

    op.create_table(
        "kb_documents",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("kb_id", UUID(as_uuid=True), sa.ForeignKey("kb_configurations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=False),
        sa.Column("file_name", sa.String(1024), nullable=False),
        sa.Column("source_kind", sa.String(20), nullable=False),  # file, url
        sa.Column("source_locator", sa.String(2048), nullable=False),
        sa.Column("mime_type", sa.String(255), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("extracted_content", sa.Text(), nullable=True),
        sa.Column("extraction_metadata", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("content_hash", sa.String(64), nullable=True),
        sa.Column("chunk_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("embedding_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("extraction_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("embedding_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("status", sa.String(20), nullable=False, server_default="processing"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("indexed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_kb_documents_kb_id", "kb_documents", ["kb_id"])
    op.create_index("ix_kb_documents_organization_id", "kb_documents", ["organization_id"])
    op.create_index("ix_kb_documents_status", "kb_documents", ["status"])
    op.create_index("ix_kb_documents_kb_source", "kb_documents", ["kb_id", "source_kind", "source_locator"])

    op.create_table(
        "kb_extraction_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("document_id", UUID(as_uuid=True), sa.ForeignKey("kb_documents.id", ondelete="CASCADE"), nullable=False),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=False),
        sa.Column("extraction_method", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="processing"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("extraction_metadata", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_kb_extraction_logs_document_id", "kb_extraction_logs", ["document_id"])
    op.create_index("ix_kb_extraction_logs_organization_id", "kb_extraction_logs", ["organization_id"])

    op.create_table(
        "website_scan_configs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=False),
        sa.Column("kb_id", UUID(as_uuid=True), sa.ForeignKey("kb_configurations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("website_url", sa.String(2048), nullable=False),
        sa.Column("website_domain", sa.String(255), nullable=False),
        sa.Column("max_pages", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("include_patterns", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("exclude_patterns", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("scan_status", sa.String(20), nullable=False, server_default="idle"),
        sa.Column("last_scan_at", sa.DateTime(), nullable=True),
        sa.Column("scan_metadata", sa.JSON(), nullable=False, server_default="{}"),
        *_timestamps(),
    )
    op.create_index("ix_website_scan_configs_organization_id", "website_scan_configs", ["organization_id"])
    op.create_index("ix_website_scan_configs_kb_id", "website_scan_configs", ["kb_id"])
    op.create_index("ix_website_scan_configs_kb_url", "website_scan_configs", ["kb_id", "website_url"], unique=True)

    op.create_table(
        "website_scan_runs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=False),
        sa.Column("scan_config_id", UUID(as_uuid=True), sa.ForeignKey("website_scan_configs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_run_id", sa.String(255), nullable=True),
        sa.Column("crawler_actor_id", sa.String(255), nullable=True),
        sa.Column("scan_type", sa.String(20), nullable=False, server_default="full"),
        sa.Column("status", sa.String(20), nullable=False, server_default="started"),
        sa.Column("total_pages_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pages_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pages_indexed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pages_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_website_scan_runs_organization_id", "website_scan_runs", ["organization_id"])
    op.create_index("ix_website_scan_runs_scan_config_id", "website_scan_runs", ["scan_config_id"])
    op.create_index("ix_website_scan_runs_external_run_id", "website_scan_runs", ["external_run_id"])
    op.create_index("ix_website_scan_runs_status", "website_scan_runs", ["status"])

    op.create_table(
        "website_pages",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=False),
        sa.Column("scan_config_id", UUID(as_uuid=True), sa.ForeignKey("website_scan_configs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kb_id", UUID(as_uuid=True), nullable=False),
        sa.Column("document_id", UUID(as_uuid=True), sa.ForeignKey("kb_documents.id", ondelete="SET NULL"), nullable=True),
        sa.Column("page_url", sa.String(2048), nullable=False),
        sa.Column("page_path", sa.String(2048), nullable=True),
        sa.Column("page_title", sa.String(1024), nullable=False, server_default="Untitled"),
        sa.Column("page_description", sa.Text(), nullable=True),
        sa.Column("content_hash", sa.String(64), nullable=True),
        sa.Column("word_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("embedding_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="processing"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("extraction_metadata", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("last_crawled_at", sa.DateTime(), nullable=True),
        sa.Column("last_indexed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_website_pages_organization_id", "website_pages", ["organization_id"])
    op.create_index("ix_website_pages_scan_config_id", "website_pages", ["scan_config_id"])
    op.create_index("ix_website_pages_kb_id", "website_pages", ["kb_id"])
    op.create_index("ix_website_pages_config_url", "website_pages", ["scan_config_id", "page_url"], unique=True)
    op.create_index("ix_website_pages_config_status", "website_pages", ["scan_config_id", "status"])

    # Vector records, one row per chunk, partitioned by namespace column
    op.create_table(
        "kb_vector_records",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("namespace", sa.String(100), nullable=False),
        sa.Column("document_id", UUID(as_uuid=True), sa.ForeignKey("kb_documents.id", ondelete="CASCADE"), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("namespace", "document_id", "chunk_index", name="uq_kb_vector_records_chunk"),
    )

    # Using raw SQL because SQLAlchemy doesn't have native pgvector type support
    op.execute("ALTER TABLE kb_vector_records ADD COLUMN embedding vector(1536) NOT NULL")

    op.create_index("ix_kb_vector_records_namespace", "kb_vector_records", ["namespace"])
    op.create_index("ix_kb_vector_records_document", "kb_vector_records", ["document_id"])
    op.execute("""
        CREATE INDEX ix_kb_vector_records_embedding ON kb_vector_records
        USING ivfflat(embedding vector_cosine_ops) WITH (lists = 100)
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_kb_vector_records_embedding")
    op.drop_index("ix_kb_vector_records_document", table_name="kb_vector_records")
    op.drop_index("ix_kb_vector_records_namespace", table_name="kb_vector_records")
    op.drop_table("kb_vector_records")

    op.drop_table("website_pages")
    op.drop_table("website_scan_runs")
    op.drop_table("website_scan_configs")
    op.drop_table("kb_extraction_logs")
    op.drop_table("kb_documents")
    op.drop_table("kb_configurations")

    # Note: We don't drop the pgvector extension as it may be used elsewhere
