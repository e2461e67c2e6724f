# ============================================================================
# backend/kb_ingest/core/search/vector_store_service.py
# ============================================================================
"""
Vector Store Service for KB Ingest - pgvector Record Storage

This module writes chunk embeddings to the kb_vector_records table. Every
tenant's records live in the same table and are routed by an explicit,
validated namespace column; table names are never built from input.

Write model:
    Re-indexing a document deletes all of its records in the namespace and
    inserts the new set, inside the caller's transaction. A unique index on
    (namespace, document_id, chunk_index) guarantees that at most one live
    record exists per chunk; a duplicate insert fails with StoreError instead
    of leaving a silent duplicate.

Usage:
    from kb_ingest.core.search.vector_store_service import (
        vector_store_service, VectorNamespace, VectorRecord,
    )

    namespace = VectorNamespace.for_organization(org_id)
    await vector_store_service.upsert(session, namespace, document_id, records)

Author: KB Ingest Development Team
Version: 1.0.0
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger("kb_ingest.vector_store_service")

VECTOR_DIMENSIONS = 1536

# Table DDL for environments bootstrapped without Alembic (init_db)
VECTOR_RECORDS_DDL = (
    f"""
    CREATE TABLE IF NOT EXISTS kb_vector_records (
        id UUID PRIMARY KEY,
        namespace VARCHAR(100) NOT NULL,
        document_id UUID NOT NULL REFERENCES kb_documents(id) ON DELETE CASCADE,
        chunk_index INTEGER NOT NULL,
        content TEXT NOT NULL,
        embedding vector({VECTOR_DIMENSIONS}) NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT uq_kb_vector_records_chunk UNIQUE (namespace, document_id, chunk_index)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_kb_vector_records_namespace ON kb_vector_records (namespace)",
    "CREATE INDEX IF NOT EXISTS ix_kb_vector_records_document ON kb_vector_records (document_id)",
)

NAMESPACE_PATTERN = re.compile(r"^[a-z0-9_]+$")


class StoreError(RuntimeError):
    """Raised when vector records cannot be written or read."""


@dataclass(frozen=True)
class VectorNamespace:
    """
    Validated identifier of one tenant's vector collection.

    Attributes:
        name: Lowercase letters, digits and underscores only
    """

    name: str

    def __post_init__(self):
        if not self.name or not NAMESPACE_PATTERN.match(self.name):
            raise ValueError(f"Invalid vector namespace: {self.name!r}")

    @classmethod
    def for_organization(cls, organization_id) -> "VectorNamespace":
        return cls(f"org_{uuid.UUID(str(organization_id)).hex}")

    @classmethod
    def for_knowledge_base(cls, knowledge_base) -> "VectorNamespace":
        """Namespace override from the knowledge base, else its organization's."""
        if knowledge_base.vector_namespace:
            return cls(knowledge_base.vector_namespace)
        return cls.for_organization(knowledge_base.organization_id)

    def __str__(self) -> str:
        return self.name


@dataclass
class VectorRecord:
    """One chunk's content, embedding and metadata, ready to store."""

    chunk_index: int
    content: str
    embedding: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


def _format_embedding(embedding: List[float]) -> str:
    # pgvector literal: '[0.1,0.2,...]'
    return "[" + ",".join(str(float(f)) for f in embedding) + "]"


class VectorStoreService:
    """
    Service for writing chunk vectors to PostgreSQL (pgvector).

    All methods take the caller's AsyncSession and never commit; the caller
    owns the transaction so document state and vectors change together.
    """

    async def upsert(
        self,
        session: AsyncSession,
        namespace: VectorNamespace,
        document_id,
        records: List[VectorRecord],
    ) -> int:
        """
        Replace all vector records of a document.

        Args:
            session: Database session (caller's transaction)
            namespace: Target namespace
            document_id: Owning document
            records: New records, one per chunk

        Returns:
            Number of records inserted

        Raises:
            StoreError: Duplicate chunk index or any database error
        """
        indices = [r.chunk_index for r in records]
        if len(indices) != len(set(indices)):
            raise StoreError(f"Duplicate chunk index in records for document {document_id}")

        insert_sql = text("""
            INSERT INTO kb_vector_records (
                id, namespace, document_id, chunk_index, content, embedding, metadata
            ) VALUES (
                CAST(:id AS UUID), :namespace, CAST(:document_id AS UUID), :chunk_index,
                :content, CAST(:embedding AS vector), CAST(:metadata AS jsonb)
            )
        """)

        try:
            await self._delete(session, namespace, document_id)
            if records:
                await session.execute(insert_sql, [
                    {
                        "id": str(uuid.uuid4()),
                        "namespace": namespace.name,
                        "document_id": str(document_id),
                        "chunk_index": record.chunk_index,
                        "content": record.content,
                        "embedding": _format_embedding(record.embedding),
                        "metadata": json.dumps(record.metadata, default=str),
                    }
                    for record in records
                ])
        except SQLAlchemyError as e:
            logger.error(f"Vector upsert failed for document {document_id} in {namespace}: {e}")
            raise StoreError(f"Failed to store vectors: {e}") from e

        logger.debug(f"Stored {len(records)} vectors for document {document_id} in {namespace}")
        return len(records)

    async def _delete(self, session: AsyncSession, namespace: VectorNamespace, document_id) -> int:
        sql = text("""
            DELETE FROM kb_vector_records
            WHERE namespace = :namespace AND document_id = CAST(:document_id AS UUID)
        """)
        result = await session.execute(sql, {
            "namespace": namespace.name,
            "document_id": str(document_id),
        })
        return result.rowcount or 0

    async def delete_document(
        self, session: AsyncSession, namespace: VectorNamespace, document_id
    ) -> int:
        """Remove all vector records of a document. Returns rows deleted."""
        try:
            deleted = await self._delete(session, namespace, document_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete vectors: {e}") from e
        logger.info(f"Deleted {deleted} vectors for document {document_id} in {namespace}")
        return deleted

    async def count_records(
        self, session: AsyncSession, namespace: VectorNamespace, document_id=None
    ) -> int:
        """Count records in a namespace, optionally for one document."""
        sql = "SELECT COUNT(*) FROM kb_vector_records WHERE namespace = :namespace"
        params: Dict[str, Any] = {"namespace": namespace.name}
        if document_id is not None:
            sql += " AND document_id = CAST(:document_id AS UUID)"
            params["document_id"] = str(document_id)

        try:
            result = await session.execute(text(sql), params)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count vectors: {e}") from e
        return int(result.scalar() or 0)


# Global service instance
vector_store_service = VectorStoreService()
