# backend/kb_ingest/__init__.py
"""KB Ingest - knowledge-base document ingestion and vector indexing API."""

__version__ = "1.0.0"
__title__ = "KB Ingest API"
__description__ = "Extract, chunk, embed and index documents and websites into per-tenant knowledge bases"
