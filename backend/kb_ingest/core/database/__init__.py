# backend/kb_ingest/core/database/__init__.py
"""
Database package for KB Ingest.

Provides SQLAlchemy models, base classes, and database session management.
"""

from .base import Base
from .models import (
    ExtractionLog,
    KBDocument,
    KnowledgeBase,
    ScanConfig,
    ScanRun,
    WebsitePage,
)

__all__ = [
    "Base",
    "KnowledgeBase",
    "KBDocument",
    "ExtractionLog",
    # Website scanning
    "ScanConfig",
    "ScanRun",
    "WebsitePage",
]
