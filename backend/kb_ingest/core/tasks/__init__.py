"""
Celery tasks package for KB Ingest.

Celery discovers tasks via the include= list in celery_app.py, which
references each submodule directly.
"""

from kb_ingest.core.tasks.ingestion import ingest_document_task
from kb_ingest.core.tasks.scrape import process_scan_run_task

__all__ = [
    "ingest_document_task",
    "process_scan_run_task",
]
