# backend/kb_ingest/core/database/base.py
"""Declarative base shared by every KB Ingest model."""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
