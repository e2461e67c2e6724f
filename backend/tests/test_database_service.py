"""
Tests for engine configuration. No connection is opened: engines are only
built, never used.
"""

from unittest.mock import patch

import pytest
from sqlalchemy.pool import NullPool

from kb_ingest.core.shared.database_service import DatabaseService

DB_URL = "postgresql+asyncpg://kb:kb@localhost:5432/kb_test"


class TestDatabaseService:

    def test_engine_created_lazily(self):
        service = DatabaseService(DB_URL)
        assert service._engine is None

        engine = service.engine

        assert engine is service.engine
        assert engine.url.database == "kb_test"

    def test_non_postgres_url_rejected(self):
        with pytest.raises(ValueError, match="PostgreSQL"):
            DatabaseService("sqlite+aiosqlite:///kb.db").engine

    def test_worker_uses_null_pool(self, monkeypatch):
        monkeypatch.setenv("CELERY_WORKER", "1")
        assert isinstance(DatabaseService(DB_URL).engine.pool, NullPool)

    def test_api_uses_pool_from_settings(self, monkeypatch):
        monkeypatch.delenv("CELERY_WORKER", raising=False)
        monkeypatch.delenv("FORKED_BY_MULTIPROCESSING", raising=False)
        with patch("kb_ingest.core.shared.database_service.settings") as mock_settings:
            mock_settings.database_url = DB_URL
            mock_settings.db_pool_size = 3
            mock_settings.db_max_overflow = 1
            mock_settings.db_pool_recycle = 60
            mock_settings.debug = False
            engine = DatabaseService().engine
        assert engine.pool.size() == 3

    @pytest.mark.asyncio
    async def test_health_check_reports_unreachable_database(self):
        service = DatabaseService("postgresql+asyncpg://kb:kb@127.0.0.1:1/none")
        health = await service.health_check()
        assert health["status"] == "unhealthy"
        assert health["connected"] is False
        await service.close()
