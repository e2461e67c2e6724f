# backend/kb_ingest/api/v1/routers/system.py
"""
External service status: effective configuration and a live connection test
for the document converter and the website crawler.
"""

import asyncio
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from kb_ingest.connectors.adapters.base import ServiceAdapter
from kb_ingest.connectors.adapters.conversion_adapter import get_conversion_client
from kb_ingest.connectors.adapters.crawler_adapter import get_crawler_client

router = APIRouter(prefix="/system", tags=["system"])


def get_service_adapters() -> List[ServiceAdapter]:
    return [get_conversion_client(), get_crawler_client()]


async def _adapter_status(adapter: ServiceAdapter) -> Dict[str, Any]:
    return {
        "available": adapter.is_available,
        "config": adapter.resolve_config(),
        "connection": await adapter.test_connection(),
    }


@router.get("/services", summary="External service status")
async def get_services_status(
    adapters: List[ServiceAdapter] = Depends(get_service_adapters),
) -> Dict[str, Any]:
    """Secrets in the returned config are masked."""
    statuses = await asyncio.gather(*(_adapter_status(adapter) for adapter in adapters))
    return {
        "healthy": all(status["connection"]["success"] for status in statuses),
        "services": {adapter.CONNECTION_TYPE: status for adapter, status in zip(adapters, statuses)},
    }
