from fastapi import APIRouter

# Aggregate all v1 routers here
from .routers import kb_ingest, kb_scan, system

api_router = APIRouter()
api_router.include_router(kb_ingest.router)
api_router.include_router(kb_scan.router)
api_router.include_router(system.router)

__all__ = ["api_router"]
