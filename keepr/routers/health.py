"""Health API routes."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health(request: Request):
    """Report whether the order store is reachable."""
    services = request.app.state.services
    store_ok = await asyncio.to_thread(services.store.ping)
    checks = {
        "store": "ok" if store_ok else "unreachable",
        "config": "ok" if not services.settings.missing_ingest_config() else "incomplete",
    }
    if not store_ok:
        return JSONResponse({"status": "degraded", "checks": checks}, status_code=503)
    return {"status": "ok", "checks": checks}
