"""Operations endpoints providing health checks and Prometheus metrics."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Dict

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from gatehouse.infra import postgres
from gatehouse.infra.redis import RateLimitStore
from gatehouse.settings import settings

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/ops", tags=["ops"])


async def _store_status(store: RateLimitStore | None) -> Dict[str, Any]:
	if store is None or not store.configured:
		# limits are not enforced, but the service still answers
		return {"ok": True, "mode": "fail_open"}
	start = perf_counter()
	if await store.ping():
		return {"ok": True, "latency_ms": round((perf_counter() - start) * 1000, 2)}
	return {"ok": False, "error": "unreachable"}


async def _postgres_status(timeout: float = 0.3) -> Dict[str, Any]:
	start = perf_counter()
	try:
		pool = await postgres.get_pool()
		async with pool.acquire() as conn:
			await asyncio.wait_for(conn.execute("SELECT 1"), timeout=timeout)
	except Exception as exc:
		LOGGER.warning("Postgres readiness query failed", exc_info=True)
		return {"ok": False, "error": str(exc)}
	return {"ok": True, "latency_ms": round((perf_counter() - start) * 1000, 2)}


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok", "service": settings.service_name, "commit": settings.git_commit}


@router.get("/health/ready")
async def health_ready(request: Request) -> Response:
	store = getattr(request.app.state, "rate_limit_store", None)
	checks = {
		"rate_limit_store": await _store_status(store),
		"postgres": await _postgres_status(),
	}
	ready = all(check["ok"] for check in checks.values())
	payload = {"status": "ok" if ready else "degraded", "checks": checks}
	status_code = status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE
	return JSONResponse(content=payload, status_code=status_code)


@router.get("/metrics")
async def prometheus_metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = ["router"]
