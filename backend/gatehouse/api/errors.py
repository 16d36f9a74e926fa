"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from gatehouse.api.request_id import get_request_id
from gatehouse.infra.rate_limit import RateLimitExceeded
from gatehouse.realtime.exceptions import RealtimeError

TOO_FAST_MESSAGE = "You are doing that too fast. Please wait a moment and try again."


def rate_limit_headers(exc: RateLimitExceeded) -> dict[str, str]:
	decision = exc.decision
	return {
		"Retry-After": str(exc.retry_after),
		"X-RateLimit-Limit": str(decision.limit),
		"X-RateLimit-Remaining": str(decision.remaining),
		"X-RateLimit-Reset": str(int(decision.reset_at)),
	}


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		payload = {"detail": exc.detail, "request_id": get_request_id(request)}
		return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		payload = {"detail": "validation_error", "errors": exc.errors(), "request_id": get_request_id(request)}
		return JSONResponse(status_code=422, content=payload)

	@app.exception_handler(RealtimeError)
	async def realtime_exc_handler(request: Request, exc: RealtimeError):  # type: ignore[override]
		payload = {"detail": exc.detail, "request_id": get_request_id(request)}
		return JSONResponse(status_code=exc.status_code, content=payload)

	@app.exception_handler(RateLimitExceeded)
	async def rate_limit_exc_handler(request: Request, exc: RateLimitExceeded):  # type: ignore[override]
		payload = {
			"detail": exc.detail,
			"action": exc.action,
			"reason": exc.decision.reason,
			"message": TOO_FAST_MESSAGE,
			"request_id": get_request_id(request),
		}
		return JSONResponse(status_code=exc.status_code, content=payload, headers=rate_limit_headers(exc))


__all__ = ["install_error_handlers", "rate_limit_headers"]
