"""FastAPI dependencies that put guarded actions behind the rate limiter.

Usage::

	@router.post("/chat/{channel_id}/messages")
	async def send(..., _: RateLimitDecision = Depends(require_quota(Action.CHAT_MESSAGE))):
		...

Signed-in actions are keyed by user id; anonymous ones (sign-in) by client IP.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Literal

from fastapi import Depends, Request, Response

from gatehouse.infra.auth import AuthenticatedUser, get_current_user
from gatehouse.infra.client_ip import resolve_client_ip
from gatehouse.infra.rate_limit import (
	Action,
	ActionName,
	RateLimitDecision,
	RateLimiterRegistry,
	RateLimitExceeded,
	action_name,
)
from gatehouse.infra.redis import RateLimitStore

log = logging.getLogger(__name__)

QuotaDependency = Callable[..., Awaitable[RateLimitDecision]]


def get_rate_limiter(request: Request) -> RateLimiterRegistry:
	registry = getattr(request.app.state, "rate_limiter", None)
	if registry is None:
		# lifespan did not run (embedded use); build the same registry it would have
		registry = RateLimiterRegistry.from_settings(RateLimitStore.from_settings())
		request.app.state.rate_limiter = registry
	return registry


async def enforce_quota(
	registry: RateLimiterRegistry,
	action: ActionName,
	identifier: str,
	response: Response | None = None,
) -> RateLimitDecision:
	name = action_name(action)
	decision = await registry.check(name, identifier)
	if not decision.allowed:
		log.info("rate_limit_denied", extra={"action": name, "reason": decision.reason})
		raise RateLimitExceeded(name, decision, now=registry.now())
	if response is not None:
		response.headers["X-RateLimit-Limit"] = str(decision.limit)
		response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
	return decision


def require_quota(action: ActionName, *, by: Literal["user", "ip"] = "user") -> QuotaDependency:
	"""Build a dependency that spends one unit of ``action`` quota or raises 429."""
	# typos in action names surface at import time, not on the first request
	name = Action(action_name(action)).value

	if by == "user":

		async def _user_quota(
			response: Response,
			user: AuthenticatedUser = Depends(get_current_user),
			registry: RateLimiterRegistry = Depends(get_rate_limiter),
		) -> RateLimitDecision:
			return await enforce_quota(registry, name, user.id, response)

		return _user_quota

	if by == "ip":

		async def _ip_quota(
			request: Request,
			response: Response,
			registry: RateLimiterRegistry = Depends(get_rate_limiter),
		) -> RateLimitDecision:
			return await enforce_quota(registry, name, resolve_client_ip(request.headers), response)

		return _ip_quota

	raise ValueError(f"unsupported quota key: {by!r}")


__all__ = ["enforce_quota", "get_rate_limiter", "require_quota"]
