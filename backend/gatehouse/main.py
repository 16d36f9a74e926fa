from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from gatehouse import obs
from gatehouse.api import ops, realtime
from gatehouse.api.errors import install_error_handlers
from gatehouse.api.request_id import RequestIdMiddleware
from gatehouse.infra import postgres
from gatehouse.infra.rate_limit import RateLimiterRegistry
from gatehouse.infra.redis import RateLimitStore
from gatehouse.realtime.resolver import MembershipResolver
from gatehouse.realtime.tokens import TokenIssuer
from gatehouse.settings import settings

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	await postgres.init_pool()
	store = RateLimitStore.from_settings()
	resolver = MembershipResolver()
	app.state.rate_limit_store = store
	app.state.rate_limiter = RateLimiterRegistry.from_settings(store)
	app.state.membership_resolver = resolver
	app.state.token_issuer = TokenIssuer.from_settings(resolver)
	log.info(
		"gatehouse_started",
		extra={
			"environment": settings.environment,
			"rate_limit_store": "configured" if store.configured else "disabled",
			"fail_open_on_error": settings.rate_limit_fail_open_on_error,
		},
	)
	try:
		yield
	finally:
		await store.close()
		await postgres.close_pool()


app = FastAPI(title="Gatehouse", lifespan=lifespan)
install_error_handlers(app)
obs.init(app)
app.add_middleware(RequestIdMiddleware)

app.include_router(realtime.router)
app.include_router(ops.router)
