"""Connection pool for the membership lookups behind token issuance.

The service only reads, so a small pool with a per-query timeout is enough.
"""

from __future__ import annotations

import logging
from typing import Optional

import asyncpg

from gatehouse.settings import settings

log = logging.getLogger(__name__)

QUERY_TIMEOUT_SECONDS = 5.0

_pool: Optional[asyncpg.pool.Pool] = None


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
			command_timeout=QUERY_TIMEOUT_SECONDS,
			server_settings={"application_name": settings.service_name},
		)
		log.info(
			"membership_pool_ready",
			extra={"min_size": settings.postgres_min_pool_size, "max_size": settings.postgres_max_pool_size},
		)
	return _pool


async def get_pool() -> asyncpg.pool.Pool:
	return _pool if _pool is not None else await init_pool()


async def close_pool() -> None:
	global _pool
	pool, _pool = _pool, None
	if pool is not None:
		await pool.close()
		log.info("membership_pool_closed")
