"""Redis connection management for the rate-limit counter store.

The adapter is constructed once at startup and handed to the limiter
registry. It connects lazily on first use, and an unset URL means no store is
configured at all, which the registry treats as fail-open mode. Tests swap
in a FakeRedis instance through ``set_client``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from gatehouse.settings import settings

log = logging.getLogger(__name__)


class RateLimitStoreUnavailable(Exception):
	"""The counter store could not be reached, did not answer in time, or is misconfigured."""


class RateLimitStore:
	"""Thin, lazily connected handle to the remote atomic-counter service."""

	def __init__(
		self,
		url: Optional[str],
		*,
		timeout_seconds: float = 0.5,
		client: Optional[redis.Redis] = None,
	) -> None:
		self._url = url
		self._timeout = timeout_seconds
		self._client: Optional[redis.Redis] = client

	@classmethod
	def from_settings(cls) -> "RateLimitStore":
		return cls(
			settings.rate_limit_redis_url,
			timeout_seconds=settings.rate_limit_store_timeout_seconds,
		)

	@property
	def configured(self) -> bool:
		return self._client is not None or bool(self._url)

	@property
	def timeout_seconds(self) -> float:
		return self._timeout

	def client(self) -> Optional[redis.Redis]:
		"""Return the connected client, creating it on first use.

		``from_url`` only builds a connection pool, so construction never
		awaits and two concurrent first callers cannot interleave here.
		"""
		if self._client is not None:
			return self._client
		if not self._url:
			return None
		try:
			self._client = redis.from_url(
				self._url,
				decode_responses=True,
				socket_timeout=self._timeout,
				socket_connect_timeout=self._timeout,
			)
		except ValueError as exc:
			# a bad URL is a store outage as far as callers are concerned
			raise RateLimitStoreUnavailable(f"invalid_store_url: {exc}") from exc
		log.info("rate_limit_store_connected", extra={"timeout_s": self._timeout})
		return self._client

	def set_client(self, client: Optional[redis.Redis]) -> None:
		self._client = client

	async def ping(self) -> bool:
		try:
			client = self.client()
			if client is None:
				return False
			return bool(await asyncio.wait_for(client.ping(), timeout=self._timeout))
		except (RateLimitStoreUnavailable, RedisError, OSError, asyncio.TimeoutError):
			log.warning("rate_limit_store_ping_failed", exc_info=True)
			return False

	async def close(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None


__all__ = ["RateLimitStore", "RateLimitStoreUnavailable"]
