"""Realtime token issuance.

Tokens are Ably JWTs: HS256 signed with the API key secret, ``kid`` set to the
key name, and the capability map and client id carried in the
``x-ably-capability`` / ``x-ably-clientId`` claims. Binding the client id
stops a token holder from acting as anyone else on the channels.

Tokens cannot be revoked, so the TTL stays short (one hour by default) and
every issuance recomputes scope from current membership and RSVP facts.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

import jwt

from gatehouse.obs import metrics as obs_metrics
from gatehouse.realtime.capabilities import build_capabilities
from gatehouse.realtime.exceptions import (
	AuthorizationComputationError,
	RealtimeError,
	SigningUnavailable,
)
from gatehouse.realtime.resolver import MembershipResolver
from gatehouse.settings import settings

log = logging.getLogger(__name__)

CAPABILITY_CLAIM = "x-ably-capability"
CLIENT_ID_CLAIM = "x-ably-clientId"


@dataclass(frozen=True, slots=True)
class IssuedToken:
	client_id: str
	capability: Dict[str, list[str]]
	issued_at: int
	expires_at: int
	token: str


class TokenSigner(Protocol):
	@property
	def available(self) -> bool: ...

	def sign(self, *, client_id: str, capability: str, issued_at: int, expires_at: int) -> str: ...


def _split_api_key(api_key: Optional[str]) -> Optional[Tuple[str, str]]:
	if not api_key:
		return None
	key_name, sep, key_secret = api_key.partition(":")
	if not sep or not key_name or not key_secret:
		return None
	return key_name, key_secret


class AblyJwtSigner:
	"""Signs capability tokens with an Ably API key (``<keyName>:<keySecret>``)."""

	def __init__(self, api_key: Optional[str]) -> None:
		parts = _split_api_key(api_key)
		if api_key and parts is None:
			log.error("ABLY_API_KEY is malformed; realtime tokens cannot be issued")
		self._key_name, self._key_secret = parts if parts else (None, None)

	@classmethod
	def from_settings(cls) -> "AblyJwtSigner":
		return cls(settings.ably_api_key)

	@property
	def available(self) -> bool:
		return self._key_name is not None and self._key_secret is not None

	@property
	def key_name(self) -> Optional[str]:
		return self._key_name

	def sign(self, *, client_id: str, capability: str, issued_at: int, expires_at: int) -> str:
		if not self.available:
			raise SigningUnavailable()
		claims = {
			"iat": issued_at,
			"exp": expires_at,
			CAPABILITY_CLAIM: capability,
			CLIENT_ID_CLAIM: client_id,
		}
		try:
			return jwt.encode(
				claims,
				self._key_secret,
				algorithm="HS256",
				headers={"kid": self._key_name, "typ": "JWT"},
			)
		except (jwt.PyJWTError, TypeError, ValueError) as exc:
			raise SigningUnavailable() from exc


class TokenIssuer:
	"""Resolve facts, build the capability map, and sign it, on every call."""

	def __init__(
		self,
		signer: TokenSigner,
		resolver: MembershipResolver | None = None,
		*,
		ttl_seconds: int = 3600,
		clock: Callable[[], float] = time.time,
	) -> None:
		if ttl_seconds <= 0:
			raise ValueError("ttl_seconds must be positive")
		self._signer = signer
		self._resolver = resolver or MembershipResolver()
		self._ttl = ttl_seconds
		self._clock = clock

	@classmethod
	def from_settings(cls, resolver: MembershipResolver | None = None) -> "TokenIssuer":
		return cls(
			AblyJwtSigner.from_settings(),
			resolver,
			ttl_seconds=settings.realtime_token_ttl_seconds,
		)

	@property
	def ttl_seconds(self) -> int:
		return self._ttl

	async def issue(self, principal_id: str) -> IssuedToken:
		try:
			return await self._issue(principal_id)
		except RealtimeError as exc:
			obs_metrics.inc_token_failure(exc.detail)
			raise

	async def _issue(self, principal_id: str) -> IssuedToken:
		if not self._signer.available:
			log.error("realtime_signing_unavailable")
			raise SigningUnavailable()

		facts = await self._resolver.resolve(principal_id)
		try:
			capability = build_capabilities(principal_id, facts)
		except ValueError as exc:
			log.error("capability_build_failed", extra={"error": str(exc)})
			raise AuthorizationComputationError() from exc

		issued_at = int(self._clock())
		expires_at = issued_at + self._ttl
		capability_map = capability.to_dict()
		token = self._signer.sign(
			client_id=principal_id,
			capability=json.dumps(capability_map, separators=(",", ":")),
			issued_at=issued_at,
			expires_at=expires_at,
		)
		obs_metrics.inc_token_issued(len(capability))
		log.info(
			"realtime_token_issued",
			extra={"channel_count": len(capability), "ttl_s": self._ttl},
		)
		return IssuedToken(
			client_id=principal_id,
			capability=capability_map,
			issued_at=issued_at * 1000,
			expires_at=expires_at * 1000,
			token=token,
		)


__all__ = ["AblyJwtSigner", "IssuedToken", "TokenIssuer", "TokenSigner"]
