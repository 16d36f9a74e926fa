"""Redis-backed sliding-window rate limiting for guarded user actions.

Each guarded action has its own policy (max hits per trailing window) and its
own key prefix, so one caller's chat burst never spends their vote budget.
Limiters are built lazily by a single registry object created at startup.

Failure policy:
- no counter store configured: every check is allowed and a single
  ``[SECURITY]`` warning is logged for the process lifetime;
- store errors, timeouts and an unparseable store URL: treated the same way when
  ``fail_open_on_error`` is set (the default), denied otherwise;
- anything else (bad identifier, unknown action, internal bug): denied.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional, Union
from uuid import uuid4

from redis.exceptions import RedisError

from gatehouse.infra.redis import RateLimitStore, RateLimitStoreUnavailable
from gatehouse.obs import metrics as obs_metrics
from gatehouse.settings import settings

log = logging.getLogger(__name__)

FAIL_OPEN_REMAINING = 999
MAX_IDENTIFIER_LENGTH = 256
UNKNOWN_ACTION_LABEL = "unknown"


class Action(str, Enum):
	SIGN_IN = "sign-in"
	CHAT_MESSAGE = "chat-message"
	REACTION = "reaction"
	FORUM_POST = "forum-post"
	COMMENT = "comment"
	VOTE = "vote"
	EVENT_CREATE = "event-create"
	COMMUNITY_CREATE = "community-create"
	MEMBERSHIP = "membership"
	PROFILE_UPDATE = "profile-update"
	CHANNEL_CREATE = "channel-create"
	DOCUMENT_CREATE = "document-create"
	FOLDER_CREATE = "folder-create"
	RSVP = "rsvp"
	INVITE_SEND = "invite-send"
	FILE_UPLOAD = "file-upload"


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
	"""Sliding-window configuration for a single guarded action."""

	max_count: int
	window_seconds: float
	prefix: str

	@property
	def window_ms(self) -> int:
		return int(self.window_seconds * 1000)


_MINUTE = 60
_HOUR = 60 * _MINUTE

DEFAULT_POLICIES: Mapping[str, RateLimitPolicy] = MappingProxyType(
	{
		Action.SIGN_IN.value: RateLimitPolicy(3, 15 * _MINUTE, "ratelimit:auth"),
		Action.CHAT_MESSAGE.value: RateLimitPolicy(1, 1, "ratelimit:chat"),
		Action.REACTION.value: RateLimitPolicy(20, _MINUTE, "ratelimit:reaction"),
		Action.FORUM_POST.value: RateLimitPolicy(1, _MINUTE, "ratelimit:post"),
		Action.COMMENT.value: RateLimitPolicy(5, _MINUTE, "ratelimit:comment"),
		Action.VOTE.value: RateLimitPolicy(10, _MINUTE, "ratelimit:vote"),
		Action.EVENT_CREATE.value: RateLimitPolicy(5, _HOUR, "ratelimit:event"),
		Action.COMMUNITY_CREATE.value: RateLimitPolicy(3, _HOUR, "ratelimit:community"),
		Action.MEMBERSHIP.value: RateLimitPolicy(10, _HOUR, "ratelimit:membership"),
		Action.PROFILE_UPDATE.value: RateLimitPolicy(10, _HOUR, "ratelimit:profile"),
		Action.CHANNEL_CREATE.value: RateLimitPolicy(5, _HOUR, "ratelimit:channel"),
		Action.DOCUMENT_CREATE.value: RateLimitPolicy(10, _HOUR, "ratelimit:document"),
		Action.FOLDER_CREATE.value: RateLimitPolicy(10, _HOUR, "ratelimit:folder"),
		Action.RSVP.value: RateLimitPolicy(20, _HOUR, "ratelimit:rsvp"),
		Action.INVITE_SEND.value: RateLimitPolicy(20, _HOUR, "ratelimit:invite"),
		Action.FILE_UPLOAD.value: RateLimitPolicy(30, _HOUR, "ratelimit:upload"),
	}
)


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
	allowed: bool
	remaining: int
	reset_at: float
	limit: int
	reason: str = "ok"

	@property
	def reset_at_ms(self) -> int:
		return int(round(self.reset_at * 1000))

	def retry_after_seconds(self, now: float) -> int:
		return max(1, math.ceil(self.reset_at - now))


class InvalidIdentifier(ValueError):
	"""Raised for empty or malformed caller identifiers (a caller bug)."""

	status_code = 400
	detail = "invalid_identifier"


class RateLimitExceeded(Exception):
	"""Raised when the rate limit has been hit.

	Only the HTTP guard raises this, to carry a denial into the 429 response.
	The registry reports denials as decisions.
	"""

	status_code = 429
	detail = "rate_limited"

	def __init__(self, action: str, decision: RateLimitDecision, now: Optional[float] = None) -> None:
		super().__init__(f"{action}: rate limited")
		self.action = action
		self.decision = decision
		self.retry_after = decision.retry_after_seconds(time.time() if now is None else now)


ActionName = Union[Action, str]


def action_name(action: ActionName) -> str:
	return action.value if isinstance(action, Action) else str(action)


def validate_identifier(identifier: object) -> str:
	if not isinstance(identifier, str):
		raise InvalidIdentifier("identifier_not_string")
	value = identifier.strip()
	if not value:
		raise InvalidIdentifier("identifier_empty")
	if len(value) > MAX_IDENTIFIER_LENGTH:
		raise InvalidIdentifier("identifier_too_long")
	if any(ord(ch) < 32 or ord(ch) == 127 for ch in value):
		raise InvalidIdentifier("identifier_control_chars")
	return value


# Trim, count, conditionally record, and read the oldest hit in one atomic step.
# KEYS[1] = window key
# ARGV[1] = now (ms), ARGV[2] = window (ms), ARGV[3] = max count, ARGV[4] = member
# Returns {allowed (0/1), count, oldest score (ms)}
SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
	redis.call('ZADD', key, now, ARGV[4])
	count = count + 1
	allowed = 1
end

local oldest = now
local head = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if head[2] then
	oldest = tonumber(head[2])
end
redis.call('PEXPIRE', key, window)
return {allowed, count, oldest}
"""


class SlidingWindowLimiter:
	"""Sliding-window log over a Redis sorted set, one key per identifier.

	A hit is only recorded when it is allowed, so denials never consume quota.
	"""

	def __init__(self, action: str, policy: RateLimitPolicy, store: RateLimitStore) -> None:
		self.action = action
		self.policy = policy
		self._store = store
		self._script = None
		self._script_client = None

	def key(self, identifier: str) -> str:
		return f"{self.policy.prefix}:{identifier}"

	def _window_script(self, client):
		# register_script is local; the script is loaded into Redis on first call
		if self._script is None or self._script_client is not client:
			self._script = client.register_script(SLIDING_WINDOW_LUA)
			self._script_client = client
		return self._script

	async def hit(self, identifier: str, now: float) -> RateLimitDecision:
		client = self._store.client()
		if client is None:
			raise RateLimitStoreUnavailable("store_not_configured")
		now_ms = int(now * 1000)
		window_ms = self.policy.window_ms
		started = time.perf_counter()
		try:
			allowed, count, oldest_ms = await self._window_script(client)(
				keys=[self.key(identifier)],
				args=[now_ms, window_ms, self.policy.max_count, f"{now_ms}-{uuid4().hex}"],
			)
		except (RedisError, OSError) as exc:
			raise RateLimitStoreUnavailable(str(exc)) from exc
		finally:
			obs_metrics.observe_rate_limit_store(time.perf_counter() - started)

		reset_at = (float(oldest_ms) + window_ms) / 1000.0
		if not int(allowed):
			return RateLimitDecision(
				allowed=False,
				remaining=0,
				reset_at=reset_at,
				limit=self.policy.max_count,
				reason="rate_limited",
			)
		return RateLimitDecision(
			allowed=True,
			remaining=self.policy.max_count - int(count),
			reset_at=reset_at,
			limit=self.policy.max_count,
		)


class LimiterState(str, Enum):
	UNINITIALIZED = "uninitialized"
	ACTIVE = "active"
	FAIL_OPEN = "fail_open"


class RateLimiterRegistry:
	"""Named collection of independent limiters sharing one counter store."""

	def __init__(
		self,
		store: RateLimitStore,
		policies: Optional[Mapping[str, RateLimitPolicy]] = None,
		*,
		clock: Callable[[], float] = time.time,
		fail_open_on_error: bool = True,
	) -> None:
		chosen = DEFAULT_POLICIES if policies is None else policies
		table = {action_name(name): policy for name, policy in chosen.items()}
		prefixes: Dict[str, str] = {}
		for name, policy in table.items():
			if policy.max_count <= 0 or policy.window_seconds <= 0:
				raise ValueError(f"invalid rate limit policy for {name}")
			owner = prefixes.setdefault(policy.prefix, name)
			if owner != name:
				raise ValueError(f"rate limit prefix {policy.prefix!r} shared by {owner} and {name}")
		self._store = store
		self._policies: Mapping[str, RateLimitPolicy] = MappingProxyType(table)
		self._clock = clock
		self._fail_open_on_error = fail_open_on_error
		self._limiters: Dict[str, SlidingWindowLimiter] = {}
		self._fail_open: set[str] = set()
		self._unconfigured_warned = False
		self._store_degraded = False

	@classmethod
	def from_settings(cls, store: RateLimitStore) -> "RateLimiterRegistry":
		return cls(store, fail_open_on_error=settings.rate_limit_fail_open_on_error)

	def now(self) -> float:
		return self._clock()

	@property
	def policies(self) -> Mapping[str, RateLimitPolicy]:
		return self._policies

	def policy(self, action: ActionName) -> RateLimitPolicy:
		return self._policies[action_name(action)]

	def state(self, action: ActionName) -> LimiterState:
		name = action_name(action)
		if name in self._fail_open:
			return LimiterState.FAIL_OPEN
		if name in self._limiters:
			if self._store_degraded and self._fail_open_on_error:
				return LimiterState.FAIL_OPEN
			return LimiterState.ACTIVE
		return LimiterState.UNINITIALIZED

	def _limiter(self, name: str, policy: RateLimitPolicy) -> Optional[SlidingWindowLimiter]:
		limiter = self._limiters.get(name)
		if limiter is not None:
			return limiter
		if not self._store.configured:
			self._fail_open.add(name)
			if not self._unconfigured_warned:
				self._unconfigured_warned = True
				log.warning(
					"[SECURITY] Rate limiting disabled: no counter store configured. "
					"All requests will be allowed. Set RATE_LIMIT_REDIS_URL for production."
				)
			return None
		# Construction is synchronous, so a concurrent first use cannot build a second one.
		return self._limiters.setdefault(name, SlidingWindowLimiter(name, policy, self._store))

	def _allow_synthetic(self, name: str, policy: RateLimitPolicy, now: float, reason: str) -> RateLimitDecision:
		obs_metrics.inc_rate_limit_fail_open(name, reason)
		obs_metrics.inc_rate_limit_decision(name, "fail_open")
		return RateLimitDecision(
			allowed=True,
			remaining=FAIL_OPEN_REMAINING,
			reset_at=now + policy.window_seconds,
			limit=policy.max_count,
			reason=reason,
		)

	def _deny(self, name: str, limit: int, now: float, reason: str, window_seconds: float = 0.0) -> RateLimitDecision:
		obs_metrics.inc_rate_limit_decision(name, reason)
		return RateLimitDecision(
			allowed=False,
			remaining=0,
			reset_at=now + window_seconds,
			limit=limit,
			reason=reason,
		)

	def _on_store_error(self, name: str, policy: RateLimitPolicy, now: float, exc: BaseException) -> RateLimitDecision:
		if not self._store_degraded:
			self._store_degraded = True
			if self._fail_open_on_error:
				log.warning(
					"[SECURITY] Rate limit store unreachable; allowing requests until it recovers",
					extra={"action": name, "error": repr(exc)},
				)
			else:
				log.error(
					"Rate limit store unreachable; denying guarded actions until it recovers",
					extra={"action": name, "error": repr(exc)},
				)
		if self._fail_open_on_error:
			return self._allow_synthetic(name, policy, now, "store_error")
		return self._deny(name, policy.max_count, now, "store_error", policy.window_seconds)

	async def check(self, action: ActionName, identifier: str) -> RateLimitDecision:
		"""Record a hit for ``identifier`` and decide whether the action may proceed."""
		name = action_name(action)
		now = self._clock()
		policy = self._policies.get(name)
		if policy is None:
			log.error("rate_limit_unknown_action", extra={"action": name})
			# caller-supplied names never become metric labels
			return self._deny(UNKNOWN_ACTION_LABEL, 0, now, "internal_error")
		try:
			identifier = validate_identifier(identifier)
		except InvalidIdentifier as exc:
			log.warning("rate_limit_invalid_identifier", extra={"action": name, "error": str(exc)})
			return self._deny(name, policy.max_count, now, InvalidIdentifier.detail)

		limiter = self._limiter(name, policy)
		if limiter is None:
			return self._allow_synthetic(name, policy, now, "store_unavailable")
		try:
			decision = await asyncio.wait_for(
				limiter.hit(identifier, now),
				timeout=self._store.timeout_seconds,
			)
		except (RateLimitStoreUnavailable, asyncio.TimeoutError) as exc:
			return self._on_store_error(name, policy, now, exc)
		except Exception:
			log.exception("rate_limit_internal_error", extra={"action": name})
			return self._deny(name, policy.max_count, now, "internal_error")

		if self._store_degraded:
			self._store_degraded = False
			log.warning("Rate limit store recovered; enforcing limits again", extra={"action": name})
		obs_metrics.inc_rate_limit_decision(name, "allowed" if decision.allowed else "denied")
		return decision


__all__ = [
	"Action",
	"DEFAULT_POLICIES",
	"FAIL_OPEN_REMAINING",
	"InvalidIdentifier",
	"LimiterState",
	"RateLimitDecision",
	"RateLimitExceeded",
	"RateLimitPolicy",
	"RateLimitStoreUnavailable",
	"RateLimiterRegistry",
	"SlidingWindowLimiter",
	"validate_identifier",
]
