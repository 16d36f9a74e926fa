from __future__ import annotations

import asyncio
import logging

import pytest
from prometheus_client import REGISTRY
from redis.exceptions import ConnectionError as RedisConnectionError

from gatehouse.infra.rate_limit import (
	DEFAULT_POLICIES,
	FAIL_OPEN_REMAINING,
	Action,
	InvalidIdentifier,
	LimiterState,
	RateLimitDecision,
	RateLimiterRegistry,
	RateLimitPolicy,
	validate_identifier,
)
from gatehouse.infra.redis import RateLimitStore

LOGGER_NAME = "gatehouse.infra.rate_limit"


class _BrokenRedis:
	def register_script(self, script):
		async def _run(keys=None, args=None):
			raise RedisConnectionError("connection refused")

		return _run

	async def ping(self):
		raise RedisConnectionError("connection refused")

	async def aclose(self):
		return None


class _StallingRedis:
	def register_script(self, script):
		async def _run(keys=None, args=None):
			await asyncio.sleep(5)

		return _run


def _security_warnings(caplog) -> list[logging.LogRecord]:
	return [
		record
		for record in caplog.records
		if record.name == LOGGER_NAME and record.levelno == logging.WARNING and "[SECURITY]" in record.getMessage()
	]


def test_default_policy_table():
	assert set(DEFAULT_POLICIES) == {action.value for action in Action}
	assert DEFAULT_POLICIES["sign-in"] == RateLimitPolicy(3, 900, "ratelimit:auth")
	assert DEFAULT_POLICIES["chat-message"] == RateLimitPolicy(1, 1, "ratelimit:chat")
	assert DEFAULT_POLICIES["file-upload"] == RateLimitPolicy(30, 3600, "ratelimit:upload")
	prefixes = [policy.prefix for policy in DEFAULT_POLICIES.values()]
	assert len(prefixes) == len(set(prefixes))


def test_shared_prefix_rejected(store):
	policies = {
		"comment": RateLimitPolicy(5, 60, "ratelimit:shared"),
		"vote": RateLimitPolicy(10, 60, "ratelimit:shared"),
	}
	with pytest.raises(ValueError):
		RateLimiterRegistry(store, policies)


def test_non_positive_policy_rejected(store):
	with pytest.raises(ValueError):
		RateLimiterRegistry(store, {"vote": RateLimitPolicy(0, 60, "ratelimit:vote")})


@pytest.mark.parametrize("value", ["", "   ", "a" * 257, "user\n1", 42, None])
def test_validate_identifier_rejects(value):
	with pytest.raises(InvalidIdentifier):
		validate_identifier(value)


def test_validate_identifier_trims():
	assert validate_identifier("  user-1 ") == "user-1"


@pytest.mark.asyncio
async def test_allows_up_to_max_then_denies(registry, clock):
	remaining = []
	for _ in range(3):
		decision = await registry.check(Action.SIGN_IN, "203.0.113.7")
		assert decision.allowed
		remaining.append(decision.remaining)
		clock.advance(10)
	assert remaining == [2, 1, 0]

	denied = await registry.check(Action.SIGN_IN, "203.0.113.7")
	assert not denied.allowed
	assert denied.remaining == 0
	assert denied.reason == "rate_limited"
	assert denied.limit == 3
	# oldest hit was at t0, so the window frees up at t0 + 15 minutes
	assert denied.reset_at == pytest.approx(clock.now - 30 + 900)


@pytest.mark.asyncio
async def test_quota_replenishes_one_for_one(registry, clock):
	start = clock.now
	for _ in range(3):
		assert (await registry.check("sign-in", "198.51.100.1")).allowed
		clock.advance(10)
	assert not (await registry.check("sign-in", "198.51.100.1")).allowed

	clock.now = start + 900.5
	decision = await registry.check("sign-in", "198.51.100.1")
	# the denied attempt did not take a slot, so exactly one unit came back
	assert decision.allowed
	assert decision.remaining == 0

	clock.advance(0.1)
	assert not (await registry.check("sign-in", "198.51.100.1")).allowed


@pytest.mark.asyncio
async def test_chat_message_burst(registry, clock):
	first = await registry.check(Action.CHAT_MESSAGE, "user-1")
	assert first.allowed
	assert first.remaining == 0

	clock.advance(0.1)
	second = await registry.check(Action.CHAT_MESSAGE, "user-1")
	assert not second.allowed
	assert second.reset_at - clock.now == pytest.approx(0.9)

	clock.advance(0.95)
	assert (await registry.check(Action.CHAT_MESSAGE, "user-1")).allowed


@pytest.mark.asyncio
async def test_actions_have_independent_quotas(registry):
	assert (await registry.check(Action.CHAT_MESSAGE, "user-1")).allowed
	assert not (await registry.check(Action.CHAT_MESSAGE, "user-1")).allowed

	vote = await registry.check(Action.VOTE, "user-1")
	assert vote.allowed
	assert vote.remaining == 9


@pytest.mark.asyncio
async def test_identifiers_have_independent_quotas(registry):
	assert (await registry.check(Action.FORUM_POST, "user-1")).allowed
	assert not (await registry.check(Action.FORUM_POST, "user-1")).allowed
	assert (await registry.check(Action.FORUM_POST, "user-2")).allowed


@pytest.mark.asyncio
async def test_keys_use_policy_prefix(registry, fake_redis):
	await registry.check(Action.PROFILE_UPDATE, "user-9")
	assert await fake_redis.exists("ratelimit:profile:user-9") == 1
	assert await fake_redis.pttl("ratelimit:profile:user-9") > 0


@pytest.mark.asyncio
async def test_limiter_state_transitions(registry):
	assert registry.state(Action.REACTION) is LimiterState.UNINITIALIZED
	await registry.check(Action.REACTION, "user-1")
	assert registry.state(Action.REACTION) is LimiterState.ACTIVE
	assert registry.state(Action.COMMENT) is LimiterState.UNINITIALIZED


@pytest.mark.asyncio
async def test_concurrent_first_use_builds_one_limiter(registry):
	decisions = await asyncio.gather(*(registry.check(Action.COMMENT, "user-1") for _ in range(8)))
	assert sum(1 for decision in decisions if decision.allowed) == 5
	assert registry.state(Action.COMMENT) is LimiterState.ACTIVE


@pytest.mark.asyncio
async def test_unconfigured_store_allows_everything_and_warns_once(clock, caplog):
	registry = RateLimiterRegistry(RateLimitStore(None), clock=clock)
	caplog.set_level(logging.WARNING, logger=LOGGER_NAME)

	for action in (Action.CHAT_MESSAGE, Action.VOTE, Action.CHAT_MESSAGE):
		for _ in range(5):
			decision = await registry.check(action, "user-1")
			assert decision.allowed
			assert decision.remaining == FAIL_OPEN_REMAINING
			assert decision.reason == "store_unavailable"

	assert registry.state(Action.CHAT_MESSAGE) is LimiterState.FAIL_OPEN
	assert len(_security_warnings(caplog)) == 1


@pytest.mark.asyncio
async def test_sign_in_fails_open_without_store(clock):
	# Accepted trade-off: with no counter store, availability wins over
	# brute-force protection, including for sign-in.
	registry = RateLimiterRegistry(RateLimitStore(None), clock=clock)
	decisions = [await registry.check(Action.SIGN_IN, "203.0.113.7") for _ in range(10)]
	assert all(decision.allowed for decision in decisions)
	assert decisions[-1].reset_at == pytest.approx(clock.now + 900)


@pytest.mark.asyncio
async def test_invalid_identifier_denied_even_without_store(clock):
	registry = RateLimiterRegistry(RateLimitStore(None), clock=clock)
	decision = await registry.check(Action.VOTE, "   ")
	assert not decision.allowed
	assert decision.reason == "invalid_identifier"


@pytest.mark.asyncio
async def test_unknown_action_denied(registry):
	decision = await registry.check("teleport", "user-1")
	assert decision == RateLimitDecision(
		allowed=False, remaining=0, reset_at=decision.reset_at, limit=0, reason="internal_error"
	)


@pytest.mark.asyncio
async def test_store_error_fails_open_and_recovers(fake_redis, clock, caplog):
	store = RateLimitStore(None, client=_BrokenRedis())
	registry = RateLimiterRegistry(store, clock=clock)
	caplog.set_level(logging.WARNING, logger=LOGGER_NAME)

	for _ in range(3):
		decision = await registry.check(Action.RSVP, "user-1")
		assert decision.allowed
		assert decision.reason == "store_error"
		assert decision.remaining == FAIL_OPEN_REMAINING
	assert len(_security_warnings(caplog)) == 1
	assert registry.state(Action.RSVP) is LimiterState.FAIL_OPEN

	store.set_client(fake_redis)
	recovered = await registry.check(Action.RSVP, "user-1")
	assert recovered.allowed
	assert recovered.reason == "ok"
	assert recovered.remaining == 19
	assert registry.state(Action.RSVP) is LimiterState.ACTIVE
	assert any("recovered" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_store_error_fails_closed_when_configured(clock):
	store = RateLimitStore(None, client=_BrokenRedis())
	registry = RateLimiterRegistry(store, clock=clock, fail_open_on_error=False)
	decision = await registry.check(Action.INVITE_SEND, "user-1")
	assert not decision.allowed
	assert decision.reason == "store_error"
	assert registry.state(Action.INVITE_SEND) is LimiterState.ACTIVE


@pytest.mark.asyncio
async def test_store_timeout_treated_as_store_error(clock):
	store = RateLimitStore(None, timeout_seconds=0.05, client=_StallingRedis())
	registry = RateLimiterRegistry(store, clock=clock)
	decision = await registry.check(Action.FILE_UPLOAD, "user-1")
	assert decision.allowed
	assert decision.reason == "store_error"


@pytest.mark.asyncio
async def test_malformed_store_url_fails_open_and_logs_once(clock, caplog):
	# missing redis:// scheme
	store = RateLimitStore("redis-host:6379")
	registry = RateLimiterRegistry(store, clock=clock)
	caplog.set_level(logging.WARNING, logger=LOGGER_NAME)

	decisions = [await registry.check(Action.SIGN_IN, "203.0.113.7") for _ in range(3)]

	assert [(d.allowed, d.reason) for d in decisions] == [(True, "store_error")] * 3
	assert len(_security_warnings(caplog)) == 1
	assert not [record for record in caplog.records if record.levelno >= logging.ERROR]
	assert registry.state(Action.SIGN_IN) is LimiterState.FAIL_OPEN
	assert await store.ping() is False


@pytest.mark.asyncio
async def test_denied_hits_leave_no_trace(registry, fake_redis, clock):
	for _ in range(5):
		await registry.check(Action.COMMENT, "user-1")
	before = await fake_redis.zrange("ratelimit:comment:user-1", 0, -1)

	for _ in range(20):
		clock.advance(0.01)
		assert not (await registry.check(Action.COMMENT, "user-1")).allowed

	assert await fake_redis.zrange("ratelimit:comment:user-1", 0, -1) == before


@pytest.mark.asyncio
async def test_concurrent_burst_never_over_admits(registry, fake_redis):
	decisions = await asyncio.gather(*(registry.check(Action.VOTE, "user-1") for _ in range(40)))
	assert sum(1 for decision in decisions if decision.allowed) == 10
	assert await fake_redis.zcard("ratelimit:vote:user-1") == 10


@pytest.mark.asyncio
async def test_unknown_actions_share_one_metric_label(registry):
	labels = {"action": "unknown", "outcome": "internal_error"}
	before = REGISTRY.get_sample_value("gatehouse_rate_limit_decisions_total", labels) or 0.0

	await registry.check("teleport-1", "user-1")
	await registry.check("teleport-2", "user-1")

	assert REGISTRY.get_sample_value("gatehouse_rate_limit_decisions_total", labels) == before + 2
	assert REGISTRY.get_sample_value(
		"gatehouse_rate_limit_decisions_total", {"action": "teleport-1", "outcome": "internal_error"}
	) is None


def test_retry_after_rounds_up():
	decision = RateLimitDecision(allowed=False, remaining=0, reset_at=100.2, limit=1, reason="rate_limited")
	assert decision.retry_after_seconds(100.0) == 1
	assert decision.retry_after_seconds(90.0) == 11
	assert decision.reset_at_ms == 100200
