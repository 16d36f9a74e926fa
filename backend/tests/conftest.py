import sys
from pathlib import Path
from typing import Dict, Iterable, Set, Tuple

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from gatehouse.infra import postgres
from gatehouse.infra.rate_limit import RateLimiterRegistry
from gatehouse.infra.redis import RateLimitStore
from gatehouse.main import app
from gatehouse.realtime.repo import AFFIRMATIVE_RSVP_STATUS, ChannelRef, ChatChannel, MembershipFacts
from gatehouse.realtime.resolver import MembershipResolver
from gatehouse.realtime.tokens import AblyJwtSigner, TokenIssuer
from gatehouse.settings import settings

TEST_ABLY_KEY = "appid.keyname:s3cr3t-signing-material-for-tests-0123456789"


class FakeClock:
	def __init__(self, start: float = 1_700_000_000.0) -> None:
		self.now = start

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += seconds


class FakeRealtimeRepository:
	"""In-memory stand-in for the membership/RSVP tables."""

	def __init__(self) -> None:
		self.members: Set[Tuple[str, str]] = set()
		self.channels: Dict[str, ChatChannel] = {}
		self.rsvps: Dict[Tuple[str, str], str] = {}
		self.fail_with: Exception | None = None
		self.loads = 0

	def add_member(self, community_id: str, user_id: str) -> None:
		self.members.add((community_id, user_id))

	def remove_member(self, community_id: str, user_id: str) -> None:
		self.members.discard((community_id, user_id))

	def add_channel(
		self,
		community_id: str,
		channel_id: str,
		*,
		event_id: str | None = None,
		session_ids: Iterable[str] = (),
	) -> None:
		self.channels[channel_id] = ChatChannel(
			id=channel_id,
			community_id=community_id,
			event_id=event_id,
			session_ids=list(session_ids),
		)

	def set_rsvp(self, user_id: str, session_id: str, status: str = AFFIRMATIVE_RSVP_STATUS) -> None:
		self.rsvps[(user_id, session_id)] = status

	def _check_failure(self) -> None:
		if self.fail_with is not None:
			raise self.fail_with

	def _going(self, user_id: str, session_ids: Iterable[str]) -> bool:
		return any(self.rsvps.get((user_id, sid)) == AFFIRMATIVE_RSVP_STATUS for sid in session_ids)

	async def load_membership_facts(self, user_id: str) -> MembershipFacts:
		self.loads += 1
		self._check_failure()
		community_ids = sorted(community for community, member in self.members if member == user_id)
		general = [
			ChannelRef(community_id=channel.community_id, channel_id=channel.id)
			for channel in self.channels.values()
			if not channel.is_event_channel and channel.community_id in community_ids
		]
		events = [
			ChannelRef(community_id=channel.community_id, channel_id=channel.id)
			for channel in self.channels.values()
			if channel.is_event_channel and self._going(user_id, channel.session_ids)
		]
		return MembershipFacts(community_ids=community_ids, general_channels=general, event_channels=events)

	async def get_chat_channel(self, channel_id: str) -> ChatChannel | None:
		self._check_failure()
		return self.channels.get(channel_id)

	async def is_member(self, community_id: str, user_id: str) -> bool:
		self._check_failure()
		return (community_id, user_id) in self.members

	async def has_affirmative_rsvp(self, user_id: str, session_ids) -> bool:
		self._check_failure()
		return self._going(user_id, session_ids)


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""API tests authenticate via X-User-Id, which is only accepted in dev mode."""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest_asyncio.fixture
async def fake_redis():
	client = FakeRedis(decode_responses=True)
	try:
		yield client
	finally:
		await client.flushall()
		await client.aclose()


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture
def store(fake_redis) -> RateLimitStore:
	return RateLimitStore(None, timeout_seconds=0.5, client=fake_redis)


@pytest.fixture
def registry(store, clock) -> RateLimiterRegistry:
	return RateLimiterRegistry(store, clock=clock)


@pytest.fixture
def realtime_repo() -> FakeRealtimeRepository:
	return FakeRealtimeRepository()


@pytest.fixture
def resolver(realtime_repo) -> MembershipResolver:
	return MembershipResolver(realtime_repo)


@pytest.fixture
def token_issuer(resolver, clock) -> TokenIssuer:
	return TokenIssuer(AblyJwtSigner(TEST_ABLY_KEY), resolver, ttl_seconds=3600, clock=clock)


@pytest_asyncio.fixture
async def api_client(store, registry, resolver, token_issuer):
	app.state.rate_limit_store = store
	app.state.rate_limiter = registry
	app.state.membership_resolver = resolver
	app.state.token_issuer = token_issuer
	transport = ASGITransport(app=app)
	try:
		async with AsyncClient(transport=transport, base_url="http://testserver") as client:
			yield client
	finally:
		for name in ("rate_limit_store", "rate_limiter", "membership_resolver", "token_issuer"):
			if hasattr(app.state, name):
				delattr(app.state, name)
