"""Membership and RSVP facts that drive realtime authorization.

Every call reads current state. Nothing here is cached: a stale membership or
RSVP would turn directly into a stale grant.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Optional, Set

from gatehouse.obs import metrics as obs_metrics
from gatehouse.realtime import repo as repo_module
from gatehouse.realtime.capabilities import ResolvedFacts
from gatehouse.realtime.exceptions import AuthorizationComputationError

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChannelAccess:
	allowed: bool
	community_id: Optional[str] = None
	reason: str = "ok"


class MembershipResolver:
	def __init__(self, repository: repo_module.RealtimeRepository | None = None) -> None:
		self.repo = repository or repo_module.RealtimeRepository()

	async def resolve(self, principal_id: str) -> ResolvedFacts:
		"""Return member tenants, their general channels, and RSVP'd event channels."""
		try:
			rows = await self.repo.load_membership_facts(principal_id)
		except Exception as exc:
			log.error("membership_facts_unavailable", exc_info=True)
			raise AuthorizationComputationError() from exc

		general: Dict[str, Set[str]] = defaultdict(set)
		for ref in rows.general_channels:
			general[ref.community_id].add(ref.channel_id)
		events: Dict[str, Set[str]] = defaultdict(set)
		for ref in rows.event_channels:
			events[ref.community_id].add(ref.channel_id)

		return ResolvedFacts(
			tenant_ids=frozenset(rows.community_ids),
			general_channels={tenant: frozenset(ids) for tenant, ids in general.items()},
			event_channels={tenant: frozenset(ids) for tenant, ids in events.items()},
		)

	async def check_channel_access(self, channel_id: str, principal_id: str) -> ChannelAccess:
		"""Apply the token's chat rules to one channel, for server-mediated publishing.

		Membership is required for every chat channel; event channels also
		require a ``going`` RSVP on one of the event's sessions.
		"""
		try:
			channel = await self.repo.get_chat_channel(channel_id)
			if channel is None:
				access = ChannelAccess(allowed=False, reason="channel_not_found")
			elif not await self.repo.is_member(channel.community_id, principal_id):
				access = ChannelAccess(allowed=False, community_id=channel.community_id, reason="membership_required")
			elif channel.is_event_channel and not await self.repo.has_affirmative_rsvp(
				principal_id, channel.session_ids
			):
				access = ChannelAccess(allowed=False, community_id=channel.community_id, reason="rsvp_required")
			else:
				access = ChannelAccess(allowed=True, community_id=channel.community_id)
		except Exception as exc:
			log.error("channel_access_check_failed", exc_info=True, extra={"channel_id": channel_id})
			raise AuthorizationComputationError() from exc
		obs_metrics.inc_channel_access("allowed" if access.allowed else access.reason)
		return access


__all__ = ["ChannelAccess", "MembershipResolver"]
