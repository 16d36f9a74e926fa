"""Read-only queries for membership, chat channel, and RSVP facts."""

from __future__ import annotations

from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict

from gatehouse.infra.postgres import get_pool

AFFIRMATIVE_RSVP_STATUS = "going"


class ChannelRef(BaseModel):
	community_id: str
	channel_id: str

	model_config = ConfigDict(frozen=True)


class MembershipFacts(BaseModel):
	"""Raw rows behind a principal's realtime scope, read in one snapshot."""

	community_ids: list[str]
	general_channels: list[ChannelRef]
	event_channels: list[ChannelRef]


class ChatChannel(BaseModel):
	id: str
	community_id: str
	event_id: Optional[str] = None
	session_ids: list[str] = []

	model_config = ConfigDict(from_attributes=True)

	@property
	def is_event_channel(self) -> bool:
		return self.event_id is not None


class RealtimeRepository:
	"""Thin data-access layer around asyncpg."""

	async def load_membership_facts(self, user_id: str) -> MembershipFacts:
		pool = await get_pool()
		async with pool.acquire() as conn:
			# one consistent snapshot so memberships and channels cannot disagree
			async with conn.transaction(isolation="repeatable_read", readonly=True):
				member_rows = await conn.fetch(
					"SELECT community_id FROM community_member WHERE user_id = $1",
					user_id,
				)
				community_ids = [str(row["community_id"]) for row in member_rows]
				general_rows = []
				if community_ids:
					general_rows = await conn.fetch(
						"""
						SELECT c.id, c.community_id
						FROM chat_channel c
						WHERE c.community_id = ANY($1::text[])
							AND NOT EXISTS (SELECT 1 FROM event e WHERE e.chat_channel_id = c.id)
						""",
						community_ids,
					)
				event_rows = await conn.fetch(
					"""
					SELECT DISTINCT e.community_id, e.chat_channel_id
					FROM event_rsvp r
					JOIN event_session s ON s.id = r.session_id
					JOIN event e ON e.id = s.event_id
					WHERE r.user_id = $1
						AND r.status = $2
						AND e.chat_channel_id IS NOT NULL
					""",
					user_id,
					AFFIRMATIVE_RSVP_STATUS,
				)
		return MembershipFacts(
			community_ids=community_ids,
			general_channels=[
				ChannelRef(community_id=str(row["community_id"]), channel_id=str(row["id"]))
				for row in general_rows
			],
			event_channels=[
				ChannelRef(community_id=str(row["community_id"]), channel_id=str(row["chat_channel_id"]))
				for row in event_rows
			],
		)

	async def get_chat_channel(self, channel_id: str) -> ChatChannel | None:
		pool = await get_pool()
		async with pool.acquire() as conn:
			record = await conn.fetchrow(
				"""
				SELECT c.id, c.community_id, e.id AS event_id,
					COALESCE(array_agg(s.id) FILTER (WHERE s.id IS NOT NULL), '{}') AS session_ids
				FROM chat_channel c
				LEFT JOIN event e ON e.chat_channel_id = c.id
				LEFT JOIN event_session s ON s.event_id = e.id
				WHERE c.id = $1
				GROUP BY c.id, c.community_id, e.id
				""",
				channel_id,
			)
		if not record:
			return None
		return ChatChannel(
			id=str(record["id"]),
			community_id=str(record["community_id"]),
			event_id=str(record["event_id"]) if record["event_id"] is not None else None,
			session_ids=[str(value) for value in record["session_ids"]],
		)

	async def is_member(self, community_id: str, user_id: str) -> bool:
		pool = await get_pool()
		async with pool.acquire() as conn:
			found = await conn.fetchval(
				"SELECT 1 FROM community_member WHERE community_id = $1 AND user_id = $2",
				community_id,
				user_id,
			)
		return found is not None

	async def has_affirmative_rsvp(self, user_id: str, session_ids: Sequence[str]) -> bool:
		if not session_ids:
			return False
		pool = await get_pool()
		async with pool.acquire() as conn:
			found = await conn.fetchval(
				"""
				SELECT 1 FROM event_rsvp
				WHERE user_id = $1 AND session_id = ANY($2::text[]) AND status = $3
				LIMIT 1
				""",
				user_id,
				list(session_ids),
				AFFIRMATIVE_RSVP_STATUS,
			)
		return found is not None
