"""Capability map construction for realtime tokens.

Pure functions only: the resolver gathers facts, this module turns them into
grants. Chat ``publish`` is never granted because message publishing goes
through the server, where rate limits and RSVP checks run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Iterator, Mapping, Set, Tuple

from gatehouse.realtime import channels
from gatehouse.realtime.channels import ChannelPattern


class Operation(str, Enum):
	SUBSCRIBE = "subscribe"
	PUBLISH = "publish"
	PRESENCE = "presence"


SUBSCRIBE_ONLY: FrozenSet[Operation] = frozenset({Operation.SUBSCRIBE})
SUBSCRIBE_AND_PRESENCE: FrozenSet[Operation] = frozenset({Operation.SUBSCRIBE, Operation.PRESENCE})


@dataclass(frozen=True, slots=True)
class ResolvedFacts:
	"""Authorization facts read for one principal at one instant."""

	tenant_ids: FrozenSet[str] = frozenset()
	general_channels: Mapping[str, FrozenSet[str]] = field(default_factory=dict)
	event_channels: Mapping[str, FrozenSet[str]] = field(default_factory=dict)


class CapabilityMap:
	"""Set of (channel pattern, operations) grants for a single token."""

	def __init__(self) -> None:
		self._grants: Dict[ChannelPattern, FrozenSet[Operation]] = {}

	def grant(self, pattern: ChannelPattern, operations: Iterable[Operation]) -> None:
		ops = frozenset(operations)
		if not ops:
			raise ValueError("a grant needs at least one operation")
		self._grants[pattern] = self._grants.get(pattern, frozenset()) | ops

	def operations(self, pattern: ChannelPattern) -> FrozenSet[Operation]:
		return self._grants.get(pattern, frozenset())

	def patterns(self) -> Set[ChannelPattern]:
		return set(self._grants)

	def channel_names(self) -> Set[str]:
		return {pattern.name for pattern in self._grants}

	def items(self) -> Iterator[Tuple[ChannelPattern, FrozenSet[Operation]]]:
		return iter(self._grants.items())

	def __contains__(self, pattern: object) -> bool:
		if isinstance(pattern, str):
			return pattern in self.channel_names()
		return pattern in self._grants

	def __len__(self) -> int:
		return len(self._grants)

	def to_dict(self) -> Dict[str, list[str]]:
		"""Serialise as ``{pattern: [ops]}`` in a stable order."""
		return {
			pattern.name: sorted(op.value for op in ops)
			for pattern, ops in sorted(self._grants.items(), key=lambda item: item[0].name)
		}


def build_capabilities(principal_id: str, facts: ResolvedFacts) -> CapabilityMap:
	capability = CapabilityMap()
	capability.grant(channels.user_notifications(principal_id), SUBSCRIBE_ONLY)

	for tenant_id in sorted(facts.tenant_ids):
		capability.grant(channels.tenant_presence(tenant_id), SUBSCRIBE_AND_PRESENCE)
		capability.grant(channels.tenant_forum(tenant_id), SUBSCRIBE_ONLY)
		# document collaboration is open to every member
		capability.grant(channels.tenant_documents(tenant_id), SUBSCRIBE_AND_PRESENCE)

		for channel_id in sorted(facts.general_channels.get(tenant_id, ())):
			capability.grant(channels.tenant_chat(tenant_id, channel_id), SUBSCRIBE_AND_PRESENCE)

		# exact channel ids only; a tenant-wide chat wildcard would leak sessions not RSVP'd
		for channel_id in sorted(facts.event_channels.get(tenant_id, ())):
			capability.grant(channels.tenant_chat(tenant_id, channel_id), SUBSCRIBE_AND_PRESENCE)

	return capability


__all__ = [
	"CapabilityMap",
	"Operation",
	"ResolvedFacts",
	"build_capabilities",
]
