"""Channel naming scheme shared by the token issuer and server-side publishers.

    user:{principal_id}:notifications
    tenant:{tenant_id}:presence
    tenant:{tenant_id}:forum
    tenant:{tenant_id}:document:*            (capability pattern)
    tenant:{tenant_id}:document:{document_id}
    tenant:{tenant_id}:chat:{channel_id}

Ids are validated so an id can never smuggle a separator or wildcard into a
capability pattern.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

SEPARATOR = ":"
WILDCARD = "*"


class ChannelKind(str, Enum):
	NOTIFICATIONS = "notifications"
	PRESENCE = "presence"
	FORUM = "forum"
	DOCUMENT = "document"
	CHAT = "chat"


def _check_id(label: str, value: str) -> str:
	if not isinstance(value, str) or not value:
		raise ValueError(f"{label} must be a non-empty string")
	if SEPARATOR in value or WILDCARD in value or any(ch.isspace() for ch in value):
		raise ValueError(f"{label} contains reserved characters: {value!r}")
	return value


@dataclass(frozen=True, slots=True)
class ChannelPattern:
	"""A concrete channel name or a ``document:*`` wildcard, always well-formed."""

	kind: ChannelKind
	owner_id: str
	resource_id: Optional[str] = None
	wildcard: bool = False

	def __post_init__(self) -> None:
		if self.kind is ChannelKind.NOTIFICATIONS:
			_check_id("principal_id", self.owner_id)
		else:
			_check_id("tenant_id", self.owner_id)
		if self.kind in (ChannelKind.CHAT, ChannelKind.DOCUMENT) and not self.wildcard:
			_check_id(f"{self.kind.value}_id", self.resource_id or "")
		elif self.resource_id is not None:
			raise ValueError(f"{self.kind.value} channels take no resource id")
		if self.wildcard and self.kind is not ChannelKind.DOCUMENT:
			raise ValueError("only document channels may be granted by wildcard")

	@property
	def name(self) -> str:
		if self.kind is ChannelKind.NOTIFICATIONS:
			return f"user:{self.owner_id}:notifications"
		base = f"tenant:{self.owner_id}:{self.kind.value}"
		if self.wildcard:
			return f"{base}:{WILDCARD}"
		if self.resource_id is not None:
			return f"{base}:{self.resource_id}"
		return base

	@property
	def tenant_id(self) -> Optional[str]:
		return None if self.kind is ChannelKind.NOTIFICATIONS else self.owner_id

	def __str__(self) -> str:
		return self.name


def user_notifications(principal_id: str) -> ChannelPattern:
	return ChannelPattern(ChannelKind.NOTIFICATIONS, principal_id)


def tenant_presence(tenant_id: str) -> ChannelPattern:
	return ChannelPattern(ChannelKind.PRESENCE, tenant_id)


def tenant_forum(tenant_id: str) -> ChannelPattern:
	return ChannelPattern(ChannelKind.FORUM, tenant_id)


def tenant_documents(tenant_id: str) -> ChannelPattern:
	return ChannelPattern(ChannelKind.DOCUMENT, tenant_id, wildcard=True)


def tenant_document(tenant_id: str, document_id: str) -> ChannelPattern:
	return ChannelPattern(ChannelKind.DOCUMENT, tenant_id, document_id)


def tenant_chat(tenant_id: str, channel_id: str) -> ChannelPattern:
	return ChannelPattern(ChannelKind.CHAT, tenant_id, channel_id)


def parse_channel(name: str) -> ChannelPattern:
	"""Parse a scheme channel name back into a pattern; ``ValueError`` otherwise."""
	parts = name.split(SEPARATOR)
	if len(parts) == 3 and parts[0] == "user" and parts[2] == ChannelKind.NOTIFICATIONS.value:
		return user_notifications(parts[1])
	if len(parts) >= 3 and parts[0] == "tenant":
		tenant_id, kind = parts[1], parts[2]
		if len(parts) == 3 and kind == ChannelKind.PRESENCE.value:
			return tenant_presence(tenant_id)
		if len(parts) == 3 and kind == ChannelKind.FORUM.value:
			return tenant_forum(tenant_id)
		if len(parts) == 4 and kind == ChannelKind.DOCUMENT.value:
			if parts[3] == WILDCARD:
				return tenant_documents(tenant_id)
			return tenant_document(tenant_id, parts[3])
		if len(parts) == 4 and kind == ChannelKind.CHAT.value:
			return tenant_chat(tenant_id, parts[3])
	raise ValueError(f"not a recognised channel name: {name!r}")


__all__ = [
	"ChannelKind",
	"ChannelPattern",
	"parse_channel",
	"tenant_chat",
	"tenant_document",
	"tenant_documents",
	"tenant_forum",
	"tenant_presence",
	"user_notifications",
]
