"""Best-effort caller address for pre-authentication rate limiting.

Precedence mirrors the proxies we deploy behind: the platform edge header
first, then the conventional forwarded chain, then nginx's real-ip header.
Requests with none of these are direct/local calls.
"""

from __future__ import annotations

from typing import Mapping, Optional

PLATFORM_CLIENT_IP_HEADER = "fly-client-ip"
FORWARDED_FOR_HEADER = "x-forwarded-for"
REAL_IP_HEADER = "x-real-ip"
LOOPBACK_FALLBACK = "127.0.0.1"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
	value = headers.get(name)
	if value is None:
		# plain dicts are case-sensitive; starlette Headers are not
		for key, candidate in headers.items():
			if key.lower() == name:
				value = candidate
				break
	if value is None:
		return None
	value = value.strip()
	return value or None


def resolve_client_ip(headers: Mapping[str, str]) -> str:
	platform_ip = _header(headers, PLATFORM_CLIENT_IP_HEADER)
	if platform_ip:
		return platform_ip

	forwarded = _header(headers, FORWARDED_FOR_HEADER)
	if forwarded:
		first = forwarded.split(",")[0].strip()
		if first:
			return first

	real_ip = _header(headers, REAL_IP_HEADER)
	if real_ip:
		return real_ip

	return LOOPBACK_FALLBACK


__all__ = ["resolve_client_ip", "LOOPBACK_FALLBACK"]
