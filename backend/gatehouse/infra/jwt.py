"""Verification of the platform's session tokens.

Sessions are minted by the communities API; this service only checks them
before issuing realtime credentials. Realtime capability tokens are signed
separately in ``gatehouse.realtime.tokens``.
"""

from __future__ import annotations

from typing import Any, Dict

import jwt
from jwt import InvalidTokenError

from gatehouse.settings import settings

ISSUER = "communities-api"
AUDIENCE = "communities-fe"
ALGORITHMS = ["HS256"]
REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud", "sub"]
SESSION_LEEWAY_SECONDS = 5


def decode_session(token: str) -> Dict[str, Any]:
	"""Return the claims of a session token, raising InvalidTokenError otherwise."""
	claims = jwt.decode(
		token,
		settings.secret_key,
		algorithms=ALGORITHMS,
		audience=AUDIENCE,
		issuer=ISSUER,
		leeway=SESSION_LEEWAY_SECONDS,
		options={"require": REQUIRED_CLAIMS},
	)
	if not str(claims.get("sub") or "").strip():
		raise InvalidTokenError("missing_claim:sub")
	return claims


__all__ = ["AUDIENCE", "ISSUER", "SESSION_LEEWAY_SECONDS", "decode_session"]
