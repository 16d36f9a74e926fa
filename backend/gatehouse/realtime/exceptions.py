"""Custom exceptions for realtime capability issuance."""

from __future__ import annotations

from fastapi import status


class RealtimeError(Exception):
	"""Base class for realtime access errors."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	detail: str = "realtime_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail


class AuthorizationComputationError(RealtimeError):
	"""Current membership/RSVP facts could not be read; no token may be issued."""

	status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
	detail = "authorization_unavailable"


class SigningUnavailable(RealtimeError):
	"""The token signing key is missing or unusable."""

	status_code = status.HTTP_503_SERVICE_UNAVAILABLE
	detail = "signing_unavailable"
