"""Realtime token issuance and channel access endpoints."""

from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from gatehouse.infra.auth import AuthenticatedUser, get_current_user
from gatehouse.obs import logging as obs_logging
from gatehouse.realtime.resolver import MembershipResolver
from gatehouse.realtime.tokens import TokenIssuer

router = APIRouter(prefix="/realtime", tags=["realtime"])


class _CamelModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RealtimeTokenResponse(_CamelModel):
	client_id: str
	capability: Dict[str, List[str]]
	expires_at: int
	token: str


class ChannelAccessResponse(_CamelModel):
	allowed: bool
	community_id: Optional[str] = None
	reason: str


def get_membership_resolver(request: Request) -> MembershipResolver:
	resolver = getattr(request.app.state, "membership_resolver", None)
	if resolver is None:
		resolver = MembershipResolver()
		request.app.state.membership_resolver = resolver
	return resolver


def get_token_issuer(
	request: Request,
	resolver: MembershipResolver = Depends(get_membership_resolver),
) -> TokenIssuer:
	issuer = getattr(request.app.state, "token_issuer", None)
	if issuer is None:
		issuer = TokenIssuer.from_settings(resolver)
		request.app.state.token_issuer = issuer
	return issuer


@router.post("/token", response_model=RealtimeTokenResponse, status_code=status.HTTP_200_OK)
async def issue_realtime_token(
	user: AuthenticatedUser = Depends(get_current_user),
	issuer: TokenIssuer = Depends(get_token_issuer),
) -> RealtimeTokenResponse:
	tokens = obs_logging.bind_context(user_id=user.id)
	try:
		issued = await issuer.issue(user.id)
	finally:
		obs_logging.reset_context(tokens)
	return RealtimeTokenResponse(
		client_id=issued.client_id,
		capability=issued.capability,
		expires_at=issued.expires_at,
		token=issued.token,
	)


@router.get("/channels/{channel_id}/access", response_model=ChannelAccessResponse)
async def check_channel_access(
	channel_id: str,
	user: AuthenticatedUser = Depends(get_current_user),
	resolver: MembershipResolver = Depends(get_membership_resolver),
) -> ChannelAccessResponse:
	access = await resolver.check_channel_access(channel_id, user.id)
	return ChannelAccessResponse(
		allowed=access.allowed,
		community_id=access.community_id,
		reason=access.reason,
	)


__all__ = ["router"]
