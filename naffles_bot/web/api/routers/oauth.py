"""OAuth flow linking a Discord user to a Platform account."""

from __future__ import annotations

import html
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse, RedirectResponse

from naffles_bot.bot.services.container import BotServices
from naffles_bot.bot.services.exceptions import ServiceError
from naffles_bot.web.api.dependencies import get_http_client, get_services
from naffles_bot.web.api.schemas import OAuthStatus
from naffles_bot.web.crud import DatabaseOperationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])

STATE_TTL_SECONDS = 600
OAUTH_SCOPES = "identify guilds"

ERROR_MESSAGES = {
    "access_denied": "You denied access to Discord. Please try again and grant the required permissions.",
    "invalid_state": "Invalid or expired authentication state. Please try again.",
    "missing_parameters": "Missing required parameters in OAuth callback.",
    "token_exchange_failed": "Could not complete sign-in with Discord. Please try again.",
    "platform_validation_failed": "Your Naffles account could not be verified. Please try again later.",
    "link_failed": "Failed to save your account link. Please try again.",
}


def state_key(state: str) -> str:
    return f"oauth_state_{state}"


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    body = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>Naffles Discord Bot - {html.escape(title)}</title></head>"
        f"<body><h1>{html.escape(title)}</h1><p>{html.escape(message)}</p></body></html>"
    )
    return HTMLResponse(body, status_code=status_code)


def _error_page(error: str, status_code: int = 400) -> HTMLResponse:
    message = ERROR_MESSAGES.get(error, "An unknown error occurred during authentication.")
    return _page("Authentication Error", message, status_code)


@router.get("/initiate")
async def initiate(
    user_id: str = Query(..., min_length=1),
    guild_id: Optional[str] = Query(default=None),
    services: BotServices = Depends(get_services),
) -> RedirectResponse:
    """Store a one-time state and send the user to the identity provider."""
    settings = services.settings
    if not settings.oauth_client_id or not settings.oauth_redirect_uri:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="OAuth is not configured")

    state = secrets.token_urlsafe(32)
    await services.cache.set_json(
        state_key(state),
        {
            "user_id": user_id,
            "guild_id": guild_id,
            "initiated_at": datetime.now(timezone.utc).isoformat(),
        },
        ttl=STATE_TTL_SECONDS,
    )
    query = urlencode({
        "client_id": settings.oauth_client_id,
        "redirect_uri": settings.oauth_redirect_uri,
        "response_type": "code",
        "scope": OAUTH_SCOPES,
        "state": state,
    })
    logger.info(f"OAuth initiated for user {user_id}")
    return RedirectResponse(f"{settings.oauth_authorize_url}?{query}", status_code=status.HTTP_302_FOUND)


async def exchange_code(client: httpx.AsyncClient, services: BotServices, code: str) -> dict:
    settings = services.settings
    response = await client.post(
        settings.oauth_token_url,
        data={
            "client_id": settings.oauth_client_id,
            "client_secret": settings.oauth_client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": settings.oauth_redirect_uri,
        },
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    response.raise_for_status()
    return response.json()


@router.get("/callback")
async def callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    services: BotServices = Depends(get_services),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> HTMLResponse:
    """Finish the flow: check state, exchange the code, store the link."""
    if error:
        logger.warning(f"OAuth error from provider: {error}")
        return _error_page(error)
    if not code or not state:
        return _error_page("missing_parameters")

    pending = await services.cache.pop_json(state_key(state))
    if not pending:
        return _error_page("invalid_state")
    discord_id = pending["user_id"]

    try:
        tokens = await exchange_code(client, services, code)
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"❌ OAuth token exchange failed for user {discord_id}: {e}")
        return _error_page("token_exchange_failed", status.HTTP_502_BAD_GATEWAY)

    access_token = tokens.get("access_token")
    if not access_token:
        return _error_page("token_exchange_failed", status.HTTP_502_BAD_GATEWAY)

    try:
        platform_user = await services.platform.validate_auth(access_token) or {}
    except ServiceError as e:
        logger.error(f"❌ Platform rejected OAuth token for user {discord_id}: {e}")
        return _error_page("platform_validation_failed", status.HTTP_502_BAD_GATEWAY)

    platform_user_id = platform_user.get("id") or platform_user.get("userId")
    if not platform_user_id:
        return _error_page("platform_validation_failed", status.HTTP_502_BAD_GATEWAY)

    expires_in = tokens.get("expires_in")
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in)) if expires_in else None
    try:
        async with services.session_factory() as session:
            await services.user_links.create_user_link(
                session,
                discord_id,
                str(platform_user_id),
                access_token,
                refresh_token=tokens.get("refresh_token"),
                expires_at=expires_at,
            )
    except DatabaseOperationError as e:
        logger.error(f"❌ Failed to store account link for user {discord_id}: {e}")
        return _error_page("link_failed", status.HTTP_500_INTERNAL_SERVER_ERROR)

    services.audit.record(
        "admin_action",
        user_id=discord_id,
        guild_id=pending.get("guild_id"),
        outcome="success",
        action="account_linked",
        platform_user_id=str(platform_user_id),
    )
    logger.info(f"✅ Linked Discord user {discord_id} to Platform user {platform_user_id}")
    return _page(
        "Account Linked",
        "Your Discord account is now linked to Naffles. You can close this window and return to Discord.",
    )


@router.get("/status/{user_id}", response_model=OAuthStatus)
async def link_status(user_id: str, services: BotServices = Depends(get_services)) -> OAuthStatus:
    async with services.session_factory() as session:
        link = await services.user_links.get_user_link(session, user_id)
    if link is None:
        return OAuthStatus(user_id=user_id, linked=False)
    return OAuthStatus(
        user_id=user_id,
        linked=True,
        platform_user_id=link.platform_user_id,
        linked_at=link.linked_at,
    )
