"""Shared FastAPI dependencies."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import AsyncGenerator

import httpx
from fastapi import HTTPException, Request, status

from naffles_bot.bot.services.container import BotServices
from naffles_bot.shared.logging_utils import log_security

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def get_services(request: Request) -> BotServices:
    return request.app.state.services


async def verify_signature(request: Request) -> bytes:
    """Check the HMAC-SHA256 signature of the raw request body.

    Returns:
        bytes: The verified body

    Raises:
        HTTPException: 401 when the secret is unset or the signature is wrong
    """
    services: BotServices = request.app.state.services
    secret = services.settings.webhook_secret
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")

    if not secret or not signature or not hmac.compare_digest(compute_signature(secret, body), signature):
        client = request.client.host if request.client else "unknown"
        log_security("invalid_webhook_signature", client=client, path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    return body


async def get_http_client(request: Request) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Outbound client for the OAuth token exchange."""
    async with httpx.AsyncClient(timeout=request.app.state.services.settings.api_timeout) as client:
        yield client
