"""Naffles Platform API operations used by the bot.

Read operations and the two validation POSTs are safe to repeat and run
through the retry executor. Creating tasks, completing tasks, entering
allowlists and sending notifications change Platform state and are made
exactly once.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from naffles_bot.bot.pipeline.errors import DOMAIN_API, ErrorClassifier, RawError
from naffles_bot.bot.pipeline.retry import RetryExecutor
from naffles_bot.bot.services.base import APIClientProtocol, BaseService, CacheManagerProtocol, ServiceHealth
from naffles_bot.bot.services.exceptions import APIError, NetworkError, ServiceError

logger = logging.getLogger(__name__)


def is_retryable(error: Exception) -> bool:
    """Whether the API classifier recommends repeating the call."""
    if not isinstance(error, (APIError, NetworkError)):
        return False
    return ErrorClassifier.classify_raw(RawError.from_exception(error), DOMAIN_API).should_retry


def _unwrap(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    try:
        body = response.json()
    except ValueError as e:
        raise ServiceError(f"Invalid JSON from Platform API: {e}") from e
    if isinstance(body, dict) and "data" in body and ("success" in body or len(body) <= 2):
        return body["data"]
    return body


class PlatformService(BaseService):
    """Typed wrapper around the Platform HTTP endpoints."""

    HEALTH_TIMEOUT = 10.0

    def __init__(
        self,
        api_client: APIClientProtocol,
        cache_manager: Optional[CacheManagerProtocol] = None,
        retry_executor: Optional[RetryExecutor] = None,
    ):
        super().__init__(api_client, cache_manager, "PlatformService")
        self.retry = retry_executor or RetryExecutor()

    async def _call(
        self,
        operation_name: str,
        request: Callable[[], Awaitable[httpx.Response]],
        idempotent: bool,
    ) -> Any:
        response = await self.retry.execute(
            request,
            idempotent=idempotent,
            retry_on=is_retryable,
            operation_name=operation_name,
        )
        return _unwrap(response)

    # Auth and communities

    async def validate_auth(self, access_token: str) -> dict[str, Any]:
        """Resolve an OAuth access token to a Platform user."""
        return await self._call(
            "validate_auth",
            lambda: self._api_client.post("/auth/validate", json_data={"token": access_token}),
            idempotent=True,
        )

    async def validate_community_ownership(self, community_id: str, discord_user_id: str) -> dict[str, Any]:
        """Ask the Platform whether a Discord user may manage a community.

        Returns:
            dict: Community summary including ``canManage`` and ``name``

        Raises:
            APIError: 404 for unknown communities, 403 when access is refused
        """
        return await self._call(
            "validate_community_ownership",
            lambda: self._api_client.post(
                f"/communities/{community_id}/validate-ownership",
                json_data={"discordUserId": discord_user_id},
            ),
            idempotent=True,
        )

    async def get_community(self, community_id: str) -> dict[str, Any]:
        return await self._call(
            "get_community",
            lambda: self._api_client.get(f"/communities/{community_id}"),
            idempotent=True,
        )

    async def send_community_notification(self, community_id: str, notification: dict[str, Any]) -> Any:
        return await self._call(
            "send_community_notification",
            lambda: self._api_client.post(f"/communities/{community_id}/notifications", json_data=notification),
            idempotent=False,
        )

    # Social tasks

    async def list_community_tasks(
        self,
        community_id: str,
        status: str = "active",
        limit: int = 25,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"communityId": community_id, "limit": limit}
        if status != "all":
            params["status"] = status
        result = await self._call(
            "list_community_tasks",
            lambda: self._api_client.get("/social-tasks", params=params),
            idempotent=True,
        )
        if isinstance(result, dict):
            result = result.get("tasks", [])
        return list(result or [])

    async def create_social_task(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._call(
            "create_social_task",
            lambda: self._api_client.post("/social-tasks", json_data=payload),
            idempotent=False,
        )

    async def get_social_task(self, task_id: str) -> dict[str, Any]:
        return await self._call(
            "get_social_task",
            lambda: self._api_client.get(f"/social-tasks/{task_id}"),
            idempotent=True,
        )

    async def complete_social_task(self, task_id: str, completion: dict[str, Any]) -> dict[str, Any]:
        return await self._call(
            "complete_social_task",
            lambda: self._api_client.post(f"/social-tasks/{task_id}/complete", json_data=completion),
            idempotent=False,
        )

    # Allowlists

    async def get_allowlist(self, allowlist_id: str) -> dict[str, Any]:
        return await self._call(
            "get_allowlist",
            lambda: self._api_client.get(f"/allowlists/{allowlist_id}"),
            idempotent=True,
        )

    async def enter_allowlist(self, allowlist_id: str, entry: dict[str, Any]) -> dict[str, Any]:
        return await self._call(
            "enter_allowlist",
            lambda: self._api_client.post(f"/allowlists/{allowlist_id}/enter", json_data=entry),
            idempotent=False,
        )

    async def get_allowlist_analytics(self, allowlist_id: str, period: str = "7d") -> dict[str, Any]:
        return await self._call(
            "get_allowlist_analytics",
            lambda: self._api_client.get(f"/allowlists/{allowlist_id}/analytics", params={"period": period}),
            idempotent=True,
        )

    # Users

    async def get_user_by_discord_id(self, discord_id: str) -> Optional[dict[str, Any]]:
        try:
            return await self._call(
                "get_user_by_discord_id",
                lambda: self._api_client.get(f"/users/discord/{discord_id}"),
                idempotent=True,
            )
        except APIError as e:
            if e.status_code == 404:
                return None
            raise

    # Health

    async def ping(self) -> float:
        """Call ``GET /health`` once; returns the round trip in ms."""
        started = time.perf_counter()
        await self._api_client.get("/health", timeout=self.HEALTH_TIMEOUT)
        return (time.perf_counter() - started) * 1000

    async def health_check(self) -> ServiceHealth:
        try:
            elapsed = await self.ping()
            return ServiceHealth(
                service_name=self.name,
                is_healthy=True,
                response_time_ms=elapsed,
                details={"initialized": self.is_initialized},
            )
        except ServiceError as e:
            logger.warning(f"Platform API health check failed: {e}")
            return ServiceHealth(
                service_name=self.name,
                is_healthy=False,
                details={"error": str(e)},
            )
