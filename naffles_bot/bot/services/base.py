"""Base classes and protocols shared by bot services."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class APIClientProtocol(Protocol):
    """Interface of the Platform HTTP client."""

    async def get(self, path: str, params: Optional[dict[str, Any]] = None, timeout: Optional[float] = None) -> httpx.Response: ...

    async def post(self, path: str, json_data: Optional[dict[str, Any]] = None, timeout: Optional[float] = None) -> httpx.Response: ...

    async def put(self, path: str, json_data: Optional[dict[str, Any]] = None, timeout: Optional[float] = None) -> httpx.Response: ...

    async def delete(self, path: str, timeout: Optional[float] = None) -> httpx.Response: ...

    async def close(self) -> None: ...


class CacheManagerProtocol(Protocol):
    """Interface of the short-lived JSON cache."""

    async def get_json(self, key: str) -> Optional[Any]: ...

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    async def pop_json(self, key: str) -> Optional[Any]: ...

    async def delete(self, key: str) -> bool: ...

    async def increment(self, key: str, ttl: int) -> int: ...

    async def ttl(self, key: str) -> int: ...

    async def ping(self) -> bool: ...

    async def cleanup(self) -> None: ...


@dataclass
class ServiceHealth:
    """Health snapshot returned by ``BaseService.health_check``."""

    service_name: str
    is_healthy: bool
    response_time_ms: Optional[float] = None
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BaseService:
    """Common lifecycle for bot services.

    Args:
        api_client: Platform API client
        cache_manager: Optional cache
        service_name: Name used in logs and health reports
    """

    def __init__(
        self,
        api_client: Optional[APIClientProtocol],
        cache_manager: Optional[CacheManagerProtocol] = None,
        service_name: str = "BaseService",
    ):
        self._api_client = api_client
        self._cache_manager = cache_manager
        self._service_name = service_name
        self._initialized = False

    @property
    def name(self) -> str:
        return self._service_name

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Prepare the service for use."""
        self._initialized = True
        logger.debug(f"{self._service_name} initialized")

    async def health_check(self) -> ServiceHealth:
        """Report whether the service is usable."""
        return ServiceHealth(
            service_name=self._service_name,
            is_healthy=self._initialized,
            details={"initialized": self._initialized},
        )

    async def cleanup(self) -> None:
        """Release resources held by the service."""
        self._initialized = False
        logger.debug(f"{self._service_name} cleaned up")
