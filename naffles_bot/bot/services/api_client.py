"""HTTP client for the Naffles Platform API."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import httpx

from naffles_bot.bot.services.exceptions import APIError
from naffles_bot.bot.services.exceptions import NetworkError

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    After ``failure_threshold`` consecutive failures the circuit opens for
    ``reset_timeout`` seconds; the first call after that is let through as a
    trial call and either closes the circuit or re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._clock() - self._opened_at >= self.reset_timeout:
            return "half_open"
        return "open"

    def allow_request(self) -> bool:
        return self.state != "open"

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        trial_failed = self.state == "half_open"
        self._failures += 1
        if trial_failed or (self._opened_at is None and self._failures >= self.failure_threshold):
            logger.warning(f"Platform API circuit opened after {self._failures} failures")
            self._opened_at = self._clock()


class APIClient:
    """Authenticated JSON client for the Platform API.

    Responses with status >= 400 raise :class:`APIError`; transport
    failures raise :class:`NetworkError`. Both count against the circuit
    breaker only for server-side or network failures.

    Args:
        base_url: Platform API base URL
        api_key: Bearer credential
        default_timeout: Total request timeout in seconds
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        circuit_breaker: Optional breaker instance
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        default_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_timeout = default_timeout
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "User-Agent": "NafflesDiscordBot/1.0",
            },
            timeout=default_timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "APIClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def get(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        return await self._request("GET", path, params=params, timeout=timeout)

    async def post(
        self,
        path: str,
        json_data: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        return await self._request("POST", path, json_data=json_data, timeout=timeout)

    async def put(
        self,
        path: str,
        json_data: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        return await self._request("PUT", path, json_data=json_data, timeout=timeout)

    async def delete(self, path: str, timeout: Optional[float] = None) -> httpx.Response:
        return await self._request("DELETE", path, timeout=timeout)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        if not self.circuit_breaker.allow_request():
            raise NetworkError("Platform API circuit open", code="ECONNREFUSED")

        started = time.perf_counter()
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json_data,
                timeout=timeout or self.default_timeout,
            )
        except httpx.TimeoutException as e:
            self.circuit_breaker.record_failure()
            raise NetworkError(
                f"timeout of {int((timeout or self.default_timeout) * 1000)}ms exceeded",
                code="ECONNABORTED",
            ) from e
        except httpx.ConnectError as e:
            self.circuit_breaker.record_failure()
            text = str(e).lower()
            code = "ENOTFOUND" if "name" in text and "resolution" in text else "ECONNREFUSED"
            raise NetworkError(f"connect {code}: {e}", code=code) from e
        except httpx.TransportError as e:
            self.circuit_breaker.record_failure()
            raise NetworkError(f"network error: {e}", code="ECONNRESET") from e

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug(f"{method} {path} -> {response.status_code} ({elapsed_ms:.0f}ms)")

        if response.status_code >= 500:
            self.circuit_breaker.record_failure()
        else:
            self.circuit_breaker.record_success()

        if response.status_code >= 400:
            raise self._error_from_response(response)
        return response

    @staticmethod
    def _error_from_response(response: httpx.Response) -> APIError:
        message = f"Request failed with status code {response.status_code}"
        code = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = str(body.get("message") or body.get("error") or body.get("detail") or message)
            code = body.get("code")

        retry_after = None
        header = response.headers.get("Retry-After")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None

        return APIError(
            message,
            status_code=response.status_code,
            code=code,
            retry_after=retry_after,
            details=body if isinstance(body, dict) else {},
        )
