"""Error classification for interaction handling.

Maps a raised exception plus the domain it came from (Discord, Platform API,
database, general) to an :class:`ErrorVerdict`: a type, a severity, whether
the failure is recoverable, the message shown to the user and the action the
pipeline should take. Classification only looks at the exception's name,
message, code and HTTP status, so a verdict can be reproduced from its
``raw`` fields alone.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from naffles_bot.shared.logging_utils import log_security

logger = logging.getLogger(__name__)

DOMAIN_DISCORD = "discord"
DOMAIN_API = "api"
DOMAIN_DATABASE = "database"
DOMAIN_GENERAL = "general"
DOMAINS = (DOMAIN_DISCORD, DOMAIN_API, DOMAIN_DATABASE, DOMAIN_GENERAL)

FALLBACK_TYPES = frozenset({"connection", "server_error", "timeout", "authentication", "network"})
RETRY_ACTIONS = frozenset({"retry", "retry_with_delay"})

# (max occurrences, window seconds)
ERROR_THRESHOLDS: dict[str, tuple[int, float]] = {
    DOMAIN_DISCORD: (10, 300.0),
    DOMAIN_API: (20, 300.0),
    DOMAIN_DATABASE: (5, 300.0),
    DOMAIN_GENERAL: (50, 300.0),
}


@dataclass(frozen=True)
class RawError:
    """The observable shape of an exception."""

    name: str
    message: str
    code: Any = None
    status: Optional[int] = None

    @classmethod
    def from_exception(cls, error: Optional[BaseException]) -> "RawError":
        if error is None:
            return cls(name="", message="")
        status = getattr(error, "status_code", None)
        if status is None:
            status = getattr(error, "status", None)
        try:
            status = int(status) if status is not None else None
        except (TypeError, ValueError):
            status = None
        message = getattr(error, "message", None) or str(error)
        return cls(
            name=type(error).__name__,
            message=str(message),
            code=getattr(error, "code", None),
            status=status,
        )


@dataclass(frozen=True)
class ErrorVerdict:
    """Classification result for one failure."""

    type: str
    severity: str
    recoverable: bool
    user_message: str
    action: str
    domain: str
    raw: RawError
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    @property
    def should_retry(self) -> bool:
        return self.recoverable and self.action in RETRY_ACTIONS

    @property
    def should_trigger_fallback(self) -> bool:
        return self.type in FALLBACK_TYPES or self.severity in ("high", "critical")

    def display_message(self) -> str:
        """User message with the recoverability hint appended."""
        if self.recoverable:
            return f"{self.user_message} You can try again."
        return f"{self.user_message} If this problem persists, please contact support."


def _verdict(domain: str, raw: RawError, type_: str, severity: str, recoverable: bool, user_message: str, action: str) -> ErrorVerdict:
    return ErrorVerdict(
        type=type_,
        severity=severity,
        recoverable=recoverable,
        user_message=user_message,
        action=action,
        domain=domain,
        raw=raw,
    )


def _classify_discord(raw: RawError) -> ErrorVerdict:
    message = raw.message.lower()
    code = raw.code
    d = DOMAIN_DISCORD

    if code == 429 or raw.status == 429 or "rate limit" in message:
        return _verdict(d, raw, "rate_limit", "medium", True,
                        "Please wait a moment before trying again.", "retry_with_delay")
    if code == 50013 or "missing permissions" in message:
        return _verdict(d, raw, "permissions", "medium", False,
                        "The bot lacks the necessary permissions to perform this action.", "check_permissions")
    if code in (10003, 10004) or "unknown" in message:
        return _verdict(d, raw, "not_found", "low", False,
                        "The requested server or channel could not be found.", "validate_context")
    if "connection" in message or "network" in message:
        return _verdict(d, raw, "connection", "high", True,
                        "Connection issue detected. Please try again.", "reconnect")
    if code == 401 or raw.status == 401 or "unauthorized" in message:
        return _verdict(d, raw, "authentication", "critical", False,
                        "Authentication failed. Please contact support.", "check_token")
    return _verdict(d, raw, "discord_unknown", "medium", True,
                    "A Discord error occurred. Please try again.", "retry")


_API_STATUS_TABLE: dict[int, tuple[str, str, bool, str, str]] = {
    400: ("bad_request", "low", False, "Invalid request. Please check your input.", "validate_input"),
    401: ("unauthorized", "high", False, "Authentication failed. Please contact support.", "check_auth"),
    403: ("forbidden", "medium", False, "Access denied. You may not have permission for this action.", "check_permissions"),
    404: ("not_found", "low", False, "The requested resource was not found.", "validate_resource"),
    429: ("rate_limit", "medium", True, "Too many requests. Please wait before trying again.", "retry_with_delay"),
}


def _classify_api(raw: RawError) -> ErrorVerdict:
    message = raw.message.lower()
    d = DOMAIN_API

    if "timeout" in message or raw.code == "ECONNABORTED":
        return _verdict(d, raw, "timeout", "medium", True,
                        "Request timed out. Please try again.", "retry")
    if raw.code in ("ECONNREFUSED", "ENOTFOUND"):
        return _verdict(d, raw, "network", "high", True,
                        "Network error. Please try again later.", "retry_with_delay")
    if raw.status in _API_STATUS_TABLE:
        return _verdict(d, raw, *_API_STATUS_TABLE[raw.status])
    if raw.status is not None and raw.status >= 500:
        return _verdict(d, raw, "server_error", "high", True,
                        "Server error. Please try again later.", "retry_with_delay")
    return _verdict(d, raw, "api_unknown", "medium", True,
                    "An API error occurred. Please try again.", "retry")


def _classify_database(raw: RawError) -> ErrorVerdict:
    message = raw.message.lower()
    name = raw.name.lower()
    d = DOMAIN_DATABASE

    if "connection" in message or "connection" in name:
        return _verdict(d, raw, "connection", "critical", True,
                        "Database connection issue. Please try again.", "reconnect")
    if "validation" in name or "validation" in message:
        return _verdict(d, raw, "validation", "low", False,
                        "Invalid data provided. Please check your input.", "validate_data")
    if "duplicate" in message or "unique" in message or "conflict" in name:
        return _verdict(d, raw, "duplicate", "low", False,
                        "This record already exists.", "check_uniqueness")
    if "timeout" in message or "timeout" in name:
        return _verdict(d, raw, "timeout", "medium", True,
                        "Database operation timed out. Please try again.", "retry")
    return _verdict(d, raw, "database_unknown", "high", True,
                    "A database error occurred. Please try again.", "retry")


def _classify_general(raw: RawError) -> ErrorVerdict:
    name = raw.name.lower()
    d = DOMAIN_GENERAL

    if not raw.name and not raw.message:
        return _verdict(d, raw, "unknown", "medium", True,
                        "An unexpected error occurred. Please try again.", "retry")
    if "type" in name:
        return _verdict(d, raw, "type_error", "medium", False,
                        "Invalid data type. Please contact support.", "validate_types")
    if "reference" in name or name in ("nameerror", "attributeerror", "unboundlocalerror"):
        return _verdict(d, raw, "reference_error", "medium", False,
                        "Internal error. Please contact support.", "check_references")
    if "syntax" in name:
        return _verdict(d, raw, "syntax_error", "high", False,
                        "Internal error. Please contact support.", "check_syntax")
    return _verdict(d, raw, "unknown", "medium", True,
                    "An unexpected error occurred. Please try again.", "retry")


_CLASSIFIERS: dict[str, Callable[[RawError], ErrorVerdict]] = {
    DOMAIN_DISCORD: _classify_discord,
    DOMAIN_API: _classify_api,
    DOMAIN_DATABASE: _classify_database,
    DOMAIN_GENERAL: _classify_general,
}


class ErrorClassifier:
    """Classify failures and watch per-domain error rates.

    Occurrences are counted per ``(domain, type)`` in a sliding window. When a
    domain's total inside its window reaches the threshold a security event
    is written; the verdict itself is unaffected.

    Args:
        thresholds: Per-domain ``(max, window_seconds)`` overrides
        clock: Monotonic clock, injectable for tests
        on_threshold_exceeded: Optional callback ``(domain, count)``
    """

    def __init__(
        self,
        thresholds: Optional[dict[str, tuple[int, float]]] = None,
        clock: Callable[[], float] = time.monotonic,
        on_threshold_exceeded: Optional[Callable[[str, int], None]] = None,
    ):
        self.thresholds = {**ERROR_THRESHOLDS, **(thresholds or {})}
        self._clock = clock
        self._on_threshold_exceeded = on_threshold_exceeded
        self._occurrences: dict[tuple[str, str], deque[float]] = defaultdict(deque)
        self._breaches: dict[str, int] = defaultdict(int)

    def classify(self, error: Optional[BaseException], domain: str = DOMAIN_GENERAL) -> ErrorVerdict:
        """Classify an exception and record the occurrence."""
        verdict = self.classify_raw(RawError.from_exception(error), domain)
        self._record(verdict)
        logger.error(
            f"{domain} error classified as {verdict.type} ({verdict.severity}): {verdict.raw.message}"
        )
        return verdict

    @staticmethod
    def classify_raw(raw: RawError, domain: str = DOMAIN_GENERAL) -> ErrorVerdict:
        """Pure classification of an already extracted error shape."""
        if domain not in _CLASSIFIERS:
            raise ValueError(f"Unknown error domain: {domain}")
        return _CLASSIFIERS[domain](raw)

    def _prune(self, key: tuple[str, str], now: float) -> deque[float]:
        window = self.thresholds[key[0]][1]
        timestamps = self._occurrences[key]
        while timestamps and now - timestamps[0] > window:
            timestamps.popleft()
        return timestamps

    def _record(self, verdict: ErrorVerdict) -> None:
        now = self._clock()
        key = (verdict.domain, verdict.type)
        self._prune(key, now).append(now)

        limit, window = self.thresholds[verdict.domain]
        total = sum(
            len(self._prune(other, now))
            for other in list(self._occurrences)
            if other[0] == verdict.domain
        )
        if total >= limit:
            self._breaches[verdict.domain] += 1
            log_security(
                "Error threshold exceeded",
                domain=verdict.domain,
                count=total,
                threshold=limit,
                window_seconds=int(window),
            )
            if self._on_threshold_exceeded is not None:
                self._on_threshold_exceeded(verdict.domain, total)

    def get_error_stats(self) -> dict[str, Any]:
        now = self._clock()
        counts = {
            f"{domain}:{type_}": len(self._prune((domain, type_), now))
            for domain, type_ in list(self._occurrences)
        }
        return {
            "counts": {key: value for key, value in counts.items() if value},
            "threshold_breaches": dict(self._breaches),
        }

    def reset(self) -> None:
        self._occurrences.clear()
        self._breaches.clear()


class HandlerError(Exception):
    """Expected failure raised by a handler to end the interaction.

    The pipeline shows ``message`` to the user as an ephemeral reply (an
    error embed when ``title`` is given) and records an ``error`` outcome
    without running it through the classifier.
    """

    def __init__(self, message: str, error_type: str = "user_error", title: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.title = title
