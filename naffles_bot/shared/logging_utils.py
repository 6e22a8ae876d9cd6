"""Logging helpers shared by the bot and the web API.

Modules log through ``logging.getLogger(__name__)``. The helpers here add
category tags (``[security]``, ``[audit]`` ...) and keep token material out of
log output.
"""

from __future__ import annotations

import logging
import re
from typing import Any

CATEGORIES = (
    "discord",
    "api",
    "database",
    "security",
    "audit",
    "performance",
    "interaction",
)

_REDACTIONS = [
    (re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE), r"\1[REDACTED]"),
    (
        re.compile(
            r"((?:access|refresh)_?token['\"]?\s*[:=]\s*['\"]?)[^'\"\s,}]+",
            re.IGNORECASE,
        ),
        r"\1[REDACTED]",
    ),
    # Fernet ciphertexts always start with the version byte 0x80 -> "gAAAAA"
    (re.compile(r"gAAAAA[A-Za-z0-9\-_=]{20,}"), "[REDACTED]"),
]


def redact(text: str) -> str:
    """Remove bearer credentials, OAuth tokens and ciphertexts from text."""
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs secrets from the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


class CategoryAdapter(logging.LoggerAdapter):
    """Prefix log messages with a category tag."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        category = self.extra.get("category", "general")
        return f"[{category}] {msg}", kwargs


def get_category_logger(category: str) -> CategoryAdapter:
    """Get a logger adapter for one of the known categories.

    Args:
        category: Category name, e.g. ``"security"``

    Returns:
        CategoryAdapter: Adapter writing to ``naffles_bot.<category>``
    """
    if category not in CATEGORIES:
        raise ValueError(f"Unknown log category: {category}")
    return CategoryAdapter(
        logging.getLogger(f"naffles_bot.{category}"), {"category": category}
    )


def _format_details(details: dict[str, Any]) -> str:
    if not details:
        return ""
    return " " + " ".join(f"{key}={value}" for key, value in details.items())


def log_security(event: str, level: int = logging.WARNING, **details: Any) -> None:
    """Write a security event to the security category."""
    get_category_logger("security").log(level, f"{event}{_format_details(details)}")


def log_audit(action: str, **details: Any) -> None:
    """Write an audit action to the audit category."""
    get_category_logger("audit").info(f"{action}{_format_details(details)}")


def log_performance(operation: str, duration_ms: float, **details: Any) -> None:
    """Record how long an operation took; slow operations log at WARNING."""
    level = logging.WARNING if duration_ms > 5000 else logging.DEBUG
    get_category_logger("performance").log(
        level, f"{operation} took {duration_ms:.0f}ms{_format_details(details)}"
    )


def build_logging_config(level: str = "INFO") -> dict[str, Any]:
    """Build the dict config passed to lightbulb's ``logs=`` argument."""
    return {
        "version": 1,
        "incremental": False,
        "disable_existing_loggers": False,
        "filters": {
            "redact": {"()": "naffles_bot.shared.logging_utils.RedactingFilter"},
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "filters": ["redact"],
            },
        },
        "loggers": {
            "hikari": {"level": "INFO"},
            "hikari.ratelimits": {"level": "INFO"},
            "lightbulb": {"level": "INFO"},
            "naffles_bot": {"level": level},
        },
        "root": {"level": "WARNING", "handlers": ["console"]},
    }
