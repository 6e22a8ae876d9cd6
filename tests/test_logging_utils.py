"""Log categories and secret redaction."""

import logging

import pytest

from naffles_bot.shared.encryption import TokenCipher
from naffles_bot.shared.logging_utils import (
    RedactingFilter,
    build_logging_config,
    get_category_logger,
    log_performance,
    log_security,
    redact,
)


def test_redacts_bearer_credentials():
    assert redact("Authorization: Bearer abc.def-123") == "Authorization: Bearer [REDACTED]"


def test_redacts_oauth_tokens():
    text = redact('{"access_token": "xyz", "refresh_token": "uvw", "scope": "identify"}')
    assert "xyz" not in text and "uvw" not in text
    assert '"scope": "identify"' in text


def test_redacts_fernet_ciphertexts():
    sealed = TokenCipher(TokenCipher.generate_key()).encrypt("token")
    assert redact(f"stored {sealed}") == "stored [REDACTED]"


def test_filter_rewrites_formatted_message():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "header %s", ("Bearer abc",), None)
    assert RedactingFilter().filter(record)
    assert record.getMessage() == "header Bearer [REDACTED]"


def test_unknown_category():
    with pytest.raises(ValueError):
        get_category_logger("gossip")


def test_security_events_are_tagged(caplog):
    with caplog.at_level(logging.WARNING, logger="naffles_bot.security"):
        log_security("rapid_commands", user_id="1")
    assert "[security] rapid_commands user_id=1" in caplog.text


def test_slow_operations_warn(caplog):
    with caplog.at_level(logging.DEBUG, logger="naffles_bot.performance"):
        log_performance("sync", 6000)
        log_performance("status", 20)
    levels = [record.levelno for record in caplog.records]
    assert levels == [logging.WARNING, logging.DEBUG]


def test_logging_config_applies_level():
    config = build_logging_config("DEBUG")
    assert config["loggers"]["naffles_bot"]["level"] == "DEBUG"
    assert config["handlers"]["console"]["filters"] == ["redact"]
