"""Degraded replies."""

import re
from datetime import datetime, timedelta, timezone

from naffles_bot.bot.pipeline.context import LinkButtonSpec
from naffles_bot.bot.pipeline.errors import DOMAIN_API, DOMAIN_DATABASE, DOMAIN_DISCORD, ErrorClassifier, RawError
from naffles_bot.bot.pipeline.fallback import FallbackConfig, FallbackResponder, generate_error_id

CONFIG = FallbackConfig(
    website_url="https://naffles.test",
    support_url="https://naffles.test/support",
    status_url="https://status.naffles.test",
    help_chat_url="https://discord.gg/naffles-test",
)


def labels(reply):
    return [component.label for component in reply.components]


def test_api_unavailable_points_to_website():
    reply = FallbackResponder(CONFIG).api_unavailable("task_creation")
    assert reply.ephemeral
    assert reply.embed.title == "🔌 Service Temporarily Unavailable"
    assert labels(reply) == ["Visit Naffles.com", "Continue on Website", "Manage Tasks", "Get Support"]
    continue_button = reply.components[1]
    assert continue_button.url == "https://naffles.test/community/tasks/create"
    assert all(isinstance(component, LinkButtonSpec) for component in reply.components)


def test_api_unavailable_for_unmapped_operation_has_no_continue_link():
    reply = FallbackResponder(CONFIG).api_unavailable("status")
    assert labels(reply) == ["Visit Naffles.com", "Get Support"]


def test_redirect_buttons_for_allowlists():
    buttons = FallbackResponder(CONFIG).redirect_buttons("allowlist_management")
    assert [button.label for button in buttons] == ["Visit Naffles.com", "View Allowlists", "Get Support"]


def test_maintenance_response_mentions_reason_and_end():
    responder = FallbackResponder(CONFIG)
    responder.enable_maintenance("Database upgrade", datetime.now(timezone.utc) + timedelta(minutes=30))
    reply = responder.maintenance_response()
    assert reply.embed.title == "🔧 Scheduled Maintenance"
    field_names = [field.name for field in reply.embed.fields]
    assert "📋 Maintenance Details" in field_names
    assert "⏱️ Estimated Completion" in field_names
    assert labels(reply) == ["Visit Naffles.com", "Status Page", "Support Discord"]


def test_maintenance_toggle():
    responder = FallbackResponder(CONFIG)
    assert not responder.maintenance_active
    responder.enable_maintenance()
    assert responder.get_stats()["maintenance_mode"]
    responder.disable_maintenance()
    assert not responder.maintenance_active


def test_critical_failure_carries_error_id():
    reply = FallbackResponder(CONFIG, clock=lambda: 1700000000.123).critical_failure("type_error")
    assert reply.content.startswith("🚨 **Critical System Error**")
    assert re.search(r"Error ID: 1700000000123-[a-z0-9]{7}$", reply.content)
    assert "https://naffles.test/support" in reply.content


def test_error_ids_are_unique():
    assert len({generate_error_id() for _ in range(50)}) == 50


def test_for_verdict_picks_domain_reply():
    responder = FallbackResponder(CONFIG)
    discord = ErrorClassifier.classify_raw(RawError("HTTPError", "connection reset"), DOMAIN_DISCORD)
    database = ErrorClassifier.classify_raw(RawError("OperationalError", "connection lost"), DOMAIN_DATABASE)
    api = ErrorClassifier.classify_raw(RawError("APIError", "x", status=503), DOMAIN_API)

    assert responder.for_verdict(discord, "status").embed.title == "🔌 Discord Connection Issue"
    assert responder.for_verdict(database, "status").embed.title == "🗄️ Data Temporarily Unavailable"
    assert responder.for_verdict(api, "status").embed.title == "🔌 Service Temporarily Unavailable"


def test_stats_count_failures_and_redirects():
    responder = FallbackResponder(CONFIG)
    responder.api_unavailable("task_listing")
    responder.api_unavailable("task_listing")
    responder.database_unavailable("status")
    responder.maintenance_response()

    stats = responder.get_stats()
    assert stats["api_failures"] == 2
    assert stats["database_failures"] == 1
    assert stats["website_redirects"] == 4

    responder.reset_stats()
    assert responder.get_stats()["api_failures"] == 0
