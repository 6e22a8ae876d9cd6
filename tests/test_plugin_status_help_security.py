"""/status, /help and /security."""

import hikari
import pytest

from naffles_bot.bot.pipeline.errors import HandlerError
from naffles_bot.bot.plugins import help, security, status
from tests.conftest import GUILD_ID, USER_ID, run_handler


def field_map(embed):
    return {field.name: field.value for field in embed.fields}


async def test_status_for_unlinked_server(services, responder):
    await run_handler(services, status.status, responder, name="status")

    reply = responder.last_reply
    fields = field_map(reply.embed)
    assert "not linked" in reply.embed.description
    assert fields["🌐 Naffles API"] == "🟢 Online"
    assert fields["🔐 Bot Permissions"] == "⚪ Unknown"
    assert fields["🏥 Health Score"] == "🟡 Good"
    assert reply.components[0].custom_id == "link_community_help"


async def test_status_for_linked_server(services, responder, platform_stub, linked_guild):
    platform_stub.add("GET", "/communities/comm-1", json_body={"success": True, "data": {"name": "Ape Club", "memberCount": 9}})
    services.bot_permissions = lambda guild_id: hikari.Permissions.ADMINISTRATOR

    await run_handler(services, status.status, responder, name="status")

    fields = field_map(responder.last_reply.embed)
    assert fields["🎯 Linked Community"] == "Ape Club"
    assert fields["👥 Community Members"] == "9"
    assert fields["🔐 Bot Permissions"] == "🟢 Sufficient"
    assert fields["🏥 Health Score"] == "🟢 Excellent"


async def test_status_when_platform_is_down(services, responder, platform_stub, linked_guild):
    platform_stub.add("GET", "/health", status_code=503, json_body={"message": "down"})
    await run_handler(services, status.status, responder, name="status")
    assert field_map(responder.last_reply.embed)["🌐 Naffles API"] == "🔴 Offline"


def test_health_labels():
    assert status.health_label(100) == "🟢 Excellent"
    assert status.health_label(75) == "🟡 Good"
    assert status.health_label(50) == "🟠 Fair"
    assert status.health_label(25) == "🔴 Poor"


async def test_help_for_unlinked_server(services, responder):
    await run_handler(services, help.help_overview, responder, name="help")
    reply = responder.last_reply
    assert "⚠️ Server Status" in field_map(reply.embed)
    assert reply.components[-1].custom_id == "help_topic"


async def test_help_for_linked_server(services, responder, platform_stub, linked_guild):
    platform_stub.add("GET", "/communities/comm-1", json_body={"success": True, "data": {"name": "Ape Club"}})
    await run_handler(services, help.help_overview, responder, name="help")
    assert field_map(responder.last_reply.embed)["✅ Server Status"] == "This server is linked to **Ape Club**"


@pytest.mark.parametrize("topic, title", [
    ("linking", "🔗 Community Linking Help"),
    ("tasks", "🎯 Social Tasks Help"),
    ("allowlists", "🎫 Allowlists Help"),
    ("permissions", "🔐 Permissions Help"),
    ("troubleshooting", "🔧 Troubleshooting Help"),
])
async def test_help_topics(services, responder, topic, title):
    await run_handler(services, help.help_topic, responder, category="menu", name="help_topic", values=(topic,))
    assert responder.last_reply.embed.title == title


async def test_unknown_help_topic(services, responder):
    with pytest.raises(HandlerError):
        await run_handler(services, help.help_topic, responder, category="menu", name="help_topic", values=("x",))


async def run_security(services, responder, subcommand, **options):
    return await run_handler(services, security.security, responder, name="security",
                             options={"subcommand": subcommand, **options})


async def test_security_report(services, responder):
    await run_security(services, responder, "report", timeframe="week")
    embed = responder.last_reply.embed
    assert embed.title == "🛡️ Security Report - WEEK"
    assert "**Risk Level:** LOW" in field_map(embed)["⚠️ Risk Assessment"]


async def test_security_report_rejects_timeframe(services, responder):
    with pytest.raises(HandlerError, match="Timeframe must be one of"):
        await run_security(services, responder, "report", timeframe="year")


async def test_security_stats(services, responder):
    await run_security(services, responder, "stats")
    fields = field_map(responder.last_reply.embed)
    assert "**Chain Intact:** Yes" in fields["📝 Audit Logs"]


async def test_no_active_alerts(services, responder):
    await run_security(services, responder, "alerts")
    assert responder.last_reply.content == "✅ No active security alerts for this server."


async def test_audit_listing(services, responder):
    services.audit.record("task_created", user_id=USER_ID, guild_id=GUILD_ID, outcome="success")
    services.audit.record("task_created", user_id="other", guild_id="elsewhere")

    await run_security(services, responder, "audit", type="task_created")
    embed = responder.last_reply.embed
    assert embed.title == "📋 Audit Logs"
    assert len(embed.fields) == 1
    assert f"<@{USER_ID}>" in embed.fields[0].value


async def test_audit_rejects_unknown_type(services, responder):
    with pytest.raises(HandlerError, match="Unknown audit event type"):
        await run_security(services, responder, "audit", type="nonsense")


async def test_permission_overview(services, responder):
    await run_security(services, responder, "permissions")
    commands = field_map(responder.last_reply.embed)["Commands"]
    assert "**link-community:** Manage Server" in commands
    assert "**help:** Everyone" in commands


async def test_unknown_security_subcommand(services, responder):
    with pytest.raises(HandlerError, match="Unknown security subcommand"):
        await run_security(services, responder, "explode")
