"""/security: reports over the security monitor and the audit trail."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import hikari
import lightbulb

from naffles_bot.bot.pipeline.context import CATEGORY_COMMAND, InteractionContext, Reply
from naffles_bot.bot.pipeline.errors import HandlerError
from naffles_bot.bot.pipeline.router import Route
from naffles_bot.bot.services.audit_service import EVENT_TYPES
from naffles_bot.bot.utils.adapters import register_routes, run_slash_command, unregister_routes
from naffles_bot.bot.utils.embeds import COLORS, truncate
from naffles_bot.bot.utils.lookups import find_server_link

plugin = lightbulb.Plugin("security")

TIMEFRAMES = {"hour": 1, "day": 24, "week": 168}
AUDIT_PAGE_SIZE = 5
AUDIT_FETCH_LIMIT = 10

SEVERITY_COLORS = {
    "critical": hikari.Color(0x991B1B),
    "high": COLORS["error"],
    "medium": COLORS["warning"],
    "low": COLORS["success"],
}


def risk_level(by_severity: dict[str, int]) -> str:
    for level in ("critical", "high", "medium"):
        if by_severity.get(level):
            return level
    return "low"


def _counts(counts: dict[str, int], limit: int = 5) -> str:
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:limit]
    return "\n".join(f"**{name}:** {count}" for name, count in ranked) or "None"


def report_reply(report: dict[str, Any], timeframe: str, guild_name: str) -> Reply:
    by_severity = report["by_severity"]
    level = risk_level(by_severity)
    embed = hikari.Embed(
        title=f"🛡️ Security Report - {timeframe.upper()}",
        description=f"Security analysis for {guild_name}",
        color=SEVERITY_COLORS[level],
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field(
        "📊 Summary",
        "\n".join((
            f"**Total Events:** {report['total_events']}",
            f"**High Severity:** {by_severity.get('high', 0)}",
            f"**Critical Events:** {by_severity.get('critical', 0)}",
        )),
        inline=True,
    )
    embed.add_field(
        "⚠️ Risk Assessment",
        "\n".join((
            f"**Risk Level:** {level.upper()}",
            f"**Suspicious Users:** {len(report['top_users'])}",
        )),
        inline=True,
    )
    if report["by_type"]:
        embed.add_field("📈 Event Types", _counts(report["by_type"]), inline=True)
    if report["top_users"]:
        embed.add_field(
            "👤 Most Flagged Users",
            "\n".join(f"<@{user_id}>: {count}" for user_id, count in report["top_users"]),
        )
    return Reply(embed=embed)


def stats_reply(security_stats: dict[str, Any], audit_summary: dict[str, Any], guild_name: str) -> Reply:
    embed = hikari.Embed(
        title="📈 Security Statistics",
        description=f"Real-time security metrics for {guild_name}",
        color=COLORS["success"],
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field(
        "🔍 Security Monitoring",
        "\n".join((
            f"**Events (24h):** {security_stats['events_24h']}",
            f"**Alerts Raised:** {security_stats['alerts_raised']}",
            f"**Active Alerts:** {security_stats['active_alerts']}",
            f"**Tracked Users:** {security_stats['tracked_users']}",
        )),
        inline=True,
    )
    embed.add_field(
        "📝 Audit Logs",
        "\n".join((
            f"**Events (24h):** {audit_summary['total_events']}",
            f"**Unique Users:** {audit_summary['unique_users']}",
            f"**Chain Intact:** {'Yes' if audit_summary['chain_valid'] else 'No'}",
        )),
        inline=True,
    )
    if security_stats["by_type"]:
        embed.add_field("📊 Top Event Types", _counts(security_stats["by_type"]))
    return Reply(embed=embed)


# Subcommands

async def _report(ctx: InteractionContext) -> None:
    timeframe = str(ctx.options.get("timeframe") or "day")
    if timeframe not in TIMEFRAMES:
        raise HandlerError("❌ Timeframe must be one of: hour, day, week.", error_type="validation")
    report = ctx.services.security.get_security_report(ctx.guild_id, hours=TIMEFRAMES[timeframe])
    await ctx.respond(report_reply(report, timeframe, ctx.envelope.guild_name or "this server"))


async def _stats(ctx: InteractionContext) -> None:
    services = ctx.services
    await ctx.respond(stats_reply(
        services.security.get_security_stats(),
        services.audit.get_audit_summary(ctx.guild_id),
        ctx.envelope.guild_name or "this server",
    ))


async def _alerts(ctx: InteractionContext) -> None:
    alerts = ctx.services.security.get_active_alerts(ctx.guild_id)
    if not alerts:
        await ctx.respond_text("✅ No active security alerts for this server.")
        return

    embed = hikari.Embed(
        title="🚨 Active Security Alerts",
        description=f"{len(alerts)} alert(s) in the last 24 hours",
        color=SEVERITY_COLORS[risk_level({alert.severity: 1 for alert in alerts})],
        timestamp=datetime.now(timezone.utc),
    )
    for alert in alerts[-AUDIT_PAGE_SIZE:]:
        subject = f"<@{alert.user_id}>" if alert.user_id else "Server"
        embed.add_field(
            f"{alert.severity.upper()} · {alert.type.replace('_', ' ')}",
            truncate(f"**Subject:** {subject}\n**At:** <t:{int(alert.timestamp)}:R>\n**ID:** `{alert.id}`", 1024),
        )
    await ctx.respond(Reply(embed=embed))


async def _audit(ctx: InteractionContext) -> None:
    event_type = ctx.options.get("type")
    if event_type is not None and event_type not in EVENT_TYPES:
        raise HandlerError(f"❌ Unknown audit event type `{event_type}`.", error_type="validation")

    user = ctx.options.get("user")
    records = ctx.services.audit.get_events(
        guild_id=ctx.guild_id,
        user_id=str(getattr(user, "id", user)) if user is not None else None,
        event_type=event_type,
        limit=AUDIT_FETCH_LIMIT,
    )
    if not records:
        await ctx.respond_text("📝 No audit logs found matching the criteria.")
        return

    embed = hikari.Embed(
        title="📋 Audit Logs",
        description=f"Recent audit logs for {ctx.envelope.guild_name or 'this server'}",
        color=COLORS["primary"],
        timestamp=datetime.now(timezone.utc),
    )
    for index, record in enumerate(records[:AUDIT_PAGE_SIZE], start=1):
        embed.add_field(
            f"{index}. {record.type.replace('_', ' ').upper()}",
            "\n".join((
                f"**User:** {f'<@{record.user_id}>' if record.user_id else 'System'}",
                f"**Time:** <t:{int(record.timestamp.timestamp())}:f>",
                f"**Details:** {record.outcome or 'N/A'}",
            )),
        )
    if len(records) > AUDIT_PAGE_SIZE:
        embed.set_footer(f"Showing {AUDIT_PAGE_SIZE} of {len(records)} logs")
    await ctx.respond(Reply(embed=embed))


async def _permissions(ctx: InteractionContext) -> None:
    services = ctx.services
    link = await find_server_link(ctx)
    embed = hikari.Embed(
        title="🔐 Permission Configuration",
        description=f"Permission settings for {ctx.envelope.guild_name or 'this server'}",
        color=hikari.Color(0x9932CC),
        timestamp=datetime.now(timezone.utc),
    )
    lines = []
    for command, policy in sorted(services.permissions.policies.items()):
        if policy.requires_admin or policy.requires_manage:
            who = "Manage Server"
        else:
            who = "Everyone"
        roles = link.allowed_roles_for(command) if link is not None and policy.role_override else []
        if roles:
            who += " + " + ", ".join(f"<@&{role_id}>" for role_id in roles)
        limit = f" ({policy.max_uses_per_hour}/h)" if policy.max_uses_per_hour else ""
        lines.append(f"**{command}:** {who}{limit}")
    embed.add_field("Commands", truncate("\n".join(lines), 1024))

    bot_ok = services.has_required_permissions(ctx.guild_id)
    if bot_ok is None:
        bot_status = "⚪ Unknown"
    else:
        bot_status = "🟢 Sufficient" if bot_ok else "🟡 Limited"
    embed.add_field("🤖 Bot Permissions", bot_status, inline=True)
    embed.add_field("⏳ Minimum Account Age", f"{services.permissions.min_account_age_days} days", inline=True)
    await ctx.respond(Reply(embed=embed))


SUBCOMMANDS = {
    "report": _report,
    "stats": _stats,
    "alerts": _alerts,
    "audit": _audit,
    "permissions": _permissions,
}


async def security(ctx: InteractionContext) -> None:
    handler = SUBCOMMANDS.get(ctx.options.get("subcommand", ""))
    if handler is None:
        raise HandlerError("❌ Unknown security subcommand.", error_type="validation")
    await handler(ctx)


ROUTES = [Route(CATEGORY_COMMAND, "security", security)]


# Commands

@plugin.command
@lightbulb.command("security", "Security monitoring and audit tools")
@lightbulb.implements(lightbulb.SlashCommandGroup)
async def security_group(ctx: lightbulb.SlashContext) -> None:
    pass


@security_group.child
@lightbulb.option("timeframe", "Report window", type=str, required=False, choices=list(TIMEFRAMES))
@lightbulb.command("report", "Security report for this server")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def security_report(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx, name="security", subcommand="report")


@security_group.child
@lightbulb.command("stats", "Security and audit statistics")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def security_stats(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx, name="security", subcommand="stats")


@security_group.child
@lightbulb.command("alerts", "Active high-severity security alerts")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def security_alerts(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx, name="security", subcommand="alerts")


@security_group.child
@lightbulb.option("type", "Audit event type", type=str, required=False)
@lightbulb.option("user", "Only show events for this user", type=hikari.User, required=False)
@lightbulb.command("audit", "Recent audit trail entries")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def security_audit(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx, name="security", subcommand="audit")


@security_group.child
@lightbulb.command("permissions", "Command permission configuration")
@lightbulb.implements(lightbulb.SlashSubCommand)
async def security_permissions(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx, name="security", subcommand="permissions")


def load(bot: lightbulb.BotApp) -> None:
    """Load the security plugin."""
    bot.add_plugin(plugin)
    register_routes(bot, ROUTES)


def unload(bot: lightbulb.BotApp) -> None:
    """Unload the security plugin."""
    unregister_routes(bot, ROUTES)
    bot.remove_plugin(plugin)
