"""/status: bot, Platform and link health for the current server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import hikari
import lightbulb

from naffles_bot.bot.pipeline.context import (
    CATEGORY_BUTTON,
    CATEGORY_COMMAND,
    ButtonSpec,
    InteractionContext,
    LinkButtonSpec,
    Reply,
)
from naffles_bot.bot.pipeline.router import Route
from naffles_bot.bot.services.exceptions import ServiceError
from naffles_bot.bot.utils.adapters import register_routes, run_slash_command, unregister_routes
from naffles_bot.bot.utils.embeds import COLORS, FOOTER
from naffles_bot.bot.utils.lookups import find_server_link
from naffles_bot.web.models import ServerCommunityLink, as_utc

plugin = lightbulb.Plugin("status")

logger = logging.getLogger(__name__)

ERROR_RATE_THRESHOLD = 0.1


def health_label(percent: float) -> str:
    if percent >= 90:
        return "🟢 Excellent"
    if percent >= 70:
        return "🟡 Good"
    if percent >= 50:
        return "🟠 Fair"
    return "🔴 Poor"


@dataclass
class StatusSnapshot:
    discord_connected: bool
    api_online: bool
    permissions_ok: Optional[bool]
    link: Optional[ServerCommunityLink]
    community: dict
    commands_processed: int
    uptime_hours: float
    error_rate: float

    @property
    def health_score(self) -> int:
        checks = (
            self.api_online,
            self.discord_connected,
            self.link is not None,
            self.error_rate < ERROR_RATE_THRESHOLD,
        )
        return sum(1 for passed in checks if passed)

    @property
    def health_percent(self) -> float:
        return self.health_score / 4 * 100


async def collect_status(ctx: InteractionContext) -> StatusSnapshot:
    services = ctx.services
    link = await find_server_link(ctx)

    api_online = True
    community: dict = {}
    try:
        await services.platform.ping()
        if link is not None:
            community = await services.platform.get_community(link.community_id) or {}
    except ServiceError as e:
        logger.warning(f"Platform API unavailable during status check: {e}")
        api_online = False

    return StatusSnapshot(
        discord_connected=services.discord_connected(),
        api_online=api_online,
        permissions_ok=services.has_required_permissions(ctx.guild_id),
        link=link,
        community=community,
        commands_processed=services.commands_processed,
        uptime_hours=services.uptime_hours,
        error_rate=services.error_rate,
    )


def status_reply(snapshot: StatusSnapshot, website_url: str) -> Reply:
    link = snapshot.link
    embed = hikari.Embed(
        title="🤖 Naffles Discord Bot Status",
        color=COLORS["success"] if link is not None else COLORS["warning"],
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field("🔗 Bot Connection", "🟢 Connected" if snapshot.discord_connected else "🔴 Disconnected", inline=True)
    embed.add_field("🌐 Naffles API", "🟢 Online" if snapshot.api_online else "🔴 Offline", inline=True)
    if snapshot.permissions_ok is None:
        permissions = "⚪ Unknown"
    else:
        permissions = "🟢 Sufficient" if snapshot.permissions_ok else "🟡 Limited"
    embed.add_field("🔐 Bot Permissions", permissions, inline=True)

    if link is not None:
        community = snapshot.community
        embed.description = (
            "✅ This Discord server is successfully linked to a Naffles community. You can use all bot commands."
        )
        embed.add_field("🎯 Linked Community", community.get("name") or "Unknown", inline=True)
        embed.add_field("🆔 Community ID", link.community_id, inline=True)
        embed.add_field("👤 Linked By", f"<@{link.linked_by}>", inline=True)
        embed.add_field("📅 Linked At", f"<t:{int(as_utc(link.linked_at).timestamp())}:F>", inline=True)
        if community:
            embed.add_field("👥 Community Members", str(community.get("memberCount") or 0), inline=True)
            embed.add_field("💰 Points Currency", community.get("pointsName") or "Points", inline=True)
    else:
        embed.description = (
            "⚠️ This Discord server is not linked to any Naffles community. "
            "Use `/link-community` to get started."
        )
        embed.add_field("🚀 Getting Started", "Use `/link-community` to link this server to your Naffles community.")

    embed.add_field("📊 Commands Processed", str(snapshot.commands_processed), inline=True)
    embed.add_field("⏱️ Uptime", f"{snapshot.uptime_hours:.1f} hours", inline=True)
    embed.add_field("🏥 Health Score", health_label(snapshot.health_percent), inline=True)
    embed.set_footer(FOOTER)

    if link is not None:
        components = [
            ButtonSpec("test_connection", "Test Connection", hikari.ButtonStyle.PRIMARY, emoji="🔍"),
            ButtonSpec("refresh_status", "Refresh Status", hikari.ButtonStyle.SECONDARY, emoji="🔄"),
            LinkButtonSpec(f"{website_url}/community/{link.community_id}", "View Community", emoji="🌐"),
        ]
    else:
        components = [
            ButtonSpec("link_community_help", "Link Community", hikari.ButtonStyle.SUCCESS, emoji="🔗"),
            LinkButtonSpec(f"{website_url}/discord-setup", "Setup Guide", emoji="📚"),
        ]
    return Reply(embed=embed, components=components)


# Handlers

async def status(ctx: InteractionContext) -> None:
    await ctx.acknowledge()
    snapshot = await collect_status(ctx)
    await ctx.respond(status_reply(snapshot, ctx.services.settings.website_url))


async def refresh_status(ctx: InteractionContext) -> None:
    await status(ctx)


async def link_community_help(ctx: InteractionContext) -> None:
    settings = ctx.services.settings
    embed = hikari.Embed(
        title="🔗 Link Your Community",
        description="To link this Discord server to your Naffles community, follow these steps:",
        color=COLORS["primary"],
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field("1️⃣ Get Your Community ID", "Go to your Naffles community settings and copy your Community ID.")
    embed.add_field("2️⃣ Use the Link Command", "Run `/link-community` with your Community ID.")
    embed.add_field(
        "3️⃣ Verify Permissions",
        'Make sure you have "Manage Server" permission and own the Naffles community.',
    )
    embed.add_field(
        "4️⃣ Start Using Commands",
        "Once linked, you can use `/create-task` and `/connect-allowlist`.",
    )
    embed.set_footer("Need help? Visit our support page")
    await ctx.respond(Reply(
        embed=embed,
        components=[
            LinkButtonSpec(f"{settings.website_url}/discord-setup", "Setup Guide", emoji="📚"),
            LinkButtonSpec(settings.support_url, "Get Support", emoji="💬"),
        ],
    ))


ROUTES = [
    Route(CATEGORY_COMMAND, "status", status),
    Route(CATEGORY_BUTTON, "refresh_status", refresh_status),
    Route(CATEGORY_BUTTON, "link_community_help", link_community_help),
]


@plugin.command
@lightbulb.command("status", "Check the Discord bot connection status and community link")
@lightbulb.implements(lightbulb.SlashCommand)
async def status_command(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx)


def load(bot: lightbulb.BotApp) -> None:
    """Load the status plugin."""
    bot.add_plugin(plugin)
    register_routes(bot, ROUTES)


def unload(bot: lightbulb.BotApp) -> None:
    """Unload the status plugin."""
    unregister_routes(bot, ROUTES)
    bot.remove_plugin(plugin)
