"""Allowlists: connecting Platform allowlists to channels, entries and analytics."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence
from uuid import UUID

import hikari
import lightbulb

from naffles_bot.bot.pipeline.context import CATEGORY_BUTTON, CATEGORY_COMMAND, InteractionContext, Reply
from naffles_bot.bot.pipeline.errors import HandlerError
from naffles_bot.bot.pipeline.router import Route
from naffles_bot.bot.services.exceptions import APIError
from naffles_bot.bot.utils.adapters import register_routes, run_slash_command, unregister_routes
from naffles_bot.bot.utils.embeds import COLORS, FOOTER, allowlist_embed, allowlist_reply, parse_platform_datetime
from naffles_bot.bot.utils.lookups import require_server_link, require_user_link
from naffles_bot.web.models import ENTRY_DUPLICATE, AllowlistConnection, as_utc

plugin = lightbulb.Plugin("allowlists")

logger = logging.getLogger(__name__)

MAX_ALLOWLIST_ID_LENGTH = 50

PERIODS = {
    "7d": ("Last 7 days", timedelta(days=7)),
    "30d": ("Last 30 days", timedelta(days=30)),
    "all": ("All time", None),
}

FETCH_ERRORS = {
    404: "❌ Allowlist not found. Please check the allowlist ID and try again.",
    403: "❌ You don't have permission to access this allowlist.",
}

ENTRY_ERRORS = {
    400: ("❌ Invalid entry data. Please check the requirements and try again.", "invalid_data"),
    403: ("❌ You don't have permission to enter this allowlist.", "permission_denied"),
    404: ("❌ Allowlist not found.", "not_found"),
    409: ("✅ You are already entered in this allowlist!", "already_entered"),
}


def allowlist_id_of(allowlist: dict[str, Any]) -> str:
    return str(allowlist.get("id") or allowlist.get("_id"))


def allowlist_snapshot(allowlist: dict[str, Any]) -> dict[str, Any]:
    entry_price = allowlist.get("entryPrice")
    if isinstance(entry_price, dict):
        entry_price = entry_price.get("amount", "0")
    return {
        "id": allowlist_id_of(allowlist),
        "title": allowlist.get("title"),
        "description": allowlist.get("description"),
        "prize": allowlist.get("prize"),
        "winnerCount": allowlist.get("winnerCount"),
        "entryPrice": entry_price if entry_price is not None else "0",
        "endTime": allowlist.get("endTime"),
        "status": allowlist.get("status", "active"),
        "socialTasks": allowlist.get("socialTasks") or [],
    }


async def _fetch_allowlist(ctx: InteractionContext, allowlist_id: str) -> dict[str, Any]:
    try:
        return await ctx.services.platform.get_allowlist(allowlist_id) or {}
    except APIError as e:
        if e.status_code in FETCH_ERRORS:
            raise HandlerError(FETCH_ERRORS[e.status_code], error_type="not_found" if e.status_code == 404 else "permission") from e
        if 400 <= e.status_code < 500:
            raise HandlerError("❌ Failed to fetch allowlist details. Please try again later.", error_type="api_error") from e
        raise


# Handlers

async def connect_allowlist(ctx: InteractionContext) -> None:
    """Post a Platform allowlist to the channel and remember the message."""
    services = ctx.services
    allowlist_id = str(ctx.options.get("allowlist_id", "")).strip()
    if not allowlist_id or len(allowlist_id) > MAX_ALLOWLIST_ID_LENGTH:
        raise HandlerError("❌ Please provide a valid allowlist ID.", error_type="validation")

    link = await require_server_link(ctx)
    await ctx.acknowledge()

    allowlist = await _fetch_allowlist(ctx, allowlist_id)
    owner = allowlist.get("communityId")
    if owner is not None and str(owner) != link.community_id:
        raise HandlerError("❌ This allowlist does not belong to your community.", error_type="permission")

    async with services.session_factory() as session:
        existing = await services.allowlists.get_allowlist_connection(session, allowlist_id, ctx.guild_id)
    if existing is not None:
        raise HandlerError(
            f"❌ This allowlist is already connected to this server in <#{existing.channel_id}>.",
            error_type="duplicate",
        )

    snapshot = allowlist_snapshot({**allowlist, "id": allowlist.get("id") or allowlist_id})
    message_id = await ctx.post_to_channel(allowlist_reply(snapshot, participants=allowlist.get("totalEntries")))

    async with services.session_factory() as session:
        await services.allowlists.create_allowlist_connection(
            session,
            allowlist_id=allowlist_id,
            guild_id=ctx.guild_id,
            channel_id=ctx.channel_id,
            message_id=message_id,
            connected_by=ctx.user_id,
            allowlist_data=snapshot,
            end_time=parse_platform_datetime(allowlist.get("endTime")),
        )
        await services.server_links.record_activity(session, ctx.guild_id, "allowlists_connected")

    services.audit.record("allowlist_connected", user_id=ctx.user_id, guild_id=ctx.guild_id, allowlist_id=allowlist_id)
    logger.info(f"✅ Allowlist {allowlist_id} connected to guild {ctx.guild_id} by {ctx.user_id}")
    await ctx.respond_text(
        f'✅ Allowlist "{snapshot.get("title") or allowlist_id}" has been connected and posted to this channel!'
    )


async def _submit_entry(ctx: InteractionContext, allowlist_id: str, platform_user_id: str) -> None:
    allowlist = await _fetch_allowlist(ctx, allowlist_id)
    if allowlist.get("status", "active") != "active":
        raise HandlerError("❌ This allowlist is no longer active.", error_type="allowlist_inactive")
    max_entries = allowlist.get("maxEntries")
    if max_entries and (allowlist.get("totalEntries") or 0) >= max_entries:
        raise HandlerError("❌ This allowlist has reached maximum capacity.", error_type="capacity_reached")

    entry = {
        "userId": platform_user_id,
        "discordId": ctx.user_id,
        "discordUsername": ctx.envelope.username,
        "socialData": {
            "discordId": ctx.user_id,
            "discordUsername": ctx.envelope.username,
            "verifiedAt": datetime.now(timezone.utc).isoformat(),
        },
    }
    try:
        await ctx.services.platform.enter_allowlist(allowlist_id, entry)
    except APIError as e:
        if e.status_code in ENTRY_ERRORS:
            message, error_type = ENTRY_ERRORS[e.status_code]
            raise HandlerError(message, error_type=error_type) from e
        raise


async def enter_allowlist(ctx: InteractionContext) -> None:
    """Enter the clicking user into an allowlist.

    A place in the connection's queue is reserved before the Platform call
    and confirmed or released afterwards; no transaction stays open while
    the Platform is called. Repeat clicks are queued as duplicate attempts
    and never reach the Platform.
    """
    services = ctx.services
    allowlist_id = ctx.argument
    account = await require_user_link(ctx)
    await ctx.acknowledge()

    connection_id: Optional[UUID] = None
    duplicate = False
    if ctx.guild_id is not None:
        async with services.session_factory() as session:
            connection = await services.allowlists.get_allowlist_connection(session, allowlist_id, ctx.guild_id)
            if connection is not None:
                connection_id = connection.id
                reserved = await services.allowlists.reserve_allowlist_entry(session, connection_id, ctx.user_id)
                duplicate = reserved == ENTRY_DUPLICATE

    if duplicate:
        ctx.outcome_detail = "duplicate entry"
        await ctx.respond_text("✅ You are already entered in this allowlist!")
        return

    try:
        await _submit_entry(ctx, allowlist_id, account.platform_user_id)
    except Exception:
        if connection_id is not None:
            async with services.session_factory() as session:
                await services.allowlists.release_allowlist_entry(session, connection_id, ctx.user_id)
        raise

    async with services.session_factory() as session:
        if connection_id is not None:
            await services.allowlists.confirm_allowlist_entry(session, connection_id, ctx.user_id)
        await services.user_links.record_activity(session, ctx.user_id, "allowlists_entered")

    services.audit.record("allowlist_entered", user_id=ctx.user_id, guild_id=ctx.guild_id, allowlist_id=allowlist_id)
    await ctx.respond_text("🎉 Successfully entered the allowlist! Good luck!")


async def view_allowlist(ctx: InteractionContext) -> None:
    services = ctx.services
    allowlist_id = ctx.argument
    allowlist = await _fetch_allowlist(ctx, allowlist_id)

    participants = allowlist.get("totalEntries")
    if ctx.guild_id is not None:
        async with services.session_factory() as session:
            connection = await services.allowlists.get_allowlist_connection(session, allowlist_id, ctx.guild_id)
            if connection is not None:
                await services.allowlists.record_allowlist_view(session, connection)
                if participants is None:
                    participants = connection.entry_count

    snapshot = allowlist_snapshot({**allowlist, "id": allowlist.get("id") or allowlist_id})
    await ctx.respond(Reply(embed=allowlist_embed(snapshot, participants)))


def summarize_connections(connections: Sequence[AllowlistConnection]) -> dict[str, Any]:
    """Roll a guild's allowlist connections up into dashboard numbers."""
    total = len(connections)
    views = sum(connection.views or 0 for connection in connections)
    entries = sum(connection.entry_count for connection in connections)
    return {
        "total_allowlists": total,
        "active_allowlists": sum(1 for connection in connections if connection.status == "active"),
        "total_views": views,
        "total_entries": entries,
        "duplicate_attempts": sum(len(connection.duplicate_attempts or []) for connection in connections),
        "average_views": round(views / total) if total else 0,
        "average_entries": round(entries / total) if total else 0,
        "engagement_rate": (entries / views * 100) if views else 0.0,
    }


def performance_insights(summary: dict[str, Any]) -> list[str]:
    insights = []
    engagement = summary["engagement_rate"]
    if engagement > 50:
        insights.append("🎉 Excellent engagement rate! Your allowlists are highly attractive to users.")
    elif engagement > 25:
        insights.append("👍 Good engagement rate. Consider optimizing allowlist descriptions for better conversion.")
    elif engagement > 0:
        insights.append("📈 Room for improvement. Try adding more attractive prizes or clearer requirements.")

    total, active = summary["total_allowlists"], summary["active_allowlists"]
    if active == 0 and total > 0:
        insights.append("⏰ No active allowlists. Consider creating new allowlists to maintain engagement.")
    elif active > 3:
        insights.append("🔥 High activity! You have multiple active allowlists running simultaneously.")

    if total > 10:
        insights.append("🏆 Experienced community! You've run many successful allowlists.")
    elif total > 5:
        insights.append("📊 Growing community! Keep up the consistent allowlist activity.")
    elif total > 0:
        insights.append("🌱 Getting started! Consider running more allowlists to build community engagement.")

    if summary["average_entries"] > 100:
        insights.append("🎯 High-performing allowlists! Your average entry count is excellent.")
    elif summary["average_entries"] > 50:
        insights.append("📈 Solid performance! Your allowlists are attracting good participation.")
    return insights


def analytics_embed(
    connections: Sequence[AllowlistConnection],
    period: str,
    guild_name: Optional[str],
) -> hikari.Embed:
    summary = summarize_connections(connections)
    embed = hikari.Embed(
        title="📊 Allowlist Analytics Dashboard",
        description=f"Analytics for **{guild_name or 'this'}** Discord server",
        color=COLORS["primary"],
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field("📅 Period", PERIODS[period][0], inline=True)
    embed.add_field("🎫 Total Allowlists", str(summary["total_allowlists"]), inline=True)
    embed.add_field("🟢 Active Allowlists", str(summary["active_allowlists"]), inline=True)
    embed.add_field("👁️ Total Views", f"{summary['total_views']:,}", inline=True)
    embed.add_field("🎪 Total Entries", f"{summary['total_entries']:,}", inline=True)
    embed.add_field("📈 Avg Views/Allowlist", str(summary["average_views"]), inline=True)
    embed.add_field("📊 Avg Entries/Allowlist", str(summary["average_entries"]), inline=True)
    embed.add_field("🎯 Engagement Rate", f"{summary['engagement_rate']:.1f}%", inline=True)
    embed.add_field("🔁 Duplicate Attempts", str(summary["duplicate_attempts"]), inline=True)

    if connections:
        top = sorted(connections, key=lambda connection: connection.entry_count, reverse=True)[:5]
        embed.add_field(
            "🏆 Top Performing Allowlists",
            "\n\n".join(
                f"{index}. {'🟢' if connection.status == 'active' else '🔴'} "
                f"**{(connection.allowlist_data or {}).get('title') or connection.allowlist_id}**\n"
                f"   👁️ {connection.views or 0} views • 🎪 {connection.entry_count} entries"
                for index, connection in enumerate(top, start=1)
            ),
        )
        recent = sorted(connections, key=lambda connection: as_utc(connection.created_at), reverse=True)[:3]
        embed.add_field(
            "🕒 Recent Activity",
            "\n\n".join(
                f"{'🟢' if connection.status == 'active' else '🔴'} "
                f"**{(connection.allowlist_data or {}).get('title') or connection.allowlist_id}**\n"
                f"   Connected <t:{int(as_utc(connection.created_at).timestamp())}:R>"
                for connection in recent
            ),
        )

    insights = performance_insights(summary)
    if insights:
        embed.add_field("💡 Performance Insights", "\n".join(insights))
    embed.set_footer(FOOTER)
    return embed


async def allowlist_analytics(ctx: InteractionContext) -> None:
    services = ctx.services
    period = ctx.options.get("period") or "all"
    if period not in PERIODS:
        raise HandlerError("❌ Unknown period.", error_type="validation")

    await require_server_link(ctx)
    await ctx.acknowledge()

    window = PERIODS[period][1]
    since = datetime.now(timezone.utc) - window if window is not None else None
    async with services.session_factory() as session:
        connections = await services.allowlists.list_by_server(session, ctx.guild_id, since=since)
    await ctx.respond(Reply(embed=analytics_embed(connections, period, ctx.envelope.guild_name)))


ROUTES = [
    Route(CATEGORY_COMMAND, "connect-allowlist", connect_allowlist, operation="allowlist_management"),
    Route(CATEGORY_COMMAND, "allowlist-analytics", allowlist_analytics, operation="allowlist_management"),
    Route(CATEGORY_BUTTON, "enter_allowlist", enter_allowlist, prefix=True, operation="allowlist_management"),
    Route(CATEGORY_BUTTON, "view_allowlist", view_allowlist, prefix=True, operation="allowlist_management"),
]


# Commands

@plugin.command
@lightbulb.option("allowlist_id", "The ID of the allowlist to connect", type=str, required=True,
                  max_length=MAX_ALLOWLIST_ID_LENGTH)
@lightbulb.command("connect-allowlist", "Connect an existing Naffles allowlist to this Discord channel")
@lightbulb.implements(lightbulb.SlashCommand)
async def connect_allowlist_command(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx)


@plugin.command
@lightbulb.option(
    "period",
    "Time period for analytics",
    type=str,
    required=False,
    choices=[hikari.CommandChoice(name=label, value=value) for value, (label, _) in PERIODS.items()],
)
@lightbulb.command("allowlist-analytics", "View allowlist entry tracking and analytics for this server")
@lightbulb.implements(lightbulb.SlashCommand)
async def allowlist_analytics_command(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx)


def load(bot: lightbulb.BotApp) -> None:
    """Load the allowlists plugin."""
    bot.add_plugin(plugin)
    register_routes(bot, ROUTES)


def unload(bot: lightbulb.BotApp) -> None:
    """Unload the allowlists plugin."""
    unregister_routes(bot, ROUTES)
    bot.remove_plugin(plugin)
