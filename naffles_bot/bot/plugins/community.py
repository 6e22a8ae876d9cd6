"""Community linking: /link-community and its follow-up buttons."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

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
from naffles_bot.bot.pipeline.errors import HandlerError
from naffles_bot.bot.pipeline.router import Route
from naffles_bot.bot.services.exceptions import APIError, ServiceError
from naffles_bot.bot.utils.adapters import register_routes, run_slash_command, unregister_routes
from naffles_bot.bot.utils.embeds import COLORS, FOOTER
from naffles_bot.bot.utils.lookups import find_server_link
from naffles_bot.web.crud import ConflictError, NotFoundError
from naffles_bot.web.models import ServerCommunityLink, as_utc

plugin = lightbulb.Plugin("community")

logger = logging.getLogger(__name__)

MAX_COMMUNITY_ID_LENGTH = 50
NO_LINK_MESSAGE = "❌ No community link found for this server."


def _validation_hint(status_code: int) -> str:
    if status_code == 404:
        return "Community not found. Please check the community ID."
    if status_code == 403:
        return "You don't have permission to manage this community."
    return "Please check the community ID and try again."


def _guild_info(ctx: InteractionContext) -> dict[str, Any]:
    envelope = ctx.envelope
    return {
        "name": envelope.guild_name,
        "member_count": envelope.member_count,
        "owner_id": envelope.guild_owner_id,
    }


def already_linked_reply(link: ServerCommunityLink) -> Reply:
    embed = hikari.Embed(
        title="🔗 Server Already Linked",
        description=f"This Discord server is already linked to community ID: `{link.community_id}`",
        color=COLORS["warning"],
    )
    embed.add_field("Linked By", f"<@{link.linked_by}>", inline=True)
    embed.add_field("Linked At", f"<t:{int(as_utc(link.linked_at).timestamp())}:F>", inline=True)
    return Reply(
        embed=embed,
        components=[
            ButtonSpec("unlink_community", "Unlink Community", hikari.ButtonStyle.DANGER, emoji="🔓"),
            ButtonSpec("relink_community", "Link Different Community", hikari.ButtonStyle.SECONDARY, emoji="🔄"),
        ],
    )


def linked_reply(ctx: InteractionContext, community_id: str, community: dict[str, Any]) -> Reply:
    guild_name = ctx.envelope.guild_name or "this server"
    community_name = community.get("name", community_id)
    embed = hikari.Embed(
        title="✅ Community Linked Successfully!",
        description=(
            f"Discord server **{guild_name}** has been successfully linked to "
            f"Naffles community **{community_name}**."
        ),
        color=COLORS["success"],
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field("🏠 Discord Server", guild_name, inline=True)
    embed.add_field("🎯 Naffles Community", community_name, inline=True)
    embed.add_field("👤 Linked By", ctx.envelope.username or f"<@{ctx.user_id}>", inline=True)
    embed.add_field("📊 Community Members", str(community.get("memberCount") or 0), inline=True)
    embed.add_field("💰 Points Currency", community.get("pointsName") or "Points", inline=True)
    embed.add_field("🆔 Community ID", community_id, inline=True)
    embed.set_footer("You can now use /create-task and /connect-allowlist commands!")

    website = ctx.services.settings.website_url
    return Reply(
        embed=embed,
        components=[
            ButtonSpec("test_connection", "Test Connection", hikari.ButtonStyle.PRIMARY, emoji="🔍"),
            LinkButtonSpec(f"{website}/community/{community_id}", "View Community", emoji="🌐"),
        ],
    )


async def _notify_linked(ctx: InteractionContext, community_id: str) -> None:
    envelope = ctx.envelope
    notification = {
        "type": "discord_server_linked",
        "data": {
            "guildName": envelope.guild_name,
            "guildId": envelope.guild_id,
            "memberCount": envelope.member_count,
            "linkedAt": datetime.now(timezone.utc).isoformat(),
        },
    }
    try:
        await ctx.services.platform.send_community_notification(community_id, notification)
    except ServiceError as e:
        logger.warning(f"Failed to send community notification for {community_id}: {e}")


# Handlers

async def link_community(ctx: InteractionContext) -> None:
    """Link the current server to a Platform community the user manages."""
    services = ctx.services
    community_id = str(ctx.options.get("community_id", "")).strip()
    if not community_id or len(community_id) > MAX_COMMUNITY_ID_LENGTH:
        raise HandlerError("❌ Please provide a valid community ID.", error_type="validation")

    existing = await find_server_link(ctx)
    if existing is not None:
        await ctx.respond(already_linked_reply(existing))
        ctx.outcome_detail = "already linked"
        return

    await ctx.acknowledge()

    try:
        community = await services.platform.validate_community_ownership(community_id, ctx.user_id)
    except APIError as e:
        if e.status_code is not None and 400 <= e.status_code < 500:
            raise HandlerError(
                f"❌ Failed to validate community. {_validation_hint(e.status_code)}",
                error_type="validation",
            ) from e
        raise

    community = community or {}
    community_name = community.get("name", community_id)
    if not community.get("canManage"):
        raise HandlerError(
            f'❌ You don\'t have permission to manage community "{community_name}". '
            "Only community owners can link Discord servers.",
            error_type="permission",
        )

    try:
        async with services.session_factory() as session:
            await services.server_links.create_server_link(
                session,
                ctx.guild_id,
                community_id,
                ctx.user_id,
                guild_info=_guild_info(ctx),
            )
    except ConflictError as e:
        raise HandlerError(
            f'❌ Community "{community_name}" is already linked to another Discord server. '
            "Each community can only be linked to one Discord server at a time.",
            error_type="conflict",
        ) from e

    logger.info(f"✅ Linked guild {ctx.guild_id} to community {community_id} by {ctx.user_id}")
    services.audit.record(
        "community_linked",
        user_id=ctx.user_id,
        guild_id=ctx.guild_id,
        community_id=community_id,
    )
    await ctx.respond(linked_reply(ctx, community_id, community))
    await _notify_linked(ctx, community_id)


async def _remove_link(ctx: InteractionContext) -> ServerCommunityLink:
    services = ctx.services
    try:
        async with services.session_factory() as session:
            link = await services.server_links.delete_server_link(session, ctx.guild_id, ctx.user_id)
    except NotFoundError as e:
        raise HandlerError(NO_LINK_MESSAGE, error_type="not_found") from e
    services.audit.record(
        "community_unlinked",
        user_id=ctx.user_id,
        guild_id=ctx.guild_id,
        community_id=link.community_id,
    )
    logger.info(f"Unlinked guild {ctx.guild_id} from community {link.community_id} by {ctx.user_id}")
    return link


async def unlink_community(ctx: InteractionContext) -> None:
    link = await _remove_link(ctx)
    embed = hikari.Embed(
        title="🔓 Community Unlinked",
        description=f"Discord server has been unlinked from community `{link.community_id}`.",
        color=COLORS["error"],
    )
    await ctx.respond(Reply(embed=embed))


async def relink_community(ctx: InteractionContext) -> None:
    await _remove_link(ctx)
    embed = hikari.Embed(
        title="🔄 Ready to Link New Community",
        description="Previous community link has been removed. Use `/link-community` to link a new community.",
        color=COLORS["primary"],
    )
    await ctx.respond(Reply(embed=embed))


async def test_connection(ctx: InteractionContext) -> None:
    """Fetch the linked community to prove the Platform round trip works."""
    await ctx.acknowledge()
    link = await find_server_link(ctx)
    if link is None:
        raise HandlerError(NO_LINK_MESSAGE, error_type="not_found")

    services = ctx.services
    try:
        community = await services.platform.get_community(link.community_id) or {}
    except ServiceError as e:
        logger.error(f"Connection test failed for guild {ctx.guild_id}: {e}")
        await _record_integration(ctx, False, str(e))
        embed = hikari.Embed(
            title="❌ Connection Test Failed",
            description="Unable to connect to Naffles API. Please try again later.",
            color=COLORS["error"],
            timestamp=datetime.now(timezone.utc),
        )
        embed.add_field("🔗 Connection Status", "🔴 Offline", inline=True)
        embed.add_field("⚠️ Error", str(e) or "Unknown error")
        await ctx.respond(Reply(embed=embed))
        ctx.outcome_detail = "connection test failed"
        return

    await _record_integration(ctx, True, "ok")
    embed = hikari.Embed(
        title="✅ Connection Test Successful",
        description="Discord bot is successfully connected to your Naffles community.",
        color=COLORS["success"],
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field("🎯 Community", community.get("name", link.community_id), inline=True)
    embed.add_field("👥 Members", str(community.get("memberCount") or 0), inline=True)
    embed.add_field("💰 Points", community.get("pointsName") or "Points", inline=True)
    embed.add_field("📊 Active Tasks", str(community.get("activeTasks") or 0), inline=True)
    embed.add_field("🎫 Active Allowlists", str(community.get("activeAllowlists") or 0), inline=True)
    embed.add_field("🔗 Connection Status", "🟢 Online", inline=True)
    embed.set_footer(FOOTER)
    await ctx.respond(Reply(embed=embed))


async def _record_integration(ctx: InteractionContext, healthy: bool, detail: str) -> None:
    services = ctx.services
    try:
        async with services.session_factory() as session:
            await services.server_links.update_integration_status(session, ctx.guild_id, healthy, detail)
    except Exception as e:
        logger.warning(f"Failed to record integration status for guild {ctx.guild_id}: {e}")


ROUTES = [
    Route(CATEGORY_COMMAND, "link-community", link_community, operation="community_linking"),
    Route(CATEGORY_BUTTON, "unlink_community", unlink_community, permission="unlink_community",
          operation="community_linking"),
    Route(CATEGORY_BUTTON, "relink_community", relink_community, permission="relink_community",
          operation="community_linking"),
    Route(CATEGORY_BUTTON, "test_connection", test_connection, operation="community_linking"),
]


# Commands

@plugin.command
@lightbulb.option("community_id", "Your Naffles community ID", type=str, required=True, max_length=MAX_COMMUNITY_ID_LENGTH)
@lightbulb.command("link-community", "Link this Discord server to your Naffles community")
@lightbulb.implements(lightbulb.SlashCommand)
async def link_community_command(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx)


def load(bot: lightbulb.BotApp) -> None:
    """Load the community plugin."""
    bot.add_plugin(plugin)
    register_routes(bot, ROUTES)


def unload(bot: lightbulb.BotApp) -> None:
    """Unload the community plugin."""
    unregister_routes(bot, ROUTES)
    bot.remove_plugin(plugin)
