"""Social tasks: creation through a modal, listing, viewing and completion."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import hikari
import lightbulb

from naffles_bot.bot.pipeline.context import (
    CATEGORY_BUTTON,
    CATEGORY_COMMAND,
    CATEGORY_MENU,
    CATEGORY_MODAL,
    InteractionContext,
    ModalSpec,
    Reply,
    SelectMenuSpec,
    SelectOptionSpec,
    TextInputSpec,
)
from naffles_bot.bot.pipeline.errors import HandlerError
from naffles_bot.bot.pipeline.router import Route
from naffles_bot.bot.services.exceptions import APIError
from naffles_bot.bot.utils.adapters import register_routes, run_slash_command, unregister_routes
from naffles_bot.bot.utils.embeds import (
    COLORS,
    TASK_TYPE_LABELS,
    format_task_type,
    task_components,
    task_embed,
    task_points,
    task_reply,
    truncate,
)
from naffles_bot.bot.utils.lookups import require_server_link, require_user_link

plugin = lightbulb.Plugin("tasks")

logger = logging.getLogger(__name__)

STAGING_TTL_SECONDS = 300
TASK_LIST_TTL_SECONDS = 300
TASK_LIST_LIMIT = 25
DEFAULT_DURATION_HOURS = 168
MODAL_PREFIX = "create_task_modal"

TASK_TYPES = ("twitter_follow", "discord_join", "telegram_join", "custom")
TASK_STATUSES = ("active", "completed", "expired", "all")

# Modal inputs per task type, paired with the payload configuration key each fills
TASK_MODAL_FIELDS: dict[str, tuple[tuple[TextInputSpec, str], ...]] = {
    "twitter_follow": (
        (TextInputSpec("twitter_username", "Twitter Username (without @)", 50, placeholder="naffles"),
         "twitterUsername"),
    ),
    "discord_join": (
        (TextInputSpec("discord_invite", "Discord Invite Link", 200, placeholder="https://discord.gg/naffles"),
         "discordInviteUrl"),
    ),
    "telegram_join": (
        (TextInputSpec("telegram_link", "Telegram Group/Channel Link", 200, placeholder="https://t.me/naffles"),
         "telegramChannelUrl"),
    ),
    "custom": (
        (TextInputSpec("custom_instructions", "Task Instructions", 1000, paragraph=True,
                       placeholder="Detailed instructions for completing this task..."),
         "instructions"),
        (TextInputSpec("verification_method", "How will completion be verified?", 500, paragraph=True,
                       placeholder="Manual review, screenshot submission, etc."),
         "verificationMethod"),
    ),
}


def staging_key(user_id: str, guild_id: Optional[str]) -> str:
    return f"task_creation_{user_id}_{guild_id}"


def task_list_key(user_id: str, guild_id: Optional[str]) -> str:
    return f"task_list_{user_id}_{guild_id}"


def task_id_of(task: dict[str, Any]) -> str:
    return str(task.get("id") or task.get("_id"))


def build_task_modal(task_type: str, now_ms: Optional[int] = None) -> ModalSpec:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return ModalSpec(
        custom_id=f"{MODAL_PREFIX}_{now_ms}",
        title="Create Social Task",
        inputs=tuple(spec for spec, _ in TASK_MODAL_FIELDS[task_type]),
    )


def build_task_payload(
    staged: dict[str, Any],
    fields: dict[str, str],
    channel_id: Optional[str],
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Platform create-task body from the staged command options and modal fields.

    Raises:
        HandlerError: If a required modal field is blank
    """
    now = now or datetime.now(timezone.utc)
    task_type = staged["type"]
    configuration: dict[str, Any] = {}
    for spec, key in TASK_MODAL_FIELDS[task_type]:
        value = (fields.get(spec.custom_id) or "").strip()
        if spec.required and not value:
            raise HandlerError(f"❌ {spec.label} is required.", error_type="validation")
        configuration[key] = value[:spec.max_length]
    if task_type == "twitter_follow":
        configuration["twitterUsername"] = configuration["twitterUsername"].lstrip("@")

    duration = int(staged.get("duration") or DEFAULT_DURATION_HOURS)
    return {
        "communityId": staged["communityId"],
        "title": staged["title"],
        "description": staged["description"],
        "type": task_type,
        "rewards": {"points": staged["points"], "bonusMultiplier": 1},
        "configuration": configuration,
        "schedule": {
            "startDate": now.isoformat(),
            "endDate": (now + timedelta(hours=duration)).isoformat(),
        },
        "verification": {
            "requiresApproval": task_type == "custom",
            "autoVerify": task_type != "custom",
        },
        "discordIntegration": {
            "guildId": staged["guildId"],
            "channelId": channel_id,
            "createdBy": staged["userId"],
        },
    }


def task_detail_embed(task: dict[str, Any]) -> hikari.Embed:
    """Task embed plus the type-specific fields shown to a single user."""
    embed = task_embed(task)
    configuration = task.get("configuration") or {}
    task_type = task.get("type")
    twitter = task.get("twitterUsername") or configuration.get("twitterUsername")
    invite = task.get("discordInvite") or configuration.get("discordInviteUrl")
    telegram = task.get("telegramLink") or configuration.get("telegramChannelUrl")
    if task_type == "twitter_follow" and twitter:
        embed.add_field("🐦 Twitter Account", f"@{twitter}", inline=True)
    elif task_type == "discord_join" and invite:
        embed.add_field("💬 Discord Server", f"[Join Server]({invite})", inline=True)
    elif task_type == "telegram_join" and telegram:
        embed.add_field("📱 Telegram", f"[Join Group]({telegram})", inline=True)
    elif task_type == "custom":
        instructions = task.get("customInstructions") or configuration.get("instructions")
        verification = task.get("verificationMethod") or configuration.get("verificationMethod")
        if instructions:
            embed.add_field("📝 Instructions", truncate(instructions, 1024))
        if verification:
            embed.add_field("✅ Verification", truncate(verification, 1024))
    return embed


def task_list_reply(tasks: list[dict[str, Any]], status: str) -> Reply:
    if not tasks:
        embed = hikari.Embed(
            title="📋 Social Tasks",
            description=f"No {status} tasks found for this community.",
            color=COLORS["gray"],
        )
        embed.set_footer("Use /create-task to create a new task")
        return Reply(embed=embed, ephemeral=False)

    count = len(tasks)
    embed = hikari.Embed(
        title=f"📋 Social Tasks ({status})",
        description=f"Found {count} {status} task{'s' if count != 1 else ''} for this community.",
        color=COLORS["primary"],
    )
    total_points = sum(task_points(task) or 0 for task in tasks)
    completed = sum(1 for task in tasks if task.get("status") == "completed")
    embed.add_field("💰 Total Points Available", str(total_points), inline=True)
    embed.add_field("✅ Completed Tasks", str(completed), inline=True)
    embed.add_field("📊 Active Tasks", str(count - completed), inline=True)
    embed.set_footer("Select a task below to view details")

    options = tuple(
        SelectOptionSpec(
            label=truncate(task.get("title") or "Untitled task", 100),
            value=task_id_of(task),
            description=truncate(
                f"{task_points(task) or 0} points • {format_task_type(task.get('type', 'custom'))} • "
                f"{task.get('status', 'active')}",
                100,
            ),
        )
        for task in tasks[:TASK_LIST_LIMIT]
    )
    menu = SelectMenuSpec("select_task_details", "Select a task to view details...", options)
    return Reply(embed=embed, components=[menu], ephemeral=False)


# Handlers

async def create_task(ctx: InteractionContext) -> None:
    """Validate the options, stage them and open the type-specific modal."""
    services = ctx.services
    options = ctx.options
    task_type = options.get("type")
    if task_type not in TASK_TYPES:
        raise HandlerError("❌ Unknown task type.", error_type="validation")

    title = str(options.get("title", "")).strip()
    description = str(options.get("description", "")).strip()
    if not title or len(title) > 100:
        raise HandlerError("❌ Task title must be between 1 and 100 characters.", error_type="validation")
    if not description or len(description) > 500:
        raise HandlerError("❌ Task description must be between 1 and 500 characters.", error_type="validation")
    points = int(options.get("points", 0))
    if not 1 <= points <= 10000:
        raise HandlerError("❌ Points must be between 1 and 10000.", error_type="validation")
    duration = int(options.get("duration") or DEFAULT_DURATION_HOURS)
    if not 1 <= duration <= 8760:
        raise HandlerError("❌ Duration must be between 1 and 8760 hours.", error_type="validation")

    link = await require_server_link(ctx)

    staged = {
        "type": task_type,
        "title": title,
        "description": description,
        "points": points,
        "duration": duration,
        "guildId": ctx.guild_id,
        "userId": ctx.user_id,
        "communityId": link.community_id,
    }
    await services.cache.set_json(staging_key(ctx.user_id, ctx.guild_id), staged, ttl=STAGING_TTL_SECONDS)
    await ctx.show_modal(build_task_modal(task_type))
    ctx.outcome_detail = "modal shown"


async def submit_task_modal(ctx: InteractionContext) -> None:
    """Create the staged task on the Platform and post it to the channel."""
    services = ctx.services
    key = staging_key(ctx.user_id, ctx.guild_id)
    staged = await services.cache.get_json(key)
    if not staged:
        raise HandlerError("❌ Task creation session expired. Please try again.", error_type="session_expired")

    payload = build_task_payload(staged, ctx.envelope.modal_fields, ctx.channel_id)
    # Consumed only once the fields validate; a concurrent submit finds it gone
    if not await services.cache.delete(key):
        raise HandlerError("❌ Task creation session expired. Please try again.", error_type="session_expired")
    await ctx.acknowledge()

    try:
        created = await services.platform.create_social_task(payload) or {}
    except APIError as e:
        if 400 <= e.status_code < 500:
            raise HandlerError(
                "❌ Failed to create task. Please check your inputs and try again.",
                error_type="validation",
            ) from e
        raise

    task = {
        **payload,
        "points": staged["points"],
        "duration": staged["duration"],
        "status": "active",
        "endTime": payload["schedule"]["endDate"],
        **created,
    }
    task_id = task_id_of(task)
    message_id = await ctx.post_to_channel(task_reply(task))

    async with services.session_factory() as session:
        await services.task_posts.create_task_post(
            session,
            task_id=task_id,
            guild_id=ctx.guild_id,
            channel_id=ctx.channel_id,
            message_id=message_id,
            created_by=ctx.user_id,
            task_data=task,
            duration_hours=staged["duration"],
        )
        await services.server_links.record_activity(session, ctx.guild_id, "tasks_created")

    services.audit.record("task_created", user_id=ctx.user_id, guild_id=ctx.guild_id, task_id=task_id)
    logger.info(f"✅ Task {task_id} created in guild {ctx.guild_id} by {ctx.user_id}")
    await ctx.respond_text(f'✅ Task "{task.get("title", staged["title"])}" has been created and posted to this channel!')


async def list_tasks(ctx: InteractionContext) -> None:
    services = ctx.services
    status = ctx.options.get("status") or "active"
    if status not in TASK_STATUSES:
        raise HandlerError("❌ Unknown status filter.", error_type="validation")

    link = await require_server_link(ctx)
    await ctx.acknowledge(ephemeral=False)

    tasks = await services.platform.list_community_tasks(link.community_id, status=status, limit=TASK_LIST_LIMIT)
    if tasks:
        await services.cache.set_json(task_list_key(ctx.user_id, ctx.guild_id), tasks, ttl=TASK_LIST_TTL_SECONDS)
    await ctx.respond(task_list_reply(tasks, status))


async def select_task_details(ctx: InteractionContext) -> None:
    tasks = await ctx.services.cache.get_json(task_list_key(ctx.user_id, ctx.guild_id))
    if tasks is None:
        raise HandlerError("❌ Task list session expired. Please run the command again.", error_type="session_expired")

    selected = ctx.envelope.values[0] if ctx.envelope.values else None
    task = next((task for task in tasks if task_id_of(task) == selected), None)
    if task is None:
        raise HandlerError("❌ Selected task not found.", error_type="not_found")

    status = task.get("status", "active")
    components = task_components(task_id_of(task), status) if status == "active" else []
    await ctx.respond(Reply(embed=task_detail_embed(task), components=components))


async def view_task(ctx: InteractionContext) -> None:
    services = ctx.services
    task_id = ctx.argument
    try:
        task = await services.platform.get_social_task(task_id)
    except APIError as e:
        if e.status_code == 404:
            raise HandlerError("❌ Task not found or no longer available.", error_type="not_found") from e
        raise

    if ctx.guild_id is not None:
        async with services.session_factory() as session:
            post = await services.task_posts.get_task_post(session, task_id, ctx.guild_id)
            if post is not None:
                await services.task_posts.record_task_view(session, post, ctx.user_id)

    await ctx.respond(Reply(embed=task_detail_embed(task)))


def _completion_message(task: dict[str, Any], result: dict[str, Any]) -> str:
    if result.get("message"):
        return str(result["message"])
    points = task_points(task) or 0
    if task.get("type") == "custom":
        return f"📝 Task completion submitted for review! You'll receive {points} points once approved."
    return f"🎉 Task completed successfully! You earned {points} points!"


async def complete_task(ctx: InteractionContext) -> None:
    """Submit a completion for the clicking user's linked Platform account."""
    services = ctx.services
    task_id = ctx.argument
    account = await require_user_link(ctx)
    await ctx.acknowledge()

    try:
        task = await services.platform.get_social_task(task_id) or {}
    except APIError as e:
        if e.status_code == 404:
            raise HandlerError("❌ Task not found or no longer available.", error_type="not_found") from e
        raise
    if task.get("status", "active") != "active":
        raise HandlerError("❌ This task is no longer active.", error_type="task_inactive")

    completion = {
        "userId": account.platform_user_id,
        "discordId": ctx.user_id,
        "discordUsername": ctx.envelope.username,
        "completedAt": datetime.now(timezone.utc).isoformat(),
        "source": "discord_bot",
    }
    try:
        result = await services.platform.complete_social_task(task_id, completion) or {}
    except APIError as e:
        if e.status_code == 409:
            raise HandlerError("✅ You have already completed this task!", error_type="already_completed") from e
        if 400 <= e.status_code < 500:
            raise HandlerError(f"❌ {e.message}", error_type="completion_rejected") from e
        raise

    async with services.session_factory() as session:
        if ctx.guild_id is not None:
            post = await services.task_posts.get_task_post(session, task_id, ctx.guild_id)
            if post is not None:
                await services.task_posts.record_task_completion(session, post, ctx.user_id)
        await services.user_links.record_activity(session, ctx.user_id, "tasks_completed")

    services.audit.record("task_completed", user_id=ctx.user_id, guild_id=ctx.guild_id, task_id=task_id)
    await ctx.respond_text(_completion_message(task, result))


ROUTES = [
    Route(CATEGORY_COMMAND, "create-task", create_task, operation="task_creation"),
    Route(CATEGORY_MODAL, MODAL_PREFIX, submit_task_modal, prefix=True, operation="task_creation"),
    Route(CATEGORY_COMMAND, "list-tasks", list_tasks, operation="task_listing"),
    Route(CATEGORY_MENU, "select_task_details", select_task_details, operation="task_listing"),
    Route(CATEGORY_BUTTON, "view_task", view_task, prefix=True, operation="task_listing"),
    Route(CATEGORY_BUTTON, "complete_task", complete_task, prefix=True, operation="task_listing"),
]


# Commands

@plugin.command
@lightbulb.option("duration", "Duration in hours (default: 168 hours = 1 week)", type=int, required=False,
                  min_value=1, max_value=8760)
@lightbulb.option("points", "Points reward for completing the task", type=int, required=True,
                  min_value=1, max_value=10000)
@lightbulb.option("description", "Description of the task", type=str, required=True, max_length=500)
@lightbulb.option("title", "Title of the task", type=str, required=True, max_length=100)
@lightbulb.option(
    "type",
    "Type of social task to create",
    type=str,
    required=True,
    choices=[hikari.CommandChoice(name=TASK_TYPE_LABELS[value].split(" ", 1)[1], value=value) for value in TASK_TYPES],
)
@lightbulb.command("create-task", "Create a new social task for your community")
@lightbulb.implements(lightbulb.SlashCommand)
async def create_task_command(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx)


@plugin.command
@lightbulb.option(
    "status",
    "Filter tasks by status",
    type=str,
    required=False,
    choices=[hikari.CommandChoice(name=value.capitalize(), value=value) for value in TASK_STATUSES],
)
@lightbulb.command("list-tasks", "List social tasks for your community")
@lightbulb.implements(lightbulb.SlashCommand)
async def list_tasks_command(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx)


def load(bot: lightbulb.BotApp) -> None:
    """Load the tasks plugin."""
    bot.add_plugin(plugin)
    register_routes(bot, ROUTES)


def unload(bot: lightbulb.BotApp) -> None:
    """Unload the tasks plugin."""
    unregister_routes(bot, ROUTES)
    bot.remove_plugin(plugin)
