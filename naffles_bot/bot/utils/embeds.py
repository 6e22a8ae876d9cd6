"""Embed builders shared by the bot's plugins and the sync service.

Task and allowlist embeds are rendered only from the Platform snapshot they
are given, never from the current time, so rendering the same snapshot twice
produces identical messages.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import hikari

from naffles_bot.bot.pipeline.context import ButtonSpec, LinkButtonSpec, Reply

COLORS = {
    "primary": hikari.Color(0x3B82F6),
    "success": hikari.Color(0x10B981),
    "warning": hikari.Color(0xF59E0B),
    "error": hikari.Color(0xEF4444),
    "info": hikari.Color(0x6366F1),
    "gray": hikari.Color(0x6B7280),
}

FOOTER = "Powered by Naffles"

TASK_TYPE_LABELS = {
    "twitter_follow": "🐦 Twitter Follow",
    "discord_join": "💬 Discord Join",
    "telegram_join": "📱 Telegram Join",
    "custom": "🔧 Custom Task",
}

STATUS_LABELS = {
    "active": "🎉 Active",
    "completed": "✅ Completed",
    "expired": "❌ Expired",
    "paused": "⚠️ Paused",
    "ended": "ℹ️ Ended",
    "full": "⚠️ Full",
    "removed": "🗑️ Removed",
}

CLOSED_STATUSES = ("completed", "expired", "ended", "removed", "cancelled")


def create_error_embed(message: str, title: str = "❌ Error") -> hikari.Embed:
    return hikari.Embed(title=title, description=message, color=COLORS["error"])


def create_success_embed(title: str, description: str) -> hikari.Embed:
    return hikari.Embed(title=title, description=description, color=COLORS["success"])


def create_info_embed(title: str, description: Optional[str] = None) -> hikari.Embed:
    return hikari.Embed(title=title, description=description, color=COLORS["primary"])


def format_task_type(task_type: str) -> str:
    return TASK_TYPE_LABELS.get(task_type, f"🔧 {task_type}")


def format_status(status: str) -> str:
    return STATUS_LABELS.get(status, f"ℹ️ {status}")


def format_duration(hours: int) -> str:
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"
    if hours < 168:
        days = hours // 24
        return f"{days} day{'s' if days != 1 else ''}"
    weeks = hours // 168
    return f"{weeks} week{'s' if weeks != 1 else ''}"


def truncate(text: Optional[str], limit: int) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[: limit - 3] + "..."


def parse_platform_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings, epoch milliseconds or datetimes to aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def task_points(task: dict[str, Any]) -> Optional[int]:
    if task.get("points") is not None:
        return task["points"]
    rewards = task.get("rewards") or {}
    return rewards.get("points")


def task_end_time(task: dict[str, Any]) -> Optional[datetime]:
    schedule = task.get("schedule") or {}
    return parse_platform_datetime(task.get("endTime") or task.get("end_time") or schedule.get("endDate"))


def task_embed(task: dict[str, Any]) -> hikari.Embed:
    """Public embed for a social task."""
    status = task.get("status", "active")
    embed = hikari.Embed(
        title=f"🎯 {task.get('title', 'Untitled task')}",
        description=truncate(task.get("description"), 500),
        color=COLORS["gray"] if status in CLOSED_STATUSES else COLORS["primary"],
    )
    points = task_points(task)
    if points is not None:
        embed.add_field("💰 Reward", f"{points} points", inline=True)
    if task.get("duration"):
        embed.add_field("⏰ Duration", format_duration(int(task["duration"])), inline=True)
    embed.add_field("📊 Status", format_status(status), inline=True)
    if task.get("type"):
        embed.add_field("🏷️ Type", format_task_type(task["type"]), inline=True)
    completed_by = task.get("completedBy", task.get("completions"))
    if completed_by is not None:
        embed.add_field("✅ Completed By", f"{completed_by} users", inline=True)
    requirements = task.get("requirements") or []
    if requirements:
        embed.add_field("ℹ️ Requirements", "\n".join(str(item) for item in requirements))
    end_time = task_end_time(task)
    if end_time is not None:
        embed.add_field("⏳ Ends", f"<t:{int(end_time.timestamp())}:R>", inline=True)
    embed.set_footer(FOOTER)
    return embed


def task_components(task_id: str, status: str = "active") -> list[ButtonSpec]:
    return [
        ButtonSpec(
            custom_id=f"complete_task_{task_id}",
            label="Complete Task",
            style=hikari.ButtonStyle.PRIMARY,
            emoji="✅",
            disabled=status in CLOSED_STATUSES,
        ),
        ButtonSpec(
            custom_id=f"view_task_{task_id}",
            label="View Details",
            style=hikari.ButtonStyle.SECONDARY,
            emoji="👁️",
        ),
    ]


def task_reply(task: dict[str, Any]) -> Reply:
    task_id = str(task.get("id") or task.get("_id"))
    return Reply(
        embed=task_embed(task),
        components=task_components(task_id, task.get("status", "active")),
        ephemeral=False,
    )


def allowlist_embed(allowlist: dict[str, Any], participants: Optional[int] = None) -> hikari.Embed:
    """Public embed for a connected allowlist."""
    status = allowlist.get("status", "active")
    embed = hikari.Embed(
        title=f"🎫 {allowlist.get('title', 'Allowlist')}",
        description=truncate(allowlist.get("description"), 500),
        color=COLORS["gray"] if status in CLOSED_STATUSES else COLORS["success"],
    )
    if allowlist.get("prize"):
        embed.add_field("🏆 Prize", str(allowlist["prize"]), inline=True)
    winner_count = allowlist.get("winnerCount")
    if winner_count is not None:
        embed.add_field("👥 Winners", "Everyone Wins!" if winner_count == "everyone" else str(winner_count), inline=True)
    entry_price = allowlist.get("entryPrice")
    if entry_price is not None:
        embed.add_field("🎪 Entry Price", "Free" if entry_price in (0, "0") else str(entry_price), inline=True)
    if participants is None:
        participants = allowlist.get("participants")
    if participants is not None:
        embed.add_field("👥 Participants", str(participants), inline=True)
    embed.add_field("📊 Status", format_status(status), inline=True)
    social_tasks = allowlist.get("socialTasks") or []
    if social_tasks:
        embed.add_field(
            "ℹ️ Requirements",
            "\n".join(task.get("description") or format_task_type(task.get("taskType", "custom")) for task in social_tasks),
        )
    end_time = parse_platform_datetime(allowlist.get("endTime"))
    if end_time is not None:
        embed.add_field("⏳ Ends", f"<t:{int(end_time.timestamp())}:R>", inline=True)
    winners = allowlist.get("winners") or []
    if winners:
        embed.add_field("🎉 Winners Drawn", f"{len(winners)} winner{'s' if len(winners) != 1 else ''} selected")
    embed.set_footer(FOOTER)
    return embed


def allowlist_components(allowlist_id: str, status: str = "active") -> list[ButtonSpec]:
    return [
        ButtonSpec(
            custom_id=f"enter_allowlist_{allowlist_id}",
            label="Enter Allowlist",
            style=hikari.ButtonStyle.SUCCESS,
            emoji="🎫",
            disabled=status in CLOSED_STATUSES,
        ),
        ButtonSpec(
            custom_id=f"view_allowlist_{allowlist_id}",
            label="View Details",
            style=hikari.ButtonStyle.SECONDARY,
            emoji="👁️",
        ),
    ]


def allowlist_reply(allowlist: dict[str, Any], participants: Optional[int] = None) -> Reply:
    allowlist_id = str(allowlist.get("id") or allowlist.get("_id"))
    return Reply(
        embed=allowlist_embed(allowlist, participants),
        components=allowlist_components(allowlist_id, allowlist.get("status", "active")),
        ephemeral=False,
    )


def website_button(url: str, label: str = "Visit Naffles.com") -> LinkButtonSpec:
    return LinkButtonSpec(url=url, label=label, emoji="🌐")


def reply_fingerprint(reply: Reply) -> tuple:
    """Comparable summary of a reply's visible content."""
    embed = reply.embed
    embed_part: tuple = ()
    if embed is not None:
        embed_part = (
            embed.title,
            embed.description,
            int(embed.color) if embed.color is not None else None,
            tuple((field.name, field.value, field.is_inline) for field in embed.fields),
            embed.footer.text if embed.footer else None,
        )
    return (reply.content, embed_part, tuple(reply.components))
