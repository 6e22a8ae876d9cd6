"""Degraded responses for when upstream services fail.

The responder builds replies that send users to the website instead of
leaving them with a bare error: outage notices with deep links, a
maintenance notice, and a last-resort message carrying an error ID support
can correlate with the logs.
"""

from __future__ import annotations

import logging
import random
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import hikari

from naffles_bot.bot.pipeline.context import LinkButtonSpec, Reply
from naffles_bot.bot.pipeline.errors import DOMAIN_DATABASE, DOMAIN_DISCORD, ErrorVerdict

logger = logging.getLogger(__name__)

OUTAGE_COLOR = hikari.Color(0xFF6B35)
MAINTENANCE_COLOR = hikari.Color(0x6C5CE7)


@dataclass(frozen=True)
class FallbackConfig:
    website_url: str = "https://naffles.com"
    support_url: str = "https://naffles.com/support"
    status_url: str = "https://status.naffles.com"
    help_chat_url: str = "https://discord.gg/naffles"


@dataclass(frozen=True)
class DegradationPlan:
    alternative: str
    message: str
    path: str


DEGRADATION_MAP: dict[str, DegradationPlan] = {
    "task_creation": DegradationPlan("website_form", "Create tasks directly on the website", "/community/tasks/create"),
    "task_listing": DegradationPlan("website_dashboard", "View tasks on your community dashboard", "/community/tasks"),
    "allowlist_management": DegradationPlan("website_dashboard", "Manage allowlists from your community dashboard", "/community/allowlists"),
    "community_linking": DegradationPlan("manual_setup", "Link your community manually in settings", "/community/settings"),
}
DEFAULT_DEGRADATION = DegradationPlan("website_access", "Use the website for full functionality", "")


@dataclass
class MaintenanceInfo:
    reason: Optional[str] = None
    estimated_end: Optional[datetime] = None
    started_at: Optional[datetime] = None


def generate_error_id(clock: Callable[[], float] = time.time) -> str:
    """``<epoch ms>-<7 random base36 chars>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{int(clock() * 1000)}-{suffix}"


class FallbackResponder:
    """Builds degraded replies and counts how often they were needed."""

    def __init__(self, config: Optional[FallbackConfig] = None, clock: Callable[[], float] = time.time):
        self.config = config or FallbackConfig()
        self._clock = clock
        self.maintenance: Optional[MaintenanceInfo] = None
        self.reset_stats()

    # Maintenance mode

    @property
    def maintenance_active(self) -> bool:
        return self.maintenance is not None

    def enable_maintenance(self, reason: Optional[str] = None, estimated_end: Optional[datetime] = None) -> None:
        self.maintenance = MaintenanceInfo(
            reason=reason,
            estimated_end=estimated_end,
            started_at=datetime.now(timezone.utc),
        )
        logger.warning(f"Maintenance mode enabled: {reason or 'no reason given'}")

    def disable_maintenance(self) -> None:
        self.maintenance = None
        logger.info("Maintenance mode disabled")

    # Statistics

    def reset_stats(self) -> None:
        self.stats: dict[str, Any] = {
            "api_failures": 0,
            "database_failures": 0,
            "discord_failures": 0,
            "website_redirects": 0,
            "last_reset": datetime.now(timezone.utc),
        }

    def _record(self, outcome_type: str) -> None:
        if outcome_type.startswith("api"):
            self.stats["api_failures"] += 1
        elif outcome_type.startswith("database"):
            self.stats["database_failures"] += 1
        elif outcome_type.startswith("discord"):
            self.stats["discord_failures"] += 1
        if "unavailable" in outcome_type or outcome_type == "maintenance_mode":
            self.stats["website_redirects"] += 1

    def get_stats(self) -> dict[str, Any]:
        return {**self.stats, "maintenance_mode": self.maintenance_active}

    # Building blocks

    def degradation_for(self, operation: str) -> DegradationPlan:
        return DEGRADATION_MAP.get(operation, DEFAULT_DEGRADATION)

    def redirect_buttons(self, operation: str = "") -> list[LinkButtonSpec]:
        buttons = [LinkButtonSpec(url=self.config.website_url, label="Visit Naffles.com", emoji="🌐")]
        lowered = operation.lower()
        if "task" in lowered or "social" in lowered:
            buttons.append(LinkButtonSpec(url=f"{self.config.website_url}/community/tasks", label="Manage Tasks", emoji="📋"))
        elif "allowlist" in lowered:
            buttons.append(LinkButtonSpec(url=f"{self.config.website_url}/allowlists", label="View Allowlists", emoji="🎫"))
        buttons.append(LinkButtonSpec(url=self.config.support_url, label="Get Support", emoji="🆘"))
        return buttons

    # Outcomes

    def api_unavailable(self, operation: str) -> Reply:
        self._record("api_unavailable")
        plan = self.degradation_for(operation)
        embed = hikari.Embed(
            title="🔌 Service Temporarily Unavailable",
            description=(
                "The Naffles API is currently unavailable. This is usually temporary and "
                "our team is working to restore service quickly."
            ),
            color=OUTAGE_COLOR,
            timestamp=datetime.now(timezone.utc),
        )
        embed.add_field(
            "🔄 What happened?",
            f'The "{operation}" operation couldn\'t be completed due to a service interruption.',
        )
        embed.add_field(
            "⏰ What can you do?",
            "• Try again in a few minutes\n"
            f"• {plan.message}: {self.config.website_url}{plan.path}\n"
            f"• Check our status page for updates: {self.config.status_url}",
        )
        embed.add_field("🆘 Need immediate help?", "Visit our website or contact support using the buttons below.")
        embed.set_footer("We apologize for the inconvenience • Naffles Discord Bot")

        buttons = self.redirect_buttons(operation)
        if plan.path:
            buttons.insert(1, LinkButtonSpec(url=f"{self.config.website_url}{plan.path}", label="Continue on Website", emoji="➡️"))
        return Reply(embed=embed, components=buttons[:5], ephemeral=True)

    def database_unavailable(self, operation: str) -> Reply:
        self._record("database_unavailable")
        reply = self._redirect_reply(
            "🗄️ Data Temporarily Unavailable",
            "We couldn't reach our records right now. Your data is safe; please try again shortly.",
            operation,
        )
        return reply

    def discord_failure(self, operation: str = "") -> Reply:
        self._record("discord_unavailable")
        return self._redirect_reply(
            "🔌 Discord Connection Issue",
            "We're experiencing issues with Discord. Please use the website for full functionality.",
            operation,
        )

    def _redirect_reply(self, title: str, description: str, operation: str) -> Reply:
        embed = hikari.Embed(title=title, description=description, color=OUTAGE_COLOR, timestamp=datetime.now(timezone.utc))
        embed.add_field(
            "🌐 Alternative Access",
            f"Visit [naffles.com]({self.config.website_url}) to continue using all features.",
        )
        return Reply(embed=embed, components=self.redirect_buttons(operation), ephemeral=True)

    def maintenance_response(self) -> Reply:
        self._record("maintenance_mode")
        info = self.maintenance or MaintenanceInfo()
        embed = hikari.Embed(
            title="🔧 Scheduled Maintenance",
            description=(
                "The Naffles Discord bot is currently undergoing scheduled maintenance to improve "
                "performance and add new features."
            ),
            color=MAINTENANCE_COLOR,
            timestamp=datetime.now(timezone.utc),
        )
        if info.reason:
            embed.add_field("📋 Maintenance Details", info.reason)
        if info.estimated_end:
            remaining = max(0, int(-(-(info.estimated_end - datetime.now(timezone.utc)).total_seconds() // 60)))
            embed.add_field(
                "⏱️ Estimated Completion",
                f"<t:{int(info.estimated_end.timestamp())}:f>\n(~{remaining} minutes remaining)",
            )
        embed.add_field(
            "🌐 Alternative Access",
            "• Visit naffles.com directly\n• All web features remain fully functional\n• Mobile app is also available",
        )
        embed.set_footer("Thank you for your patience during maintenance • Naffles Discord Bot")
        buttons = [
            LinkButtonSpec(url=self.config.website_url, label="Visit Naffles.com", emoji="🌐"),
            LinkButtonSpec(url=self.config.status_url, label="Status Page", emoji="📊"),
            LinkButtonSpec(url=self.config.help_chat_url, label="Support Discord", emoji="💬"),
        ]
        return Reply(embed=embed, components=buttons, ephemeral=True)

    def critical_failure(self, failure_type: str) -> Reply:
        error_id = generate_error_id(self._clock)
        logger.error(f"Critical system failure detected: {failure_type} (error id {error_id})")
        content = (
            "🚨 **Critical System Error**\n\n"
            f"We're experiencing technical difficulties. Please visit {self.config.website_url} "
            f"or contact support at {self.config.support_url}\n\n"
            f"Error ID: {error_id}"
        )
        return Reply(content=content, ephemeral=True)

    def for_verdict(self, verdict: ErrorVerdict, operation: str) -> Reply:
        """Pick the degraded reply matching the failing domain."""
        if verdict.domain == DOMAIN_DISCORD:
            return self.discord_failure(operation)
        if verdict.domain == DOMAIN_DATABASE:
            return self.database_unavailable(operation)
        return self.api_unavailable(operation)
