"""Service container shared by the pipeline, handlers and background jobs."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import hikari
from sqlalchemy.ext.asyncio import AsyncSession

from naffles_bot.bot.pipeline.errors import ErrorClassifier
from naffles_bot.bot.pipeline.fallback import FallbackConfig, FallbackResponder
from naffles_bot.bot.pipeline.permissions import PermissionEvaluator
from naffles_bot.bot.pipeline.rate_limiter import CooldownTracker, RateLimiter
from naffles_bot.bot.pipeline.router import HandlerRegistry
from naffles_bot.bot.services.audit_service import AuditRecorder
from naffles_bot.bot.services.base import CacheManagerProtocol
from naffles_bot.bot.services.cleanup_service import DataCleanupService
from naffles_bot.bot.services.health_service import HealthMonitor
from naffles_bot.bot.services.platform_service import PlatformService
from naffles_bot.bot.services.security_service import SecurityMonitor
from naffles_bot.bot.services.sync_service import RealTimeSync
from naffles_bot.shared.config import Settings
from naffles_bot.shared.encryption import TokenCipher
from naffles_bot.web.crud import (
    AllowlistOperations,
    InteractionLogOperations,
    MaintenanceOperations,
    ServerLinkOperations,
    TaskPostOperations,
    UserLinkOperations,
)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

REQUIRED_BOT_PERMISSIONS = (
    hikari.Permissions.SEND_MESSAGES
    | hikari.Permissions.EMBED_LINKS
    | hikari.Permissions.USE_APPLICATION_COMMANDS
)


@dataclass
class BotServices:
    """Everything a handler may touch, wired once at start-up.

    The Discord-facing callables default to "unknown" answers so the
    container can be built without a running gateway.
    """

    settings: Settings
    platform: PlatformService
    cache: CacheManagerProtocol
    session_factory: SessionFactory
    cipher: TokenCipher
    registry: HandlerRegistry = field(default_factory=HandlerRegistry)
    classifier: ErrorClassifier = field(default_factory=ErrorClassifier)
    audit: AuditRecorder = field(default_factory=AuditRecorder)
    cooldowns: CooldownTracker = field(default_factory=CooldownTracker)
    rate_limiter: Optional[RateLimiter] = None
    permissions: Optional[PermissionEvaluator] = None
    fallback: Optional[FallbackResponder] = None
    security: Optional[SecurityMonitor] = None
    health: Optional[HealthMonitor] = None
    sync: Optional[RealTimeSync] = None
    cleanup: Optional[DataCleanupService] = None

    discord_connected: Callable[[], bool] = lambda: True
    discord_latency: Callable[[], Optional[float]] = lambda: None
    bot_permissions: Callable[[str], Optional[hikari.Permissions]] = lambda guild_id: None

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    commands_processed: int = 0
    errors_encountered: int = 0

    def __post_init__(self) -> None:
        if self.rate_limiter is None:
            self.rate_limiter = RateLimiter(self.cache)
        if self.permissions is None:
            self.permissions = PermissionEvaluator(self.settings.min_account_age_days)
        if self.fallback is None:
            self.fallback = FallbackResponder(FallbackConfig(
                website_url=self.settings.website_url,
                support_url=self.settings.support_url,
                status_url=self.settings.status_url,
                help_chat_url=self.settings.help_chat_url,
            ))
        if self.security is None:
            self.security = SecurityMonitor(self.settings.min_account_age_days)
        self.server_links = ServerLinkOperations()
        self.user_links = UserLinkOperations(self.cipher)
        self.task_posts = TaskPostOperations()
        self.allowlists = AllowlistOperations()
        self.interaction_logs = InteractionLogOperations()
        self.maintenance = MaintenanceOperations()

    @property
    def error_rate(self) -> float:
        return self.errors_encountered / max(self.commands_processed, 1)

    @property
    def uptime_hours(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds() / 3600

    def has_required_permissions(self, guild_id: Optional[str]) -> Optional[bool]:
        if guild_id is None:
            return None
        permissions = self.bot_permissions(guild_id)
        if permissions is None:
            return None
        if permissions & hikari.Permissions.ADMINISTRATOR:
            return True
        return (permissions & REQUIRED_BOT_PERMISSIONS) == REQUIRED_BOT_PERMISSIONS
