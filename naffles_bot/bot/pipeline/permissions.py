"""Permission decisions for (user, server, command) triples."""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Optional

import hikari

from naffles_bot.bot.pipeline.context import InteractionEnvelope
from naffles_bot.web.models import ServerCommunityLink

logger = logging.getLogger(__name__)

REASON_GUILD_ONLY = "Command can only be used in servers"
REASON_BOT = "Bots cannot use commands"
REASON_ACCOUNT_AGE = "Account must be at least {days} days old to use commands"
REASON_ADMIN = "This command requires administrator permissions"
REASON_MISSING = "Missing required permissions: {permissions}"
REASON_USAGE = "Command usage limit exceeded ({limit} per hour)"
REASON_ERROR = "Permission check failed"


@dataclass(frozen=True)
class CommandPolicy:
    """Who may run a command and how often."""

    requires_manage: bool = False
    requires_admin: bool = False
    role_override: bool = False
    guild_only: bool = True
    requires_account_age: bool = False
    max_uses_per_hour: Optional[int] = None


COMMAND_POLICIES: dict[str, CommandPolicy] = {
    "link-community": CommandPolicy(requires_manage=True, requires_account_age=True, max_uses_per_hour=2),
    "unlink_community": CommandPolicy(requires_manage=True, requires_account_age=True),
    "relink_community": CommandPolicy(requires_manage=True, requires_account_age=True),
    "create-task": CommandPolicy(requires_manage=True, role_override=True, requires_account_age=True, max_uses_per_hour=10),
    "connect-allowlist": CommandPolicy(requires_manage=True, role_override=True, requires_account_age=True, max_uses_per_hour=5),
    "allowlist-analytics": CommandPolicy(requires_manage=True, role_override=True, requires_account_age=True, max_uses_per_hour=10),
    "security": CommandPolicy(requires_admin=True, requires_account_age=True, max_uses_per_hour=10),
    "list-tasks": CommandPolicy(max_uses_per_hour=20),
    "status": CommandPolicy(max_uses_per_hour=30),
    "help": CommandPolicy(guild_only=False, max_uses_per_hour=50),
}
DEFAULT_POLICY = CommandPolicy()

MANAGE_PERMISSIONS = hikari.Permissions.ADMINISTRATOR | hikari.Permissions.MANAGE_GUILD


@dataclass(frozen=True)
class PermissionResult:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "PermissionResult":
        return cls(True, None)

    @classmethod
    def deny(cls, reason: str) -> "PermissionResult":
        return cls(False, reason)


class PermissionEvaluator:
    """Decide whether an interaction may run a command.

    Rules, in order: guild-only commands, bot accounts, account age floor,
    manage/admin requirements (guild owner, Administrator and Manage Server
    always pass; per-server role overrides pass where the command allows
    them), then the hourly usage budget.

    Args:
        min_account_age_days: Account age floor
        policies: Overrides for :data:`COMMAND_POLICIES`
        clock: Monotonic clock for hourly budgets
    """

    def __init__(
        self,
        min_account_age_days: int = 7,
        policies: Optional[dict[str, CommandPolicy]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_account_age_days = min_account_age_days
        self.policies = {**COMMAND_POLICIES, **(policies or {})}
        self._clock = clock
        self._usage: dict[tuple[str, str], deque[float]] = defaultdict(deque)

    def policy_for(self, command: str) -> CommandPolicy:
        return self.policies.get(command, DEFAULT_POLICY)

    def check_account_age(self, envelope: InteractionEnvelope) -> PermissionResult:
        age = envelope.account_age_days
        if age is not None and age < self.min_account_age_days:
            return PermissionResult.deny(REASON_ACCOUNT_AGE.format(days=self.min_account_age_days))
        return PermissionResult.allow()

    @staticmethod
    def has_manage_permission(
        envelope: InteractionEnvelope,
        command: Optional[str] = None,
        server_link: Optional[ServerCommunityLink] = None,
        allow_role_override: bool = False,
    ) -> bool:
        if envelope.guild_owner_id is not None and envelope.guild_owner_id == envelope.user_id:
            return True
        if envelope.permissions & MANAGE_PERMISSIONS:
            return True
        if allow_role_override and server_link is not None and command is not None:
            allowed_roles = set(server_link.allowed_roles_for(command))
            return bool(allowed_roles.intersection(envelope.role_ids))
        return False

    def _usage_exceeded(self, envelope: InteractionEnvelope, command: str, limit: int) -> bool:
        now = self._clock()
        uses = self._usage[(envelope.user_id, command)]
        while uses and now - uses[0] >= 3600:
            uses.popleft()
        return len(uses) >= limit

    def _record_use(self, envelope: InteractionEnvelope, command: str) -> None:
        self._usage[(envelope.user_id, command)].append(self._clock())

    def _evaluate(
        self,
        envelope: InteractionEnvelope,
        command: str,
        server_link: Optional[ServerCommunityLink],
    ) -> PermissionResult:
        policy = self.policy_for(command)

        if policy.guild_only and envelope.guild_id is None:
            return PermissionResult.deny(REASON_GUILD_ONLY)
        if envelope.is_bot:
            return PermissionResult.deny(REASON_BOT)
        if policy.requires_account_age:
            age_result = self.check_account_age(envelope)
            if not age_result.allowed:
                return age_result

        if policy.requires_admin and not self.has_manage_permission(envelope):
            return PermissionResult.deny(REASON_ADMIN)
        if policy.requires_manage and not self.has_manage_permission(
            envelope, command, server_link, allow_role_override=policy.role_override
        ):
            return PermissionResult.deny(REASON_MISSING.format(permissions="Manage Server"))

        if policy.max_uses_per_hour is not None:
            if self._usage_exceeded(envelope, command, policy.max_uses_per_hour):
                return PermissionResult.deny(REASON_USAGE.format(limit=policy.max_uses_per_hour))
            self._record_use(envelope, command)

        return PermissionResult.allow()

    def evaluate(
        self,
        envelope: InteractionEnvelope,
        command: str,
        server_link: Optional[ServerCommunityLink] = None,
    ) -> PermissionResult:
        """Evaluate a command for an interaction; evaluator failures deny."""
        try:
            return self._evaluate(envelope, command, server_link)
        except Exception as e:
            logger.error(f"Permission check for {command} failed: {e}")
            return PermissionResult.deny(REASON_ERROR)
