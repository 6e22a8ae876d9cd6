"""Permission evaluation for commands and management buttons."""

from datetime import datetime, timedelta, timezone

import hikari
import pytest

from naffles_bot.bot.pipeline.permissions import CommandPolicy, PermissionEvaluator
from naffles_bot.web.models import ServerCommunityLink
from tests.conftest import OWNER_ID, make_envelope


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def evaluator():
    return PermissionEvaluator(min_account_age_days=7, clock=FakeClock())


def test_guild_only_command_denied_in_dms(evaluator):
    result = evaluator.evaluate(make_envelope(guild_id=None), "status")
    assert not result.allowed
    assert result.reason == "Command can only be used in servers"


def test_help_works_in_dms(evaluator):
    assert evaluator.evaluate(make_envelope(guild_id=None), "help").allowed


def test_bots_are_denied(evaluator):
    result = evaluator.evaluate(make_envelope(is_bot=True), "status")
    assert result.reason == "Bots cannot use commands"


def test_young_accounts_are_denied_for_sensitive_commands(evaluator):
    envelope = make_envelope(
        account_created_at=datetime.now(timezone.utc) - timedelta(days=2),
        permissions=hikari.Permissions.MANAGE_GUILD,
    )
    result = evaluator.evaluate(envelope, "link-community")
    assert result.reason == "Account must be at least 7 days old to use commands"
    assert evaluator.evaluate(envelope, "status").allowed


@pytest.mark.parametrize("age, allowed", [(timedelta(days=7), True), (timedelta(days=7) - timedelta(seconds=1), False)])
def test_account_age_floor_is_inclusive(evaluator, age, allowed):
    received_at = datetime(2024, 6, 1, tzinfo=timezone.utc)
    envelope = make_envelope(
        received_at=received_at,
        account_created_at=received_at - age,
        permissions=hikari.Permissions.MANAGE_GUILD,
    )
    assert evaluator.evaluate(envelope, "link-community").allowed is allowed


@pytest.mark.parametrize(
    "overrides",
    [
        {"permissions": hikari.Permissions.MANAGE_GUILD},
        {"permissions": hikari.Permissions.ADMINISTRATOR},
        {"user_id": OWNER_ID},
    ],
)
def test_managers_may_link(evaluator, overrides):
    assert evaluator.evaluate(make_envelope(**overrides), "link-community").allowed


def test_regular_members_may_not_link(evaluator):
    result = evaluator.evaluate(make_envelope(permissions=hikari.Permissions.SEND_MESSAGES), "link-community")
    assert result.reason == "Missing required permissions: Manage Server"


def test_security_requires_admin(evaluator):
    result = evaluator.evaluate(make_envelope(), "security")
    assert result.reason == "This command requires administrator permissions"
    assert evaluator.evaluate(make_envelope(permissions=hikari.Permissions.MANAGE_GUILD), "security").allowed


def test_role_override_grants_task_creation(evaluator):
    link = ServerCommunityLink(
        guild_id="1",
        community_id="c",
        linked_by="2",
        bot_config={"allowed_roles": {"create-task": ["555"]}},
    )
    envelope = make_envelope(role_ids=("555", "777"))
    assert evaluator.evaluate(envelope, "create-task", link).allowed
    assert not evaluator.evaluate(make_envelope(role_ids=("777",)), "create-task", link).allowed


def test_role_override_ignored_where_not_allowed(evaluator):
    link = ServerCommunityLink(
        guild_id="1",
        community_id="c",
        linked_by="2",
        bot_config={"allowed_roles": {"link-community": ["555"]}},
    )
    assert not evaluator.evaluate(make_envelope(role_ids=("555",)), "link-community", link).allowed


def test_hourly_usage_limit():
    clock = FakeClock()
    evaluator = PermissionEvaluator(clock=clock)
    envelope = make_envelope(permissions=hikari.Permissions.MANAGE_GUILD)
    assert evaluator.evaluate(envelope, "link-community").allowed
    assert evaluator.evaluate(envelope, "link-community").allowed

    result = evaluator.evaluate(envelope, "link-community")
    assert result.reason == "Command usage limit exceeded (2 per hour)"

    clock.now += 3600
    assert evaluator.evaluate(envelope, "link-community").allowed


def test_commands_without_policy_are_allowed_in_guilds(evaluator):
    assert evaluator.evaluate(make_envelope(), "brand-new-command").allowed


def test_evaluator_failure_denies():
    evaluator = PermissionEvaluator(policies={"status": CommandPolicy(requires_account_age=True)})
    envelope = make_envelope(account_created_at="not a datetime")
    result = evaluator.evaluate(envelope, "status")
    assert result.reason == "Permission check failed"
