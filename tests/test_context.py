"""Interaction reply state machine and envelope helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from naffles_bot.bot.pipeline.context import (
    InteractionContext,
    InteractionState,
    InteractionStateError,
    ModalSpec,
    Reply,
    TextInputSpec,
    snowflake_created_at,
)
from tests.conftest import CHANNEL_ID, FakeResponder, make_envelope

MODAL = ModalSpec("create_task_modal_1", "Create Social Task", (TextInputSpec("twitter_username", "Username", 50),))


@pytest.fixture
def ctx():
    return InteractionContext(make_envelope(), FakeResponder())


async def test_first_respond_creates_response(ctx):
    await ctx.respond(Reply(content="hi"))
    assert ctx.responder.kinds == ["create"]
    assert ctx.state is InteractionState.REPLIED


async def test_respond_after_acknowledge_edits(ctx):
    await ctx.acknowledge()
    await ctx.respond(Reply(content="done"))
    assert ctx.responder.kinds == ["defer", "edit"]
    assert ctx.responder.calls[0] == ("defer", True)


async def test_later_replies_are_followups(ctx):
    await ctx.respond(Reply(content="one"))
    await ctx.respond(Reply(content="two"))
    await ctx.respond(Reply(content="three"))
    assert ctx.responder.kinds == ["create", "followup", "followup"]
    assert ctx.state is InteractionState.FOLLOWED


async def test_acknowledge_is_idempotent(ctx):
    await ctx.acknowledge(ephemeral=False)
    await ctx.acknowledge()
    assert ctx.responder.kinds == ["defer"]
    assert ctx.responder.calls[0] == ("defer", False)


async def test_acknowledge_after_reply_does_nothing(ctx):
    await ctx.respond(Reply(content="hi"))
    await ctx.acknowledge()
    assert ctx.responder.kinds == ["create"]


async def test_modal_must_be_initial_response(ctx):
    await ctx.show_modal(MODAL)
    assert ctx.responder.kinds == ["modal"]
    assert ctx.is_answered


async def test_modal_after_acknowledge_is_rejected(ctx):
    await ctx.acknowledge()
    with pytest.raises(InteractionStateError):
        await ctx.show_modal(MODAL)


async def test_post_to_channel_defaults_to_interaction_channel(ctx):
    message_id = await ctx.post_to_channel(Reply(content="public", ephemeral=False))
    assert message_id == "5001"
    assert ctx.responder.posted[0][0] == CHANNEL_ID
    assert ctx.state is InteractionState.FRESH


async def test_post_to_channel_without_channel_fails():
    ctx = InteractionContext(make_envelope(channel_id=None), FakeResponder())
    with pytest.raises(InteractionStateError):
        await ctx.post_to_channel(Reply(content="x"))


def test_account_age_from_created_at():
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    envelope = make_envelope(account_created_at=now - timedelta(days=3), received_at=now)
    assert envelope.account_age_days == pytest.approx(3.0)


def test_account_age_falls_back_to_snowflake():
    # 2015-01-01 plus a few milliseconds
    envelope = make_envelope(user_id="4194304", account_created_at=None)
    assert envelope.account_age_days > 3000


def test_account_age_unknown_for_non_numeric_ids():
    envelope = make_envelope(user_id="not-a-snowflake", account_created_at=None)
    assert envelope.account_age_days is None


def test_snowflake_timestamp():
    assert snowflake_created_at(0) == datetime(2015, 1, 1, tzinfo=timezone.utc)
