"""Applying Platform updates to posted messages."""

from datetime import datetime, timedelta, timezone

import pytest

from naffles_bot.bot.services.sync_service import RealTimeSync
from naffles_bot.shared.database import get_db_session_context
from tests.conftest import CHANNEL_ID, GUILD_ID, OWNER_ID

T0 = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def sync(database, gateway):
    return RealTimeSync(get_db_session_context, gateway)


async def post_task(sync, message_id="7001", guild_id=GUILD_ID, task_id="task-1"):
    async with get_db_session_context() as session:
        await sync.task_ops.create_task_post(
            session, task_id, guild_id, CHANNEL_ID, message_id, OWNER_ID,
            {"id": task_id, "title": "Follow us", "type": "twitter_follow", "points": 50},
        )


async def connect_allowlist(sync, message_id="8001"):
    async with get_db_session_context() as session:
        await sync.allowlist_ops.create_allowlist_connection(
            session, "al-1", GUILD_ID, CHANNEL_ID, message_id, OWNER_ID,
            {"id": "al-1", "title": "Genesis Mint", "winnerCount": 10},
        )


async def load_posts(sync, task_id="task-1"):
    async with get_db_session_context() as session:
        return await sync.task_ops.get_posts_for_task(session, task_id)


async def test_task_update_edits_message_and_stores_snapshot(sync, gateway):
    await post_task(sync)
    result = await sync.apply_task_update("task-1", {"status": "completed", "completions": 12}, T0)

    assert result.updated == 1
    channel_id, message_id, reply = gateway.edits[0]
    assert (channel_id, message_id) == (CHANNEL_ID, "7001")
    assert reply.embed.title == "🎯 Follow us"
    assert reply.components[0].disabled

    post = (await load_posts(sync))[0]
    assert post.status == "completed"
    assert post.task_data["completions"] == 12
    assert post.task_data["title"] == "Follow us"


async def test_reapplying_latest_update_is_a_no_op(sync, gateway):
    await post_task(sync)
    await sync.apply_task_update("task-1", {"status": "completed"}, T0)
    result = await sync.apply_task_update("task-1", {"status": "completed"}, T0)
    assert result.unchanged == 1
    assert len(gateway.edits) == 1


async def test_older_update_is_discarded(sync, gateway):
    await post_task(sync)
    await sync.apply_task_update("task-1", {"status": "completed"}, T0)
    result = await sync.apply_task_update("task-1", {"status": "active"}, T0 - timedelta(minutes=5))

    assert result.stale == 1
    assert (await load_posts(sync))[0].status == "completed"
    assert sync.get_metrics()["stale_discarded"] == 1


async def test_newer_update_wins(sync):
    await post_task(sync)
    await sync.apply_task_update("task-1", {"completions": 1}, T0)
    await sync.apply_task_update("task-1", {"completions": 2}, T0 + timedelta(seconds=1))
    assert (await load_posts(sync))[0].task_data["completions"] == 2


async def test_deleted_message_marks_post_removed(sync, gateway):
    await post_task(sync)
    gateway.missing.add("7001")
    result = await sync.apply_task_update("task-1", {"status": "completed"}, T0)

    assert result.removed == 1
    assert await load_posts(sync) == []
    assert sync.get_metrics()["messages_removed"] == 1


async def test_failed_edit_is_counted_and_others_continue(sync, gateway):
    await post_task(sync, message_id="7001", guild_id=GUILD_ID)
    await post_task(sync, message_id="7002", guild_id="900000000000000099")
    gateway.failing.add("7001")

    result = await sync.apply_task_update("task-1", {"status": "completed"}, T0)
    assert result.failed == 1
    assert result.updated == 1
    assert [edit[1] for edit in gateway.edits] == ["7002"]

    metrics = sync.get_metrics()
    assert metrics["failed_syncs"] == 1
    assert metrics["success_rate"] == 0.0


async def test_allowlist_winners_are_recorded(sync, gateway):
    await connect_allowlist(sync)
    result = await sync.apply_allowlist_update(
        "al-1",
        {"status": "completed", "participants": 240, "winners": ["u1", "u2"]},
        T0,
    )
    assert result.updated == 1
    embed = gateway.edits[0][2].embed
    assert "🎉 Winners Drawn" in [field.name for field in embed.fields]

    async with get_db_session_context() as session:
        connection = (await sync.allowlist_ops.get_connections_for_allowlist(session, "al-1"))[0]
    assert connection.winner_data["drawn"] is True
    assert connection.winner_data["winners"] == ["u1", "u2"]
    assert connection.status == "completed"


async def test_task_event_payload(sync, gateway):
    await post_task(sync)
    result = await sync.handle_event(
        "task.status_changed",
        {"taskId": "task-1", "status": "expired", "timestamp": "2026-05-01T12:00:00Z"},
    )
    assert result.updated == 1
    post = (await load_posts(sync))[0]
    assert post.status == "expired"


async def test_allowlist_event_payload(sync, gateway):
    await connect_allowlist(sync)
    result = await sync.handle_event(
        "allowlist.updated",
        {"allowlistId": "al-1", "participants": 17, "updatedAt": 1777636800000},
    )
    assert result.updated == 1
    embed = gateway.edits[0][2].embed
    assert any(field.name == "👥 Participants" and field.value == "17" for field in embed.fields)


async def test_unknown_event_is_ignored(sync):
    assert await sync.handle_event("raffle.drawn", {"id": "r1"}) is None
    assert sync.get_metrics()["webhook_events"] == 1


async def test_community_settings_are_stored_on_link(sync, services, linked_guild):
    await sync.handle_event(
        "community.settings_changed",
        {"communityId": "comm-1", "settings": {"pointsName": "Gems"}},
    )
    async with get_db_session_context() as session:
        link = await services.server_links.get_server_link(session, GUILD_ID)
    assert link.bot_config["community_settings"] == {"pointsName": "Gems"}


async def test_settings_for_unlinked_community(sync):
    assert await sync.apply_community_settings("nobody", {"a": 1}) is False


async def test_update_without_posts_touches_nothing(sync, gateway):
    result = await sync.apply_task_update("task-unknown", {"status": "completed"}, T0)
    assert result.touched == 0
    assert gateway.edits == []
    assert sync.get_metrics()["success_rate"] == 100.0
