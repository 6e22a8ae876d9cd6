"""Retention jobs run by the cleanup service."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from naffles_bot.bot.services.cleanup_service import DataCleanupService
from naffles_bot.shared.database import get_db_session_context
from naffles_bot.web.crud import AllowlistOperations, InteractionLogOperations, TaskPostOperations
from naffles_bot.web.models import AllowlistConnection, InteractionLog, TaskPost, UserAccountLink, utcnow
from tests.conftest import CHANNEL_ID, GUILD_ID, OWNER_ID

UNLINKED_GUILD = "900000000000000055"


@pytest.fixture
def cleanup(database):
    return DataCleanupService(get_db_session_context)


async def rows(model):
    async with get_db_session_context() as session:
        return list((await session.execute(select(model))).scalars().all())


async def test_expires_finished_tasks_and_allowlists(cleanup, linked_guild):
    async with get_db_session_context() as session:
        tasks = TaskPostOperations()
        await tasks.create_task_post(
            session, "old", GUILD_ID, CHANNEL_ID, "m1", OWNER_ID, {},
            duration_hours=24, start_time=utcnow() - timedelta(days=2),
        )
        await tasks.create_task_post(session, "fresh", GUILD_ID, CHANNEL_ID, "m2", OWNER_ID, {})
        await AllowlistOperations().create_allowlist_connection(
            session, "al-1", GUILD_ID, CHANNEL_ID, "m3", OWNER_ID, {}, end_time=utcnow() - timedelta(hours=1),
        )

    summary = await cleanup.run_cleanup()

    assert summary["errors"] == 0
    assert summary["jobs"]["expired_tasks"]["processed"] == 1
    assert summary["jobs"]["expired_allowlists"]["processed"] == 1
    statuses = {post.task_id: post.status for post in await rows(TaskPost)}
    assert statuses == {"old": "expired", "fresh": "active"}


async def test_orphans_are_reported_and_stay_active(cleanup, linked_guild):
    async with get_db_session_context() as session:
        tasks = TaskPostOperations()
        await tasks.create_task_post(session, "kept", GUILD_ID, CHANNEL_ID, "m1", OWNER_ID, {})
        await tasks.create_task_post(session, "orphan", UNLINKED_GUILD, CHANNEL_ID, "m2", OWNER_ID, {})
        await AllowlistOperations().create_allowlist_connection(
            session, "al-1", UNLINKED_GUILD, CHANNEL_ID, "m3", OWNER_ID, {},
        )

    summary = await cleanup.run_cleanup()

    assert summary["jobs"]["integrity"]["reported"] == {"orphan_tasks": 1, "orphan_allowlists": 1}
    assert summary["jobs"]["integrity"]["processed"] == 0
    posts = {post.task_id: post for post in await rows(TaskPost)}
    assert posts["orphan"].is_active and not posts["orphan"].is_archived
    assert all(connection.is_active for connection in await rows(AllowlistConnection))


async def test_run_never_reduces_active_records(cleanup, services):
    async with get_db_session_context() as session:
        await TaskPostOperations().create_task_post(
            session, "unlinked", UNLINKED_GUILD, CHANNEL_ID, "m1", OWNER_ID, {}
        )
        idle = await services.user_links.create_user_link(session, "1", "plat-1", "a")
        idle.linked_at = utcnow() - timedelta(days=365)

    async def active_counts():
        return (
            sum(post.is_active for post in await rows(TaskPost)),
            sum(link.is_active for link in await rows(UserAccountLink)),
        )

    before = await active_counts()
    await cleanup.run_cleanup()
    assert await active_counts() == before == (1, 1)


async def test_interaction_log_retention(cleanup):
    async with get_db_session_context() as session:
        ops = InteractionLogOperations()
        for interaction_id, age_days in (("ancient", 100), ("old", 40), ("recent", 1)):
            entry = await ops.log_interaction(session, interaction_id, "u1", "command", "status", "status", "success")
            entry.timestamp = utcnow() - timedelta(days=age_days)

    summary = await cleanup.run_cleanup()

    assert summary["deleted"] == 1
    assert summary["jobs"]["interaction_logs"] == {"processed": 2, "deleted": 1}
    remaining = {entry.interaction_id: entry.is_archived for entry in await rows(InteractionLog)}
    assert remaining == {"old": True, "recent": False}


async def test_expired_verification_tokens_are_cleared(cleanup):
    async with get_db_session_context() as session:
        session.add(UserAccountLink(
            discord_id="9",
            platform_user_id="plat-9",
            verification_token="abc",
            verification_expires_at=utcnow() - timedelta(minutes=1),
        ))

    summary = await cleanup.run_cleanup()

    assert summary["jobs"]["expired_tokens"]["processed"] == 1
    link = (await rows(UserAccountLink))[0]
    assert link.verification_token is None


async def test_failing_job_does_not_stop_the_run(cleanup):
    async def broken(session):
        raise RuntimeError("disk full")

    cleanup.cleanup_expired_tokens = broken
    summary = await cleanup.run_cleanup()

    assert summary["errors"] == 1
    assert summary["jobs"]["expired_tokens"] == {"error": "disk full"}
    assert "integrity" in summary["jobs"]
    assert cleanup.get_stats()["total_errors"] == 1


async def test_overlapping_run_is_skipped(cleanup):
    cleanup.is_running = True
    assert await cleanup.run_cleanup() is None
    assert cleanup.get_stats()["total_runs"] == 0


async def test_stats_accumulate(cleanup):
    await cleanup.run_cleanup()
    await cleanup.run_cleanup()
    stats = cleanup.get_stats()
    assert stats["total_runs"] == 2
    assert stats["last_run"] is not None
    assert not stats["is_running"]
