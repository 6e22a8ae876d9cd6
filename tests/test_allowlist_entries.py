"""Concurrent allowlist entries against a file-backed database."""

import asyncio

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from naffles_bot.bot.plugins import allowlists
from naffles_bot.shared.database import (
    Base,
    close_database,
    configure_engine,
    is_file_sqlite,
    use_immediate_transactions,
)
from tests.conftest import FakeResponder, run_handler
from tests.test_plugin_allowlists import connect_directly, connection_for, serve_allowlist

USER_A = "100000000000000011"
USER_B = "100000000000000012"


@pytest.fixture
async def database(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'entries.db'}"
    engine = create_async_engine(url)
    use_immediate_transactions(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    configure_engine(engine)
    yield engine
    await close_database()


async def link_users(services, *discord_ids):
    async with services.session_factory() as session:
        for index, discord_id in enumerate(discord_ids):
            await services.user_links.create_user_link(session, discord_id, f"plat-{index}", "token")


async def enter_as(services, user_id):
    return await run_handler(services, allowlists.enter_allowlist, FakeResponder(), argument="al-1",
                             category="button", name="enter_allowlist_al-1", user_id=user_id)


async def test_concurrent_entries_are_all_kept(services, platform_stub):
    serve_allowlist(platform_stub)
    both_in_flight = asyncio.Barrier(2)

    async def accept(request: httpx.Request) -> httpx.Response:
        await both_in_flight.wait()
        return httpx.Response(200, json={"success": True, "data": {"entryId": "e"}})

    platform_stub.add("POST", "/allowlists/al-1/enter", handler=accept)
    await link_users(services, USER_A, USER_B)
    await connect_directly(services)

    await asyncio.wait_for(asyncio.gather(enter_as(services, USER_A), enter_as(services, USER_B)), timeout=10)

    assert len(platform_stub.calls("POST", "/allowlists/al-1/enter")) == 2
    connection = await connection_for(services)
    assert sorted((entry.user_id, entry.status) for entry in connection.entries) == [
        (USER_A, "entered"),
        (USER_B, "entered"),
    ]


async def test_double_click_reaches_the_platform_once(services, platform_stub):
    serve_allowlist(platform_stub)
    platform_stub.add("POST", "/allowlists/al-1/enter", json_body={"success": True, "data": {"entryId": "e"}})
    await link_users(services, USER_A)
    await connect_directly(services)

    first, second = await asyncio.gather(enter_as(services, USER_A), enter_as(services, USER_A))

    assert len(platform_stub.calls("POST", "/allowlists/al-1/enter")) == 1
    assert sorted([first.outcome_detail or "", second.outcome_detail or ""]) == ["", "duplicate entry"]
    connection = await connection_for(services)
    assert connection.entry_count == 1
    assert len(connection.duplicate_attempts) == 1


@pytest.mark.parametrize("url, expected", [
    ("sqlite+aiosqlite:///bot.db", True),
    ("sqlite+aiosqlite://", False),
    ("sqlite+aiosqlite:///:memory:", False),
    ("postgresql+asyncpg://bot@db/naffles", False),
])
def test_immediate_transactions_apply_to_sqlite_files(url, expected):
    assert is_file_sqlite(url) is expected
