"""/link-community and its buttons."""

import pytest

from naffles_bot.bot.pipeline.errors import HandlerError
from naffles_bot.bot.plugins import community
from naffles_bot.web.crud import ServerLinkOperations
from tests.conftest import GUILD_ID, OWNER_ID, USER_ID, request_json, run_handler

OWNERSHIP_PATH = "/communities/comm-9/validate-ownership"
NOTIFY_PATH = "/communities/comm-9/notifications"


async def current_link(services, guild_id=GUILD_ID):
    async with services.session_factory() as session:
        return await services.server_links.get_server_link(session, guild_id)


async def link(services, responder, community_id="comm-9"):
    return await run_handler(
        services, community.link_community, responder,
        name="link-community", options={"community_id": community_id},
    )


def allow_management(platform_stub, **community_fields):
    data = {"name": "Ape Club", "canManage": True, "memberCount": 120, "pointsName": "Bananas"}
    data.update(community_fields)
    platform_stub.add("POST", OWNERSHIP_PATH, json_body={"success": True, "data": data})


async def test_links_server_to_managed_community(services, responder, platform_stub):
    allow_management(platform_stub)
    platform_stub.add("POST", NOTIFY_PATH, json_body={"success": True, "data": {}})

    await link(services, responder)

    assert responder.kinds == ["defer", "edit"]
    embed = responder.last_reply.embed
    assert embed.title == "✅ Community Linked Successfully!"
    assert "**Ape Club**" in embed.description
    assert request_json(platform_stub.calls("POST", OWNERSHIP_PATH)[0]) == {"discordUserId": USER_ID}

    notification = request_json(platform_stub.calls("POST", NOTIFY_PATH)[0])
    assert notification["type"] == "discord_server_linked"
    assert notification["data"]["guildId"] == GUILD_ID

    stored = await current_link(services)
    assert stored.community_id == "comm-9"
    assert stored.linked_by == USER_ID
    assert services.audit.get_events(event_type="community_linked")[0].guild_id == GUILD_ID


async def test_failed_notification_does_not_undo_the_link(services, responder, platform_stub):
    allow_management(platform_stub)
    await link(services, responder)
    assert responder.last_reply.embed.title == "✅ Community Linked Successfully!"
    assert await current_link(services) is not None


async def test_already_linked_server_offers_unlink(services, responder, linked_guild):
    ctx = await link(services, responder)
    assert responder.kinds == ["create"]
    assert responder.last_reply.embed.title == "🔗 Server Already Linked"
    assert [button.custom_id for button in responder.last_reply.components] == ["unlink_community", "relink_community"]
    assert ctx.outcome_detail == "already linked"


async def test_requires_community_management_rights(services, responder, platform_stub):
    allow_management(platform_stub, canManage=False)
    with pytest.raises(HandlerError, match="Only community owners can link"):
        await link(services, responder)
    assert await current_link(services) is None


async def test_unknown_community(services, responder, platform_stub):
    platform_stub.add("POST", OWNERSHIP_PATH, status_code=404, json_body={"message": "Community not found"})
    with pytest.raises(HandlerError, match="Community not found. Please check the community ID."):
        await link(services, responder)


async def test_blank_community_id(services, responder):
    with pytest.raises(HandlerError, match="valid community ID"):
        await link(services, responder, community_id="   ")


async def test_community_linked_elsewhere(services, responder, platform_stub):
    async with services.session_factory() as session:
        await ServerLinkOperations().create_server_link(session, "900000000000000077", "comm-9", OWNER_ID)
    allow_management(platform_stub)

    with pytest.raises(HandlerError, match="already linked to another Discord server"):
        await link(services, responder)
    assert await current_link(services) is None


async def test_unlink(services, responder, linked_guild):
    await run_handler(services, community.unlink_community, responder, category="button", name="unlink_community")
    assert responder.last_reply.embed.title == "🔓 Community Unlinked"
    assert await current_link(services) is None
    assert services.audit.get_events(event_type="community_unlinked")


async def test_unlink_without_link(services, responder):
    with pytest.raises(HandlerError, match="No community link found"):
        await run_handler(services, community.unlink_community, responder, category="button", name="unlink_community")


async def test_relink_clears_the_old_link(services, responder, linked_guild):
    await run_handler(services, community.relink_community, responder, category="button", name="relink_community")
    assert responder.last_reply.embed.title == "🔄 Ready to Link New Community"
    assert await current_link(services) is None


async def test_connection_test_success(services, responder, platform_stub, linked_guild):
    platform_stub.add("GET", "/communities/comm-1", json_body={"success": True, "data": {"name": "Ape Club", "memberCount": 3}})
    await run_handler(services, community.test_connection, responder, category="button", name="test_connection")

    embed = responder.last_reply.embed
    assert embed.title == "✅ Connection Test Successful"
    assert {field.name: field.value for field in embed.fields}["👥 Members"] == "3"


async def test_connection_test_failure(services, responder, platform_stub, linked_guild):
    platform_stub.add("GET", "/communities/comm-1", status_code=503, json_body={"message": "down"})
    ctx = await run_handler(services, community.test_connection, responder, category="button", name="test_connection")

    assert responder.last_reply.embed.title == "❌ Connection Test Failed"
    assert ctx.outcome_detail == "connection test failed"
    assert len(platform_stub.calls("GET", "/communities/comm-1")) == 3
