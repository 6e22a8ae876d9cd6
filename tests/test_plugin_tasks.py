"""Social task creation, listing and completion."""

import pytest

from naffles_bot.bot.pipeline.errors import HandlerError
from naffles_bot.bot.plugins import tasks
from tests.conftest import CHANNEL_ID, GUILD_ID, OWNER_ID, USER_ID, FakeResponder, request_json, run_handler

TASK = {"id": "t1", "title": "Follow us", "type": "twitter_follow", "points": 50, "status": "active"}

CREATE_OPTIONS = {
    "type": "twitter_follow",
    "title": "Follow us",
    "description": "Follow our account",
    "points": 50,
    "duration": 24,
}


def staged(**overrides):
    data = {
        "type": "twitter_follow",
        "title": "Follow us",
        "description": "Follow our account",
        "points": 50,
        "duration": 24,
        "guildId": GUILD_ID,
        "userId": USER_ID,
        "communityId": "comm-1",
    }
    data.update(overrides)
    return data


async def submit(services, responder, fields):
    return await run_handler(
        services, tasks.submit_task_modal, responder,
        category="modal", name="create_task_modal_1700000000000", modal_fields=fields,
    )


async def test_create_task_opens_type_specific_modal(services, responder, linked_guild):
    ctx = await run_handler(services, tasks.create_task, responder, name="create-task", options=CREATE_OPTIONS)

    assert responder.kinds == ["modal"]
    modal = responder.calls[0][1]
    assert modal.custom_id.startswith("create_task_modal_")
    assert [spec.custom_id for spec in modal.inputs] == ["twitter_username"]
    assert ctx.outcome_detail == "modal shown"

    saved = await services.cache.get_json(tasks.staging_key(USER_ID, GUILD_ID))
    assert saved["communityId"] == "comm-1"
    assert saved["points"] == 50


async def test_custom_tasks_ask_for_instructions():
    modal = tasks.build_task_modal("custom", now_ms=1)
    assert modal.custom_id == "create_task_modal_1"
    assert [spec.custom_id for spec in modal.inputs] == ["custom_instructions", "verification_method"]


@pytest.mark.parametrize("overrides, message", [
    ({"type": "instagram_like"}, "Unknown task type"),
    ({"title": ""}, "title must be between"),
    ({"points": 0}, "Points must be between"),
    ({"duration": 9000}, "Duration must be between"),
])
async def test_create_task_validation(services, responder, linked_guild, overrides, message):
    with pytest.raises(HandlerError, match=message):
        await run_handler(services, tasks.create_task, responder, name="create-task",
                          options={**CREATE_OPTIONS, **overrides})
    assert responder.calls == []


async def test_create_task_needs_linked_server(services, responder):
    with pytest.raises(HandlerError, match="not linked to a Naffles community"):
        await run_handler(services, tasks.create_task, responder, name="create-task", options=CREATE_OPTIONS)


async def test_modal_submit_creates_and_posts_task(services, responder, platform_stub, linked_guild):
    await services.cache.set_json(tasks.staging_key(USER_ID, GUILD_ID), staged())
    platform_stub.add("POST", "/social-tasks", json_body={"success": True, "data": {"id": "task-42"}})

    await submit(services, responder, {"twitter_username": "@naffles"})

    body = request_json(platform_stub.calls("POST", "/social-tasks")[0])
    assert body["configuration"] == {"twitterUsername": "naffles"}
    assert body["rewards"]["points"] == 50
    assert body["verification"] == {"requiresApproval": False, "autoVerify": True}
    assert body["discordIntegration"]["channelId"] == CHANNEL_ID

    channel_id, posted = responder.posted[0]
    assert channel_id == CHANNEL_ID
    assert posted.embed.title == "🎯 Follow us"
    assert posted.components[0].custom_id == "complete_task_task-42"
    assert responder.last_reply.content == '✅ Task "Follow us" has been created and posted to this channel!'

    async with services.session_factory() as session:
        post = await services.task_posts.get_task_post(session, "task-42", GUILD_ID)
    assert post.message_id == "5001"
    assert await services.cache.get_json(tasks.staging_key(USER_ID, GUILD_ID)) is None


async def test_modal_submit_after_staging_expired(services, responder):
    with pytest.raises(HandlerError, match="session expired"):
        await submit(services, responder, {"twitter_username": "naffles"})


async def test_modal_submit_requires_fields(services, responder, linked_guild):
    await services.cache.set_json(tasks.staging_key(USER_ID, GUILD_ID), staged())
    with pytest.raises(HandlerError, match="Twitter Username"):
        await submit(services, responder, {"twitter_username": "   "})


async def test_blank_field_keeps_the_staged_task(services, responder, platform_stub, linked_guild):
    await services.cache.set_json(tasks.staging_key(USER_ID, GUILD_ID), staged())
    platform_stub.add("POST", "/social-tasks", json_body={"success": True, "data": {"id": "task-42"}})

    with pytest.raises(HandlerError, match="Twitter Username"):
        await submit(services, FakeResponder(), {"twitter_username": ""})
    assert await services.cache.get_json(tasks.staging_key(USER_ID, GUILD_ID)) == staged()

    await submit(services, responder, {"twitter_username": "naffles"})
    assert len(platform_stub.calls("POST", "/social-tasks")) == 1
    assert await services.cache.get_json(tasks.staging_key(USER_ID, GUILD_ID)) is None


async def test_rejected_task_is_not_posted(services, responder, platform_stub, linked_guild):
    await services.cache.set_json(tasks.staging_key(USER_ID, GUILD_ID), staged())
    platform_stub.add("POST", "/social-tasks", status_code=400, json_body={"message": "bad schedule"})

    with pytest.raises(HandlerError, match="Failed to create task"):
        await submit(services, responder, {"twitter_username": "naffles"})
    assert responder.posted == []


async def test_list_tasks_and_select_details(services, responder, platform_stub, linked_guild):
    listed = [TASK, {**TASK, "id": "t2", "title": "Join us", "points": 5, "status": "completed"}]
    platform_stub.add("GET", "/social-tasks", json_body={"success": True, "data": listed})

    await run_handler(services, tasks.list_tasks, responder, name="list-tasks", options={"status": "all"})

    assert responder.calls[0] == ("defer", False)
    reply = responder.last_reply
    assert reply.embed.title == "📋 Social Tasks (all)"
    fields = {field.name: field.value for field in reply.embed.fields}
    assert fields["💰 Total Points Available"] == "55"
    assert fields["✅ Completed Tasks"] == "1"
    assert [option.value for option in reply.components[0].options] == ["t1", "t2"]
    assert "status" not in platform_stub.calls("GET", "/social-tasks")[0].url.params

    await run_handler(services, tasks.select_task_details, responder,
                      category="menu", name="select_task_details", values=("t1",))
    detail = responder.last_reply
    assert detail.embed.title == "🎯 Follow us"
    assert [button.custom_id for button in detail.components] == ["complete_task_t1", "view_task_t1"]


async def test_empty_task_list(services, responder, platform_stub, linked_guild):
    platform_stub.add("GET", "/social-tasks", json_body={"success": True, "data": []})
    await run_handler(services, tasks.list_tasks, responder, name="list-tasks")
    assert responder.last_reply.embed.description == "No active tasks found for this community."


async def test_selection_after_list_expired(services, responder):
    with pytest.raises(HandlerError, match="Task list session expired"):
        await run_handler(services, tasks.select_task_details, responder,
                          category="menu", name="select_task_details", values=("t1",))


async def test_complete_task(services, responder, platform_stub, linked_user, linked_guild):
    platform_stub.add("GET", "/social-tasks/t1", json_body={"success": True, "data": TASK})
    platform_stub.add("POST", "/social-tasks/t1/complete", json_body={"success": True, "data": {}})
    async with services.session_factory() as session:
        await services.task_posts.create_task_post(session, "t1", GUILD_ID, CHANNEL_ID, "m1", OWNER_ID, TASK)

    await run_handler(services, tasks.complete_task, responder, argument="t1",
                      category="button", name="complete_task_t1")

    assert responder.last_reply.content == "🎉 Task completed successfully! You earned 50 points!"
    completion = request_json(platform_stub.calls("POST", "/social-tasks/t1/complete")[0])
    assert completion["userId"] == "plat-user-1"
    assert completion["source"] == "discord_bot"

    async with services.session_factory() as session:
        post = await services.task_posts.get_task_post(session, "t1", GUILD_ID)
    assert post.completions == 1
    assert services.audit.get_events(event_type="task_completed")


async def test_custom_task_completion_goes_to_review(services, responder, platform_stub, linked_user):
    platform_stub.add("GET", "/social-tasks/t1", json_body={"success": True, "data": {**TASK, "type": "custom"}})
    platform_stub.add("POST", "/social-tasks/t1/complete", json_body={"success": True, "data": {}})
    await run_handler(services, tasks.complete_task, responder, argument="t1", category="button", name="complete_task_t1")
    assert responder.last_reply.content.startswith("📝 Task completion submitted for review!")


async def test_completing_twice(services, responder, platform_stub, linked_user):
    platform_stub.add("GET", "/social-tasks/t1", json_body={"success": True, "data": TASK})
    platform_stub.add("POST", "/social-tasks/t1/complete", status_code=409, json_body={"message": "duplicate"})
    with pytest.raises(HandlerError, match="already completed"):
        await run_handler(services, tasks.complete_task, responder, argument="t1",
                          category="button", name="complete_task_t1")


async def test_inactive_task_cannot_be_completed(services, responder, platform_stub, linked_user):
    platform_stub.add("GET", "/social-tasks/t1", json_body={"success": True, "data": {**TASK, "status": "expired"}})
    with pytest.raises(HandlerError, match="no longer active"):
        await run_handler(services, tasks.complete_task, responder, argument="t1",
                          category="button", name="complete_task_t1")
    assert platform_stub.calls("POST", "/social-tasks/t1/complete") == []


async def test_completion_requires_linked_account(services, responder):
    with pytest.raises(HandlerError, match="link your Naffles account first"):
        await run_handler(services, tasks.complete_task, responder, argument="t1",
                          category="button", name="complete_task_t1")
    assert responder.calls == []


async def test_view_missing_task(services, responder):
    with pytest.raises(HandlerError, match="Task not found"):
        await run_handler(services, tasks.view_task, responder, argument="gone",
                          category="button", name="view_task_gone")
