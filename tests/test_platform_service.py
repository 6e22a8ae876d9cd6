"""Platform operations: envelopes, retries and idempotency."""

import httpx
import pytest

from naffles_bot.bot.pipeline.retry import RetryExecutor
from naffles_bot.bot.services.exceptions import APIError, ServiceError
from naffles_bot.bot.services.platform_service import PlatformService, _unwrap
from tests.conftest import request_json


def flaky(status_codes, body):
    """Handler answering with each status in turn, then 200."""
    remaining = list(status_codes)

    def handler(request):
        if remaining:
            return httpx.Response(remaining.pop(0), json={"message": "unavailable"})
        return httpx.Response(200, json=body)

    return handler


@pytest.mark.parametrize(
    "body, expected",
    [
        ({"success": True, "data": {"id": "t1"}}, {"id": "t1"}),
        ({"data": [1, 2]}, [1, 2]),
        ({"id": "t1", "data": "x", "extra": 1}, {"id": "t1", "data": "x", "extra": 1}),
        ([{"id": "t1"}], [{"id": "t1"}]),
    ],
)
def test_unwrap_envelopes(body, expected):
    assert _unwrap(httpx.Response(200, json=body)) == expected


def test_unwrap_empty_and_invalid_bodies():
    assert _unwrap(httpx.Response(204)) is None
    with pytest.raises(ServiceError):
        _unwrap(httpx.Response(200, text="<html>"))


async def test_list_community_tasks_sends_filters(platform, platform_stub):
    platform_stub.add("GET", "/social-tasks", json_body={"success": True, "data": {"tasks": [{"id": "t1"}]}})
    tasks = await platform.list_community_tasks("comm-1", status="active", limit=10)
    assert tasks == [{"id": "t1"}]
    params = platform_stub.calls("GET", "/social-tasks")[0].url.params
    assert params["communityId"] == "comm-1"
    assert params["status"] == "active"
    assert params["limit"] == "10"


async def test_list_all_tasks_omits_status(platform, platform_stub):
    platform_stub.add("GET", "/social-tasks", json_body={"data": []})
    assert await platform.list_community_tasks("comm-1", status="all") == []
    assert "status" not in platform_stub.calls("GET", "/social-tasks")[0].url.params


async def test_reads_are_retried_on_server_errors(platform, platform_stub):
    platform_stub.add("GET", "/allowlists/a1", handler=flaky([503, 502], {"data": {"id": "a1"}}))
    assert await platform.get_allowlist("a1") == {"id": "a1"}
    assert len(platform_stub.calls("GET", "/allowlists/a1")) == 3


async def test_settings_budget_cuts_read_retries_short(settings, api_client, cache, platform_stub):
    slept = []

    async def sleep(delay):
        slept.append(delay)

    tuned = settings.model_copy(update={"retry_max_retries": 10, "retry_budget_seconds": 5.0})
    retry = RetryExecutor.from_settings(tuned, sleep=sleep, clock=lambda: sum(slept))
    platform = PlatformService(api_client, cache, retry)
    platform_stub.add("GET", "/allowlists/a1", 503, {"message": "unavailable"})
    with pytest.raises(APIError):
        await platform.get_allowlist("a1")
    assert slept == [1.0, 2.0]
    assert len(platform_stub.calls("GET", "/allowlists/a1")) == 3


async def test_reads_are_not_retried_on_client_errors(platform, platform_stub):
    platform_stub.add("GET", "/allowlists/a1", 403, {"message": "Forbidden"})
    with pytest.raises(APIError):
        await platform.get_allowlist("a1")
    assert len(platform_stub.calls("GET", "/allowlists/a1")) == 1


async def test_task_creation_is_never_repeated(platform, platform_stub):
    platform_stub.add("POST", "/social-tasks", handler=flaky([503], {"data": {"id": "t1"}}))
    with pytest.raises(APIError) as excinfo:
        await platform.create_social_task({"title": "Follow us"})
    assert excinfo.value.status_code == 503
    assert len(platform_stub.calls("POST", "/social-tasks")) == 1


async def test_ownership_validation_posts_discord_user(platform, platform_stub):
    platform_stub.add(
        "POST",
        "/communities/comm-1/validate-ownership",
        json_body={"success": True, "data": {"canManage": True, "name": "Comm"}},
    )
    result = await platform.validate_community_ownership("comm-1", "42")
    assert result["canManage"] is True
    request = platform_stub.calls("POST", "/communities/comm-1/validate-ownership")[0]
    assert request_json(request) == {"discordUserId": "42"}


async def test_unknown_discord_user_is_none(platform):
    assert await platform.get_user_by_discord_id("404") is None


async def test_health_check_reports_outage(platform, platform_stub):
    assert (await platform.health_check()).is_healthy
    platform_stub.add("GET", "/health", 503, {"message": "down"})
    health = await platform.health_check()
    assert not health.is_healthy
    assert "down" in health.details["error"]
