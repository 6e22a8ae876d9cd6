"""Shared fixtures: in-memory database, fake Redis, a stubbed Platform API
and a recording responder standing in for Discord."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import fakeredis.aioredis
import hikari
import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from naffles_bot.bot.pipeline.context import InteractionContext, InteractionEnvelope, ModalSpec, Reply
from naffles_bot.bot.pipeline.pipeline import InteractionPipeline
from naffles_bot.bot.pipeline.retry import RetryExecutor
from naffles_bot.bot.plugins import allowlists, community, help, security, status, tasks
from naffles_bot.bot.services.api_client import APIClient
from naffles_bot.bot.services.cleanup_service import DataCleanupService
from naffles_bot.bot.services.container import BotServices
from naffles_bot.bot.services.health_service import HealthMonitor
from naffles_bot.bot.services.platform_service import PlatformService
from naffles_bot.bot.services.sync_service import MessageMissingError, RealTimeSync
from naffles_bot.shared.config import Settings
from naffles_bot.shared.database import Base, close_database, configure_engine, get_db_session_context
from naffles_bot.shared.encryption import TokenCipher
from naffles_bot.shared.redis_client import CacheManager
from naffles_bot.web import models  # noqa: F401

PLATFORM_BASE_URL = "https://api.naffles.test"
GUILD_ID = "900000000000000001"
CHANNEL_ID = "900000000000000002"
OWNER_ID = "900000000000000003"
USER_ID = "100000000000000001"


async def no_sleep(_: float) -> None:
    return None


class PlatformStub:
    """``httpx.MockTransport`` handler with per-route canned responses."""

    def __init__(self):
        self.routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        method: str,
        path: str,
        status_code: int = 200,
        json_body: Any = None,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    ) -> None:
        if handler is None:
            def handler(request: httpx.Request) -> httpx.Response:
                return httpx.Response(status_code, json=json_body)
        self.routes[(method, path)] = handler

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": "Not found"})
        return handler(request)


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content)


class FakeResponder:
    """Records every Discord call an interaction makes."""

    def __init__(self):
        self.calls: list[tuple[str, Any]] = []
        self.posted: list[tuple[str, Reply]] = []
        self._message_id = 5000

    async def defer(self, ephemeral: bool) -> None:
        self.calls.append(("defer", ephemeral))

    async def create_response(self, reply: Reply) -> None:
        self.calls.append(("create", reply))

    async def edit_response(self, reply: Reply) -> None:
        self.calls.append(("edit", reply))

    async def create_followup(self, reply: Reply) -> None:
        self.calls.append(("followup", reply))

    async def show_modal(self, modal: ModalSpec) -> None:
        self.calls.append(("modal", modal))

    async def post_channel_message(self, channel_id: str, reply: Reply) -> str:
        self._message_id += 1
        self.posted.append((channel_id, reply))
        self.calls.append(("post", reply))
        return str(self._message_id)

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.calls]

    @property
    def replies(self) -> list[Reply]:
        return [payload for kind, payload in self.calls if kind in ("create", "edit", "followup")]

    @property
    def last_reply(self) -> Reply:
        return self.replies[-1]

    @property
    def last_text(self) -> str:
        reply = self.last_reply
        if reply.content:
            return reply.content
        return f"{reply.embed.title}\n{reply.embed.description}"


class FakeGateway:
    """Message editor for the sync service."""

    def __init__(self):
        self.edits: list[tuple[str, str, Reply]] = []
        self.missing: set[str] = set()
        self.failing: set[str] = set()

    async def edit_message(self, channel_id: str, message_id: str, reply: Reply) -> None:
        if message_id in self.missing:
            raise MessageMissingError(message_id)
        if message_id in self.failing:
            raise RuntimeError(f"edit of {message_id} failed")
        self.edits.append((channel_id, message_id, reply))


def make_envelope(category: str = "command", name: str = "status", **overrides: Any) -> InteractionEnvelope:
    fields: dict[str, Any] = {
        "interaction_id": uuid.uuid4().hex,
        "category": category,
        "name": name,
        "user_id": USER_ID,
        "username": "tester",
        "guild_id": GUILD_ID,
        "channel_id": CHANNEL_ID,
        "account_created_at": datetime.now(timezone.utc) - timedelta(days=400),
        "guild_owner_id": OWNER_ID,
        "guild_name": "Test Server",
        "member_count": 42,
    }
    fields.update(overrides)
    return InteractionEnvelope(**fields)


@pytest.fixture
def envelope_factory() -> Callable[..., InteractionEnvelope]:
    return make_envelope


@pytest.fixture
def manager_permissions() -> hikari.Permissions:
    return hikari.Permissions.MANAGE_GUILD


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        database_url="sqlite+aiosqlite://",
        redis_url="redis://localhost:6379/15",
        api_base_url=PLATFORM_BASE_URL,
        platform_api_key="test-platform-key",
        discord_bot_token="test-bot-token",
        discord_application_id="123456789",
        webhook_secret="test-webhook-secret",
        token_encryption_key=TokenCipher.generate_key(),
        oauth_client_id="client-id",
        oauth_client_secret="client-secret",
        oauth_redirect_uri="https://bot.naffles.test/oauth/callback",
        oauth_token_url="https://discord.test/api/oauth2/token",
    )


@pytest.fixture
async def database():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    configure_engine(engine)
    yield engine
    await close_database()


@pytest.fixture
async def db_session(database):
    async with get_db_session_context() as session:
        yield session


@pytest.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def cache(redis_client) -> CacheManager:
    return CacheManager(redis_client)


@pytest.fixture
def platform_stub() -> PlatformStub:
    stub = PlatformStub()
    stub.add("GET", "/health", json_body={"status": "ok"})
    return stub


@pytest.fixture
async def api_client(platform_stub):
    client = APIClient(PLATFORM_BASE_URL, "test-platform-key", transport=httpx.MockTransport(platform_stub))
    yield client
    await client.close()


@pytest.fixture
def retry_executor() -> RetryExecutor:
    return RetryExecutor(max_retries=2, sleep=no_sleep)


@pytest.fixture
def platform(api_client, cache, retry_executor) -> PlatformService:
    return PlatformService(api_client, cache, retry_executor)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def services(settings, database, cache, platform, gateway) -> BotServices:
    container = BotServices(
        settings=settings,
        platform=platform,
        cache=cache,
        session_factory=get_db_session_context,
        cipher=TokenCipher(settings.token_encryption_key),
        health=HealthMonitor({}),
        sync=RealTimeSync(get_db_session_context, gateway),
        cleanup=DataCleanupService(get_db_session_context),
    )
    for plugin_module in (community, tasks, allowlists, status, help, security):
        for route in plugin_module.ROUTES:
            container.registry.add(route)
    return container


@pytest.fixture
def pipeline(services) -> InteractionPipeline:
    return InteractionPipeline(services)


@pytest.fixture
def responder() -> FakeResponder:
    return FakeResponder()


@pytest.fixture
async def linked_guild(services):
    """The test guild linked to community ``comm-1``."""
    async with services.session_factory() as session:
        link = await services.server_links.create_server_link(
            session, GUILD_ID, "comm-1", OWNER_ID, guild_info={"name": "Test Server"}
        )
    return link


@pytest.fixture
async def linked_user(services):
    """The default user linked to Platform user ``plat-user-1``."""
    async with services.session_factory() as session:
        link = await services.user_links.create_user_link(session, USER_ID, "plat-user-1", "access-token")
    return link


async def run_handler(
    services: BotServices,
    handler: Callable[[InteractionContext], Any],
    responder: FakeResponder,
    argument: Optional[str] = None,
    **envelope_fields: Any,
) -> InteractionContext:
    """Call a handler directly, skipping the pipeline's admission checks."""
    ctx = InteractionContext(make_envelope(**envelope_fields), responder, services)
    ctx.argument = argument
    await handler(ctx)
    return ctx
