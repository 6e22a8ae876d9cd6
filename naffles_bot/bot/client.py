"""Discord bot client setup and configuration."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import hikari
import lightbulb
import uvicorn

from naffles_bot.bot.pipeline.pipeline import InteractionPipeline
from naffles_bot.bot.pipeline.retry import RetryExecutor
from naffles_bot.bot.services.api_client import APIClient
from naffles_bot.bot.services.cleanup_service import DataCleanupService
from naffles_bot.bot.services.container import BotServices
from naffles_bot.bot.services.health_service import HealthMonitor, ServiceStatus
from naffles_bot.bot.services.platform_service import PlatformService
from naffles_bot.bot.services.sync_service import RealTimeSync
from naffles_bot.bot.utils.adapters import HikariMessageGateway, HikariResponder, envelope_from_interaction
from naffles_bot.shared.config import Settings, get_settings
from naffles_bot.shared.database import close_database, get_db_session_context, init_database, ping_database
from naffles_bot.shared.encryption import TokenCipher
from naffles_bot.shared.logging_utils import build_logging_config
from naffles_bot.shared.redis_client import CacheManager, close_redis_client, get_redis_client
from naffles_bot.web.api.app import create_app

logger = logging.getLogger(__name__)

PLUGINS = (
    "naffles_bot.bot.plugins.community",
    "naffles_bot.bot.plugins.tasks",
    "naffles_bot.bot.plugins.allowlists",
    "naffles_bot.bot.plugins.status",
    "naffles_bot.bot.plugins.help",
    "naffles_bot.bot.plugins.security",
)


def create_bot(settings: Settings | None = None) -> lightbulb.BotApp:
    """Create and configure the Discord bot with Lightbulb v2 syntax.

    Returns:
        BotApp instance for v2 compatibility
    """
    if settings is None:
        settings = get_settings()

    intents = (
        hikari.Intents.GUILDS
        | hikari.Intents.GUILD_MEMBERS  # For join monitoring
    )

    bot = lightbulb.BotApp(
        token=settings.discord_bot_token,
        intents=intents,
        logs=build_logging_config(settings.log_level),
        banner=None,
    )
    return bot


def _bot_permissions(bot: lightbulb.BotApp, guild_id: str) -> Optional[hikari.Permissions]:
    """Permissions of the bot's own member in a guild, from the cache."""
    me = bot.get_me()
    guild = bot.cache.get_guild(int(guild_id))
    if me is None or guild is None:
        return None
    member = guild.get_member(me.id)
    if member is None:
        return None
    if guild.owner_id == me.id:
        return hikari.Permissions.all_permissions()
    permissions = hikari.Permissions.NONE
    for role in member.get_roles():
        permissions |= role.permissions
    return permissions


def _discord_latency(bot: lightbulb.BotApp) -> Optional[float]:
    latency = bot.heartbeat_latency
    if latency != latency or latency == float("inf"):  # NaN before the first heartbeat
        return None
    return latency * 1000


def build_health_monitor(bot: lightbulb.BotApp, cache: CacheManager, platform: PlatformService,
                         settings: Settings) -> HealthMonitor:
    async def check_discord() -> bool:
        return _discord_latency(bot) is not None

    return HealthMonitor(
        {
            "discord": check_discord,
            "database": ping_database,
            "redis": cache.ping,
            "platform_api": platform.ping,
        },
        interval=float(settings.health_check_interval),
    )


async def setup_bot_services(bot: lightbulb.BotApp, settings: Settings | None = None) -> BotServices:
    """Set up bot services and dependencies."""
    logger.info("Setting up bot services...")
    if settings is None:
        settings = get_settings()

    await init_database(settings.database_url)
    logger.info("✓ Database initialized")

    cache = CacheManager(get_redis_client(settings.redis_url))
    if await cache.ping():
        logger.info("✓ Redis connected")
    else:
        logger.warning("Redis ping failed; cache-backed features will degrade")

    logger.info(f"Connecting to Platform API at: {settings.api_base_url}")
    api_client = APIClient(
        base_url=settings.api_base_url,
        api_key=settings.platform_api_key,
        default_timeout=settings.api_timeout,
    )
    platform = PlatformService(api_client, cache, RetryExecutor.from_settings(settings))
    health = build_health_monitor(bot, cache, platform, settings)

    services = BotServices(
        settings=settings,
        platform=platform,
        cache=cache,
        session_factory=get_db_session_context,
        cipher=TokenCipher(settings.token_encryption_key),
        health=health,
        sync=RealTimeSync(get_db_session_context, HikariMessageGateway(bot.rest)),
        cleanup=DataCleanupService(get_db_session_context, interval_minutes=settings.cleanup_interval_minutes),
        discord_connected=lambda: _discord_latency(bot) is not None,
        discord_latency=lambda: _discord_latency(bot),
        bot_permissions=lambda guild_id: _bot_permissions(bot, guild_id),
    )

    def on_health_change(name: str, status: ServiceStatus) -> None:
        if status.status != "degraded":
            return
        services.audit.record(
            "error_occurred",
            outcome="error",
            severity="high",
            service=name,
            error=status.error,
        )

    health.add_observer(on_health_change)

    bot.d["services"] = services
    bot.d["api_client"] = api_client
    bot.d["pipeline"] = InteractionPipeline(services)
    logger.info("✓ Bot services setup complete")
    return services


async def cleanup_bot_services(bot: lightbulb.BotApp) -> None:
    """Clean up bot services and connections."""
    logger.info("Cleaning up bot services...")

    services: Optional[BotServices] = bot.d.get("services")
    if services is not None:
        if services.health is not None:
            await services.health.stop()
        if services.cleanup is not None:
            await services.cleanup.stop()

    web_task: Optional[asyncio.Task] = bot.d.get("web_task")
    if web_task is not None:
        web_task.cancel()
        try:
            await web_task
        except asyncio.CancelledError:
            pass

    if "api_client" in bot.d:
        await bot.d["api_client"].close()
    await close_redis_client()
    await close_database()
    logger.info("Bot services cleanup complete")


def load_plugins(bot: lightbulb.BotApp) -> None:
    """Load bot plugins using Lightbulb v2 syntax."""
    for extension in PLUGINS:
        bot.load_extensions(extension)
        logger.info(f"✓ Loaded {extension.rsplit('.', 1)[-1]} plugin")
    logger.info(f"✓ All plugins loaded ({len(bot.d['services'].registry)} routes)")


def start_web_api(bot: lightbulb.BotApp, services: BotServices) -> None:
    """Serve the webhook/OAuth/health API on the bot's event loop."""
    settings = services.settings
    config = uvicorn.Config(
        create_app(services),
        host=settings.sync_api_host,
        port=settings.sync_api_port,
        log_config=None,
    )
    server = uvicorn.Server(config)
    bot.d["web_task"] = asyncio.create_task(server.serve())
    logger.info(f"Started sync API on {settings.sync_api_host}:{settings.sync_api_port}")


def register_listeners(bot: lightbulb.BotApp) -> None:
    @bot.listen()
    async def on_started(event: hikari.StartedEvent) -> None:
        """Start background jobs once the gateway is up."""
        bot_user = event.app.get_me()
        if bot_user:
            logger.info(f"Bot started as {bot_user.username}")
        services: BotServices = bot.d["services"]
        services.health.start()
        services.cleanup.start()
        start_web_api(bot, services)

    @bot.listen()
    async def on_stopping(event: hikari.StoppingEvent) -> None:
        logger.info("Bot is stopping...")
        await cleanup_bot_services(bot)

    @bot.listen()
    async def on_interaction_create(event: hikari.InteractionCreateEvent) -> None:
        """Route buttons, select menus and modal submissions through the pipeline."""
        interaction = event.interaction
        if not isinstance(interaction, (hikari.ComponentInteraction, hikari.ModalInteraction)):
            return
        envelope = envelope_from_interaction(interaction)
        await bot.d["pipeline"].process(envelope, HikariResponder(interaction, bot.rest))

    @bot.listen()
    async def on_member_join(event: hikari.MemberCreateEvent) -> None:
        services: BotServices = bot.d["services"]
        member = event.member
        if member.is_bot:
            return
        services.security.observe_member_join(str(event.guild_id), str(member.id), member.created_at)
        services.audit.record("user_joined", user_id=str(member.id), guild_id=str(event.guild_id))

    @bot.listen()
    async def on_guild_join(event: hikari.GuildJoinEvent) -> None:
        logger.info(f"Bot joined guild: {event.guild.name} (ID: {event.guild_id})")
        bot.d["services"].audit.record(
            "bot_joined_guild",
            guild_id=str(event.guild_id),
            guild_name=event.guild.name,
            member_count=event.guild.member_count,
        )

    @bot.listen()
    async def on_guild_leave(event: hikari.GuildLeaveEvent) -> None:
        logger.info(f"Bot left guild {event.guild_id}")
        bot.d["services"].audit.record("bot_left_guild", guild_id=str(event.guild_id))


async def run_bot() -> None:
    """Run the Discord bot with Lightbulb v2 syntax."""
    settings = get_settings()
    bot = create_bot(settings)
    register_listeners(bot)

    await setup_bot_services(bot, settings)
    load_plugins(bot)

    try:
        await bot.start()
        logger.info("Bot is now running. Press Ctrl+C to stop.")
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            logger.info("Bot shutdown requested")
    finally:
        logger.info("Shutting down bot...")
        await bot.close()


def main() -> int:
    """Console entry point."""
    try:
        asyncio.run(run_bot())
    except KeyboardInterrupt:
        logger.info("Bot shutdown requested via keyboard interrupt")
    except Exception as e:
        logger.error(f"❌ Bot failed: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
