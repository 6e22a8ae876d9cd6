"""/help and its topic pages."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

import hikari
import lightbulb

from naffles_bot.bot.pipeline.context import (
    CATEGORY_BUTTON,
    CATEGORY_COMMAND,
    CATEGORY_MENU,
    ButtonSpec,
    InteractionContext,
    LinkButtonSpec,
    Reply,
    SelectMenuSpec,
    SelectOptionSpec,
)
from naffles_bot.bot.pipeline.errors import HandlerError
from naffles_bot.bot.pipeline.router import Route
from naffles_bot.bot.services.exceptions import ServiceError
from naffles_bot.bot.utils.adapters import register_routes, run_slash_command, unregister_routes
from naffles_bot.bot.utils.embeds import COLORS
from naffles_bot.bot.utils.lookups import find_server_link

plugin = lightbulb.Plugin("help")

PURPLE = hikari.Color(0x7C3AED)

LINKED_COMMANDS = "\n".join((
    "• `/create-task` - Create social tasks",
    "• `/list-tasks` - View active tasks",
    "• `/connect-allowlist` - Connect allowlists",
    "• `/status` - Check connection status",
    "• `/help` - Show this help",
))

BASIC_COMMANDS = "\n".join((
    "• `/link-community` - Link your community",
    "• `/status` - Check bot status",
    "• `/help` - Show this help",
))

SETUP_INSTRUCTIONS = "\n".join((
    "1. **Get Community ID** - Find it in your Naffles community settings",
    "2. **Link Server** - Use `/link-community` with your ID",
    "3. **Verify Connection** - Check with `/status`",
    "4. **Start Creating** - Use `/create-task` and other commands",
))

TOPIC_MENU = SelectMenuSpec(
    "help_topic",
    "Choose a help topic...",
    (
        SelectOptionSpec("Community Linking", "linking", "How to link your Discord server to Naffles"),
        SelectOptionSpec("Social Tasks", "tasks", "Creating and managing social tasks"),
        SelectOptionSpec("Allowlists", "allowlists", "Connecting and managing allowlists"),
        SelectOptionSpec("Permissions", "permissions", "Required Discord permissions"),
        SelectOptionSpec("Troubleshooting", "troubleshooting", "Common issues and solutions"),
    ),
)


def _embed(title: str, description: str, color: hikari.Color, fields: list[tuple[str, str]]) -> hikari.Embed:
    embed = hikari.Embed(
        title=title,
        description=description,
        color=color,
        timestamp=datetime.now(timezone.utc),
    )
    for name, value in fields:
        embed.add_field(name, value)
    return embed


def overview_reply(community_name: str | None, linked: bool, website_url: str) -> Reply:
    embed = hikari.Embed(
        title="🤖 Naffles Discord Bot Help",
        description="Welcome to the Naffles Discord bot! Here's everything you need to know.",
        color=PURPLE,
        timestamp=datetime.now(timezone.utc),
    )
    if linked:
        embed.add_field("✅ Server Status", f"This server is linked to **{community_name or 'your community'}**")
        embed.add_field("📋 Available Commands", LINKED_COMMANDS)
        embed.add_field(
            "🎯 Social Tasks",
            "Create Twitter follows, Discord joins, Telegram joins, and custom tasks with point rewards.",
            inline=True,
        )
        embed.add_field(
            "🎫 Allowlists",
            "Connect existing Naffles allowlists to your Discord server for easy entry.",
            inline=True,
        )
        embed.add_field(
            "📊 Management",
            "Check status, test connections, and manage your community integration.",
            inline=True,
        )
    else:
        embed.add_field("⚠️ Server Status", "This server is not linked to a Naffles community yet.")
        embed.add_field("🚀 Getting Started", SETUP_INSTRUCTIONS)
        embed.add_field("📋 Basic Commands", BASIC_COMMANDS)

    return Reply(
        embed=embed,
        components=[
            ButtonSpec("help_commands", "Command Details", hikari.ButtonStyle.PRIMARY, emoji="📋"),
            ButtonSpec("help_setup", "Setup Guide", hikari.ButtonStyle.SECONDARY, emoji="🔧"),
            LinkButtonSpec(f"{website_url}/discord-docs", "Documentation", emoji="📚"),
            TOPIC_MENU,
        ],
    )


def command_details_reply() -> Reply:
    return Reply(embed=_embed(
        "📋 Command Details",
        "Detailed information about all Naffles Discord bot commands.",
        COLORS["primary"],
        [
            ("🔗 `/link-community`",
             "**Purpose:** Link this Discord server to your Naffles community\n"
             "**Usage:** `/link-community community_id:YOUR_ID`\n**Permissions:** Manage Server"),
            ("🎯 `/create-task`",
             "**Purpose:** Create social tasks for your community\n"
             '**Usage:** `/create-task type:twitter_follow title:"Follow Us" ...`\n'
             "**Permissions:** Manage Server (or configured roles)"),
            ("📋 `/list-tasks`",
             "**Purpose:** List active social tasks\n"
             "**Usage:** `/list-tasks status:active`\n**Permissions:** Everyone"),
            ("🎫 `/connect-allowlist`",
             "**Purpose:** Connect existing allowlists to Discord\n"
             "**Usage:** `/connect-allowlist allowlist_id:YOUR_ID`\n**Permissions:** Manage Server"),
            ("📈 `/allowlist-analytics`",
             "**Purpose:** Views, entries and conversion for connected allowlists\n"
             "**Usage:** `/allowlist-analytics period:7d`\n**Permissions:** Manage Server"),
            ("📊 `/status`",
             "**Purpose:** Check bot and community connection status\n"
             "**Usage:** `/status`\n**Permissions:** Everyone"),
            ("🛡️ `/security`",
             "**Purpose:** Security reports, alerts and audit summaries\n"
             "**Usage:** `/security report`\n**Permissions:** Manage Server"),
            ("❓ `/help`",
             "**Purpose:** Show this help information\n"
             "**Usage:** `/help`\n**Permissions:** Everyone"),
        ],
    ))


def setup_guide_reply(website_url: str, support_url: str) -> Reply:
    embed = _embed(
        "🔧 Setup Guide",
        "Step-by-step guide to set up the Naffles Discord bot.",
        COLORS["success"],
        [
            ("1️⃣ Prerequisites",
             "• Have a Naffles community (create at naffles.com)\n"
             '• Have "Manage Server" permission in Discord\n'
             "• Be the owner of the Naffles community"),
            ("2️⃣ Find Your Community ID",
             "• Go to your Naffles community dashboard\n"
             "• Navigate to Settings → General\n"
             "• Copy your Community ID"),
            ("3️⃣ Link Your Server",
             "• Run `/link-community` in Discord\n"
             "• Paste your Community ID\n"
             "• Follow the authentication process"),
            ("4️⃣ Configure Permissions",
             "• Set which Discord roles can create tasks\n"
             "• Configure default channels for posts\n"
             "• Test the connection with `/status`"),
            ("5️⃣ Start Creating Content",
             "• Use `/create-task` for social tasks\n"
             "• Use `/connect-allowlist` for allowlists\n"
             "• Monitor activity in your community dashboard"),
        ],
    )
    embed.set_footer("Need more help? Visit our documentation or contact support.")
    return Reply(
        embed=embed,
        components=[
            LinkButtonSpec(f"{website_url}/discord-setup", "Detailed Setup Guide", emoji="📖"),
            LinkButtonSpec(support_url, "Get Support", emoji="💬"),
        ],
    )


def linking_help() -> Reply:
    return Reply(embed=_embed(
        "🔗 Community Linking Help",
        "Everything you need to know about linking your Discord server to Naffles.",
        COLORS["warning"],
        [
            ("🎯 What is Community Linking?",
             "Community linking connects your Discord server to your Naffles community, "
             "enabling social tasks and allowlist management directly from Discord."),
            ("📋 Requirements",
             "• Own a Naffles community\n"
             '• Have "Manage Server" permission in Discord\n'
             "• One-to-one relationship (one server per community)"),
            ("🔧 How to Link",
             "1. Get your Community ID from Naffles dashboard\n"
             "2. Run `/link-community community_id:YOUR_ID`\n"
             "3. Complete OAuth authentication if prompted\n"
             "4. Verify with `/status`"),
            ("❓ Common Issues",
             "• **Community not found:** Check your Community ID\n"
             "• **Permission denied:** Ensure you own the community\n"
             "• **Already linked:** Each community can only link to one server"),
        ],
    ))


def tasks_help() -> Reply:
    return Reply(embed=_embed(
        "🎯 Social Tasks Help",
        "Learn how to create and manage social tasks for your community.",
        hikari.Color(0x8B5CF6),
        [
            ("📝 Task Types",
             "• **Twitter Follow:** Users follow a Twitter account\n"
             "• **Discord Join:** Users join a Discord server\n"
             "• **Telegram Join:** Users join a Telegram group\n"
             "• **Custom Task:** Any custom action you define"),
            ("🎮 Creating Tasks",
             "1. Run `/create-task`\n"
             "2. Choose task type and fill in details\n"
             "3. Set point rewards and duration\n"
             "4. Task is automatically posted to Discord"),
            ("⚙️ Task Settings",
             "• **Points:** 1-10,000 points reward\n"
             "• **Duration:** 1 hour to 1 year\n"
             "• **Verification:** Automatic for social platforms\n"
             "• **Manual Review:** Available for custom tasks"),
            ("📊 Task Management",
             "• View active tasks with `/list-tasks`\n"
             "• Tasks automatically expire after duration\n"
             "• Completed tasks award points to user accounts\n"
             "• Track completion in community dashboard"),
        ],
    ))


def allowlists_help() -> Reply:
    return Reply(embed=_embed(
        "🎫 Allowlists Help",
        "Connect your Naffles allowlists to Discord for easy community access.",
        hikari.Color(0xEC4899),
        [
            ("🎯 What are Allowlists?",
             "Allowlists are exclusive entry lists for NFT projects, events, or opportunities. "
             "Users can enter directly from Discord."),
            ("🔗 Connecting Allowlists",
             "1. Create an allowlist on Naffles.com\n"
             "2. Copy the Allowlist ID\n"
             "3. Run `/connect-allowlist allowlist_id:YOUR_ID`\n"
             "4. Allowlist is posted to Discord with entry button"),
            ("✨ Features",
             "• **Direct Entry:** Users click button to enter\n"
             "• **Real-time Updates:** Entry count updates live\n"
             "• **Requirements Check:** Automatic verification\n"
             "• **Analytics:** Track views and entries with `/allowlist-analytics`"),
            ("⚡ Entry Process",
             '• Users click "Enter Allowlist" button\n'
             "• Bot checks entry requirements\n"
             "• Account linking handled automatically\n"
             "• Entry confirmed with feedback message"),
        ],
    ))


def permissions_help() -> Reply:
    return Reply(embed=_embed(
        "🔐 Permissions Help",
        "Understanding Discord permissions required for the Naffles bot.",
        COLORS["error"],
        [
            ("🤖 Bot Permissions",
             "• **Send Messages:** Post tasks and allowlists\n"
             "• **Embed Links:** Rich embed formatting\n"
             "• **Use Slash Commands:** Command functionality\n"
             "• **Manage Messages:** Update task status\n"
             "• **Add Reactions:** Interactive buttons"),
            ("👤 User Permissions",
             "• **Manage Server:** Required for linking communities\n"
             "• **Manage Server:** Required for creating tasks (default)\n"
             "• **Everyone:** Can view tasks and enter allowlists\n"
             "• **Custom Roles:** Can be configured per server"),
            ("⚙️ Permission Configuration",
             '• Default: Only "Manage Server" users can create tasks\n'
             "• Customizable: Set specific roles for task creation\n"
             '• Secure: Community linking always requires "Manage Server"'),
            ("🔧 Troubleshooting",
             "• **Bot not responding:** Check bot permissions\n"
             "• **Commands not working:** Verify slash command permissions\n"
             "• **Can't create tasks:** Check \"Manage Server\" permission\n"
             "• **Missing embeds:** Verify \"Embed Links\" permission"),
        ],
    ))


def troubleshooting_help(support_url: str, help_chat_url: str) -> Reply:
    embed = _embed(
        "🔧 Troubleshooting Help",
        "Solutions to common issues with the Naffles Discord bot.",
        COLORS["gray"],
        [
            ("❌ Bot Not Responding",
             "• Check if bot is online (green status)\n"
             "• Verify bot has required permissions\n"
             "• Try `/status` to check connection\n"
             "• Restart Discord client if needed"),
            ("🔗 Community Linking Issues",
             "• **Community not found:** Double-check Community ID\n"
             "• **Permission denied:** Ensure you own the community\n"
             "• **Already linked:** Each community can only link once\n"
             "• **OAuth failed:** Try again or contact support"),
            ("🎯 Task Creation Problems",
             '• **Permission denied:** Need "Manage Server" permission\n'
             "• **Server not linked:** Link community first\n"
             "• **Invalid parameters:** Check task type and settings\n"
             "• **API error:** Try again in a few minutes"),
            ("🎫 Allowlist Connection Issues",
             "• **Allowlist not found:** Verify Allowlist ID\n"
             "• **Already connected:** Each allowlist can only connect once\n"
             "• **Entry failed:** Check user account linking\n"
             "• **Requirements not met:** Verify entry requirements"),
            ("🆘 Getting More Help",
             "• Use `/status` for diagnostic information\n"
             "• Check our documentation for detailed guides\n"
             "• Contact support with specific error messages\n"
             "• Join our Discord for community help"),
        ],
    )
    return Reply(
        embed=embed,
        components=[
            LinkButtonSpec(support_url, "Contact Support", emoji="💬"),
            LinkButtonSpec(help_chat_url, "Join Our Discord", emoji="💬"),
        ],
    )


# Handlers

async def help_overview(ctx: InteractionContext) -> None:
    link = await find_server_link(ctx)
    community_name = None
    if link is not None:
        try:
            community = await ctx.services.platform.get_community(link.community_id) or {}
            community_name = community.get("name")
        except ServiceError:
            # Overview still renders with the generic name.
            community_name = None
    await ctx.respond(overview_reply(community_name, link is not None, ctx.services.settings.website_url))


async def help_commands(ctx: InteractionContext) -> None:
    await ctx.respond(command_details_reply())


async def help_setup(ctx: InteractionContext) -> None:
    settings = ctx.services.settings
    await ctx.respond(setup_guide_reply(settings.website_url, settings.support_url))


async def help_topic(ctx: InteractionContext) -> None:
    settings = ctx.services.settings
    topics: dict[str, Callable[[], Reply]] = {
        "linking": linking_help,
        "tasks": tasks_help,
        "allowlists": allowlists_help,
        "permissions": permissions_help,
        "troubleshooting": lambda: troubleshooting_help(settings.support_url, settings.help_chat_url),
    }
    topic = ctx.envelope.values[0] if ctx.envelope.values else ""
    build = topics.get(topic)
    if build is None:
        raise HandlerError("Unknown help topic selected.", error_type="validation")
    await ctx.respond(build())


ROUTES = [
    Route(CATEGORY_COMMAND, "help", help_overview),
    Route(CATEGORY_BUTTON, "help_commands", help_commands),
    Route(CATEGORY_BUTTON, "help_setup", help_setup),
    Route(CATEGORY_MENU, "help_topic", help_topic),
]


@plugin.command
@lightbulb.command("help", "Get help with Naffles Discord bot commands and setup")
@lightbulb.implements(lightbulb.SlashCommand)
async def help_command(ctx: lightbulb.SlashContext) -> None:
    await run_slash_command(ctx)


def load(bot: lightbulb.BotApp) -> None:
    """Load the help plugin."""
    bot.add_plugin(plugin)
    register_routes(bot, ROUTES)


def unload(bot: lightbulb.BotApp) -> None:
    """Unload the help plugin."""
    unregister_routes(bot, ROUTES)
    bot.remove_plugin(plugin)
