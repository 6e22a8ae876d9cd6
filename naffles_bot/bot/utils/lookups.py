"""Database lookups shared by the command plugins."""

from __future__ import annotations

from typing import Optional

from naffles_bot.bot.pipeline.context import InteractionContext
from naffles_bot.bot.pipeline.errors import HandlerError
from naffles_bot.web.models import ServerCommunityLink, UserAccountLink

SERVER_NOT_LINKED_MESSAGE = (
    "❌ This Discord server is not linked to a Naffles community. "
    "Please link your server first at {website}/discord-setup"
)
ACCOUNT_NOT_LINKED_MESSAGE = (
    "❌ You need to link your Naffles account first. Visit {website}/discord-link to get started."
)


async def find_server_link(ctx: InteractionContext) -> Optional[ServerCommunityLink]:
    if ctx.guild_id is None:
        return None
    services = ctx.services
    async with services.session_factory() as session:
        return await services.server_links.get_server_link(session, ctx.guild_id)


async def require_server_link(ctx: InteractionContext) -> ServerCommunityLink:
    """Active link of the interaction's server.

    Raises:
        HandlerError: If the server is not linked to a community
    """
    link = await find_server_link(ctx)
    if link is None:
        website = ctx.services.settings.website_url
        raise HandlerError(SERVER_NOT_LINKED_MESSAGE.format(website=website), error_type="not_linked")
    return link


async def require_user_link(ctx: InteractionContext) -> UserAccountLink:
    """Active Platform account link of the interacting user.

    Raises:
        HandlerError: If the user has not linked a Naffles account
    """
    services = ctx.services
    async with services.session_factory() as session:
        link = await services.user_links.get_user_link(session, ctx.user_id)
    if link is None:
        website = services.settings.website_url
        raise HandlerError(ACCOUNT_NOT_LINKED_MESSAGE.format(website=website), error_type="account_not_linked")
    return link
