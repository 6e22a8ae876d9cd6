"""hikari glue for the interaction pipeline.

Builds :class:`InteractionEnvelope` objects from lightbulb contexts and raw
component/modal interactions, and implements the :class:`Responder` and
:class:`MessageGateway` protocols on top of hikari's REST API.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence, Union

import hikari
import lightbulb

from naffles_bot.bot.pipeline.context import (
    CATEGORY_BUTTON,
    CATEGORY_COMMAND,
    CATEGORY_MENU,
    CATEGORY_MODAL,
    ButtonSpec,
    ComponentSpec,
    InteractionEnvelope,
    LinkButtonSpec,
    ModalSpec,
    Reply,
    SelectMenuSpec,
)
from naffles_bot.bot.pipeline.router import Route
from naffles_bot.bot.services.sync_service import MessageMissingError

logger = logging.getLogger(__name__)

MAX_BUTTONS_PER_ROW = 5
MAX_ROWS = 5

RespondableInteraction = Union[hikari.CommandInteraction, hikari.ComponentInteraction, hikari.ModalInteraction]


# Components

def build_action_rows(specs: Sequence[ComponentSpec]) -> list[hikari.impl.MessageActionRowBuilder]:
    """Lay component specs out in action rows.

    Buttons fill rows of five in order; a select menu always takes a row of
    its own.
    """
    rows: list[hikari.impl.MessageActionRowBuilder] = []
    current: Optional[hikari.impl.MessageActionRowBuilder] = None
    in_current = 0

    for spec in specs:
        if isinstance(spec, SelectMenuSpec):
            row = hikari.impl.MessageActionRowBuilder()
            menu = row.add_text_menu(spec.custom_id, placeholder=spec.placeholder)
            for option in spec.options:
                menu.add_option(
                    option.label,
                    option.value,
                    description=option.description or hikari.UNDEFINED,
                )
            rows.append(row)
            current, in_current = None, 0
            continue

        if current is None or in_current >= MAX_BUTTONS_PER_ROW:
            current = hikari.impl.MessageActionRowBuilder()
            rows.append(current)
            in_current = 0

        if isinstance(spec, LinkButtonSpec):
            current.add_link_button(
                spec.url,
                label=spec.label,
                emoji=spec.emoji or hikari.UNDEFINED,
            )
        elif isinstance(spec, ButtonSpec):
            current.add_interactive_button(
                spec.style,
                spec.custom_id,
                label=spec.label,
                emoji=spec.emoji or hikari.UNDEFINED,
                is_disabled=spec.disabled,
            )
        in_current += 1

    if len(rows) > MAX_ROWS:
        logger.warning(f"Dropping {len(rows) - MAX_ROWS} component rows over the Discord limit")
    return rows[:MAX_ROWS]


def build_modal_rows(modal: ModalSpec) -> list[hikari.impl.ModalActionRowBuilder]:
    rows = []
    for field in modal.inputs:
        row = hikari.impl.ModalActionRowBuilder()
        row.add_text_input(
            field.custom_id,
            field.label,
            style=hikari.TextInputStyle.PARAGRAPH if field.paragraph else hikari.TextInputStyle.SHORT,
            placeholder=field.placeholder or hikari.UNDEFINED,
            required=field.required,
            min_length=field.min_length,
            max_length=field.max_length,
        )
        rows.append(row)
    return rows


def message_kwargs(reply: Reply) -> dict[str, Any]:
    return {
        "content": reply.content if reply.content is not None else hikari.UNDEFINED,
        "embed": reply.embed if reply.embed is not None else hikari.UNDEFINED,
        "components": build_action_rows(reply.components),
    }


def _flags(ephemeral: bool) -> hikari.MessageFlag:
    return hikari.MessageFlag.EPHEMERAL if ephemeral else hikari.MessageFlag.NONE


# Responder / gateway

class HikariResponder:
    """Responder backed by a hikari interaction."""

    def __init__(self, interaction: RespondableInteraction, rest: hikari.api.RESTClient):
        self.interaction = interaction
        self.rest = rest

    async def defer(self, ephemeral: bool) -> None:
        await self.interaction.create_initial_response(
            hikari.ResponseType.DEFERRED_MESSAGE_CREATE,
            flags=_flags(ephemeral),
        )

    async def create_response(self, reply: Reply) -> None:
        await self.interaction.create_initial_response(
            hikari.ResponseType.MESSAGE_CREATE,
            flags=_flags(reply.ephemeral),
            **message_kwargs(reply),
        )

    async def edit_response(self, reply: Reply) -> None:
        await self.interaction.edit_initial_response(**message_kwargs(reply))

    async def create_followup(self, reply: Reply) -> None:
        await self.interaction.execute(flags=_flags(reply.ephemeral), **message_kwargs(reply))

    async def show_modal(self, modal: ModalSpec) -> None:
        if isinstance(self.interaction, hikari.ModalInteraction):
            raise TypeError("A modal submission cannot open another modal")
        await self.interaction.create_modal_response(
            modal.title,
            modal.custom_id,
            components=build_modal_rows(modal),
        )

    async def post_channel_message(self, channel_id: str, reply: Reply) -> str:
        message = await self.rest.create_message(int(channel_id), **message_kwargs(reply))
        return str(message.id)


class HikariMessageGateway:
    """Edits previously posted messages for the real-time sync."""

    def __init__(self, rest: hikari.api.RESTClient):
        self.rest = rest

    async def edit_message(self, channel_id: str, message_id: str, reply: Reply) -> None:
        try:
            await self.rest.edit_message(int(channel_id), int(message_id), **message_kwargs(reply))
        except hikari.NotFoundError as e:
            raise MessageMissingError(f"Message {message_id} in channel {channel_id} no longer exists") from e


# Envelopes

def _guild_fields(guild: Optional[hikari.Guild]) -> dict[str, Any]:
    if guild is None:
        return {}
    member_count = getattr(guild, "member_count", None)
    return {
        "guild_owner_id": str(guild.owner_id),
        "guild_name": guild.name,
        "member_count": member_count,
    }


def _member_fields(member: Optional[hikari.InteractionMember]) -> dict[str, Any]:
    if member is None:
        return {}
    return {
        "permissions": member.permissions,
        "role_ids": tuple(str(role_id) for role_id in member.role_ids),
    }


def _base_fields(interaction: hikari.PartialInteraction, user: hikari.User) -> dict[str, Any]:
    return {
        "interaction_id": str(interaction.id),
        "user_id": str(user.id),
        "username": user.username,
        "guild_id": str(interaction.guild_id) if interaction.guild_id else None,
        "channel_id": str(interaction.channel_id) if interaction.channel_id else None,
        "is_bot": user.is_bot,
        "account_created_at": user.created_at,
    }


def envelope_from_command(
    ctx: lightbulb.SlashContext,
    name: Optional[str] = None,
    extra_options: Optional[dict[str, Any]] = None,
) -> InteractionEnvelope:
    """Envelope for a lightbulb slash command invocation."""
    interaction = ctx.interaction
    options = {key: value for key, value in ctx.raw_options.items() if value is not None}
    options.update(extra_options or {})
    return InteractionEnvelope(
        category=CATEGORY_COMMAND,
        name=name or ctx.command.name,
        options=options,
        **_base_fields(interaction, interaction.user),
        **_member_fields(interaction.member),
        **_guild_fields(ctx.get_guild()),
    )


def modal_fields(interaction: hikari.ModalInteraction) -> dict[str, str]:
    fields: dict[str, str] = {}
    for row in interaction.components:
        for component in row.components:
            custom_id = getattr(component, "custom_id", None)
            if custom_id:
                fields[custom_id] = getattr(component, "value", "") or ""
    return fields


def envelope_from_interaction(
    interaction: Union[hikari.ComponentInteraction, hikari.ModalInteraction],
) -> InteractionEnvelope:
    """Envelope for a button, select menu or modal submission."""
    guild = interaction.get_guild()
    if isinstance(interaction, hikari.ModalInteraction):
        return InteractionEnvelope(
            category=CATEGORY_MODAL,
            name=interaction.custom_id,
            modal_fields=modal_fields(interaction),
            **_base_fields(interaction, interaction.user),
            **_member_fields(interaction.member),
            **_guild_fields(guild),
        )

    is_menu = interaction.component_type == hikari.ComponentType.TEXT_SELECT_MENU
    return InteractionEnvelope(
        category=CATEGORY_MENU if is_menu else CATEGORY_BUTTON,
        name=interaction.custom_id,
        values=tuple(interaction.values),
        **_base_fields(interaction, interaction.user),
        **_member_fields(interaction.member),
        **_guild_fields(guild),
    )


# Plugin helpers

async def run_slash_command(ctx: lightbulb.SlashContext, name: Optional[str] = None, **extra_options: Any) -> None:
    """Hand a slash command invocation to the interaction pipeline."""
    pipeline = ctx.bot.d["pipeline"]
    envelope = envelope_from_command(ctx, name, extra_options)
    await pipeline.process(envelope, HikariResponder(ctx.interaction, ctx.bot.rest))


def register_routes(bot: lightbulb.BotApp, routes: Sequence[Route]) -> None:
    registry = bot.d["services"].registry
    for route in routes:
        registry.add(route)


def unregister_routes(bot: lightbulb.BotApp, routes: Sequence[Route]) -> None:
    bot.d["services"].registry.remove_category_routes({route.verb for route in routes})
