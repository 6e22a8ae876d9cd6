"""Normalized interaction data and the reply state machine.

Every hikari interaction (slash command, button, select menu, modal submit)
is reduced to an :class:`InteractionEnvelope` before it enters the pipeline.
Handlers answer through :class:`InteractionContext`, which tracks whether the
interaction is fresh, acknowledged (deferred) or already answered and picks
the right Discord call for each reply.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Protocol, Union

import hikari

if TYPE_CHECKING:
    from naffles_bot.bot.services.container import BotServices

CATEGORY_COMMAND = "command"
CATEGORY_BUTTON = "button"
CATEGORY_MODAL = "modal"
CATEGORY_MENU = "menu"

# Discord snowflake epoch in milliseconds
DISCORD_EPOCH_MS = 1420070400000


def snowflake_created_at(snowflake: Union[int, str]) -> datetime:
    timestamp_ms = (int(snowflake) >> 22) + DISCORD_EPOCH_MS
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class InteractionEnvelope:
    """Platform-neutral view of one user interaction."""

    interaction_id: str
    category: str
    name: str
    user_id: str
    username: str = ""
    guild_id: Optional[str] = None
    channel_id: Optional[str] = None
    is_bot: bool = False
    account_created_at: Optional[datetime] = None
    permissions: hikari.Permissions = hikari.Permissions.NONE
    role_ids: tuple[str, ...] = ()
    guild_owner_id: Optional[str] = None
    guild_name: Optional[str] = None
    member_count: Optional[int] = None
    options: dict[str, Any] = field(default_factory=dict)
    values: tuple[str, ...] = ()
    modal_fields: dict[str, str] = field(default_factory=dict)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def account_age_days(self) -> Optional[float]:
        created = self.account_created_at
        if created is None and self.user_id.isdigit():
            created = snowflake_created_at(self.user_id)
        if created is None:
            return None
        return (self.received_at - created).total_seconds() / 86400

    @property
    def subject(self) -> str:
        return self.user_id


@dataclass(frozen=True)
class ButtonSpec:
    """Interactive button routed back to the bot by ``custom_id``."""

    custom_id: str
    label: str
    style: hikari.ButtonStyle = hikari.ButtonStyle.PRIMARY
    emoji: Optional[str] = None
    disabled: bool = False


@dataclass(frozen=True)
class LinkButtonSpec:
    """Button that opens a URL."""

    url: str
    label: str
    emoji: Optional[str] = None


@dataclass(frozen=True)
class SelectOptionSpec:
    label: str
    value: str
    description: Optional[str] = None


@dataclass(frozen=True)
class SelectMenuSpec:
    """Text select menu; always rendered on its own action row."""

    custom_id: str
    placeholder: str
    options: tuple[SelectOptionSpec, ...]


ComponentSpec = Union[ButtonSpec, LinkButtonSpec, SelectMenuSpec]


@dataclass(frozen=True)
class TextInputSpec:
    custom_id: str
    label: str
    max_length: int
    paragraph: bool = False
    required: bool = True
    placeholder: Optional[str] = None
    min_length: int = 0


@dataclass(frozen=True)
class ModalSpec:
    custom_id: str
    title: str
    inputs: tuple[TextInputSpec, ...]


@dataclass
class Reply:
    """One message worth of response content."""

    content: Optional[str] = None
    embed: Optional[hikari.Embed] = None
    components: list[ComponentSpec] = field(default_factory=list)
    ephemeral: bool = True


class Responder(Protocol):
    """The Discord calls an interaction can make."""

    async def defer(self, ephemeral: bool) -> None: ...

    async def create_response(self, reply: Reply) -> None: ...

    async def edit_response(self, reply: Reply) -> None: ...

    async def create_followup(self, reply: Reply) -> None: ...

    async def show_modal(self, modal: ModalSpec) -> None: ...

    async def post_channel_message(self, channel_id: str, reply: Reply) -> str: ...


class InteractionState(enum.Enum):
    FRESH = "fresh"
    ACKNOWLEDGED = "acknowledged"
    REPLIED = "replied"
    FOLLOWED = "followed"


class InteractionStateError(RuntimeError):
    """Raised when a reply is not valid in the current interaction state."""
    pass


class InteractionContext:
    """Reply state machine for a single interaction.

    ``FRESH -> ACKNOWLEDGED`` via :meth:`acknowledge`;
    ``FRESH | ACKNOWLEDGED -> REPLIED`` via :meth:`respond`;
    ``REPLIED | FOLLOWED -> FOLLOWED`` for any further :meth:`respond`.
    """

    def __init__(
        self,
        envelope: InteractionEnvelope,
        responder: Responder,
        services: Optional["BotServices"] = None,
    ):
        self.envelope = envelope
        self.responder = responder
        self.services = services
        self.state = InteractionState.FRESH
        self.argument: Optional[str] = None
        self.outcome_detail: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.envelope.user_id

    @property
    def guild_id(self) -> Optional[str]:
        return self.envelope.guild_id

    @property
    def channel_id(self) -> Optional[str]:
        return self.envelope.channel_id

    @property
    def options(self) -> dict[str, Any]:
        return self.envelope.options

    @property
    def is_answered(self) -> bool:
        return self.state in (InteractionState.REPLIED, InteractionState.FOLLOWED)

    async def acknowledge(self, ephemeral: bool = True) -> None:
        """Defer the response; a no-op once the interaction is past FRESH."""
        if self.state is not InteractionState.FRESH:
            return
        await self.responder.defer(ephemeral)
        self.state = InteractionState.ACKNOWLEDGED

    async def respond(self, reply: Reply) -> None:
        if self.state is InteractionState.FRESH:
            await self.responder.create_response(reply)
            self.state = InteractionState.REPLIED
        elif self.state is InteractionState.ACKNOWLEDGED:
            await self.responder.edit_response(reply)
            self.state = InteractionState.REPLIED
        else:
            await self.responder.create_followup(reply)
            self.state = InteractionState.FOLLOWED

    async def respond_text(self, content: str, ephemeral: bool = True) -> None:
        await self.respond(Reply(content=content, ephemeral=ephemeral))

    async def show_modal(self, modal: ModalSpec) -> None:
        if self.state is not InteractionState.FRESH:
            raise InteractionStateError("A modal must be the initial response")
        await self.responder.show_modal(modal)
        self.state = InteractionState.REPLIED

    async def post_to_channel(self, reply: Reply, channel_id: Optional[str] = None) -> str:
        """Send a public message to a channel; returns the message ID."""
        target = channel_id or self.channel_id
        if target is None:
            raise InteractionStateError("Interaction has no channel")
        return await self.responder.post_channel_message(target, reply)
