"""Database models for the Naffles Discord integration."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar
from uuid import UUID, uuid4

from sqlalchemy import Boolean
from sqlalchemy import DateTime
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import Uuid
from sqlalchemy import text
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship

from naffles_bot.shared.database import Base
from naffles_bot.shared.encryption import TokenCipher

T = TypeVar("T")

CURRENT_SCHEMA_VERSION = 2


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def audit_entry(action: str, performed_by: str, **details: Any) -> dict:
    return {
        "action": action,
        "performed_by": performed_by,
        "timestamp": utcnow().isoformat(),
        "details": details,
    }


class AuditedMixin:
    """Append-only audit trail stored as a JSON list."""

    audit_log: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Append-only list of {action, performed_by, timestamp, details}"
    )

    def append_audit(self, action: str, performed_by: str, **details: Any) -> None:
        # Reassign so the JSON column is flagged dirty
        self.audit_log = [*(self.audit_log or []), audit_entry(action, performed_by, **details)]


class ServerCommunityLink(AuditedMixin, Base):
    """Binding between one Discord server and one Platform community.

    At most one active link exists per server (unique ``guild_id``) and per
    community (partial unique index on active rows). Unlinking deactivates
    the row; relinking reactivates it in place.
    """

    __tablename__ = "server_community_links"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        doc="Unique link identifier"
    )
    guild_id: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
        doc="Discord guild (server) snowflake ID"
    )
    community_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        doc="Platform community identifier"
    )
    linked_by: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        doc="Discord user ID that performed the link"
    )
    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        doc="When the link was created or last re-established"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        doc="Whether the link is currently in effect"
    )
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="When the link was deactivated"
    )

    guild_info: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Snapshot: name, icon, member_count, owner_id, last_updated"
    )
    bot_config: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Per-server overrides, e.g. allowed_roles per command"
    )
    activity_stats: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Counters: tasks_created, allowlists_connected, commands_processed, last_activity"
    )
    integration_status: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Last connection test result"
    )

    schema_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=CURRENT_SCHEMA_VERSION,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        Index(
            "uq_server_links_active_community",
            "community_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_server_links_active", "is_active"),
    )

    def __init__(self, **kwargs):
        """Initialize ServerCommunityLink with default values."""
        kwargs.setdefault('is_active', True)
        kwargs.setdefault('linked_at', utcnow())
        kwargs.setdefault('guild_info', {})
        kwargs.setdefault('bot_config', {})
        kwargs.setdefault('activity_stats', {
            "tasks_created": 0,
            "allowlists_connected": 0,
            "commands_processed": 0,
            "last_activity": None,
        })
        kwargs.setdefault('integration_status', {})
        kwargs.setdefault('audit_log', [])
        kwargs.setdefault('schema_version', CURRENT_SCHEMA_VERSION)
        super().__init__(**kwargs)

    def allowed_roles_for(self, command: str) -> list[str]:
        roles = (self.bot_config or {}).get("allowed_roles", {})
        return [str(role_id) for role_id in roles.get(command, [])]

    def bump_activity(self, counter: str, amount: int = 1) -> None:
        stats = dict(self.activity_stats or {})
        stats[counter] = int(stats.get(counter, 0)) + amount
        stats["last_activity"] = utcnow().isoformat()
        self.activity_stats = stats

    def __repr__(self) -> str:
        return f"<ServerCommunityLink(guild_id='{self.guild_id}', community_id='{self.community_id}', active={self.is_active})>"


class UserAccountLink(AuditedMixin, Base):
    """Binding between a Discord user and a Platform user account.

    OAuth tokens are sealed with a :class:`TokenCipher` before they are
    assigned; the ciphertext columns never hold plaintext. The only way back
    to plaintext is :meth:`with_decrypted_tokens`.
    """

    __tablename__ = "user_account_links"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    discord_id: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
        doc="Discord user snowflake ID"
    )
    platform_user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        doc="Platform user identifier"
    )

    # Sealed token material
    encrypted_access_token: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Fernet ciphertext of the OAuth access token"
    )
    encrypted_refresh_token: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Fernet ciphertext of the OAuth refresh token"
    )
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Pending verification
    verification_token: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
    )
    verification_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    deactivation_reason: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Consent
    data_processing_consent: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    consent_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    activity_stats: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Counters: tasks_completed, allowlists_entered, last_activity"
    )
    last_activity: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )

    schema_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=CURRENT_SCHEMA_VERSION,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __init__(self, **kwargs):
        """Initialize UserAccountLink with default values."""
        kwargs.setdefault('is_active', True)
        kwargs.setdefault('is_verified', False)
        kwargs.setdefault('linked_at', utcnow())
        kwargs.setdefault('data_processing_consent', False)
        kwargs.setdefault('activity_stats', {
            "tasks_completed": 0,
            "allowlists_entered": 0,
        })
        kwargs.setdefault('audit_log', [])
        kwargs.setdefault('schema_version', CURRENT_SCHEMA_VERSION)
        super().__init__(**kwargs)

    def seal_tokens(
        self,
        cipher: TokenCipher,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        """Encrypt and store OAuth tokens."""
        self.encrypted_access_token = cipher.encrypt(access_token)
        self.encrypted_refresh_token = cipher.encrypt(refresh_token) if refresh_token else None
        self.token_expires_at = expires_at

    def with_decrypted_tokens(
        self,
        cipher: TokenCipher,
        fn: Callable[[Optional[str], Optional[str]], T],
    ) -> T:
        """Call ``fn(access_token, refresh_token)`` with plaintext tokens.

        The plaintext is never stored on the instance.
        """
        access = cipher.decrypt(self.encrypted_access_token) if self.encrypted_access_token else None
        refresh = cipher.decrypt(self.encrypted_refresh_token) if self.encrypted_refresh_token else None
        return fn(access, refresh)

    @property
    def has_tokens(self) -> bool:
        return self.encrypted_access_token is not None

    def touch(self, counter: Optional[str] = None) -> None:
        now = utcnow()
        self.last_activity = now
        stats = dict(self.activity_stats or {})
        if counter:
            stats[counter] = int(stats.get(counter, 0)) + 1
        stats["last_activity"] = now.isoformat()
        self.activity_stats = stats

    def __repr__(self) -> str:
        # Tokens intentionally omitted
        return f"<UserAccountLink(discord_id='{self.discord_id}', platform_user_id='{self.platform_user_id}', active={self.is_active})>"


class TaskPost(AuditedMixin, Base):
    """A social task posted as a message in a Discord channel.

    ``(task_id, guild_id)`` is unique among active posts. Lifecycle is
    ``active -> expired`` when the end time passes or ``active -> removed``
    on admin action or when the message disappears.
    """

    __tablename__ = "task_posts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    task_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        doc="Platform task identifier"
    )
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    message_id: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
        doc="Discord message holding the task embed"
    )
    created_by: Mapped[str] = mapped_column(String(32), nullable=False)

    task_data: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Snapshot: title, description, type, points, requirements"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
        doc="active, completed, expired, removed, cancelled"
    )

    # Timing
    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    end_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    duration_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=168)

    # Lifecycle
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_status_change: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Timestamp of the last applied Platform update"
    )

    # Interaction stats
    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_viewers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    schema_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=CURRENT_SCHEMA_VERSION,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index(
            "uq_task_posts_active_task_guild",
            "task_id",
            "guild_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_task_posts_task_guild", "task_id", "guild_id"),
        Index("ix_task_posts_end_time_status", "end_time", "status"),
    )

    def __init__(self, **kwargs):
        """Initialize TaskPost with default values."""
        kwargs.setdefault('status', 'active')
        kwargs.setdefault('is_active', True)
        kwargs.setdefault('is_archived', False)
        kwargs.setdefault('start_time', utcnow())
        kwargs.setdefault('last_status_change', utcnow())
        kwargs.setdefault('duration_hours', 168)
        kwargs.setdefault('views', 0)
        kwargs.setdefault('completions', 0)
        kwargs.setdefault('unique_viewers', [])
        kwargs.setdefault('audit_log', [])
        kwargs.setdefault('schema_version', CURRENT_SCHEMA_VERSION)
        super().__init__(**kwargs)

    @property
    def title(self) -> str:
        return (self.task_data or {}).get("title", "Untitled task")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        end = as_utc(self.end_time)
        return end is not None and end <= (now or utcnow())

    def __repr__(self) -> str:
        return f"<TaskPost(task_id='{self.task_id}', guild_id='{self.guild_id}', status='{self.status}')>"


class AllowlistConnection(AuditedMixin, Base):
    """A Platform allowlist connected to a Discord channel message.

    The entry queue lives in ``allowlist_entries``. A user holds at most one
    non-duplicate entry per connection; repeat attempts are queued with
    status ``duplicate``.
    """

    __tablename__ = "allowlist_connections"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    allowlist_id: Mapped[str] = mapped_column(String(64), nullable=False)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    message_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    connected_by: Mapped[str] = mapped_column(String(32), nullable=False)

    allowlist_data: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Snapshot: title, description, prize, winner_count, entry_price"
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    entries: Mapped[list[AllowlistEntry]] = relationship(
        back_populates="connection",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="AllowlistEntry.created_at",
    )
    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    winner_data: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Draw state: drawn, drawn_at, winners"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_status_change: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    schema_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=CURRENT_SCHEMA_VERSION,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_allowlist_connections_allowlist_guild", "allowlist_id", "guild_id"),
        Index("ix_allowlist_connections_end_time_status", "end_time", "status"),
    )

    def __init__(self, **kwargs):
        """Initialize AllowlistConnection with default values."""
        kwargs.setdefault('status', 'active')
        kwargs.setdefault('is_active', True)
        kwargs.setdefault('is_archived', False)
        kwargs.setdefault('last_status_change', utcnow())
        kwargs.setdefault('entries', [])
        kwargs.setdefault('views', 0)
        kwargs.setdefault('winner_data', {"drawn": False, "winners": []})
        kwargs.setdefault('audit_log', [])
        kwargs.setdefault('schema_version', CURRENT_SCHEMA_VERSION)
        super().__init__(**kwargs)

    def has_entry(self, user_id: str) -> bool:
        return any(
            entry.user_id == user_id and entry.status != ENTRY_DUPLICATE
            for entry in self.entries
        )

    @property
    def entry_count(self) -> int:
        return sum(1 for entry in self.entries if entry.status != ENTRY_DUPLICATE)

    @property
    def duplicate_attempts(self) -> list[AllowlistEntry]:
        return [entry for entry in self.entries if entry.status == ENTRY_DUPLICATE]

    def __repr__(self) -> str:
        return f"<AllowlistConnection(allowlist_id='{self.allowlist_id}', guild_id='{self.guild_id}', entries={self.entry_count})>"


ENTRY_PENDING = "pending"
ENTRY_ENTERED = "entered"
ENTRY_DUPLICATE = "duplicate"


class AllowlistEntry(Base):
    """One row of an allowlist connection's entry queue.

    ``pending`` rows hold the user's place while the Platform call is in
    flight and become ``entered`` once the Platform accepts. The partial
    unique index keeps one non-duplicate row per (connection, user), so
    concurrent clicks cannot both claim a place.
    """

    __tablename__ = "allowlist_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    connection_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("allowlist_connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ENTRY_PENDING)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    connection: Mapped[AllowlistConnection] = relationship(back_populates="entries")

    __table_args__ = (
        Index(
            "uq_allowlist_entries_connection_user",
            "connection_id",
            "user_id",
            unique=True,
            sqlite_where=text("status != 'duplicate'"),
            postgresql_where=text("status != 'duplicate'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<AllowlistEntry(user_id='{self.user_id}', status='{self.status}')>"


class InteractionLog(Base):
    """Append-only record of each interaction pipeline outcome."""

    __tablename__ = "interaction_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    interaction_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        doc="Discord interaction snowflake ID"
    )
    guild_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    channel_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)

    category: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        doc="command, button, modal or menu"
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    result: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
        doc="success, error, denied, cooldown or rate-limit"
    )
    response_time_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __init__(self, **kwargs):
        """Initialize InteractionLog with default timestamp."""
        kwargs.setdefault('timestamp', utcnow())
        kwargs.setdefault('context', {})
        kwargs.setdefault('is_archived', False)
        kwargs.setdefault('response_time_ms', 0.0)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<InteractionLog(name='{self.name}', result='{self.result}', timestamp='{self.timestamp}')>"


Index(
    "ix_interaction_logs_guild_timestamp",
    InteractionLog.guild_id,
    InteractionLog.timestamp.desc(),
)
Index(
    "ix_interaction_logs_user_timestamp",
    InteractionLog.user_id,
    InteractionLog.timestamp.desc(),
)
Index(
    "ix_interaction_logs_category_timestamp",
    InteractionLog.category,
    InteractionLog.timestamp.desc(),
)
