"""Database operations for the Naffles Discord integration.

Each ``*Operations`` class groups the queries for one entity kind. All
operations are async, take the session as their first argument and leave
committing to the caller (see ``get_db_session_context``). Invariants that
span rows (one active link per server and per community, one entry per user
per allowlist, append-only audit logs, sealed tokens) are enforced here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from naffles_bot.shared.encryption import TokenCipher
from naffles_bot.web.models import (
    CURRENT_SCHEMA_VERSION,
    ENTRY_DUPLICATE,
    ENTRY_ENTERED,
    ENTRY_PENDING,
    AllowlistConnection,
    AllowlistEntry,
    InteractionLog,
    ServerCommunityLink,
    TaskPost,
    UserAccountLink,
    utcnow,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("expired", "completed", "cancelled", "removed")


class DatabaseOperationError(Exception):
    """Base exception for database operations."""
    pass


class NotFoundError(DatabaseOperationError):
    """Raised when a requested resource is not found."""
    pass


class ConflictError(DatabaseOperationError):
    """Raised when a database constraint is violated."""
    pass


class ServerLinkOperations:
    """Database operations for server to community links."""

    async def get_server_link(
        self,
        session: AsyncSession,
        guild_id: str,
        active_only: bool = True
    ) -> Optional[ServerCommunityLink]:
        """Get the link row for a guild.

        Args:
            session: Database session
            guild_id: Discord guild snowflake ID
            active_only: Only return the row when it is active

        Returns:
            Optional[ServerCommunityLink]: Link or None

        Raises:
            DatabaseOperationError: If query fails
        """
        try:
            stmt = select(ServerCommunityLink).where(ServerCommunityLink.guild_id == guild_id)
            if active_only:
                stmt = stmt.where(ServerCommunityLink.is_active == True)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get server link: {e}") from e

    async def get_active_link_for_community(
        self,
        session: AsyncSession,
        community_id: str
    ) -> Optional[ServerCommunityLink]:
        try:
            stmt = select(ServerCommunityLink).where(
                and_(
                    ServerCommunityLink.community_id == community_id,
                    ServerCommunityLink.is_active == True,
                )
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get community link: {e}") from e

    async def deactivate_prior_links(
        self,
        session: AsyncSession,
        guild_id: str,
        performed_by: str,
        reason: str = "replaced"
    ) -> int:
        """Deactivate the active link of a guild, if any.

        Returns:
            int: Number of links deactivated (0 or 1)
        """
        try:
            link = await self.get_server_link(session, guild_id)
            if link is None:
                return 0
            link.is_active = False
            link.deactivated_at = utcnow()
            link.append_audit("deactivated", performed_by, reason=reason)
            await session.flush()
            return 1
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to deactivate links: {e}") from e

    async def create_server_link(
        self,
        session: AsyncSession,
        guild_id: str,
        community_id: str,
        linked_by: str,
        guild_info: Optional[Dict[str, Any]] = None
    ) -> ServerCommunityLink:
        """Link a guild to a community.

        Any previous active link of the guild is deactivated first. The
        guild's row is reused when one exists since ``guild_id`` is unique.

        Args:
            session: Database session
            guild_id: Discord guild snowflake ID
            community_id: Platform community ID
            linked_by: Discord user ID performing the link
            guild_info: Guild snapshot (name, icon, member_count, owner_id)

        Returns:
            ServerCommunityLink: Active link

        Raises:
            ConflictError: If the community is actively linked to another guild
            DatabaseOperationError: If creation fails
        """
        try:
            other = await self.get_active_link_for_community(session, community_id)
            if other is not None and other.guild_id != guild_id:
                raise ConflictError(
                    f"Community {community_id} is already linked to another Discord server"
                )

            await self.deactivate_prior_links(session, guild_id, linked_by, reason="relinked")

            snapshot = dict(guild_info or {})
            snapshot["last_updated"] = utcnow().isoformat()

            link = await self.get_server_link(session, guild_id, active_only=False)
            if link is None:
                link = ServerCommunityLink(
                    guild_id=guild_id,
                    community_id=community_id,
                    linked_by=linked_by,
                    guild_info=snapshot,
                )
                session.add(link)
            else:
                link.community_id = community_id
                link.linked_by = linked_by
                link.linked_at = utcnow()
                link.is_active = True
                link.deactivated_at = None
                link.guild_info = snapshot
                link.schema_version = CURRENT_SCHEMA_VERSION

            link.append_audit("linked", linked_by, community_id=community_id)
            await session.flush()
            return link

        except IntegrityError as e:
            raise ConflictError(
                f"Community {community_id} or guild {guild_id} already has an active link"
            ) from e
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create server link: {e}") from e

    async def delete_server_link(
        self,
        session: AsyncSession,
        guild_id: str,
        performed_by: str
    ) -> ServerCommunityLink:
        """Unlink a guild. The row is kept, deactivated, for its audit trail.

        Raises:
            NotFoundError: If the guild has no active link
            DatabaseOperationError: If the update fails
        """
        try:
            link = await self.get_server_link(session, guild_id)
            if link is None:
                raise NotFoundError(f"No active link for guild: {guild_id}")
            link.is_active = False
            link.deactivated_at = utcnow()
            link.append_audit("unlinked", performed_by)
            await session.flush()
            return link
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to delete server link: {e}") from e

    async def update_guild_info(
        self,
        session: AsyncSession,
        guild_id: str,
        guild_info: Dict[str, Any]
    ) -> Optional[ServerCommunityLink]:
        try:
            link = await self.get_server_link(session, guild_id)
            if link is None:
                return None
            snapshot = {**(link.guild_info or {}), **guild_info}
            snapshot["last_updated"] = utcnow().isoformat()
            link.guild_info = snapshot
            return link
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update guild info: {e}") from e

    async def update_integration_status(
        self,
        session: AsyncSession,
        guild_id: str,
        healthy: bool,
        detail: str = ""
    ) -> None:
        try:
            link = await self.get_server_link(session, guild_id)
            if link is None:
                return
            link.integration_status = {
                "healthy": healthy,
                "detail": detail,
                "checked_at": utcnow().isoformat(),
            }
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update integration status: {e}") from e

    async def record_activity(
        self,
        session: AsyncSession,
        guild_id: str,
        counter: str
    ) -> None:
        try:
            link = await self.get_server_link(session, guild_id)
            if link is not None:
                link.bump_activity(counter)
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to record activity: {e}") from e

    async def set_allowed_roles(
        self,
        session: AsyncSession,
        guild_id: str,
        command: str,
        role_ids: List[str],
        performed_by: str
    ) -> ServerCommunityLink:
        """Grant a command to extra roles on one server."""
        try:
            link = await self.get_server_link(session, guild_id)
            if link is None:
                raise NotFoundError(f"No active link for guild: {guild_id}")
            config = dict(link.bot_config or {})
            allowed = dict(config.get("allowed_roles", {}))
            allowed[command] = [str(role_id) for role_id in role_ids]
            config["allowed_roles"] = allowed
            link.bot_config = config
            link.append_audit("config_changed", performed_by, command=command, roles=allowed[command])
            return link
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update allowed roles: {e}") from e

    async def list_active_guild_ids(self, session: AsyncSession) -> List[str]:
        try:
            stmt = select(ServerCommunityLink.guild_id).where(ServerCommunityLink.is_active == True)
            result = await session.execute(stmt)
            return list(result.scalars().all())
        except Exception as e:
            raise DatabaseOperationError(f"Failed to list active guilds: {e}") from e


class UserLinkOperations:
    """Database operations for Discord user to Platform account links."""

    def __init__(self, cipher: TokenCipher):
        self.cipher = cipher

    async def get_user_link(
        self,
        session: AsyncSession,
        discord_id: str,
        active_only: bool = True
    ) -> Optional[UserAccountLink]:
        try:
            stmt = select(UserAccountLink).where(UserAccountLink.discord_id == discord_id)
            if active_only:
                stmt = stmt.where(UserAccountLink.is_active == True)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get user link: {e}") from e

    async def deactivate_prior_user_links(
        self,
        session: AsyncSession,
        platform_user_id: str,
        performed_by: str,
        except_discord_id: Optional[str] = None
    ) -> int:
        """Deactivate other Discord accounts linked to the same Platform user.

        Returns:
            int: Number of links deactivated
        """
        try:
            stmt = select(UserAccountLink).where(
                and_(
                    UserAccountLink.platform_user_id == platform_user_id,
                    UserAccountLink.is_active == True,
                )
            )
            if except_discord_id is not None:
                stmt = stmt.where(UserAccountLink.discord_id != except_discord_id)
            result = await session.execute(stmt)
            links = list(result.scalars().all())
            for link in links:
                link.is_active = False
                link.deactivated_at = utcnow()
                link.deactivation_reason = "Linked from another Discord account"
                link.append_audit("deactivated", performed_by, reason="superseded")
            return len(links)
        except Exception as e:
            raise DatabaseOperationError(f"Failed to deactivate user links: {e}") from e

    async def create_user_link(
        self,
        session: AsyncSession,
        discord_id: str,
        platform_user_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        data_processing_consent: bool = True
    ) -> UserAccountLink:
        """Create or refresh the account link for a Discord user.

        Tokens are sealed with the configured cipher before they reach the row.

        Raises:
            ConflictError: On unique constraint violation
            DatabaseOperationError: If creation fails
        """
        try:
            await self.deactivate_prior_user_links(
                session, platform_user_id, discord_id, except_discord_id=discord_id
            )

            link = await self.get_user_link(session, discord_id, active_only=False)
            if link is None:
                link = UserAccountLink(discord_id=discord_id, platform_user_id=platform_user_id)
                session.add(link)
            else:
                link.platform_user_id = platform_user_id
                link.is_active = True
                link.deactivated_at = None
                link.deactivation_reason = None
                link.linked_at = utcnow()

            link.seal_tokens(self.cipher, access_token, refresh_token, expires_at)
            link.is_verified = True
            link.verification_token = None
            link.verification_expires_at = None
            link.data_processing_consent = data_processing_consent
            link.consent_timestamp = utcnow() if data_processing_consent else None
            link.append_audit("linked", discord_id, platform_user_id=platform_user_id)
            await session.flush()
            return link

        except IntegrityError as e:
            raise ConflictError(f"Discord user {discord_id} is already linked") from e
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create user link: {e}") from e

    async def revoke_user_link(
        self,
        session: AsyncSession,
        discord_id: str,
        reason: str = "Revoked by user"
    ) -> UserAccountLink:
        try:
            link = await self.get_user_link(session, discord_id)
            if link is None:
                raise NotFoundError(f"No active account link for user: {discord_id}")
            link.is_active = False
            link.deactivated_at = utcnow()
            link.deactivation_reason = reason
            link.encrypted_access_token = None
            link.encrypted_refresh_token = None
            link.append_audit("revoked", discord_id, reason=reason)
            return link
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to revoke user link: {e}") from e

    async def record_activity(
        self,
        session: AsyncSession,
        discord_id: str,
        counter: Optional[str] = None
    ) -> None:
        try:
            link = await self.get_user_link(session, discord_id)
            if link is not None:
                link.touch(counter)
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to record user activity: {e}") from e


class TaskPostOperations:
    """Database operations for posted social tasks."""

    async def create_task_post(
        self,
        session: AsyncSession,
        task_id: str,
        guild_id: str,
        channel_id: str,
        message_id: str,
        created_by: str,
        task_data: Dict[str, Any],
        duration_hours: int = 168,
        start_time: Optional[datetime] = None
    ) -> TaskPost:
        """Record a task message.

        Raises:
            ConflictError: If the task already has an active post in the guild
            DatabaseOperationError: If creation fails
        """
        try:
            start = start_time or utcnow()
            post = TaskPost(
                task_id=task_id,
                guild_id=guild_id,
                channel_id=channel_id,
                message_id=message_id,
                created_by=created_by,
                task_data=dict(task_data),
                status="active",
                start_time=start,
                end_time=start + timedelta(hours=duration_hours),
                duration_hours=duration_hours,
            )
            post.append_audit("created", created_by, channel_id=channel_id)
            session.add(post)
            await session.flush()
            return post
        except IntegrityError as e:
            raise ConflictError(f"Task {task_id} already has an active post in guild {guild_id}") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create task post: {e}") from e

    async def get_task_post(
        self,
        session: AsyncSession,
        task_id: str,
        guild_id: str
    ) -> Optional[TaskPost]:
        try:
            stmt = select(TaskPost).where(
                and_(
                    TaskPost.task_id == task_id,
                    TaskPost.guild_id == guild_id,
                    TaskPost.is_active == True,
                )
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get task post: {e}") from e

    async def get_posts_for_task(
        self,
        session: AsyncSession,
        task_id: str
    ) -> List[TaskPost]:
        """All active posts of a task across guilds."""
        try:
            stmt = select(TaskPost).where(
                and_(TaskPost.task_id == task_id, TaskPost.is_active == True)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get posts for task: {e}") from e

    async def update_task_post(
        self,
        session: AsyncSession,
        post: TaskPost,
        performed_by: str,
        **updates: Any
    ) -> TaskPost:
        """Apply field updates to a post and audit them.

        A ``status`` change also stamps ``last_status_change``; moving to
        ``removed`` deactivates the post.
        """
        try:
            changed = {}
            for field, value in updates.items():
                if not hasattr(post, field):
                    raise DatabaseOperationError(f"Unknown task post field: {field}")
                if getattr(post, field) != value:
                    setattr(post, field, value)
                    changed[field] = value if field != "task_data" else "updated"
            if "status" in changed:
                post.last_status_change = utcnow()
                if post.status == "removed":
                    post.is_active = False
            if changed:
                post.append_audit("updated", performed_by, **changed)
            return post
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update task post: {e}") from e

    async def list_active_by_server(
        self,
        session: AsyncSession,
        guild_id: str,
        limit: int = 25
    ) -> List[TaskPost]:
        try:
            stmt = (
                select(TaskPost)
                .where(and_(TaskPost.guild_id == guild_id, TaskPost.is_active == True))
                .order_by(TaskPost.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
        except Exception as e:
            raise DatabaseOperationError(f"Failed to list task posts: {e}") from e

    async def expire_old_task_posts(
        self,
        session: AsyncSession,
        now: Optional[datetime] = None
    ) -> int:
        """Move active posts past their end time to ``expired``.

        Returns:
            int: Number of posts expired
        """
        try:
            now = now or utcnow()
            stmt = select(TaskPost).where(
                and_(
                    TaskPost.status == "active",
                    TaskPost.is_active == True,
                    TaskPost.end_time <= now,
                )
            )
            result = await session.execute(stmt)
            posts = list(result.scalars().all())
            for post in posts:
                post.status = "expired"
                post.last_status_change = now
                post.append_audit("auto_expired", "system", reason="Automatic expiration cleanup")
            return len(posts)
        except Exception as e:
            raise DatabaseOperationError(f"Failed to expire task posts: {e}") from e

    async def archive_terminal_posts(
        self,
        session: AsyncSession,
        older_than_days: int = 30
    ) -> int:
        try:
            cutoff = utcnow() - timedelta(days=older_than_days)
            stmt = select(TaskPost).where(
                and_(
                    TaskPost.status.in_(TERMINAL_STATUSES),
                    TaskPost.end_time < cutoff,
                    TaskPost.is_archived == False,
                )
            )
            result = await session.execute(stmt)
            posts = list(result.scalars().all())
            for post in posts:
                post.is_archived = True
                post.archived_at = utcnow()
                post.archived_reason = f"Automatic archival after {older_than_days} days"
            return len(posts)
        except Exception as e:
            raise DatabaseOperationError(f"Failed to archive task posts: {e}") from e

    async def record_task_view(
        self,
        session: AsyncSession,
        post: TaskPost,
        user_id: str
    ) -> TaskPost:
        post.views = (post.views or 0) + 1
        if user_id not in (post.unique_viewers or []):
            post.unique_viewers = [*(post.unique_viewers or []), user_id]
        return post

    async def record_task_completion(
        self,
        session: AsyncSession,
        post: TaskPost,
        user_id: str
    ) -> TaskPost:
        post.completions = (post.completions or 0) + 1
        post.append_audit("completed_by_user", user_id)
        return post


class AllowlistOperations:
    """Database operations for connected allowlists."""

    async def create_allowlist_connection(
        self,
        session: AsyncSession,
        allowlist_id: str,
        guild_id: str,
        channel_id: str,
        message_id: str,
        connected_by: str,
        allowlist_data: Dict[str, Any],
        end_time: Optional[datetime] = None
    ) -> AllowlistConnection:
        try:
            connection = AllowlistConnection(
                allowlist_id=allowlist_id,
                guild_id=guild_id,
                channel_id=channel_id,
                message_id=message_id,
                connected_by=connected_by,
                allowlist_data=dict(allowlist_data),
                end_time=end_time,
            )
            connection.append_audit("connected", connected_by, channel_id=channel_id)
            session.add(connection)
            await session.flush()
            return connection
        except IntegrityError as e:
            raise ConflictError(f"Message {message_id} already holds an allowlist") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create allowlist connection: {e}") from e

    async def get_allowlist_connection(
        self,
        session: AsyncSession,
        allowlist_id: str,
        guild_id: str
    ) -> Optional[AllowlistConnection]:
        try:
            stmt = (
                select(AllowlistConnection)
                .where(
                    and_(
                        AllowlistConnection.allowlist_id == allowlist_id,
                        AllowlistConnection.guild_id == guild_id,
                        AllowlistConnection.is_active == True,
                    )
                )
                .order_by(AllowlistConnection.created_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get allowlist connection: {e}") from e

    async def get_connections_for_allowlist(
        self,
        session: AsyncSession,
        allowlist_id: str
    ) -> List[AllowlistConnection]:
        try:
            stmt = select(AllowlistConnection).where(
                and_(
                    AllowlistConnection.allowlist_id == allowlist_id,
                    AllowlistConnection.is_active == True,
                )
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get allowlist connections: {e}") from e

    async def update_allowlist_connection(
        self,
        session: AsyncSession,
        connection: AllowlistConnection,
        performed_by: str,
        **updates: Any
    ) -> AllowlistConnection:
        try:
            changed = {}
            for field, value in updates.items():
                if not hasattr(connection, field):
                    raise DatabaseOperationError(f"Unknown allowlist connection field: {field}")
                if getattr(connection, field) != value:
                    setattr(connection, field, value)
                    changed[field] = value if not isinstance(value, (dict, list)) else "updated"
            if "status" in changed:
                connection.last_status_change = utcnow()
                if connection.status == "removed":
                    connection.is_active = False
            if changed:
                connection.append_audit("updated", performed_by, **changed)
            return connection
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update allowlist connection: {e}") from e

    async def reserve_allowlist_entry(
        self,
        session: AsyncSession,
        connection_id: UUID,
        user_id: str
    ) -> str:
        """Claim the user's place in the queue ahead of the Platform call.

        A user who already holds a place, or who loses a concurrent insert
        to the unique index, is queued as a duplicate attempt instead.

        Returns:
            str: ``"pending"`` for a new entry, ``"duplicate"`` for a repeat
        """
        try:
            held = await session.execute(
                select(AllowlistEntry.id).where(
                    and_(
                        AllowlistEntry.connection_id == connection_id,
                        AllowlistEntry.user_id == user_id,
                        AllowlistEntry.status != ENTRY_DUPLICATE,
                    )
                ).limit(1)
            )
            if held.scalar_one_or_none() is None:
                session.add(AllowlistEntry(connection_id=connection_id, user_id=user_id, status=ENTRY_PENDING))
                try:
                    await session.flush()
                    return ENTRY_PENDING
                except IntegrityError:
                    await session.rollback()
                    logger.info(f"Concurrent entry by {user_id} on connection {connection_id} recorded as duplicate")

            session.add(AllowlistEntry(connection_id=connection_id, user_id=user_id, status=ENTRY_DUPLICATE))
            await session.flush()
            return ENTRY_DUPLICATE
        except Exception as e:
            raise DatabaseOperationError(f"Failed to reserve allowlist entry: {e}") from e

    async def confirm_allowlist_entry(
        self,
        session: AsyncSession,
        connection_id: UUID,
        user_id: str
    ) -> bool:
        """Mark a reserved entry as accepted by the Platform."""
        try:
            result = await session.execute(
                update(AllowlistEntry)
                .where(
                    and_(
                        AllowlistEntry.connection_id == connection_id,
                        AllowlistEntry.user_id == user_id,
                        AllowlistEntry.status == ENTRY_PENDING,
                    )
                )
                .values(status=ENTRY_ENTERED)
            )
            return bool(result.rowcount)
        except Exception as e:
            raise DatabaseOperationError(f"Failed to confirm allowlist entry: {e}") from e

    async def release_allowlist_entry(
        self,
        session: AsyncSession,
        connection_id: UUID,
        user_id: str
    ) -> bool:
        """Drop a reservation the Platform did not accept."""
        try:
            result = await session.execute(
                delete(AllowlistEntry).where(
                    and_(
                        AllowlistEntry.connection_id == connection_id,
                        AllowlistEntry.user_id == user_id,
                        AllowlistEntry.status == ENTRY_PENDING,
                    )
                )
            )
            return bool(result.rowcount)
        except Exception as e:
            raise DatabaseOperationError(f"Failed to release allowlist entry: {e}") from e

    async def record_allowlist_view(
        self,
        session: AsyncSession,
        connection: AllowlistConnection
    ) -> AllowlistConnection:
        connection.views = (connection.views or 0) + 1
        return connection

    async def list_by_server(
        self,
        session: AsyncSession,
        guild_id: str,
        since: Optional[datetime] = None
    ) -> List[AllowlistConnection]:
        """Connections of a guild, newest first, archived ones included."""
        try:
            stmt = select(AllowlistConnection).where(AllowlistConnection.guild_id == guild_id)
            if since is not None:
                stmt = stmt.where(AllowlistConnection.created_at >= since)
            stmt = stmt.order_by(AllowlistConnection.created_at.desc())
            result = await session.execute(stmt)
            return list(result.scalars().all())
        except Exception as e:
            raise DatabaseOperationError(f"Failed to list allowlist connections: {e}") from e

    async def expire_old_allowlists(
        self,
        session: AsyncSession,
        now: Optional[datetime] = None
    ) -> int:
        try:
            now = now or utcnow()
            stmt = select(AllowlistConnection).where(
                and_(
                    AllowlistConnection.status == "active",
                    AllowlistConnection.is_active == True,
                    AllowlistConnection.end_time <= now,
                )
            )
            result = await session.execute(stmt)
            connections = list(result.scalars().all())
            for connection in connections:
                connection.status = "expired"
                connection.last_status_change = now
                connection.append_audit("auto_expired", "system", reason="Automatic expiration cleanup")
            return len(connections)
        except Exception as e:
            raise DatabaseOperationError(f"Failed to expire allowlists: {e}") from e

    async def archive_terminal_connections(
        self,
        session: AsyncSession,
        older_than_days: int = 60
    ) -> int:
        try:
            cutoff = utcnow() - timedelta(days=older_than_days)
            stmt = select(AllowlistConnection).where(
                and_(
                    AllowlistConnection.status.in_(TERMINAL_STATUSES),
                    AllowlistConnection.end_time < cutoff,
                    AllowlistConnection.is_archived == False,
                )
            )
            result = await session.execute(stmt)
            connections = list(result.scalars().all())
            for connection in connections:
                connection.is_archived = True
                connection.archived_at = utcnow()
                connection.archived_reason = f"Automatic archival after {older_than_days} days"
            return len(connections)
        except Exception as e:
            raise DatabaseOperationError(f"Failed to archive allowlists: {e}") from e


class InteractionLogOperations:
    """Database operations for the interaction log."""

    async def log_interaction(
        self,
        session: AsyncSession,
        interaction_id: str,
        user_id: str,
        category: str,
        name: str,
        action: str,
        result: str,
        guild_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        response_time_ms: float = 0.0,
        error_type: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> InteractionLog:
        try:
            entry = InteractionLog(
                interaction_id=interaction_id,
                guild_id=guild_id,
                channel_id=channel_id,
                user_id=user_id,
                category=category,
                name=name,
                action=action,
                result=result,
                response_time_ms=response_time_ms,
                error_type=error_type,
                context=context or {},
            )
            session.add(entry)
            await session.flush()
            return entry
        except IntegrityError as e:
            raise ConflictError(f"Interaction {interaction_id} already logged") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to log interaction: {e}") from e

    async def query_interactions(
        self,
        session: AsyncSession,
        guild_id: Optional[str] = None,
        user_id: Optional[str] = None,
        category: Optional[str] = None,
        result: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100
    ) -> List[InteractionLog]:
        try:
            stmt = select(InteractionLog)
            if guild_id is not None:
                stmt = stmt.where(InteractionLog.guild_id == guild_id)
            if user_id is not None:
                stmt = stmt.where(InteractionLog.user_id == user_id)
            if category is not None:
                stmt = stmt.where(InteractionLog.category == category)
            if result is not None:
                stmt = stmt.where(InteractionLog.result == result)
            if since is not None:
                stmt = stmt.where(InteractionLog.timestamp >= since)
            stmt = stmt.order_by(InteractionLog.timestamp.desc()).limit(limit)
            rows = await session.execute(stmt)
            return list(rows.scalars().all())
        except Exception as e:
            raise DatabaseOperationError(f"Failed to query interactions: {e}") from e

    async def cleanup_old_logs(self, session: AsyncSession, days: int = 90) -> int:
        """Delete log rows older than ``days``."""
        try:
            cutoff = utcnow() - timedelta(days=days)
            result = await session.execute(
                delete(InteractionLog).where(InteractionLog.timestamp < cutoff)
            )
            return result.rowcount or 0
        except Exception as e:
            raise DatabaseOperationError(f"Failed to cleanup interaction logs: {e}") from e

    async def archive_old_logs(
        self,
        session: AsyncSession,
        days: int = 30,
        retention_days: int = 90
    ) -> int:
        """Flag rows between ``days`` and ``retention_days`` old as archived."""
        try:
            now = utcnow()
            result = await session.execute(
                update(InteractionLog)
                .where(
                    and_(
                        InteractionLog.timestamp < now - timedelta(days=days),
                        InteractionLog.timestamp >= now - timedelta(days=retention_days),
                        InteractionLog.is_archived == False,
                    )
                )
                .values(is_archived=True, archived_at=now)
            )
            return result.rowcount or 0
        except Exception as e:
            raise DatabaseOperationError(f"Failed to archive interaction logs: {e}") from e

    async def get_guild_stats(
        self,
        session: AsyncSession,
        guild_id: str,
        days: int = 30
    ) -> Dict[str, Any]:
        try:
            since = utcnow() - timedelta(days=days)
            stmt = (
                select(
                    InteractionLog.result,
                    func.count(InteractionLog.id),
                    func.avg(InteractionLog.response_time_ms),
                )
                .where(and_(InteractionLog.guild_id == guild_id, InteractionLog.timestamp >= since))
                .group_by(InteractionLog.result)
            )
            rows = (await session.execute(stmt)).all()
            by_result = {row[0]: int(row[1]) for row in rows}
            total = sum(by_result.values())
            weighted = sum((row[2] or 0.0) * row[1] for row in rows)

            users_stmt = select(func.count(func.distinct(InteractionLog.user_id))).where(
                and_(InteractionLog.guild_id == guild_id, InteractionLog.timestamp >= since)
            )
            unique_users = (await session.execute(users_stmt)).scalar_one()

            return {
                "total_interactions": total,
                "by_result": by_result,
                "unique_users": int(unique_users or 0),
                "average_response_time_ms": round(weighted / total, 2) if total else 0.0,
                "error_rate": round(by_result.get("error", 0) / total, 4) if total else 0.0,
            }
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get guild interaction stats: {e}") from e

    async def get_performance_metrics(self, session: AsyncSession, days: int = 30) -> Dict[str, Any]:
        try:
            since = utcnow() - timedelta(days=days)
            stmt = select(
                func.count(InteractionLog.id),
                func.avg(InteractionLog.response_time_ms),
                func.max(InteractionLog.response_time_ms),
            ).where(InteractionLog.timestamp >= since)
            count, avg_ms, max_ms = (await session.execute(stmt)).one()
            return {
                "total": int(count or 0),
                "average_response_time_ms": round(float(avg_ms or 0.0), 2),
                "max_response_time_ms": float(max_ms or 0.0),
            }
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get performance metrics: {e}") from e


class MaintenanceOperations:
    """Cross-entity housekeeping, analytics and migrations."""

    async def clear_expired_verification_tokens(self, session: AsyncSession) -> int:
        try:
            now = utcnow()
            stmt = select(UserAccountLink).where(
                and_(
                    UserAccountLink.verification_expires_at < now,
                    UserAccountLink.is_verified == False,
                    UserAccountLink.verification_token.is_not(None),
                )
            )
            links = list((await session.execute(stmt)).scalars().all())
            for link in links:
                link.verification_token = None
                link.verification_expires_at = None
                link.append_audit(
                    "token_expired_cleanup",
                    "system",
                    reason="Automatic cleanup of expired verification token",
                )
            return len(links)
        except Exception as e:
            raise DatabaseOperationError(f"Failed to clear expired tokens: {e}") from e

    async def validate_integrity(self, session: AsyncSession) -> Dict[str, int]:
        """Count task posts and allowlists that reference unlinked guilds."""
        try:
            active_guilds = select(ServerCommunityLink.guild_id).where(
                ServerCommunityLink.is_active == True
            )
            orphan_tasks = (await session.execute(
                select(func.count(TaskPost.id)).where(
                    and_(TaskPost.guild_id.not_in(active_guilds), TaskPost.is_active == True)
                )
            )).scalar_one()
            orphan_allowlists = (await session.execute(
                select(func.count(AllowlistConnection.id)).where(
                    and_(
                        AllowlistConnection.guild_id.not_in(active_guilds),
                        AllowlistConnection.is_active == True,
                    )
                )
            )).scalar_one()
            if orphan_tasks or orphan_allowlists:
                logger.warning(
                    f"Data integrity check found {orphan_tasks} orphaned tasks and "
                    f"{orphan_allowlists} orphaned allowlists"
                )
            return {"orphan_tasks": int(orphan_tasks), "orphan_allowlists": int(orphan_allowlists)}
        except Exception as e:
            raise DatabaseOperationError(f"Failed to validate data integrity: {e}") from e

    async def get_collection_stats(self, session: AsyncSession) -> Dict[str, int]:
        try:
            stats = {}
            for model in (ServerCommunityLink, UserAccountLink, TaskPost, AllowlistConnection, InteractionLog):
                count = (await session.execute(select(func.count()).select_from(model))).scalar_one()
                stats[model.__tablename__] = int(count)
            return stats
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get collection stats: {e}") from e

    async def get_guild_analytics(
        self,
        session: AsyncSession,
        guild_id: str,
        days: int = 30
    ) -> Dict[str, Any]:
        try:
            since = utcnow() - timedelta(days=days)
            link = await ServerLinkOperations().get_server_link(session, guild_id)

            task_rows = (await session.execute(
                select(TaskPost.status, func.count(TaskPost.id), func.sum(TaskPost.completions), func.sum(TaskPost.views))
                .where(and_(TaskPost.guild_id == guild_id, TaskPost.created_at >= since))
                .group_by(TaskPost.status)
            )).all()
            task_stats = {
                "by_status": {row[0]: int(row[1]) for row in task_rows},
                "total": sum(int(row[1]) for row in task_rows),
                "completions": sum(int(row[2] or 0) for row in task_rows),
                "views": sum(int(row[3] or 0) for row in task_rows),
            }

            in_window = and_(AllowlistConnection.guild_id == guild_id, AllowlistConnection.created_at >= since)
            total_connections = (await session.execute(
                select(func.count(AllowlistConnection.id)).where(in_window)
            )).scalar_one()
            entry_rows = (await session.execute(
                select(AllowlistEntry.status == ENTRY_DUPLICATE, func.count(AllowlistEntry.id))
                .join(AllowlistConnection, AllowlistEntry.connection_id == AllowlistConnection.id)
                .where(in_window)
                .group_by(AllowlistEntry.status == ENTRY_DUPLICATE)
            )).all()
            by_kind = {bool(row[0]): int(row[1]) for row in entry_rows}
            allowlist_stats = {
                "total": int(total_connections),
                "entries": by_kind.get(False, 0),
                "duplicate_attempts": by_kind.get(True, 0),
            }

            interaction_stats = await InteractionLogOperations().get_guild_stats(session, guild_id, days)

            return {
                "guild_id": guild_id,
                "community_id": link.community_id if link else None,
                "task_stats": task_stats,
                "allowlist_stats": allowlist_stats,
                "interaction_stats": interaction_stats,
                "generated_at": utcnow().isoformat(),
            }
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get guild analytics: {e}") from e

    async def get_platform_analytics(self, session: AsyncSession, days: int = 30) -> Dict[str, Any]:
        try:
            since = utcnow() - timedelta(days=days)

            async def count(stmt) -> int:
                return int((await session.execute(stmt)).scalar_one() or 0)

            return {
                "total_servers": await count(
                    select(func.count(ServerCommunityLink.id)).where(ServerCommunityLink.is_active == True)
                ),
                "total_account_links": await count(
                    select(func.count(UserAccountLink.id)).where(UserAccountLink.is_active == True)
                ),
                "total_tasks": await count(
                    select(func.count(TaskPost.id)).where(TaskPost.is_active == True)
                ),
                "total_allowlists": await count(
                    select(func.count(AllowlistConnection.id)).where(AllowlistConnection.is_active == True)
                ),
                "total_interactions": await count(
                    select(func.count(InteractionLog.id)).where(InteractionLog.timestamp >= since)
                ),
                "performance": await InteractionLogOperations().get_performance_metrics(session, days),
                "generated_at": utcnow().isoformat(),
            }
        except DatabaseOperationError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get platform analytics: {e}") from e

    async def migrate_data(self, session: AsyncSession, from_version: str, to_version: str) -> int:
        """Run the migration path between two schema versions.

        Returns:
            int: Number of rows touched
        """
        logger.info(f"Starting data migration from version {from_version} to {to_version}")
        if to_version == "2.0":
            migrated = await self.migrate_to_v2(session)
        else:
            logger.warning(f"No migration path defined for version {to_version}")
            return 0
        logger.info("Data migration completed successfully")
        return migrated

    async def migrate_to_v2(self, session: AsyncSession) -> int:
        """Backfill ``guild_info.last_updated`` and bump ``schema_version``."""
        try:
            stmt = select(ServerCommunityLink)
            links = [
                link for link in (await session.execute(stmt)).scalars().all()
                if link.schema_version < 2 or "last_updated" not in (link.guild_info or {})
            ]
            for link in links:
                info = dict(link.guild_info or {})
                info.setdefault("last_updated", utcnow().isoformat())
                link.guild_info = info
                link.schema_version = 2
            for model in (UserAccountLink, TaskPost, AllowlistConnection):
                await session.execute(
                    update(model).where(model.schema_version < 2).values(schema_version=2)
                )
            logger.info("Migration to v2.0 completed")
            return len(links)
        except Exception as e:
            raise DatabaseOperationError(f"Migration to v2.0 failed: {e}") from e
