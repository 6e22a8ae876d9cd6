"""Real-time sync of posted task and allowlist messages.

Platform update events are applied to every active post of the updated
entity: the snapshot is merged into the stored copy, the message is
re-rendered and edited in place. Updates carry a timestamp; one older than
the entity's ``last_synced_at`` is discarded, and re-applying the latest one
leaves the message untouched. A message deleted on Discord marks its post
removed.
"""

from __future__ import annotations

import logging
import time
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from naffles_bot.bot.pipeline.context import Reply
from naffles_bot.bot.utils.embeds import allowlist_reply, parse_platform_datetime, task_reply
from naffles_bot.web.crud import AllowlistOperations, ServerLinkOperations, TaskPostOperations
from naffles_bot.web.models import as_utc

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

EVENT_TASK_STATUS_CHANGED = "task.status_changed"
EVENT_ALLOWLIST_UPDATED = "allowlist.updated"
EVENT_COMMUNITY_SETTINGS_CHANGED = "community.settings_changed"


class MessageMissingError(Exception):
    """Raised by a gateway when the target message no longer exists."""
    pass


class MessageGateway(Protocol):
    async def edit_message(self, channel_id: str, message_id: str, reply: Reply) -> None: ...


@dataclass
class SyncResult:
    updated: int = 0
    unchanged: int = 0
    stale: int = 0
    removed: int = 0
    failed: int = 0

    @property
    def touched(self) -> int:
        return self.updated + self.unchanged + self.removed


class RealTimeSync:
    """Apply Platform updates to the Discord messages that show them.

    Args:
        session_factory: Async context manager factory yielding sessions
        gateway: Edits Discord messages
        clock: Monotonic clock for timing metrics
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        gateway: MessageGateway,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._session_factory = session_factory
        self.gateway = gateway
        self._clock = clock
        self.task_ops = TaskPostOperations()
        self.allowlist_ops = AllowlistOperations()
        self.server_link_ops = ServerLinkOperations()
        self.metrics: dict[str, Any] = {
            "sync_operations": 0,
            "successful_syncs": 0,
            "failed_syncs": 0,
            "webhook_events": 0,
            "stale_discarded": 0,
            "messages_removed": 0,
            "average_sync_time": 0.0,
        }
        self._total_sync_time = 0.0

    def _record_timing(self, started: float, failed: bool) -> None:
        elapsed_ms = (self._clock() - started) * 1000
        self.metrics["sync_operations"] += 1
        self.metrics["failed_syncs" if failed else "successful_syncs"] += 1
        self._total_sync_time += elapsed_ms
        self.metrics["average_sync_time"] = self._total_sync_time / self.metrics["sync_operations"]

    @staticmethod
    def _is_stale(updated_at: datetime, last_synced_at: Optional[datetime]) -> bool:
        last = as_utc(last_synced_at)
        return last is not None and updated_at < last

    async def _edit(self, channel_id: str, message_id: str, reply: Reply) -> bool:
        """Edit a message; returns False when the message is gone."""
        try:
            await self.gateway.edit_message(channel_id, message_id, reply)
            return True
        except MessageMissingError:
            return False

    async def apply_task_update(
        self,
        task_id: str,
        snapshot: dict[str, Any],
        updated_at: Optional[datetime] = None,
    ) -> SyncResult:
        """Apply a task snapshot to all active posts of the task."""
        updated_at = as_utc(updated_at) or datetime.now(timezone.utc)
        result = SyncResult()
        started = self._clock()

        async with self._session_factory() as session:
            posts = await self.task_ops.get_posts_for_task(session, task_id)
            for post in posts:
                if self._is_stale(updated_at, post.last_synced_at):
                    result.stale += 1
                    continue

                merged = {**(post.task_data or {}), **snapshot, "id": task_id}
                status = merged.get("status", post.status)
                if as_utc(post.last_synced_at) == updated_at and merged == post.task_data:
                    result.unchanged += 1
                    continue

                try:
                    present = await self._edit(post.channel_id, post.message_id, task_reply(merged))
                except Exception as e:
                    logger.error(f"Failed to edit task message {post.message_id} for task {task_id}: {e}")
                    result.failed += 1
                    continue

                if not present:
                    await self.task_ops.update_task_post(session, post, "sync", status="removed")
                    post.last_synced_at = updated_at
                    result.removed += 1
                    logger.info(f"Task {task_id} message {post.message_id} is gone; post marked removed")
                    continue

                await self.task_ops.update_task_post(session, post, "sync", task_data=merged, status=status)
                post.last_synced_at = updated_at
                result.updated += 1

        self._finish(result, started)
        return result

    async def apply_allowlist_update(
        self,
        allowlist_id: str,
        snapshot: dict[str, Any],
        updated_at: Optional[datetime] = None,
    ) -> SyncResult:
        """Apply an allowlist snapshot to all active connections."""
        updated_at = as_utc(updated_at) or datetime.now(timezone.utc)
        result = SyncResult()
        started = self._clock()

        async with self._session_factory() as session:
            connections = await self.allowlist_ops.get_connections_for_allowlist(session, allowlist_id)
            for connection in connections:
                if self._is_stale(updated_at, connection.last_synced_at):
                    result.stale += 1
                    continue

                merged = {**(connection.allowlist_data or {}), **snapshot, "id": allowlist_id}
                status = merged.get("status", connection.status)
                participants = merged.get("participants", connection.entry_count)
                if as_utc(connection.last_synced_at) == updated_at and merged == connection.allowlist_data:
                    result.unchanged += 1
                    continue

                try:
                    present = await self._edit(
                        connection.channel_id,
                        connection.message_id,
                        allowlist_reply(merged, participants),
                    )
                except Exception as e:
                    logger.error(f"Failed to edit allowlist message {connection.message_id}: {e}")
                    result.failed += 1
                    continue

                if not present:
                    await self.allowlist_ops.update_allowlist_connection(session, connection, "sync", status="removed")
                    connection.last_synced_at = updated_at
                    result.removed += 1
                    continue

                updates: dict[str, Any] = {"allowlist_data": merged, "status": status}
                if merged.get("winners"):
                    updates["winner_data"] = {
                        "drawn": True,
                        "drawn_at": merged.get("drawnAt"),
                        "winners": merged["winners"],
                    }
                await self.allowlist_ops.update_allowlist_connection(session, connection, "sync", **updates)
                connection.last_synced_at = updated_at
                result.updated += 1

        self._finish(result, started)
        return result

    async def apply_community_settings(self, community_id: str, settings: dict[str, Any]) -> bool:
        """Store Platform-side community settings on the linked server."""
        async with self._session_factory() as session:
            link = await self.server_link_ops.get_active_link_for_community(session, community_id)
            if link is None:
                logger.info(f"Settings change for unlinked community {community_id} ignored")
                return False
            config = dict(link.bot_config or {})
            config["community_settings"] = {**config.get("community_settings", {}), **settings}
            link.bot_config = config
            link.append_audit("config_changed", "platform", source="webhook")
        return True

    def _finish(self, result: SyncResult, started: float) -> None:
        self.metrics["stale_discarded"] += result.stale
        self.metrics["messages_removed"] += result.removed
        self._record_timing(started, failed=result.failed > 0)
        if result.stale:
            logger.debug(f"Discarded {result.stale} stale update(s)")

    async def handle_event(self, event_type: str, payload: dict[str, Any]) -> Optional[SyncResult]:
        """Dispatch one Platform webhook event.

        Args:
            event_type: Event name such as ``task.status_changed``
            payload: Event data; ``timestamp`` orders updates

        Returns:
            Optional[SyncResult]: None for events that edit no messages
        """
        self.metrics["webhook_events"] += 1
        updated_at = parse_platform_datetime(payload.get("timestamp") or payload.get("updatedAt"))

        if event_type == EVENT_TASK_STATUS_CHANGED:
            task_id = str(payload.get("taskId") or payload.get("id"))
            snapshot = dict(payload.get("task") or {})
            if payload.get("status"):
                snapshot["status"] = payload["status"]
            return await self.apply_task_update(task_id, snapshot, updated_at)

        if event_type == EVENT_ALLOWLIST_UPDATED:
            allowlist_id = str(payload.get("allowlistId") or payload.get("id"))
            snapshot = dict(payload.get("allowlist") or {})
            for key in ("status", "participants", "winners"):
                if key in payload:
                    snapshot[key] = payload[key]
            return await self.apply_allowlist_update(allowlist_id, snapshot, updated_at)

        if event_type == EVENT_COMMUNITY_SETTINGS_CHANGED:
            await self.apply_community_settings(str(payload.get("communityId")), dict(payload.get("settings") or {}))
            return None

        logger.warning(f"Unknown webhook event type: {event_type}")
        return None

    def get_metrics(self) -> dict[str, Any]:
        metrics = dict(self.metrics)
        operations = metrics["sync_operations"]
        metrics["success_rate"] = (metrics["successful_syncs"] / operations * 100) if operations else 100.0
        return metrics
