"""Tamper-evident audit trail for bot activity.

Records are kept in memory (bounded by age and count) and written to the
``audit`` log category. Each record stores the SHA-256 digest of its
predecessor, so rewriting or dropping a record in the middle of the chain is
detectable with :meth:`AuditRecorder.verify_chain`.
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from naffles_bot.bot.pipeline.context import InteractionEnvelope
from naffles_bot.shared.logging_utils import log_audit

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset({
    "command_executed",
    "permission_granted",
    "permission_denied",
    "admin_action",
    "community_linked",
    "community_unlinked",
    "task_created",
    "task_completed",
    "allowlist_connected",
    "allowlist_entered",
    "user_joined",
    "user_left",
    "bot_joined_guild",
    "bot_left_guild",
    "security_event",
    "rate_limit_hit",
    "error_occurred",
    "config_changed",
    "data_export",
    "data_deletion",
})

OUTCOMES = ("success", "error", "denied", "cooldown", "rate-limit")

OUTCOME_EVENT_TYPES = {
    "success": "command_executed",
    "cooldown": "command_executed",
    "denied": "permission_denied",
    "rate-limit": "rate_limit_hit",
    "error": "error_occurred",
}

GENESIS_DIGEST = "0" * 64
SENSITIVE_KEYS = ("token", "secret", "password", "authorization")


def _sanitize(details: dict[str, Any]) -> dict[str, Any]:
    clean = {}
    for key, value in details.items():
        if any(marker in key.lower() for marker in SENSITIVE_KEYS):
            clean[key] = "[REDACTED]"
        elif isinstance(value, str) and len(value) > 500:
            clean[key] = value[:500]
        else:
            clean[key] = value
    return clean


@dataclass
class AuditRecord:
    id: str
    type: str
    timestamp: datetime
    user_id: Optional[str] = None
    guild_id: Optional[str] = None
    outcome: Optional[str] = None
    severity: str = "low"
    details: dict[str, Any] = field(default_factory=dict)
    previous_digest: str = GENESIS_DIGEST
    digest: str = ""

    def canonical(self) -> str:
        payload = {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "guild_id": self.guild_id,
            "outcome": self.outcome,
            "severity": self.severity,
            "details": self.details,
            "previous_digest": self.previous_digest,
        }
        return json.dumps(payload, sort_keys=True, default=str)

    def compute_digest(self) -> str:
        return hashlib.sha256(self.canonical().encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "guild_id": self.guild_id,
            "outcome": self.outcome,
            "severity": self.severity,
            "details": self.details,
            "digest": self.digest,
        }


class AuditRecorder:
    """Append-only, hash-chained audit log.

    Args:
        retention_days: Records older than this are pruned
        max_records: Hard cap on records kept in memory
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        retention_days: int = 30,
        max_records: int = 10000,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.retention_days = retention_days
        self.max_records = max_records
        self._clock = clock
        self._records: list[AuditRecord] = []
        self._last_digest = GENESIS_DIGEST

    def __len__(self) -> int:
        return len(self._records)

    def record(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        guild_id: Optional[str] = None,
        outcome: Optional[str] = None,
        severity: str = "low",
        **details: Any,
    ) -> AuditRecord:
        """Append one event to the chain.

        Raises:
            ValueError: If ``event_type`` or ``outcome`` is unknown
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown audit event type: {event_type}")
        if outcome is not None and outcome not in OUTCOMES:
            raise ValueError(f"Unknown outcome: {outcome}")

        now = self._clock()
        record = AuditRecord(
            id=f"audit_{int(now.timestamp() * 1000)}_{secrets.token_hex(5)}",
            type=event_type,
            timestamp=now,
            user_id=user_id,
            guild_id=guild_id,
            outcome=outcome,
            severity=severity,
            details=_sanitize(details),
            previous_digest=self._last_digest,
        )
        record.digest = record.compute_digest()
        self._records.append(record)
        self._last_digest = record.digest
        self.prune(now)

        log_audit(event_type, user_id=user_id, guild_id=guild_id, outcome=outcome, id=record.id)
        return record

    def record_outcome(
        self,
        envelope: InteractionEnvelope,
        outcome: str,
        response_time_ms: float,
        error_type: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AuditRecord:
        """Record the terminal outcome of one pipeline run."""
        severity = "medium" if outcome in ("denied", "rate-limit") else "low"
        if outcome == "error":
            severity = "high" if error_type in ("type_error", "reference_error", "syntax_error") else "medium"
        return self.record(
            OUTCOME_EVENT_TYPES[outcome],
            user_id=envelope.user_id,
            guild_id=envelope.guild_id,
            outcome=outcome,
            severity=severity,
            interaction_id=envelope.interaction_id,
            category=envelope.category,
            name=envelope.name,
            channel_id=envelope.channel_id,
            response_time_ms=round(response_time_ms, 2),
            error_type=error_type,
            reason=reason,
        )

    def prune(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        cutoff = now - timedelta(days=self.retention_days)
        before = len(self._records)
        self._records = [record for record in self._records if record.timestamp >= cutoff]
        if len(self._records) > self.max_records:
            self._records = self._records[-self.max_records:]
        return before - len(self._records)

    def verify_chain(self) -> bool:
        """Check every retained record's digest and its link to the previous one."""
        previous: Optional[AuditRecord] = None
        for record in self._records:
            if record.compute_digest() != record.digest:
                logger.error(f"Audit record {record.id} digest mismatch")
                return False
            if previous is not None and record.previous_digest != previous.digest:
                logger.error(f"Audit chain broken before {record.id}")
                return False
            previous = record
        return True

    def get_events(
        self,
        guild_id: Optional[str] = None,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        """Filtered records, newest first."""
        records = [
            record for record in self._records
            if (guild_id is None or record.guild_id == guild_id)
            and (user_id is None or record.user_id == user_id)
            and (event_type is None or record.type == event_type)
            and (since is None or record.timestamp >= since)
        ]
        records.reverse()
        return records[:limit]

    def get_audit_summary(self, guild_id: Optional[str] = None, hours: int = 24) -> dict[str, Any]:
        since = self._clock() - timedelta(hours=hours)
        records = self.get_events(guild_id=guild_id, since=since, limit=self.max_records)
        by_user = Counter(record.user_id for record in records if record.user_id)
        return {
            "period_hours": hours,
            "total_events": len(records),
            "by_type": dict(Counter(record.type for record in records)),
            "by_outcome": dict(Counter(record.outcome for record in records if record.outcome)),
            "by_severity": dict(Counter(record.severity for record in records)),
            "unique_users": len(by_user),
            "top_users": by_user.most_common(10),
            "chain_valid": self.verify_chain(),
        }

    def clear(self) -> None:
        self._records.clear()
        self._last_digest = GENESIS_DIGEST
