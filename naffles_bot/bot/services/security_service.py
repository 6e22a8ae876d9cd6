"""Abuse and anomaly detection over pipeline outcomes.

The monitor keeps short sliding windows per user and per guild and turns
threshold crossings into :class:`SecurityEvent` records. High and critical
events are also raised as alerts.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from naffles_bot.bot.pipeline.context import InteractionEnvelope
from naffles_bot.shared.logging_utils import get_category_logger, log_security

logger = logging.getLogger(__name__)
security_logger = get_category_logger("security")

RAPID_COMMANDS = "rapid_commands"
PERMISSION_DENIED = "permission_denied"
NEW_ACCOUNT_ACTIVITY = "new_account_activity"
BOT_DETECTION = "bot_detection"
MASS_JOINS = "mass_joins"
SUSPICIOUS_PATTERN = "suspicious_pattern"
COMMAND_ABUSE = "command_abuse"

# (count, window seconds)
THRESHOLDS: dict[str, tuple[int, float]] = {
    RAPID_COMMANDS: (10, 60.0),
    PERMISSION_DENIED: (5, 300.0),
    NEW_ACCOUNT_ACTIVITY: (3, 3600.0),
    BOT_DETECTION: (1, 0.0),
    MASS_JOINS: (10, 300.0),
    SUSPICIOUS_PATTERN: (3, 1800.0),
    COMMAND_ABUSE: (5, 300.0),
}

EVENT_RETENTION_SECONDS = 24 * 3600
TIMING_SAMPLE = 5
TIMING_TOLERANCE_SECONDS = 0.1
TIMING_MAX_MEAN_SECONDS = 5.0


@dataclass
class SecurityEvent:
    id: str
    type: str
    severity: str
    timestamp: float
    user_id: Optional[str] = None
    guild_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    @property
    def is_alert(self) -> bool:
        return self.severity in ("high", "critical")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "created_at": self.created_at.isoformat(),
            "user_id": self.user_id,
            "guild_id": self.guild_id,
            "details": self.details,
        }


class SecurityMonitor:
    """Sliding-window detectors for suspicious interaction patterns.

    Args:
        min_account_age_days: Accounts younger than this count as new
        thresholds: Overrides for :data:`THRESHOLDS`
        clock: Wall clock in seconds
        on_event: Optional callback for every created event
    """

    def __init__(
        self,
        min_account_age_days: int = 7,
        thresholds: Optional[dict[str, tuple[int, float]]] = None,
        clock: Callable[[], float] = time.time,
        on_event: Optional[Callable[[SecurityEvent], None]] = None,
    ):
        self.min_account_age_days = min_account_age_days
        self.thresholds = {**THRESHOLDS, **(thresholds or {})}
        self._clock = clock
        self._on_event = on_event
        self._commands: dict[tuple[str, Optional[str]], deque[tuple[float, str]]] = defaultdict(deque)
        self._denials: dict[tuple[str, Optional[str]], deque[float]] = defaultdict(deque)
        self._new_accounts: dict[Optional[str], deque[tuple[float, str]]] = defaultdict(deque)
        self._joins: dict[str, deque[tuple[float, str, bool]]] = defaultdict(deque)
        self._last_emitted: dict[tuple[str, Optional[str], Optional[str]], float] = {}
        self.events: list[SecurityEvent] = []
        self.alerts_raised = 0

    # Window helpers

    def _trim_pairs(self, window: deque, now: float, seconds: float) -> deque:
        while window and now - window[0][0] >= seconds:
            window.popleft()
        return window

    def _trim_times(self, window: deque, now: float, seconds: float) -> deque:
        while window and now - window[0] >= seconds:
            window.popleft()
        return window

    # Event creation

    def _emit(
        self,
        event_type: str,
        severity: str,
        now: float,
        user_id: Optional[str],
        guild_id: Optional[str],
        **details: Any,
    ) -> Optional[SecurityEvent]:
        _, window = self.thresholds[event_type]
        key = (event_type, user_id, guild_id)
        last = self._last_emitted.get(key)
        if last is not None and window and now - last < window:
            return None
        self._last_emitted[key] = now

        event = SecurityEvent(
            id=f"sec_{int(now * 1000)}_{secrets.token_hex(4)}",
            type=event_type,
            severity=severity,
            timestamp=now,
            user_id=user_id,
            guild_id=guild_id,
            details=details,
        )
        self.events.append(event)
        self._prune_events(now)

        log_security(f"Security event {event_type}", user_id=user_id, guild_id=guild_id, severity=severity)
        if event.is_alert:
            self.alerts_raised += 1
            security_logger.warning(f"🚨 Security alert {event.id}: {event_type} for user {user_id} in guild {guild_id}")
        if self._on_event is not None:
            self._on_event(event)
        return event

    def _prune_events(self, now: float) -> None:
        self.events = [event for event in self.events if now - event.timestamp < EVENT_RETENTION_SECONDS]

    # Detectors

    def observe(self, envelope: InteractionEnvelope, outcome: str) -> list[SecurityEvent]:
        """Feed one pipeline outcome to every detector.

        Returns:
            list[SecurityEvent]: Events created by this observation
        """
        now = self._clock()
        user_id, guild_id = envelope.user_id, envelope.guild_id
        created: list[Optional[SecurityEvent]] = []

        if envelope.is_bot:
            created.append(self._emit(
                BOT_DETECTION, "high", now, user_id, guild_id,
                name=envelope.name, reason="Bot account attempted command",
            ))
            return [event for event in created if event]

        commands = self._trim_pairs(self._commands[(user_id, guild_id)], now, 3600.0)
        commands.append((now, envelope.name))

        limit, window = self.thresholds[RAPID_COMMANDS]
        recent = [name for stamp, name in commands if now - stamp < window]
        if len(recent) >= limit:
            created.append(self._emit(
                RAPID_COMMANDS, "medium", now, user_id, guild_id,
                command_count=len(recent), window_seconds=window, commands=recent[-limit:],
            ))

        if outcome == "denied":
            limit, window = self.thresholds[PERMISSION_DENIED]
            denials = self._trim_times(self._denials[(user_id, guild_id)], now, window)
            denials.append(now)
            if len(denials) >= limit:
                created.append(self._emit(
                    PERMISSION_DENIED, "medium", now, user_id, guild_id,
                    failure_count=len(denials), window_seconds=window,
                ))

        age = envelope.account_age_days
        if age is not None and age < self.min_account_age_days:
            limit, window = self.thresholds[NEW_ACCOUNT_ACTIVITY]
            activity = self._trim_pairs(self._new_accounts[guild_id], now, window)
            activity.append((now, user_id))
            if len(activity) >= limit:
                created.append(self._emit(
                    NEW_ACCOUNT_ACTIVITY, "medium", now, None, guild_id,
                    new_account_count=len(activity), users=sorted({uid for _, uid in activity}),
                ))

        created.append(self._check_timing(commands, now, user_id, guild_id))

        limit, window = self.thresholds[COMMAND_ABUSE]
        counts = Counter(name for stamp, name in commands if now - stamp < window)
        for name, count in counts.items():
            if count >= limit:
                created.append(self._emit(
                    COMMAND_ABUSE, "medium", now, user_id, guild_id,
                    command=name, count=count, window_seconds=window,
                ))

        return [event for event in created if event]

    def _check_timing(
        self,
        commands: deque[tuple[float, str]],
        now: float,
        user_id: str,
        guild_id: Optional[str],
    ) -> Optional[SecurityEvent]:
        if len(commands) < TIMING_SAMPLE:
            return None
        stamps = [stamp for stamp, _ in list(commands)[-TIMING_SAMPLE:]]
        intervals = [later - earlier for earlier, later in zip(stamps, stamps[1:])]
        mean = sum(intervals) / len(intervals)
        consistent = all(abs(interval - mean) < TIMING_TOLERANCE_SECONDS for interval in intervals)
        if consistent and mean < TIMING_MAX_MEAN_SECONDS:
            return self._emit(
                SUSPICIOUS_PATTERN, "medium", now, user_id, guild_id,
                pattern="consistent_timing", average_interval=round(mean, 3),
            )
        return None

    def observe_member_join(
        self,
        guild_id: str,
        user_id: str,
        account_created_at: Optional[datetime] = None,
    ) -> Optional[SecurityEvent]:
        now = self._clock()
        limit, window = self.thresholds[MASS_JOINS]
        is_new = False
        if account_created_at is not None:
            is_new = (now - account_created_at.timestamp()) < self.min_account_age_days * 86400
        joins = self._trim_pairs(self._joins[guild_id], now, window)
        joins.append((now, user_id, is_new))
        if len(joins) < limit:
            return None
        new_accounts = sum(1 for _, _, new in joins if new)
        return self._emit(
            MASS_JOINS, "high" if new_accounts > 5 else "medium", now, None, guild_id,
            join_count=len(joins), new_account_count=new_accounts,
        )

    # Reporting

    def get_security_report(self, guild_id: Optional[str] = None, hours: int = 24) -> dict[str, Any]:
        now = self._clock()
        events = [
            event for event in self.events
            if now - event.timestamp < hours * 3600
            and (guild_id is None or event.guild_id == guild_id)
        ]
        users = Counter(event.user_id for event in events if event.user_id)
        return {
            "period_hours": hours,
            "total_events": len(events),
            "by_type": dict(Counter(event.type for event in events)),
            "by_severity": dict(Counter(event.severity for event in events)),
            "top_users": users.most_common(5),
            "recent_events": [event.to_dict() for event in events[-10:]],
        }

    def get_active_alerts(self, guild_id: Optional[str] = None) -> list[SecurityEvent]:
        self._prune_events(self._clock())
        return [
            event for event in self.events
            if event.is_alert and (guild_id is None or event.guild_id == guild_id)
        ]

    def get_security_stats(self) -> dict[str, Any]:
        self._prune_events(self._clock())
        return {
            "events_24h": len(self.events),
            "alerts_raised": self.alerts_raised,
            "active_alerts": len(self.get_active_alerts()),
            "tracked_users": len(self._commands),
            "by_type": dict(Counter(event.type for event in self.events)),
        }

    def purge(self) -> None:
        """Drop tracking windows that have gone quiet."""
        now = self._clock()
        for key in [key for key, window in self._commands.items() if not self._trim_pairs(window, now, 3600.0)]:
            del self._commands[key]
        for key in [key for key, window in self._denials.items() if not self._trim_times(window, now, 300.0)]:
            del self._denials[key]
        self._prune_events(now)
