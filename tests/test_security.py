"""Sliding-window abuse detectors."""

from datetime import datetime, timedelta, timezone

import pytest

from naffles_bot.bot.services.security_service import SecurityMonitor
from tests.conftest import GUILD_ID, make_envelope

START = 1_700_000_000.0


class FakeClock:
    def __init__(self):
        self.now = START

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(clock):
    return SecurityMonitor(clock=clock)


def types(events):
    return [event.type for event in events]


def test_rapid_commands_detected_once_per_window(monitor, clock):
    irregular = [0.5, 3.0, 1.0, 4.0, 0.7, 2.5, 1.2, 3.3, 0.9, 2.0, 1.1]
    seen = []
    for index, step in enumerate(irregular):
        clock.now += step
        seen.extend(monitor.observe(make_envelope(name=f"cmd-{index}"), "success"))
    assert types(seen).count("rapid_commands") == 1
    event = next(event for event in seen if event.type == "rapid_commands")
    assert event.details["command_count"] == 10
    assert event.user_id == make_envelope().user_id


def test_repeated_denials(monitor, clock):
    created = []
    for _ in range(5):
        clock.now += 30
        created.extend(monitor.observe(make_envelope(name="link-community"), "denied"))
    assert "permission_denied" in types(created)


def test_denials_spread_out_are_ignored(monitor, clock):
    created = []
    for _ in range(5):
        clock.now += 301
        created.extend(monitor.observe(make_envelope(name="link-community"), "denied"))
    assert "permission_denied" not in types(created)


def test_bot_activity_raises_alert(monitor):
    events = monitor.observe(make_envelope(is_bot=True), "denied")
    assert types(events) == ["bot_detection"]
    assert events[0].severity == "high"
    assert monitor.get_active_alerts(GUILD_ID) == events
    assert monitor.get_security_stats()["alerts_raised"] == 1


def test_new_account_wave_in_guild(monitor, clock):
    young = datetime.now(timezone.utc) - timedelta(days=1)
    created = []
    for user_id in ("1", "2", "3"):
        clock.now += 60
        created.extend(monitor.observe(make_envelope(user_id=user_id, account_created_at=young), "success"))
    event = next(event for event in created if event.type == "new_account_activity")
    assert event.details["users"] == ["1", "2", "3"]
    assert event.user_id is None


def test_machine_like_timing(monitor, clock):
    created = []
    for index in range(5):
        clock.now += 2.0
        created.extend(monitor.observe(make_envelope(name=f"cmd-{index}"), "success"))
    assert types(created) == ["suspicious_pattern"]
    assert created[0].details["average_interval"] == 2.0


def test_repeating_one_command_is_abuse(monitor, clock):
    created = []
    for step in (1.0, 7.0, 2.0, 11.0, 3.0):
        clock.now += step
        created.extend(monitor.observe(make_envelope(name="list-tasks"), "success"))
    event = next(event for event in created if event.type == "command_abuse")
    assert event.details == {"command": "list-tasks", "count": 5, "window_seconds": 300.0}


def test_mass_joins_of_new_accounts_are_high_severity(monitor, clock):
    young = datetime.fromtimestamp(START - 3600, tz=timezone.utc)
    old = datetime.fromtimestamp(START - 400 * 86400, tz=timezone.utc)
    event = None
    for index in range(10):
        clock.now += 5
        event = monitor.observe_member_join(GUILD_ID, str(index), young if index < 6 else old)
    assert event is not None
    assert event.severity == "high"
    assert event.details == {"join_count": 10, "new_account_count": 6}


def test_slow_joins_are_normal(monitor, clock):
    for index in range(10):
        clock.now += 60
        assert monitor.observe_member_join(GUILD_ID, str(index)) is None


def test_report_filters_by_guild_and_period(monitor, clock):
    monitor.observe(make_envelope(is_bot=True), "denied")
    monitor.observe(make_envelope(is_bot=True, guild_id="other"), "denied")

    report = monitor.get_security_report(GUILD_ID)
    assert report["total_events"] == 1
    assert report["by_type"] == {"bot_detection": 1}
    assert len(report["recent_events"]) == 1

    clock.now += 2 * 3600
    assert monitor.get_security_report(hours=1)["total_events"] == 0


def test_event_callback_and_retention(clock):
    received = []
    monitor = SecurityMonitor(clock=clock, on_event=received.append)
    monitor.observe(make_envelope(is_bot=True), "denied")
    assert len(received) == 1

    clock.now += 25 * 3600
    assert monitor.get_security_stats()["events_24h"] == 0


def test_purge_forgets_quiet_users(monitor, clock):
    monitor.observe(make_envelope(), "success")
    assert monitor.get_security_stats()["tracked_users"] == 1
    clock.now += 3601
    monitor.purge()
    assert monitor.get_security_stats()["tracked_users"] == 0
