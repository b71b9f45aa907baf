import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from loguru import logger

from tokentorch.api import FetchResult
from tokentorch.config import AppConfig
from tokentorch.monitor import POLL_ERROR, POLL_FAST, UsageMonitor, reset_notice
from tokentorch.usage import UsageSnapshot, compute_state, error_state

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def _snapshot(session=None, weekly=None, session_reset=timedelta(hours=3), weekly_reset=timedelta(days=3)):
    payload = {}
    if session is not None:
        payload["five_hour"] = {"utilization": session, "resets_at": (NOW + session_reset).isoformat()}
    if weekly is not None:
        payload["seven_day"] = {"utilization": weekly, "resets_at": (NOW + weekly_reset).isoformat()}
    return UsageSnapshot.from_json(payload)


def _monitor(**config):
    return UsageMonitor(AppConfig(session_key="sk", org_id="org", **config), persist=False)


def test_poll_replaces_state():
    monitor = _monitor()
    assert monitor.state is None

    with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(snapshot=_snapshot(40, 10))):
        previous, state = monitor.poll(NOW)

    assert previous is None
    assert monitor.state is state
    assert state.session.utilization == 40
    assert state.last_updated == NOW


def test_poll_failure_produces_error_state():
    monitor = _monitor()

    with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(snapshot=_snapshot(40))):
        monitor.poll(NOW)
    with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(error="Network error: boom")):
        previous, state = monitor.poll(NOW)

    assert previous.session is not None
    assert state.is_error
    assert state.error == "Network error: boom"
    assert state.bars == []
    assert not monitor.blink_active


def test_poll_stores_rotated_session_key():
    monitor = _monitor()
    result = FetchResult(snapshot=_snapshot(5), refreshed_session_key="sk-new")

    with patch("tokentorch.monitor.api.fetch_usage", return_value=result):
        monitor.poll(NOW)

    assert monitor.config.session_key == "sk-new"


def test_poll_persists_rotated_session_key(tmp_path, monkeypatch):
    monkeypatch.setenv("TOKENTORCH_CONFIG", str(tmp_path / "config.json"))
    monitor = UsageMonitor(AppConfig(session_key="sk", org_id="org"))
    result = FetchResult(snapshot=_snapshot(5), refreshed_session_key="sk-new")

    with patch("tokentorch.monitor.api.fetch_usage", return_value=result):
        monitor.poll(NOW)

    assert "sk-new" in (tmp_path / "config.json").read_text(encoding="utf-8")


def test_blink_active_for_weekly_overrun():
    monitor = _monitor()
    # Weekly already at 100% with days left projects well over 100.
    with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(snapshot=_snapshot(weekly=100.5))):
        monitor.poll(NOW)

    assert monitor.blink_active


def test_next_interval_after_error():
    monitor = _monitor()
    assert monitor.next_interval() == POLL_ERROR

    with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(error="x")):
        monitor.poll(NOW)

    assert monitor.next_interval() == POLL_ERROR


def test_next_interval_uses_config():
    monitor = _monitor(poll_interval_secs=300)
    with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(snapshot=_snapshot(40, 10))):
        monitor.poll(NOW)

    assert monitor.next_interval() == 300


def test_next_interval_aligns_to_imminent_reset():
    monitor = _monitor(poll_interval_secs=300)
    snapshot = _snapshot(40, 10, session_reset=timedelta(seconds=200))
    with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(snapshot=snapshot)):
        monitor.poll(NOW)

    assert monitor.next_interval() == 205

    snapshot = _snapshot(40, 10, session_reset=timedelta(seconds=20))
    with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(snapshot=snapshot)):
        monitor.poll(NOW)

    assert monitor.next_interval() == POLL_FAST


def test_reset_notice_session():
    before = compute_state(_snapshot(97, 50), NOW)
    after = compute_state(_snapshot(3, 50), NOW)

    assert reset_notice(before, after)
    assert not reset_notice(after, after)


def test_reset_notice_suppressed_when_weekly_exhausted():
    before = compute_state(_snapshot(97, 99.5), NOW)
    after = compute_state(_snapshot(3, 99.5), NOW)

    assert not reset_notice(before, after)


def test_reset_notice_weekly():
    before = compute_state(_snapshot(20, 99), NOW)
    after = compute_state(_snapshot(20, 0), NOW)

    assert reset_notice(before, after)


def test_reset_notice_ignores_errors():
    data = compute_state(_snapshot(97, 50), NOW)

    assert not reset_notice(None, data)
    assert not reset_notice(data, error_state("x", NOW))
    assert not reset_notice(error_state("x", NOW), data)


def test_poll_reports_last_data_state_across_failures():
    monitor = _monitor()

    with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(snapshot=_snapshot(97, 50))):
        _, exhausted = monitor.poll(NOW)
    with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(error="Network error: boom")):
        monitor.poll(NOW)
    with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(snapshot=_snapshot(3, 50))):
        previous, state = monitor.poll(NOW)

    assert previous is exhausted
    assert reset_notice(previous, state)


def test_poll_logs_evaluated_state():
    messages = []
    sink_id = logger.add(messages.append, level="DEBUG", format="{message}")
    try:
        with patch("tokentorch.monitor.api.fetch_usage", return_value=FetchResult(snapshot=_snapshot(40, 10))):
            _, state = _monitor().poll(NOW)
    finally:
        logger.remove(sink_id)

    assert any(str(state.to_dict()) in message for message in messages)
    assert json.loads(json.dumps(state.to_dict()))["last_updated"] == "2026-01-15T12:00:00+00:00"
