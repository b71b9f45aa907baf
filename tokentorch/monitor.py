"""Poll cycle and shared usage state.

``UsageMonitor`` owns the single ``UsageState`` cell read by the tray icon,
the tooltip and the blink loop.  Each poll builds a fresh state and swaps it
in under one lock; consumers only ever see a complete state.
"""
from __future__ import annotations

import threading
from datetime import datetime, timezone

from loguru import logger

from tokentorch import api
from tokentorch.config import AppConfig, save_config
from tokentorch.usage import UsageColor, UsageState, compute_state, error_state, tray_title, worst_color

POLL_ERROR = 30  # Seconds until the next poll after a failed request
POLL_FAST = 60  # Lower bound when aligning a poll to an imminent reset
RESET_ALIGN_BUFFER = 5


class UsageMonitor:
    """Fetch usage, evaluate it and publish the result."""

    def __init__(self, config: AppConfig, persist: bool = True) -> None:
        self.config = config
        self.persist = persist
        self._lock = threading.Lock()
        self._state: UsageState | None = None
        self._last_data: UsageState | None = None

    @property
    def state(self) -> UsageState | None:
        with self._lock:
            return self._state

    @property
    def blink_active(self) -> bool:
        state = self.state
        return state is not None and worst_color(state) == UsageColor.RED_BLINK

    def poll(self, now: datetime | None = None) -> tuple[UsageState | None, UsageState]:
        """Run one fetch/evaluate cycle.

        Returns
        -------
        tuple of (UsageState or None, UsageState)
            The last data state before this poll (failed polls in between
            are skipped) and the new state.
        """
        result = api.fetch_usage(self.config)
        now = now or datetime.now(timezone.utc)

        if result.snapshot is None:
            state = error_state(result.error or 'Unknown error', now)
            logger.info(f'[usage] poll failed: {state.error}')
        else:
            state = compute_state(result.snapshot, now)
            logger.debug(f'[usage] {tray_title(state)} worst={worst_color(state).name} state={state.to_dict()}')

        if result.refreshed_session_key:
            self._store_session_key(result.refreshed_session_key)

        with self._lock:
            previous = self._last_data
            self._state = state
            if not state.is_error:
                self._last_data = state
        return previous, state

    def _store_session_key(self, session_key: str) -> None:
        logger.info('[usage] server rotated the session key')
        self.config.session_key = session_key
        if not self.persist:
            return
        try:
            save_config(self.config)
        except OSError as e:
            logger.warning(f'[config] Could not save refreshed session key: {e}')

    def next_interval(self) -> int:
        """Seconds until the next poll.

        Uses ``POLL_ERROR`` after a failed request, the configured interval
        otherwise.  When a quota reset is imminent (within ``interval * 1.5``),
        the next poll is aligned to the reset for immediate feedback.
        """
        state = self.state
        if state is None or state.is_error:
            return POLL_ERROR

        interval = self.config.poll_interval_secs
        pending = [bar.seconds_remaining for bar in state.bars if bar.seconds_remaining > 0]
        if pending:
            next_reset = min(pending)
            if next_reset + RESET_ALIGN_BUFFER <= interval * 1.5:
                interval = max(int(next_reset) + RESET_ALIGN_BUFFER, POLL_FAST)
        return interval


def reset_notice(previous: UsageState | None, current: UsageState) -> bool:
    """Return True when a nearly exhausted quota has just reset.

    Only reported when the other quota is not blocking usage anyway.
    """
    if previous is None or previous.is_error or current.is_error:
        return False

    def pct(state: UsageState, attr: str) -> float | None:
        bar = getattr(state, attr)
        return bar.utilization if bar else None

    prev_s, prev_w = pct(previous, 'session'), pct(previous, 'weekly')
    cur_s, cur_w = pct(current, 'session'), pct(current, 'weekly')

    if prev_s is not None and cur_s is not None and prev_s > 95 and cur_s < prev_s and (cur_w or 0) < 99:
        return True
    if prev_w is not None and cur_w is not None and prev_w > 98 and cur_w < prev_w and (cur_s or 0) < 99:
        return True
    return False
