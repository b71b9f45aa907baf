"""
Usage projection
================

Turns a raw usage snapshot (utilization percentage + reset timestamp per
quota window) into display-ready bars: projected end-of-window usage,
severity color, reset countdown and an estimated lock-out gap.

Consumption is assumed to happen only during a daily online window
(08:00-22:00 local time), so burn rates and gaps are measured in online
seconds rather than wall-clock seconds.

Everything in here is a pure function of its inputs.  The current time is
always passed in as ``now``; nothing reads the system clock.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta, timezone, tzinfo
from enum import Enum, IntEnum
from typing import Any

from loguru import logger

# ── Policy constants ───────────────────────────────────────────
ONLINE_START_HOUR = 8
ONLINE_END_HOUR = 22
SECONDS_PER_HOUR = 3600.0
MIN_PROJECTION_ELAPSED_SECONDS = 10 * 60.0
UNPARSEABLE_RESET_FALLBACK = timedelta(hours=1)
RESET_RANGE_MARGIN = timedelta(days=1)  # Headroom for UTC offsets when converting to local time

WEEKDAYS = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')
# ───────────────────────────────────────────────────────────────


class UsageColor(IntEnum):
    """Severity of a usage bar, ordered from least to most urgent."""

    GRAY = 0
    GREEN = 1
    YELLOW = 2
    RED = 3
    RED_BLINK = 4


class BucketKind(Enum):
    """Quota window kind: display label, nominal length and API key."""

    SESSION = ('Session', 5.0, 'five_hour')
    WEEKLY = ('Weekly', 7 * 24.0, 'seven_day')

    def __init__(self, label: str, window_hours: float, api_key: str) -> None:
        self.label = label
        self.window_hours = window_hours
        self.api_key = api_key

    def classify(self, utilization: float, projected: float) -> UsageColor:
        """Return the severity for this window kind."""
        if self is BucketKind.SESSION:
            return session_color(utilization, projected)
        return weekly_color(projected)


@dataclass(frozen=True)
class UsageBucket:
    utilization: float
    resets_at: str


@dataclass(frozen=True)
class UsageSnapshot:
    """Raw usage buckets keyed by API name (``five_hour``, ``seven_day``, ...)."""

    buckets: dict[str, UsageBucket] = field(default_factory=dict)

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> UsageSnapshot:
        """Build a snapshot from the usage API response body.

        Entries that are not objects or carry no utilization are skipped;
        a missing bucket is not an error.  A missing ``resets_at`` is kept
        as an empty string and degrades later like any unparseable value.
        """
        buckets: dict[str, UsageBucket] = {}
        for key, entry in payload.items():
            if not isinstance(entry, dict):
                continue
            utilization = entry.get('utilization')
            if not isinstance(utilization, (int, float)) or isinstance(utilization, bool):
                continue
            buckets[key] = UsageBucket(
                utilization=max(0.0, float(utilization)),
                resets_at=str(entry.get('resets_at') or ''),
            )
        return cls(buckets)

    def get(self, kind: BucketKind) -> UsageBucket | None:
        return self.buckets.get(kind.api_key)


@dataclass(frozen=True)
class UsageBar:
    kind: BucketKind
    utilization: float
    resets_at: str
    seconds_remaining: float
    projected: float
    color: UsageColor
    reset_display: str
    gap_display: str | None = None

    @property
    def label(self) -> str:
        return self.kind.label

    def to_dict(self) -> dict[str, Any]:
        return {
            'label': self.label,
            'utilization': self.utilization,
            'resets_at': self.resets_at,
            'seconds_remaining': self.seconds_remaining,
            'projected': self.projected,
            'color': self.color.name,
            'reset_display': self.reset_display,
            'gap_display': self.gap_display,
        }


@dataclass(frozen=True)
class UsageState:
    """Result of one evaluation cycle: either data bars or an error, never both."""

    session: UsageBar | None
    weekly: UsageBar | None
    last_updated: datetime
    error: str | None = None

    @property
    def bars(self) -> list[UsageBar]:
        return [bar for bar in (self.session, self.weekly) if bar is not None]

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            'session': self.session.to_dict() if self.session else None,
            'weekly': self.weekly.to_dict() if self.weekly else None,
            'last_updated': self.last_updated.isoformat(),
            'error': self.error,
        }


# ── Online-hours clock ─────────────────────────────────────────


def _as_utc(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc)


def _to_local(moment: datetime, tz: tzinfo | None) -> datetime:
    return moment.astimezone(tz) if tz is not None else moment.astimezone()


def resolve_local_time(day: date, hour: int, tz: tzinfo | None = None) -> datetime | None:
    """Return the UTC instant of ``hour:00`` local time on *day*.

    Parameters
    ----------
    day : date
        Local calendar day.
    hour : int
        Local wall-clock hour (0-23).
    tz : tzinfo or None
        Local zone; ``None`` uses the system zone.

    Returns
    -------
    datetime or None
        The earlier instant when the wall time occurs twice (DST fall-back),
        or ``None`` when it does not occur at all (DST spring-forward gap).
    """
    naive = datetime.combine(day, dt_time(hour))
    # fold=0 selects the earlier of two ambiguous instants
    aware = naive.astimezone() if tz is None else naive.replace(tzinfo=tz)
    instant = _as_utc(aware)
    if _to_local(instant, tz).replace(tzinfo=None) != naive:
        return None
    return instant


def online_seconds_between(start: datetime, end: datetime, tz: tzinfo | None = None) -> float:
    """Count the seconds of ``[start, end)`` that fall inside the daily online window.

    Walks every local calendar day touched by the interval and sums its
    overlap with ``[ONLINE_START_HOUR, ONLINE_END_HOUR)``.  Days whose window
    boundary falls into a DST gap are skipped.

    Parameters
    ----------
    start, end : datetime
        Timezone-aware instants.  ``end <= start`` yields ``0.0``.
    tz : tzinfo or None
        Local zone that defines the calendar; ``None`` uses the system zone.
    """
    start, end = _as_utc(start), _as_utc(end)
    if end <= start:
        return 0.0

    start_day = _to_local(start, tz).date()
    end_day = _to_local(end, tz).date()

    total = 0.0
    day = start_day
    while True:
        window_start = resolve_local_time(day, ONLINE_START_HOUR, tz)
        window_end = resolve_local_time(day, ONLINE_END_HOUR, tz)
        if window_start is not None and window_end is not None:
            segment_start = max(start, window_start) if day == start_day else window_start
            segment_end = min(end, window_end) if day == end_day else window_end
            if segment_end > segment_start:
                total += (segment_end - segment_start).total_seconds()

        if day >= end_day or day == date.max:
            break
        day += timedelta(days=1)

    return max(0.0, total)


# ── Burn-rate projection ───────────────────────────────────────


def project_utilization(
    utilization: float,
    resets_at: datetime,
    window_hours: float,
    now: datetime,
    tz: tzinfo | None = None,
) -> tuple[float, float]:
    """Extrapolate *utilization* to the end of the window at the current online burn rate.

    Returns
    -------
    tuple of (float, float)
        ``(projected, remaining_online_seconds)``.  ``projected`` equals
        *utilization* while less than ten online minutes of the window have
        elapsed.
    """
    window_start = resets_at - timedelta(seconds=max(0, round(window_hours * SECONDS_PER_HOUR)))
    elapsed_online = online_seconds_between(window_start, now, tz)
    remaining_online = online_seconds_between(now, resets_at, tz)
    total_online = elapsed_online + remaining_online

    if elapsed_online < MIN_PROJECTION_ELAPSED_SECONDS or total_online <= 0:
        return utilization, remaining_online

    burn_rate = utilization / (elapsed_online / SECONDS_PER_HOUR)
    return burn_rate * (total_online / SECONDS_PER_HOUR), remaining_online


# ── Severity ───────────────────────────────────────────────────


def session_color(utilization: float, projected: float) -> UsageColor:
    """Short window: blink only when actually limited or wildly over-projected."""
    if (utilization > 90 and projected > 100) or projected > 200:
        return UsageColor.RED_BLINK
    if projected > 100:
        return UsageColor.RED
    if projected > 90:
        return UsageColor.YELLOW
    return UsageColor.GREEN


def weekly_color(projected: float) -> UsageColor:
    """Long window: slow to recover, tighter thresholds."""
    if projected > 100:
        return UsageColor.RED_BLINK
    if projected > 95:
        return UsageColor.RED
    if projected > 90:
        return UsageColor.YELLOW
    return UsageColor.GREEN


# ── Display ────────────────────────────────────────────────────


def format_reset_time(seconds_remaining: float, resets_at: datetime, tz: tzinfo | None = None) -> str:
    """Return the reset countdown.

    Under a day:  "resets in 4h 12m"
    Later:        "resets Sat 9:05 AM"
    """
    if seconds_remaining <= 0:
        return 'resetting...'

    hours = int(seconds_remaining // 3600)
    minutes = int((seconds_remaining % 3600) // 60)
    if hours < 24:
        return f'resets in {hours}h {minutes}m'

    local = _to_local(resets_at, tz)
    hour12 = local.hour % 12 or 12
    marker = 'AM' if local.hour < 12 else 'PM'
    return f'resets {WEEKDAYS[local.weekday()]} {hour12}:{local.minute:02d} {marker}'


def compute_gap_display(utilization: float, projected: float, remaining_online: float) -> str | None:
    """Estimate how long the limit will block usage before the window resets.

    The trend crosses 100% after ``(100 - u) / (p - u)`` of the remaining
    online time, so the blocked share is ``(p - 100) / (p - u)``.  Only
    reported when ``projected > 100``.
    """
    if projected <= 100 or remaining_online <= 0:
        return None

    if utilization >= 100:
        gap = remaining_online
    else:
        gap = remaining_online * (projected - 100) / (projected - utilization)

    gap = max(0.0, gap)
    hours = int(gap // 3600)
    minutes = math.ceil((gap % 3600) / 60)

    if hours > 0:
        return f'{hours}h {minutes}m gap'
    return f'{max(minutes, 1)}m gap'


# ── Aggregation ────────────────────────────────────────────────


def _fits_date_range(moment: datetime, margin: timedelta) -> bool:
    try:
        moment - margin
        moment + margin
    except OverflowError:
        return False
    return True


def parse_reset_time(text: str, now: datetime, window_hours: float = 0.0) -> datetime:
    """Parse an ISO 8601 reset timestamp, falling back to one hour from *now*.

    Timestamps without a UTC offset are treated as unparseable, as are
    timestamps so close to the ends of the supported date range that the
    window start or a local-time conversion would fall outside it.
    """
    try:
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is not None:
            parsed = _as_utc(parsed)
            margin = timedelta(hours=max(window_hours, 0.0)) + RESET_RANGE_MARGIN
            if not _fits_date_range(parsed, margin):
                parsed = None
    except (TypeError, ValueError, OverflowError):
        parsed = None

    if parsed is None or parsed.tzinfo is None:
        logger.debug(f'[usage] unparseable resets_at {text!r}, assuming one hour')
        return _as_utc(now) + UNPARSEABLE_RESET_FALLBACK
    return parsed


def compute_usage_bar(
    kind: BucketKind,
    bucket: UsageBucket,
    now: datetime,
    tz: tzinfo | None = None,
    window_hours: float | None = None,
) -> UsageBar:
    """Evaluate one bucket into a display-ready bar.

    *window_hours* overrides the nominal window length of *kind*.
    """
    now = _as_utc(now)
    hours = kind.window_hours if window_hours is None else window_hours
    resets_at = parse_reset_time(bucket.resets_at, now, hours)
    seconds_remaining = float(max(0, int((resets_at - now).total_seconds())))

    projected, remaining_online = project_utilization(bucket.utilization, resets_at, hours, now, tz)

    return UsageBar(
        kind=kind,
        utilization=bucket.utilization,
        resets_at=bucket.resets_at,
        seconds_remaining=seconds_remaining,
        projected=projected,
        color=kind.classify(bucket.utilization, projected),
        reset_display=format_reset_time(seconds_remaining, resets_at, tz),
        gap_display=compute_gap_display(bucket.utilization, projected, remaining_online),
    )


def compute_state(snapshot: UsageSnapshot, now: datetime, tz: tzinfo | None = None) -> UsageState:
    """Evaluate the session and weekly buckets of *snapshot* at *now*."""
    bars = {}
    for kind in BucketKind:
        bucket = snapshot.get(kind)
        bars[kind] = compute_usage_bar(kind, bucket, now, tz) if bucket is not None else None

    return UsageState(
        session=bars[BucketKind.SESSION],
        weekly=bars[BucketKind.WEEKLY],
        last_updated=now,
    )


def error_state(message: str, now: datetime) -> UsageState:
    return UsageState(session=None, weekly=None, last_updated=now, error=message)


def worst_color(state: UsageState) -> UsageColor:
    """Reduce all bars to the single most urgent color (``GRAY`` when there are none)."""
    colors = [bar.color for bar in state.bars]
    if not colors:
        return UsageColor.GRAY
    return max(max(colors), UsageColor.GREEN)


def tray_title(state: UsageState) -> str:
    """Return the short ``S:42 W:13`` summary shown next to the tray icon."""
    session = f'S:{state.session.utilization:.0f}' if state.session else 'S:--'
    weekly = f'W:{state.weekly.utilization:.0f}' if state.weekly else 'W:--'
    return f'{session} {weekly}'
