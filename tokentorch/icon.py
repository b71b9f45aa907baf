"""Tray icon and tooltip rendering for a ``UsageState``."""
from __future__ import annotations

import sys
from typing import Any

from PIL import Image, ImageDraw

from tokentorch.usage import UsageBar, UsageColor, UsageState

# ── Icon ───────────────────────────────────────────────────────
# Two rounded progress bars: session on top, weekly below.
# macOS menu bar wants a wide icon, other trays a square one.

COLOR_RGB = {
    UsageColor.GREEN: (76, 175, 80),
    UsageColor.YELLOW: (255, 193, 7),
    UsageColor.RED: (244, 67, 54),
    UsageColor.RED_BLINK: (244, 67, 54),
    UsageColor.GRAY: (120, 120, 120),
}
TRACK = (68, 68, 72)
TRANSPARENT = (0, 0, 0, 0)

MAC_LAYOUT = {'size': (36, 22), 'bar_x': 2, 'bar_w': 32, 'bar_h': 7, 'radius': 3, 'top_y': 3, 'gap': 2}
SQUARE_LAYOUT = {'size': (32, 32), 'bar_x': 2, 'bar_w': 28, 'bar_h': 10, 'radius': 4, 'top_y': 4, 'gap': 4}


def icon_layout(platform: str | None = None) -> dict[str, Any]:
    return MAC_LAYOUT if (platform or sys.platform) == 'darwin' else SQUARE_LAYOUT


def _draw_bar(img: Image.Image, x: int, y: int, w: int, h: int, radius: int, color: UsageColor, fraction: float) -> None:
    """Draw one rounded bar at (x, y) with the left *fraction* filled in *color*."""
    mask = Image.new('L', (w, h), 0)
    ImageDraw.Draw(mask).rounded_rectangle([0, 0, w - 1, h - 1], radius=radius, fill=255)

    bar = Image.new('RGBA', (w, h), TRACK + (255,))
    fill_w = int(w * max(0.0, min(1.0, fraction)))
    if fill_w > 0:
        ImageDraw.Draw(bar).rectangle([0, 0, fill_w - 1, h - 1], fill=COLOR_RGB[color] + (255,))

    img.paste(bar, (x, y), mask)


def create_icon_image(
    session_pct: float = 0.0,
    session_color: UsageColor = UsageColor.GRAY,
    weekly_pct: float = 0.0,
    weekly_color: UsageColor = UsageColor.GRAY,
    platform: str | None = None,
) -> Image.Image:
    """Create the tray icon: two bars filled to the given percentages."""
    layout = icon_layout(platform)
    img = Image.new('RGBA', layout['size'], TRANSPARENT)

    x, w, h, r = layout['bar_x'], layout['bar_w'], layout['bar_h'], layout['radius']
    top_y = layout['top_y']
    bottom_y = top_y + h + layout['gap']

    _draw_bar(img, x, top_y, w, h, r, session_color, session_pct / 100)
    _draw_bar(img, x, bottom_y, w, h, r, weekly_color, weekly_pct / 100)

    return img


def create_state_image(state: UsageState | None, platform: str | None = None) -> Image.Image:
    """Render *state*; error and missing states become empty gray bars."""
    if state is None or state.is_error:
        return create_icon_image(platform=platform)

    session, weekly = state.session, state.weekly
    return create_icon_image(
        session.utilization if session else 0.0,
        session.color if session else UsageColor.GRAY,
        weekly.utilization if weekly else 0.0,
        weekly.color if weekly else UsageColor.GRAY,
        platform=platform,
    )


# ── Tooltip ────────────────────────────────────────────────────

TITLE = 'TokenTorch'
TOOLTIP_MAX = 127  # Windows tray tooltips are truncated past 127 characters


def _bar_line(bar: UsageBar) -> str:
    line = f'{bar.label}: {bar.utilization:.0f}% → {bar.projected:.0f}%'
    if bar.gap_display:
        line += f', {bar.gap_display}'
    return f'{line}\n  {bar.reset_display}'


def format_tooltip(state: UsageState | None) -> str:
    """Format *state* as multi-line tooltip text."""
    if state is None:
        return f'{TITLE}\nLoading...'
    if state.is_error:
        return f'{TITLE}\n{state.error[:80]}'

    lines = [TITLE]
    lines.extend(_bar_line(bar) for bar in state.bars)
    if len(lines) == 1:
        lines.append('No usage data')

    return '\n'.join(lines)[:TOOLTIP_MAX]
