"""
TokenTorch
==========

Shows claude.ai usage as a system tray icon: two bars (session / weekly)
colored by projected usage, blinking when a limit is about to be hit.
The tooltip lists utilization, projection, reset time and expected
lock-out gap.
"""
from __future__ import annotations

import threading
import time
import webbrowser
from typing import Any

import pystray  # type: ignore[import-untyped]  # no type stubs available
from loguru import logger

from tokentorch.api import USAGE_PAGE_URL
from tokentorch.config import AppConfig, ensure_config_file, get_config_path
from tokentorch.icon import TITLE, create_icon_image, create_state_image, format_tooltip
from tokentorch.monitor import UsageMonitor, reset_notice

BLINK_INTERVAL = 0.5


class TokenTorchApp:
    """System tray application displaying Claude usage."""

    def __init__(self, config: AppConfig) -> None:
        """Set up the tray icon with context menu and polling state."""
        self.running = True
        self.monitor = UsageMonitor(config)
        self.icon = pystray.Icon(
            'tokentorch',
            icon=create_icon_image(),
            title=TITLE,
            menu=pystray.Menu(
                pystray.MenuItem('Refresh Now', self.on_refresh, default=True),
                pystray.Menu.SEPARATOR,
                pystray.MenuItem('Open claude.ai Usage', self.on_open_usage),
                pystray.MenuItem('Show Config File', self.on_open_config),
                pystray.Menu.SEPARATOR,
                pystray.MenuItem('Quit TokenTorch', self.on_quit),
            ),
        )

    def on_refresh(self, icon: Any = None, item: Any = None) -> None:
        threading.Thread(target=self.update, daemon=True).start()

    def on_open_usage(self, icon: Any = None, item: Any = None) -> None:
        webbrowser.open(USAGE_PAGE_URL)

    def on_open_config(self, icon: Any = None, item: Any = None) -> None:
        try:
            path = ensure_config_file()
        except OSError as e:
            logger.warning(f'[config] Could not create config file: {e}')
            return
        webbrowser.open(path.parent.as_uri())

    def on_quit(self, icon: Any = None, item: Any = None) -> None:
        self.running = False
        self.icon.stop()

    def update(self) -> None:
        """Poll once and refresh the tray icon and tooltip."""
        try:
            previous, state = self.monitor.poll()
        except Exception:
            logger.exception('[tray] poll failed')
            return

        if reset_notice(previous, state):
            self.icon.notify('Your usage limit has reset.', TITLE)

        self.icon.icon = create_state_image(state)
        self.icon.title = format_tooltip(state)

    def poll_loop(self) -> None:
        """Poll the API until quit, sleeping ``monitor.next_interval()`` between polls."""
        while self.running:
            self.update()
            interval = self.monitor.next_interval()
            for _ in range(interval):
                if not self.running:
                    break
                time.sleep(1)

    def blink_loop(self) -> None:
        """Alternate between the normal icon and empty bars while a limit is imminent."""
        blink_on = True
        while self.running:
            time.sleep(BLINK_INTERVAL)
            if not self.monitor.blink_active:
                if not blink_on:
                    self.icon.icon = create_state_image(self.monitor.state)
                blink_on = True
                continue
            blink_on = not blink_on
            self.icon.icon = create_state_image(self.monitor.state) if blink_on else create_icon_image()

    def _on_icon_ready(self, icon: Any) -> None:
        """Called by pystray in a separate thread once the tray icon is set up."""
        try:
            icon.visible = True
            if not self.monitor.config.is_configured():
                icon.notify(f'Add your session key and organization ID to {get_config_path()}', TITLE)
            threading.Thread(target=self.blink_loop, daemon=True).start()
            self.poll_loop()
        except Exception:
            logger.exception('[tray] polling stopped')

    def run(self) -> None:
        logger.info(f'[tray] starting, poll interval {self.monitor.config.poll_interval_secs}s')
        self.icon.run(setup=self._on_icon_ready)
