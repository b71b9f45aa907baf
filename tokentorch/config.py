"""Settings for the tray monitor: claude.ai session key, organization and poll interval."""
from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from loguru import logger
from platformdirs import user_config_dir

APP_NAME = 'tokentorch'
DEFAULT_POLL_INTERVAL = 300  # 5 minutes
MIN_POLL_INTERVAL = 30

ENV_CONFIG_PATH = 'TOKENTORCH_CONFIG'
ENV_SESSION_KEY = 'TOKENTORCH_SESSION_KEY'
ENV_ORG_ID = 'TOKENTORCH_ORG_ID'


@dataclass
class AppConfig:
    session_key: str = ''
    org_id: str = ''
    poll_interval_secs: int = DEFAULT_POLL_INTERVAL

    def is_configured(self) -> bool:
        return bool(self.session_key) and bool(self.org_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        cfg = cls()
        if isinstance(data.get('session_key'), str):
            cfg.session_key = data['session_key'].strip()
        if isinstance(data.get('org_id'), str):
            cfg.org_id = data['org_id'].strip()

        interval = data.get('poll_interval_secs')
        if isinstance(interval, int) and not isinstance(interval, bool):
            # Guardrail: never poll faster than MIN_POLL_INTERVAL.
            cfg.poll_interval_secs = max(interval, MIN_POLL_INTERVAL)
        return cfg

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def get_config_path() -> Path:
    override = os.environ.get(ENV_CONFIG_PATH)
    if override:
        return Path(override).expanduser()
    return Path(user_config_dir(APP_NAME)) / 'config.json'


def load_config(path: Path | None = None) -> AppConfig:
    """Load settings from *path* (default: the user config file), then apply environment overrides.

    A missing or unreadable file yields defaults.
    """
    config_path = path or get_config_path()
    cfg = AppConfig()

    if config_path.exists():
        try:
            raw = json.loads(config_path.read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f'[config] Could not read {config_path}: {e}')
        else:
            if isinstance(raw, dict):
                cfg = AppConfig.from_dict(raw)

    session_key = os.environ.get(ENV_SESSION_KEY)
    if session_key:
        cfg.session_key = session_key.strip()
    org_id = os.environ.get(ENV_ORG_ID)
    if org_id:
        cfg.org_id = org_id.strip()

    return cfg


def save_config(cfg: AppConfig, path: Path | None = None) -> Path:
    """Write *cfg* as JSON, replacing the previous file atomically."""
    config_path = path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = config_path.with_suffix(config_path.suffix + '.tmp')
    tmp_path.write_text(json.dumps(cfg.to_dict(), indent=2), encoding='utf-8')
    os.replace(tmp_path, config_path)
    return config_path


def ensure_config_file(path: Path | None = None) -> Path:
    """Write a default settings file unless one exists; return its path."""
    config_path = path or get_config_path()
    if not config_path.exists():
        save_config(AppConfig(), config_path)
        logger.info(f'[config] Created {config_path}')
    return config_path
