from __future__ import annotations

import os
import sys

from loguru import logger

from tokentorch.app import TokenTorchApp
from tokentorch.config import get_config_path, load_config


def setup_logging() -> None:
    """Log to stderr at ``TOKENTORCH_LOG_LEVEL`` and to a rotating file beside the config."""
    logger.remove()
    logger.add(sys.stderr, level=os.environ.get('TOKENTORCH_LOG_LEVEL', 'INFO').upper())
    log_path = get_config_path().parent / 'tokentorch.log'
    logger.add(log_path, level='DEBUG', rotation='1 MB', retention=3, encoding='utf-8')


def main() -> None:
    setup_logging()
    try:
        TokenTorchApp(load_config()).run()
    except Exception:
        logger.exception('[tray] crashed')
        sys.exit(1)


if __name__ == '__main__':
    main()
