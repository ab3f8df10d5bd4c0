"""Process-wide logging for the indexer, watcher and API.

Everything logs through the root logger. Level and optional log file come
from LOG_LEVEL and LOG_FILE; both may live in `.env`, which is read only when
the configuration loads, so `main` calls `configure_logging()` again after
that. Module loggers obtained earlier pick up the new settings because they
hold no handlers of their own.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_configured = False
_handlers: List[logging.Handler] = []


def configure_logging() -> None:
    """(Re)install the console and file handlers from LOG_LEVEL and LOG_FILE."""
    global _configured

    level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    log_file = os.getenv('LOG_FILE', '')

    root = logging.getLogger()
    root.setLevel(level)
    for handler in _handlers:
        root.removeHandler(handler)
        handler.close()
    _handlers.clear()

    formatter = logging.Formatter(FORMAT)
    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)
    _handlers.append(console)

    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(log_path, encoding='utf-8')
            fh.setLevel(level)
            fh.setFormatter(formatter)
            root.addHandler(fh)
            _handlers.append(fh)
        except OSError:
            root.exception('Cannot open LOG_FILE %s; logging to console only', log_file)

    # web3 logs every RPC payload at DEBUG
    for noisy in ('web3', 'urllib3'):
        logging.getLogger(noisy).setLevel(max(level, logging.INFO))

    _configured = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Module logger; the first call installs the handlers."""
    if not _configured:
        configure_logging()
    return logging.getLogger(name)
