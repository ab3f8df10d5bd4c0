"""
Configuration Management
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path.cwd() / "config" / "walottery.conf"

# Environment prefix -> config section
ENV_SECTIONS = {
    "BLOCKCHAIN_": "blockchain",
    "INDEXER_": "indexer",
    "WATCHER_": "watcher",
    "SERVER_": "server",
    "DATABASE_": "database",
}

# Keys whose values must never appear in logs
SECRET_KEYS = {"operator_private_key", "url"}


class ConfigurationError(RuntimeError):
    """Required configuration is missing or unusable; startup must abort."""


def load_config(config_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Load configuration from files and environment variables"""
    if environ is None:
        # .env from the working directory never overrides variables already set
        load_dotenv(find_dotenv(usecwd=True), override=False)
        environ = os.environ

    config: Dict[str, Any] = {}

    path = Path(config_file or environ.get("WALOTTERY_CONFIG") or DEFAULT_CONFIG_FILE)
    if path.exists():
        try:
            with open(path, 'r', encoding='utf-8') as f:
                file_config = json.load(f)
                config.update(file_config)
                logger.info(f"Loaded configuration from {path}")
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Error loading config file {path}: {e}") from e
    else:
        logger.debug(f"Config file {path} not found. Will only use environment variables.")

    # Override with environment variables, defined in .env
    config = _apply_env_overrides(config, environ)

    logger.debug(f"Configuration after applying environment overrides: {json.dumps(redact(config), indent=2)}")

    return config


def _apply_env_overrides(config: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Apply environment variable overrides to configuration"""
    for key, value in environ.items():
        # Convert key from SECTION_VAR_NAME to section.key format
        for prefix, section in ENV_SECTIONS.items():
            if key.startswith(prefix):
                config.setdefault(section, {})[key[len(prefix):].lower()] = value
                break

    return config


def redact(config: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of the config with secrets masked, suitable for logging."""
    masked: Dict[str, Any] = {}
    for section, values in config.items():
        if isinstance(values, dict):
            masked[section] = {k: ("***" if k in SECRET_KEYS and v else v) for k, v in values.items()}
        else:
            masked[section] = values
    return masked


def get_config_value(config: Dict[str, Any], key_path: str, default=None):
    """Get configuration value by dot-separated key path"""
    keys = key_path.split('.')
    value = config

    try:
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


def require_config_value(config: Dict[str, Any], key_path: str, env_name: str) -> str:
    """Return a non-empty setting or raise ConfigurationError naming the env var."""
    value = get_config_value(config, key_path)
    if value is None or str(value).strip() == "":
        raise ConfigurationError(f"Missing required setting {key_path} (set {env_name})")
    return str(value).strip()


def get_int(config: Dict[str, Any], key_path: str, default: int) -> int:
    raw = get_config_value(config, key_path)
    if raw is None or str(raw).strip() == "":
        return int(default)
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid integer for %s: %r, using %s", key_path, raw, default)
        return int(default)


def get_float(config: Dict[str, Any], key_path: str, default: float) -> float:
    raw = get_config_value(config, key_path)
    if raw is None or str(raw).strip() == "":
        return float(default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid number for %s: %r, using %s", key_path, raw, default)
        return float(default)
