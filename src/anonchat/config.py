"""Configuration handling for the anonchat proxy."""

import copy
import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional

import yaml
from dotenv import load_dotenv

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

session_logger = logging.getLogger("session")
session_logger.setLevel(logging.INFO)

PROJECT_ROOT = Path(__file__).parent.parent.parent
CONFIG_PATH = PROJECT_ROOT / "config.yaml"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
)

DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {"host": "0.0.0.0", "port": 3040},
    "upstream": {
        "base_url": "https://chat.openai.com",
        "proxy": None,
        "timeout": 120,
        "verify_ssl": True,
        "user_agent": DEFAULT_USER_AGENT,
        "language": "en-US",
        "model": "text-davinci-002-render-sha",
        "timezone_offset_min": -480,
    },
    "refresh": {
        "background": True,
        "interval": 60,
        "error_wait": 15,
        "stale_token_factor": 10,
        "max_backoff": 600,
        "renew_after_failures": 1,
        "before_request": False,
        "after_request": True,
    },
    "proof_of_work": {"enabled": True, "max_attempts": 100000},
    "response": {"model": "gpt-3.5-turbo", "upstream_error_status": 502, "compose_error_status": 500},
    "logging": {"level": "INFO", "session_log": "logs/session.log"},
}

ENV_OVERRIDES = {
    "ANONCHAT_PORT": ("server", "port", int),
    "ANONCHAT_PROXY": ("upstream", "proxy", str),
    "ANONCHAT_BASE_URL": ("upstream", "base_url", str),
}


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply ANONCHAT_* environment variables (and .env entries) on top of config."""
    load_dotenv()
    for env_name, (section, key, cast) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if not value:
            continue
        try:
            config[section][key] = cast(value)
        except ValueError:
            logger.warning(f"Ignoring invalid value for {env_name}: {value!r}")
    return config


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file merged over the built-in defaults.

    Args:
        path: Location of the YAML file, ``config.yaml`` in the project root by default

    Returns:
        A dictionary containing the full configuration
    """
    config_path = Path(path) if path else CONFIG_PATH
    try:
        loaded = yaml.safe_load(config_path.read_text()) or {}
        if not isinstance(loaded, dict):
            raise ValueError("top level of the config file must be a mapping")
        logger.info(f"Successfully loaded configuration from {config_path.name}")
    except Exception as e:
        logger.error(f"Error loading {config_path.name}: {str(e)}")
        loaded = {}

    return apply_env_overrides(merge_config(DEFAULT_CONFIG, loaded))


def configure_logging(config: Dict[str, Any]) -> None:
    """
    Set the log level and attach the session log file handler.

    Token and device identity lifecycle events go to the "session" logger,
    which also propagates to the root handlers.
    """
    logging_config = config.get("logging", {})
    level = getattr(logging, str(logging_config.get("level", "INFO")).upper(), logging.INFO)
    logging.getLogger().setLevel(level)
    session_logger.setLevel(level)

    session_log = logging_config.get("session_log")
    if not session_log:
        return

    log_file = Path(session_log)
    if not log_file.is_absolute():
        log_file = PROJECT_ROOT / log_file

    for handler in session_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == str(log_file):
            return

    try:
        os.makedirs(log_file.parent, exist_ok=True)
        file_handler = logging.FileHandler(str(log_file), mode="a")
    except OSError as e:
        logger.error(f"Failed to open session log file {log_file}: {str(e)}")
        return

    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    )
    session_logger.addHandler(file_handler)
