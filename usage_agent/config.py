"""
Configuration for the usage agent.

Settings come from three layers, later layers winning:
1. The defaults declared in CONFIG_SCHEMA
2. config.yaml, or the file named by the USAGE_AGENT_CONFIG environment variable
3. Environment variables named SECTION_KEY (e.g. LOGIN_TIMEOUT_SECONDS=120),
   including those loaded from a .env file

Key components:
- APP_CONFIG: The merged configuration, one dict per section
- get_config_value: Dotted-path accessor used throughout the agent
- validate_config: Startup check that exits on invalid settings
- load_app_config: (Re)builds APP_CONFIG from all layers
"""

import logging
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

APP_CONFIG: Dict[str, Any] = {}

__all__ = [
    "APP_CONFIG",
    "load_app_config",
    "get_config_value",
    "validate_config",
]

CONFIG_FILE_ENV_VAR = "USAGE_AGENT_CONFIG"
DEFAULT_CONFIG_FILE = "config.yaml"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# dotted key: (type, is_required, default_value)
CONFIG_SCHEMA: Dict[str, Tuple[type, bool, Any]] = {
    "agent_settings.app_name": (str, False, "Claude Usage Agent"),
    "agent_settings.log_file_name": (str, False, "usage_agent.log"),
    "agent_settings.store_file_name": (str, False, "usage_agent.db"),
    "agent_settings.debug_mode": (bool, False, False),
    "agent_settings.log_level": (str, False, "INFO"),
    "claude.base_url": (str, True, "https://claude.ai"),
    "claude.login_url": (str, True, "https://claude.ai/login"),
    "claude.client_version": (str, False, "1.0.0"),
    "claude.user_agent": (str, False, DEFAULT_USER_AGENT),
    "claude.request_timeout_seconds": (int, False, 15),
    "login.timeout_seconds": (int, False, 300),
    "polling.resume_after_reauth": (bool, False, True),
    "notifications.enabled": (bool, False, True),
    "message_settings.templates_file": (str, False, "message_templates.json"),
}


def _default_config() -> Dict[str, Dict[str, Any]]:
    defaults: Dict[str, Dict[str, Any]] = {}
    for dotted_key, (_type, _required, default) in CONFIG_SCHEMA.items():
        section, key = dotted_key.split(".", 1)
        defaults.setdefault(section, {})[key] = default
    return defaults


def _read_yaml_file(path: str) -> Dict[str, Any]:
    """Parse the YAML config file; a missing file means 'defaults only'."""
    if not os.path.exists(path):
        logger.warning(
            f"Config file {path} not found. Using defaults and environment variables."
        )
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in {path}: {e}")
        sys.exit(f"Critical error: could not parse {path}. Please check its syntax.")
    except OSError as e:
        logger.error(f"Could not read config file {path}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.error(f"Config file {path} must contain a mapping at the top level. Ignoring it.")
        return {}
    logger.info(f"Loaded configuration from {path}")
    return data


def _env_var_name(dotted_key: str) -> str:
    return dotted_key.replace(".", "_").upper()


def _coerce_env_value(name: str, raw: str, expected_type: type, fallback: Any) -> Any:
    """Convert an environment string to expected_type, keeping fallback if it does not parse."""
    try:
        if expected_type is bool:
            return raw.strip().lower() in ("true", "1", "t", "yes", "y", "on")
        if expected_type is int:
            return int(raw)
        return raw
    except ValueError:
        logger.warning(
            f"Environment variable {name}={raw!r} is not a valid {expected_type.__name__}. "
            f"Keeping {fallback!r}."
        )
        return fallback


def _apply_file_layer(config: Dict[str, Dict[str, Any]], file_config: Dict[str, Any]) -> None:
    for section, values in file_config.items():
        if section not in config:
            logger.warning(f"Ignoring unknown config section '{section}'")
            continue
        if not isinstance(values, dict):
            logger.warning(f"Config section '{section}' should be a mapping. Ignoring it.")
            continue
        for key, value in values.items():
            if key not in config[section]:
                logger.warning(f"Ignoring unknown config key '{section}.{key}'")
                continue
            config[section][key] = value


def _apply_env_layer(config: Dict[str, Dict[str, Any]]) -> None:
    for dotted_key, (expected_type, _required, _default) in CONFIG_SCHEMA.items():
        name = _env_var_name(dotted_key)
        raw = os.getenv(name)
        if raw is None:
            continue
        section, key = dotted_key.split(".", 1)
        config[section][key] = _coerce_env_value(
            name, raw, expected_type, config[section][key]
        )
        logger.debug(f"Environment variable {name} overrides '{dotted_key}'")


def load_app_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Build APP_CONFIG from defaults, the YAML file and the environment.

    Args:
        path: Config file to read. Defaults to $USAGE_AGENT_CONFIG, then config.yaml.

    Returns:
        Dict[str, Any]: The merged configuration
    """
    global APP_CONFIG

    config = _default_config()
    _apply_file_layer(
        config, _read_yaml_file(path or os.getenv(CONFIG_FILE_ENV_VAR, DEFAULT_CONFIG_FILE))
    )
    _apply_env_layer(config)

    APP_CONFIG = config
    logger.debug(f"Configuration loaded: {len(APP_CONFIG)} sections.")
    return APP_CONFIG


load_app_config()


def get_config_value(path: str, default: Any = None) -> Any:
    """
    Look up a setting by dotted path.

    Examples:
        >>> get_config_value('login.timeout_seconds', 300)
        300
        >>> get_config_value('nonexistent.path', 'fallback')
        'fallback'
    """
    if not APP_CONFIG:
        load_app_config()

    current: Any = APP_CONFIG
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def _validation_errors(key: str, value: Any, expected_type: type, required: bool) -> List[str]:
    if value is None:
        return [f"Required key '{key}' is missing or not set."] if required else []

    # bool is a subclass of int, so check it explicitly
    if expected_type is int:
        type_ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        type_ok = isinstance(value, expected_type)
    if not type_ok:
        return [
            f"Key '{key}' (value: {value!r}, type: {type(value).__name__}) "
            f"must be of type {expected_type.__name__}."
        ]

    if key == "agent_settings.log_level" and value.upper() not in LOG_LEVELS:
        return [f"'{key}' (value: {value}) must be one of {', '.join(LOG_LEVELS)}."]
    if key.endswith("_seconds") and value <= 0:
        return [f"Key '{key}' (value: {value}) must be a positive integer."]
    if key.endswith("_url") and not value.startswith("https://"):
        return [f"Key '{key}' (value: {value}) must be an HTTPS URL."]
    return []


def validate_config() -> None:
    """
    Check every setting in CONFIG_SCHEMA.

    Raises:
        SystemExit: If any setting is invalid
    """
    logger.info("Validating configuration...")
    errors: List[str] = []
    for key, (expected_type, required, _default) in CONFIG_SCHEMA.items():
        errors.extend(_validation_errors(key, get_config_value(key), expected_type, required))

    if errors:
        for error in errors:
            logger.critical(f"Config Error: {error}")
        logger.critical(
            "Configuration validation failed. Please check your config.yaml and .env files."
        )
        sys.exit(1)
    logger.info("Configuration validated successfully.")
