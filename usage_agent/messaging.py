"""User-facing text, loaded from the JSON template file named in the config."""

import json
import logging
import os
from typing import Any, Dict, Optional

from usage_agent.config import get_config_value

logger = logging.getLogger(__name__)

MESSAGE_TEMPLATES: Dict[str, Any] = {}

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))


def _find_templates_file(name: str) -> Optional[str]:
    """Look in the working directory first, then next to the package."""
    for candidate in (name, os.path.join(PROJECT_ROOT, name)):
        path = os.path.abspath(candidate)
        if os.path.isfile(path):
            return path
    return None


def load_message_templates() -> None:
    """Replace MESSAGE_TEMPLATES with the contents of the configured file."""
    global MESSAGE_TEMPLATES
    name = get_config_value("message_settings.templates_file", "message_templates.json")
    path = _find_templates_file(name)
    if path is None:
        logger.error(f"Message templates file {name} not found. Messages will use defaults.")
        MESSAGE_TEMPLATES = {}
        return

    try:
        with open(path, "r", encoding="utf-8") as f:
            MESSAGE_TEMPLATES = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Could not load message templates from {path}: {e}. Using defaults.")
        MESSAGE_TEMPLATES = {}
        return
    logger.info(f"Loaded message templates from {path}")


def get_app_name() -> str:
    return get_config_value("agent_settings.app_name", "Claude Usage Agent")


def _lookup(key: str) -> Any:
    node: Any = MESSAGE_TEMPLATES
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def get_message(key: str, default: Optional[str] = None, **kwargs: Any) -> str:
    """
    Format the template at a dotted key.

    ``{app_name}`` is always available to templates. When the key is missing
    or not a string, ``default`` is formatted instead; without a default a
    visible placeholder is returned.

    Example: get_message("alerts.low_usage_body", label="Work", remaining=12.0)
    """
    template = _lookup(key)
    if not isinstance(template, str):
        if MESSAGE_TEMPLATES:
            logger.warning(f"Message template '{key}' not found or not a string.")
        template = default
    if template is None:
        return f"<Missing Template: {key}>"

    try:
        return template.format(app_name=get_app_name(), **kwargs)
    except (KeyError, IndexError, ValueError) as e:
        logger.error(f"Error formatting message '{key}' with args {kwargs}: {e}")
        return default if default is not None else f"<Error Formatting Template: {key}>"


load_message_templates()
