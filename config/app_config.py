"""
Configuration management for CalBridge.

Loads the bundled defaults, merges the user's app_config.json over them and
applies environment overrides. The calendar section is validated on every
load and save.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from config.constants import FILE_PERMISSION_OWNER_RW, MAX_CONCURRENT_REQUESTS_LIMIT


APP_DIR_NAME = ".calbridge"
CONFIG_FILENAME = "app_config.json"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "default_config.json"

# Environment variables that override configuration values
ENV_OVERRIDES = {
    "CALBRIDGE_RELAY_URL": "calendar.relay_base_url",
    "CALBRIDGE_GOOGLE_CLIENT_ID": "calendar.oauth.google.client_id",
    "CALBRIDGE_OUTLOOK_CLIENT_ID": "calendar.oauth.outlook.client_id",
}

logger = logging.getLogger(__name__)


def get_app_dir() -> Path:
    """Return the root directory for CalBridge user data."""
    return Path.home() / APP_DIR_NAME


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into a copy of base; nested dicts merge key by key."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _read_json(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class ConfigManager:
    """Manages application configuration with validation and persistence."""

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize the configuration manager.

        Args:
            config_dir: Directory holding app_config.json.
                       Defaults to ~/.calbridge
        """
        self.default_config_path = DEFAULT_CONFIG_PATH
        self.user_config_dir = (
            get_app_dir() if config_dir is None else Path(config_dir).expanduser()
        )
        self.user_config_path = self.user_config_dir / CONFIG_FILENAME
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        try:
            defaults = _read_json(self.default_config_path)
            user_config: Dict[str, Any] = {}
            if self.user_config_path.exists():
                logger.info(f"Loading user configuration from {self.user_config_path}")
                user_config = _read_json(self.user_config_path)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read configuration: {e}")
            raise

        self._config = deep_merge(defaults, user_config)
        self._apply_env_overrides()
        self._validate_config()
        logger.info("Configuration loaded and validated successfully")

    def _apply_env_overrides(self) -> None:
        for env_name, key in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                logger.debug("Applying %s override for %s", env_name, key)
                self.set(key, value)

    def _validate_config(self) -> None:
        """Check required sections and the calendar settings."""
        for section, expected_type in (("version", str), ("calendar", dict), ("security", dict)):
            if section not in self._config:
                raise ValueError(f"Missing required configuration field: {section}")
            if not isinstance(self._config[section], expected_type):
                raise TypeError(
                    f"Configuration field '{section}' must be of type "
                    f"{expected_type.__name__}, got {type(self._config[section]).__name__}"
                )

        calendar = self._config["calendar"]
        for field in ("relay_base_url", "oauth", "throttle"):
            if field not in calendar:
                raise ValueError(f"Missing required field: calendar.{field}")

        relay_url = calendar["relay_base_url"]
        if not isinstance(relay_url, str) or not relay_url.startswith(("http://", "https://")):
            raise ValueError("calendar.relay_base_url must be an http(s) URL")

        max_concurrent = calendar["throttle"].get("max_concurrent")
        if (not isinstance(max_concurrent, int) or
                not 1 <= max_concurrent <= MAX_CONCURRENT_REQUESTS_LIMIT):
            raise ValueError(
                "calendar.throttle.max_concurrent must be an integer between "
                f"1 and {MAX_CONCURRENT_REQUESTS_LIMIT}"
            )

        delay = calendar["throttle"].get("inter_request_delay_ms")
        if not isinstance(delay, (int, float)) or delay < 0:
            raise ValueError(
                "calendar.throttle.inter_request_delay_ms must be a non-negative number"
            )

        interval = calendar.get("sync_interval_minutes", 15)
        if not isinstance(interval, int) or interval < 1:
            raise ValueError("calendar.sync_interval_minutes must be a positive integer")

        visible = calendar.get("visible_calendars", {})
        if not isinstance(visible, dict):
            raise TypeError("calendar.visible_calendars must be a dictionary")
        for provider, calendars in visible.items():
            if not isinstance(calendars, list):
                raise TypeError(f"calendar.visible_calendars.{provider} must be a list")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value by dot-separated key.

        Example:
            config.get("calendar.throttle.max_concurrent")
        """
        value: Any = self._config
        for part in key.split('.'):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value by dot-separated key, creating sections."""
        *parents, leaf = key.split('.')
        section = self._config
        for part in parents:
            section = section.setdefault(part, {})
        section[leaf] = value

    def save(self) -> None:
        """Validate and write the configuration to the user config file."""
        self._validate_config()
        self.user_config_dir.mkdir(parents=True, exist_ok=True)

        try:
            with open(self.user_config_path, 'w', encoding='utf-8') as f:
                json.dump(self._config, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Error saving configuration: {e}")
            raise

        try:
            os.chmod(self.user_config_path, FILE_PERMISSION_OWNER_RW)
        except OSError as e:
            logger.warning(f"Could not set file permissions: {e}")

        logger.info(f"Configuration saved to {self.user_config_path}")

    def get_all(self) -> Dict[str, Any]:
        """Return a deep copy of the entire configuration."""
        return copy.deepcopy(self._config)

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()
