"""
Configuration management for the competition engine.
Supports both JSON file configuration and environment variable overrides.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Dict, Any

logger = logging.getLogger(__name__)


class CompetitionConfig:
    """Configuration management for the competition engine."""

    DEFAULT_CONFIG = {
        "event_name": "Flag Hunt",
        "store": {
            "timeout_seconds": 5.0,  # per store operation
            "batch_size": 500,  # rows per reset batch
        },
        "anomaly": {
            "window_size": 200,  # most recent submissions scanned
            "fast_solve_seconds": 30,
            "fast_solve_limit": 2,
            "wrong_attempt_limit": 10,
            "simultaneous_bucket_seconds": 60,
            "simultaneous_solve_limit": 3,
            "simultaneous_team_limit": 2,
        },
        "leaderboard": {
            "max_entries": 100,
        },
        "feeds": {
            "queue_size": 256,
        },
        "admin": {
            "reset_confirmation_code": "RESET_COMPETITION_NOW",
        },
        "logging": {
            "level": "INFO",
        },
    }

    def __init__(
        self,
        config_path: str = "flagrank_config.json",
        create_missing: bool = True,
    ) -> None:
        """Initialize configuration from file, environment variables, or defaults."""
        self.config_path = Path(config_path)
        self.create_missing = create_missing
        self.config = self._load_config()
        self._apply_env_overrides()
        self._validate_config()

    @classmethod
    def from_dict(
        cls,
        overrides: Dict[str, Any],
    ) -> "CompetitionConfig":
        """
        Build a configuration without touching the filesystem.

        @param overrides: Nested dictionary merged over the defaults
        @return: Validated configuration
        """
        instance = cls.__new__(cls)
        instance.config_path = Path(os.devnull)
        instance.create_missing = False
        instance.config = copy.deepcopy(cls.DEFAULT_CONFIG)
        instance._deep_merge(instance.config, overrides)
        instance._validate_config()
        return instance

    def _load_config(self) -> Dict[str, Any]:
        """
        Load configuration from JSON file or create default.

        @return: Dictionary containing the loaded configuration
        """
        config = copy.deepcopy(self.DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    loaded_config = json.load(f)

                self._deep_merge(config, loaded_config)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(
                    "Error loading config from %s: %s; using defaults",
                    self.config_path,
                    e,
                )
        elif self.create_missing:
            self._create_default_config()

        return config

    def _deep_merge(
        self,
        base_dict: Dict[str, Any],
        update_dict: Dict[str, Any],
    ) -> None:
        """
        Recursively merge dictionaries.

        @param base_dict: Base dictionary to merge into
        @param update_dict: Dictionary with updates to merge
        """
        for key, value in update_dict.items():
            if (
                key in base_dict
                and isinstance(base_dict[key], dict)
                and isinstance(value, dict)
            ):
                self._deep_merge(base_dict[key], value)
            else:
                base_dict[key] = value

    def _apply_env_overrides(self) -> None:
        """
        Apply environment variable overrides to configuration.

        Environment variables map onto nested keys (e.g., STORE_TIMEOUT -> store.timeout_seconds)
        """
        env_mappings = {
            "EVENT_NAME": ("event_name",),

            # Store access
            "STORE_TIMEOUT": ("store", "timeout_seconds"),
            "RESET_BATCH_SIZE": ("store", "batch_size"),

            # Anomaly thresholds
            "ANOMALY_WINDOW": ("anomaly", "window_size"),
            "FAST_SOLVE_SECONDS": ("anomaly", "fast_solve_seconds"),
            "FAST_SOLVE_LIMIT": ("anomaly", "fast_solve_limit"),
            "WRONG_ATTEMPT_LIMIT": ("anomaly", "wrong_attempt_limit"),
            "SIMULTANEOUS_BUCKET_SECONDS": ("anomaly", "simultaneous_bucket_seconds"),
            "SIMULTANEOUS_SOLVE_LIMIT": ("anomaly", "simultaneous_solve_limit"),
            "SIMULTANEOUS_TEAM_LIMIT": ("anomaly", "simultaneous_team_limit"),

            "MAX_LEADERBOARD_ENTRIES": ("leaderboard", "max_entries"),
            "FEED_QUEUE_SIZE": ("feeds", "queue_size"),
            "RESET_CONFIRMATION_CODE": ("admin", "reset_confirmation_code"),
            "LOG_LEVEL": ("logging", "level"),
        }

        for env_var, config_path in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                converted_value = self._convert_env_value(env_value)
                self._set_nested_config(config_path, converted_value)

    def _convert_env_value(self, value: str) -> Any:
        """
        Convert environment variable string to appropriate type.

        @param value: String value from environment variable
        @return: Converted value (bool, int, float, or string)
        """
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _set_nested_config(self, path: tuple, value: Any) -> None:
        """
        Set a nested configuration value using a path tuple.

        @param path: Tuple representing the nested path (e.g., ("anomaly", "window_size"))
        @param value: Value to set
        """
        current = self.config
        for key in path[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]
        current[path[-1]] = value

    def _create_default_config(self) -> None:
        """
        Create a default configuration file.

        Writes the default configuration to the configured file path.
        """
        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(self.DEFAULT_CONFIG, f, indent=2)
            logger.info("Created default configuration file: %s", self.config_path)
        except IOError as e:
            logger.warning("Could not create config file %s: %s", self.config_path, e)

    def _ensure_positive(
        self,
        section: str,
        key: str,
        number_type: type = int,
    ) -> None:
        value = self.config[section].get(key)
        default = self.DEFAULT_CONFIG[section][key]

        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            logger.warning("Invalid %s.%s=%r, using %r", section, key, value, default)
            self.config[section][key] = default
        else:
            self.config[section][key] = number_type(value)

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Checks configuration values for validity and sets defaults for invalid values.
        """
        for section, defaults in self.DEFAULT_CONFIG.items():
            if isinstance(defaults, dict) and not isinstance(self.config.get(section), dict):
                logger.warning("Invalid section %s, using defaults", section)
                self.config[section] = copy.deepcopy(defaults)
            elif isinstance(defaults, dict):
                for key, value in defaults.items():
                    self.config[section].setdefault(key, value)

        self._ensure_positive("store", "timeout_seconds", float)
        self._ensure_positive("store", "batch_size")
        self._ensure_positive("leaderboard", "max_entries")
        self._ensure_positive("feeds", "queue_size")
        for key in self.DEFAULT_CONFIG["anomaly"]:
            self._ensure_positive(
                "anomaly", key, float if key == "fast_solve_seconds" else int
            )

        code = self.config["admin"]["reset_confirmation_code"]
        if not isinstance(code, str) or not code.strip():
            logger.warning("Invalid reset_confirmation_code, using default")
            self.config["admin"]["reset_confirmation_code"] = self.DEFAULT_CONFIG[
                "admin"
            ]["reset_confirmation_code"]

        if not isinstance(self.config.get("event_name"), str):
            self.config["event_name"] = str(self.config.get("event_name"))

    def get(
        self,
        *keys: str,
    ) -> Any:
        """
        Get nested configuration value using dot notation.

        @param keys: Variable arguments representing nested keys to traverse
        @return: Configuration value at the specified path, None if not found
        """
        value = self.config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return None
        return value

    def anomaly_thresholds(self):
        """
        Build the anomaly thresholds from the ``anomaly`` section.

        @return: AnomalyThresholds instance
        """
        from .anomaly import AnomalyThresholds

        section = self.config["anomaly"]
        return AnomalyThresholds(
            fast_solve_seconds=section["fast_solve_seconds"],
            fast_solve_limit=section["fast_solve_limit"],
            wrong_attempt_limit=section["wrong_attempt_limit"],
            simultaneous_bucket_seconds=section["simultaneous_bucket_seconds"],
            simultaneous_solve_limit=section["simultaneous_solve_limit"],
            simultaneous_team_limit=section["simultaneous_team_limit"],
        )

    def save_config(self) -> bool:
        """
        Save current configuration to file.

        @return: True if saved successfully, False on error
        """
        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(self.config, f, indent=2)
            return True
        except IOError as e:
            logger.warning("Could not save config file %s: %s", self.config_path, e)
            return False
