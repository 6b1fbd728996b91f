"""Configuration module for Jira to Redmine migration.

Handles loading and accessing configuration settings.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from src.type_definitions import (
    AttachmentsConfig,
    Config,
    ConfigValue,
    DatabaseConfig,
    JiraConfig,
    MigrationConfig,
    RedmineConfig,
    SectionName,
)

config_logger = logging.getLogger("config_loader")

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "config.yaml"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "NOTICE", "WARNING", "ERROR", "CRITICAL", "SUCCESS")


def is_test_environment() -> bool:
    """Detect if code is running in a test environment.

    Returns:
        bool: True if running under pytest or with J2R_TEST_MODE set

    """
    if "PYTEST_CURRENT_TEST" in os.environ:
        return True

    return os.environ.get("J2R_TEST_MODE", "").lower() in ("true", "1", "yes")


class ConfigLoader:
    """Loads and provides access to configuration settings from YAML files and environment variables."""

    def __init__(self, config_file_path: Path = DEFAULT_CONFIG_PATH) -> None:
        """Initialize the configuration loader.

        Args:
            config_file_path (Path): Path to the YAML configuration file

        """
        self._load_environment_configuration()

        self.config: Config = self._load_yaml_config(config_file_path)

        for section in ("jira", "redmine", "migration", "attachments", "database"):
            if not isinstance(self.config.get(section), dict):
                self.config[section] = {}  # type: ignore[literal-required]
        if not isinstance(self.config["redmine"].get("extended_api"), dict):
            self.config["redmine"]["extended_api"] = {}

        self._apply_environment_overrides()

    def _load_environment_configuration(self) -> None:
        """Load environment variables from .env files based on execution context.

        The loading order respects precedence:
        - .env (base config for all environments)
        - .env.local (local overrides, if present)
        - .env.test (test-specific config, if in test environment)
        - .env.test.local (local test overrides, if in test environment and present)

        Later files override values from earlier files.
        """
        load_dotenv(".env")
        config_logger.debug("Loaded base environment from .env")

        if Path(".env.local").exists():
            load_dotenv(".env.local", override=True)
            config_logger.debug("Loaded local overrides from .env.local")

        if not is_test_environment():
            return

        config_logger.debug("Running in test environment")
        if Path(".env.test").exists():
            load_dotenv(".env.test", override=True)
            config_logger.debug("Loaded test environment from .env.test")

        if Path(".env.test.local").exists():
            load_dotenv(".env.test.local", override=True)
            config_logger.debug("Loaded local test overrides from .env.test.local")

    def _load_yaml_config(self, config_file_path: Path) -> Config:
        """Load configuration from YAML file.

        Args:
            config_file_path (Path): Path to the YAML configuration file

        Returns:
            dict: Configuration settings

        """
        try:
            with config_file_path.open("r") as config_file:
                config: Config = yaml.safe_load(config_file) or {}
                return config
        except FileNotFoundError:
            config_logger.exception("Config file not found: %s", config_file_path)
            raise

    def _apply_environment_overrides(self) -> None:
        """Override configuration settings with J2R_* environment variables."""
        for env_var, env_value in os.environ.items():
            if not env_var.startswith("J2R_"):
                continue

            match env_var.split("_"):
                case ["J2R", "LOG", "LEVEL"]:
                    log_level = env_value.upper()
                    if log_level in VALID_LOG_LEVELS:
                        self.config["migration"]["log_level"] = log_level  # type: ignore[typeddict-item]
                    config_logger.debug("Applied log level: %s", log_level)

                case ["J2R", "JIRA", *rest] if rest:
                    key = "_".join(rest).lower()
                    self.config["jira"][key] = self._convert_value(env_value)  # type: ignore[literal-required]
                    config_logger.debug("Applied Jira config: %s", key)

                case ["J2R", "REDMINE", "EXTENDED", "API", *rest] if rest:
                    key = "_".join(rest).lower()
                    self.config["redmine"]["extended_api"][key] = self._convert_value(env_value)  # type: ignore[literal-required]
                    config_logger.debug("Applied Redmine extended API config: %s", key)

                case ["J2R", "REDMINE", *rest] if rest:
                    key = "_".join(rest).lower()
                    self.config["redmine"][key] = self._convert_value(env_value)  # type: ignore[literal-required]
                    config_logger.debug("Applied Redmine config: %s", key)

                case ["J2R", "ATTACHMENTS", *rest] if rest:
                    key = "_".join(rest).lower()
                    self.config["attachments"][key] = self._convert_value(env_value)  # type: ignore[literal-required]
                    config_logger.debug("Applied attachments config: %s=%s", key, env_value)

                case ["J2R", "DATABASE", "PATH"]:
                    self.config["database"]["path"] = env_value
                    config_logger.debug("Applied database path: %s", env_value)

                case ["J2R", "SSL", "VERIFY"]:
                    ssl_verify = env_value.lower() not in ("false", "0", "no", "n", "f")
                    self.config["migration"]["ssl_verify"] = ssl_verify
                    config_logger.debug("Applied SSL verify: %s", ssl_verify)

    @staticmethod
    def _convert_value(value: str) -> ConfigValue:
        """Convert string value to appropriate type."""
        if value.isdigit():
            return int(value)

        match value.lower():
            case "true" | "yes" | "y":
                return True
            case "false" | "no" | "n":
                return False
            case _:
                return value

    def get_config(self) -> Config:
        """Get the complete configuration dictionary."""
        return self.config

    def get_jira_config(self) -> JiraConfig:
        """Get Jira-specific configuration."""
        return self.config["jira"]

    def get_redmine_config(self) -> RedmineConfig:
        """Get Redmine-specific configuration."""
        return self.config["redmine"]

    def get_migration_config(self) -> MigrationConfig:
        """Get migration-specific configuration."""
        return self.config["migration"]

    def get_attachments_config(self) -> AttachmentsConfig:
        """Get binary transfer configuration."""
        return self.config["attachments"]

    def get_database_config(self) -> DatabaseConfig:
        """Get mapping store configuration."""
        return self.config["database"]

    def get_value(self, section: SectionName, key: str, default: Any = None) -> Any:
        """Get a specific configuration value.

        Args:
            section (str): Configuration section (jira, redmine, migration, attachments, database)
            key (str): Configuration key
            default: Default value if not found

        Returns:
            Configuration value or default if not found

        """
        return self.config[section].get(key, default)
