"""Configuration module for the Jira to Redmine migration.
Provides a centralized configuration interface using ConfigLoader.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from config import Settings, load_settings
from src.config_loader import ConfigLoader
from src.display import configure_logging
from src.type_definitions import DirType, LogLevel

# Create a singleton instance of ConfigLoader
_config_loader = ConfigLoader()

# Extract configuration sections for easy access
jira_config = _config_loader.get_jira_config()
redmine_config = _config_loader.get_redmine_config()
migration_config = _config_loader.get_migration_config()
attachments_config = _config_loader.get_attachments_config()
database_config = _config_loader.get_database_config()

# Set up the var directory structure
root_dir = Path(__file__).parent.parent.parent
var_dir = root_dir / "var"

var_dirs: dict[DirType, Path] = {
    "root": var_dir,
    "data": var_dir / "data",
    "logs": var_dir / "logs",
    "temp": var_dir / "temp",
}

created_dirs = []
for dir_path in var_dirs.values():
    if not dir_path.exists():
        dir_path.mkdir(parents=True, exist_ok=True)
        created_dirs.append(dir_path)

LOG_LEVEL: LogLevel = migration_config.get("log_level", "INFO")

latest_log_file = var_dirs["logs"] / "migration.log"
logger = configure_logging(LOG_LEVEL, latest_log_file)

# Keep one file per run next to the aggregate log
_timestamp = datetime.now(tz=UTC).strftime("%Y-%m-%d_%H-%M-%S")
per_run_log_file = var_dirs["logs"] / f"migration_{_timestamp}.log"
try:
    _file_handler = logging.FileHandler(per_run_log_file)
except OSError:
    logger.warning("Unable to attach per-run log file %s", per_run_log_file)
else:
    _file_handler.setFormatter(
        logging.Formatter("%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s"),
    )
    logging.getLogger().addHandler(_file_handler)

for created in created_dirs:
    logger.debug("Created directory: %s", created)

__all__ = [
    "LOG_LEVEL",
    "attachments_config",
    "database_config",
    "get_path",
    "get_settings",
    "jira_config",
    "logger",
    "migration_config",
    "redmine_config",
    "update_from_cli_args",
    "validate_config",
    "var_dirs",
]


def get_path(path_type: DirType) -> Path:
    """Get a specific path from var_dirs."""
    if path_type not in var_dirs:
        msg = f"Invalid path type: {path_type}"
        raise ValueError(msg)

    return var_dirs[path_type]


def get_settings() -> Settings:
    """Validate the merged configuration and return it as a Settings object.

    Raises:
        ValueError: If the configuration does not pass schema validation

    """
    try:
        return load_settings(dict(_config_loader.get_config()))
    except ValidationError as e:
        msg = f"Invalid configuration: {e}"
        raise ValueError(msg) from e


def update_from_cli_args(args: Any) -> None:
    """Apply CLI arguments into the runtime config.

    Args:
        args: An object containing CLI arguments (typically from argparse)

    """
    if getattr(args, "use_extended_api", False):
        redmine_config.setdefault("extended_api", {})["enabled"] = True
        logger.debug("Enabling Redmine extended API from CLI arguments")

    if getattr(args, "dry_run", False):
        migration_config["dry_run"] = True
        logger.debug("Setting dry_run=True from CLI arguments")


def validate_config(*, require_jira: bool = True, require_redmine: bool = True) -> bool:
    """Validate that the credentials needed by the selected phases are set."""
    missing_vars = []

    for section, required_keys in [
        ("jira", ["url", "username", "api_token"]),
        ("redmine", ["url", "api_key"]),
    ]:
        match section:
            case "jira" if require_jira:
                config_section: dict[str, Any] = dict(jira_config)
                prefix = "J2R_JIRA_"
            case "redmine" if require_redmine:
                config_section = dict(redmine_config)
                prefix = "J2R_REDMINE_"
            case _:
                continue

        for key in required_keys:
            if not config_section.get(key):
                missing_vars.append(f"{prefix}{key.upper()}")

    if missing_vars:
        logger.error(
            "Missing required environment variables: %s",
            ", ".join(missing_vars),
        )
        return False

    return True
