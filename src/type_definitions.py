"""Type definitions for the Jira to Redmine migration.

This module contains configuration structures and aliases used throughout
the migration process.
"""

from typing import Any, Literal, NotRequired, TypedDict

type JiraData = dict[str, Any]
type RedmineData = dict[str, Any]
type MappingRow = dict[str, Any]
type OwnedFields = dict[str, Any]

type ConfigValue = str | int | float | bool | dict[str, Any] | list[Any] | None


class ExtendedApiConfig(TypedDict, total=False):
    """Redmine extended API plugin settings."""

    enabled: bool
    prefix: str


class JiraConfig(TypedDict, total=False):
    """Configuration for the Jira client."""

    url: str
    username: str
    api_token: str
    page_size: int
    jql: str


class RedmineConfig(TypedDict, total=False):
    """Configuration for the Redmine client."""

    url: str
    api_key: str
    extended_api: ExtendedApiConfig
    default_user_status: Literal["ACTIVE", "LOCKED"]
    auth_source_id: NotRequired[int]


type LogLevel = Literal[
    "DEBUG",
    "INFO",
    "NOTICE",
    "WARNING",
    "ERROR",
    "CRITICAL",
    "SUCCESS",
]


class RateLimitConfig(TypedDict, total=False):
    """HTTP 429 backoff settings."""

    max_retries: int
    base_delay: float


class MigrationConfig(TypedDict, total=False):
    """Configuration for the migration run."""

    log_level: LogLevel
    ssl_verify: bool
    dry_run: bool
    rate_limit: RateLimitConfig


class AttachmentsConfig(TypedDict, total=False):
    """Binary transfer settings."""

    download_concurrency: int
    storage_dir: str


class DatabaseConfig(TypedDict, total=False):
    """Mapping store location."""

    path: str


class Config(TypedDict):
    """Configuration for the config loader."""

    jira: JiraConfig
    redmine: RedmineConfig
    migration: MigrationConfig
    attachments: AttachmentsConfig
    database: DatabaseConfig


type SectionName = Literal["jira", "redmine", "migration", "attachments", "database"]

type DirType = Literal["root", "data", "logs", "temp"]

type PhaseName = Literal["jira", "redmine", "transform", "pull", "push"]
