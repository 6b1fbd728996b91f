"""SQLite-backed staging and mapping store.

Staging tables hold raw snapshots of Jira and Redmine entities. Mapping
tables hold one durable row per Jira entity (or relationship) and are never
pruned: they are the audit trail of the migration.
"""

import json
import sqlite3
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from src.display import configure_logging
from src.models.migration_error import MigrationError

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)

MEMORY_DATABASE = ":memory:"

SCHEMA: tuple[str, ...] = (
    # Users
    """
    CREATE TABLE IF NOT EXISTS staging_jira_users (
        account_id TEXT PRIMARY KEY,
        account_type TEXT,
        display_name TEXT,
        email_address TEXT,
        is_active INTEGER,
        group_memberships TEXT,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staging_redmine_users (
        id INTEGER PRIMARY KEY,
        login TEXT,
        firstname TEXT,
        lastname TEXT,
        mail TEXT,
        status INTEGER,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_mapping_users (
        mapping_id INTEGER PRIMARY KEY AUTOINCREMENT,
        jira_account_id TEXT NOT NULL UNIQUE,
        jira_display_name TEXT,
        jira_email_address TEXT,
        redmine_user_id INTEGER,
        match_type TEXT NOT NULL DEFAULT 'NONE',
        proposed_redmine_login TEXT,
        proposed_redmine_mail TEXT,
        proposed_firstname TEXT,
        proposed_lastname TEXT,
        proposed_redmine_status TEXT DEFAULT 'LOCKED',
        migration_status TEXT NOT NULL DEFAULT 'PENDING_ANALYSIS',
        notes TEXT,
        automation_hash TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        last_updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # Groups and memberships
    """
    CREATE TABLE IF NOT EXISTS staging_jira_groups (
        group_id TEXT PRIMARY KEY,
        name TEXT,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staging_jira_group_members (
        group_id TEXT NOT NULL,
        account_id TEXT NOT NULL,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (group_id, account_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staging_redmine_groups (
        id INTEGER PRIMARY KEY,
        name TEXT,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staging_redmine_group_members (
        group_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        PRIMARY KEY (group_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_mapping_groups (
        mapping_id INTEGER PRIMARY KEY AUTOINCREMENT,
        jira_group_id TEXT NOT NULL UNIQUE,
        jira_group_name TEXT,
        redmine_group_id INTEGER,
        proposed_redmine_name TEXT,
        migration_status TEXT NOT NULL DEFAULT 'PENDING_ANALYSIS',
        notes TEXT,
        automation_hash TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        last_updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_mapping_group_members (
        member_mapping_id INTEGER PRIMARY KEY AUTOINCREMENT,
        jira_group_id TEXT NOT NULL,
        jira_group_name TEXT,
        jira_account_id TEXT NOT NULL,
        redmine_group_id INTEGER,
        redmine_user_id INTEGER,
        migration_status TEXT NOT NULL DEFAULT 'PENDING_ANALYSIS',
        notes TEXT,
        automation_hash TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        last_updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (jira_group_id, jira_account_id)
    )
    """,
    # Statuses
    """
    CREATE TABLE IF NOT EXISTS staging_jira_statuses (
        id TEXT PRIMARY KEY,
        name TEXT,
        description TEXT,
        status_category_key TEXT,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staging_redmine_issue_statuses (
        id INTEGER PRIMARY KEY,
        name TEXT,
        is_closed INTEGER,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_mapping_statuses (
        mapping_id INTEGER PRIMARY KEY AUTOINCREMENT,
        jira_status_id TEXT NOT NULL UNIQUE,
        jira_status_name TEXT,
        jira_status_category_key TEXT,
        redmine_status_id INTEGER,
        proposed_redmine_name TEXT,
        proposed_is_closed INTEGER,
        migration_status TEXT NOT NULL DEFAULT 'PENDING_ANALYSIS',
        notes TEXT,
        automation_hash TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        last_updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # Priorities
    """
    CREATE TABLE IF NOT EXISTS staging_jira_priorities (
        id TEXT PRIMARY KEY,
        name TEXT,
        description TEXT,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staging_redmine_issue_priorities (
        id INTEGER PRIMARY KEY,
        name TEXT,
        is_default INTEGER,
        position INTEGER,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_mapping_priorities (
        mapping_id INTEGER PRIMARY KEY AUTOINCREMENT,
        jira_priority_id TEXT NOT NULL UNIQUE,
        jira_priority_name TEXT,
        jira_priority_description TEXT,
        redmine_priority_id INTEGER,
        proposed_redmine_name TEXT,
        proposed_is_default INTEGER,
        proposed_redmine_position INTEGER,
        migration_status TEXT NOT NULL DEFAULT 'PENDING_ANALYSIS',
        notes TEXT,
        automation_hash TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        last_updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # Issues (populated by the issue migration) and their links
    """
    CREATE TABLE IF NOT EXISTS staging_jira_issues (
        id TEXT PRIMARY KEY,
        issue_key TEXT UNIQUE,
        summary TEXT,
        project_id TEXT,
        issuetype_id TEXT,
        status_id TEXT,
        priority_id TEXT,
        labels TEXT,
        created_at TEXT,
        updated_at TEXT,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_mapping_issues (
        mapping_id INTEGER PRIMARY KEY AUTOINCREMENT,
        jira_issue_id TEXT NOT NULL UNIQUE,
        jira_issue_key TEXT,
        redmine_issue_id INTEGER,
        redmine_status_id INTEGER,
        migration_status TEXT NOT NULL DEFAULT 'PENDING_ANALYSIS',
        notes TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        last_updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staging_jira_issue_links (
        link_id TEXT PRIMARY KEY,
        source_issue_id TEXT,
        source_issue_key TEXT,
        target_issue_id TEXT,
        target_issue_key TEXT,
        link_type_id TEXT,
        link_type_name TEXT,
        link_type_inward TEXT,
        link_type_outward TEXT,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_mapping_issue_relations (
        mapping_id INTEGER PRIMARY KEY AUTOINCREMENT,
        jira_link_id TEXT NOT NULL UNIQUE,
        jira_source_issue_id TEXT,
        jira_source_issue_key TEXT,
        jira_target_issue_id TEXT,
        jira_target_issue_key TEXT,
        jira_link_type_id TEXT,
        jira_link_type_name TEXT,
        jira_link_type_inward TEXT,
        jira_link_type_outward TEXT,
        redmine_issue_from_id INTEGER,
        redmine_issue_to_id INTEGER,
        redmine_relation_id INTEGER,
        proposed_relation_type TEXT,
        migration_status TEXT NOT NULL DEFAULT 'PENDING_ANALYSIS',
        notes TEXT,
        automation_hash TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        last_updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_mapping_issue_tags (
        mapping_id INTEGER PRIMARY KEY AUTOINCREMENT,
        jira_issue_id TEXT NOT NULL UNIQUE,
        jira_issue_key TEXT,
        redmine_issue_id INTEGER,
        proposed_tags TEXT,
        migration_status TEXT NOT NULL DEFAULT 'PENDING_ANALYSIS',
        notes TEXT,
        automation_hash TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        last_updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # Attachments
    """
    CREATE TABLE IF NOT EXISTS staging_jira_attachments (
        id TEXT PRIMARY KEY,
        issue_id TEXT,
        filename TEXT,
        author_account_id TEXT,
        created_at TEXT,
        size_bytes INTEGER,
        mime_type TEXT,
        content_url TEXT,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_mapping_attachments (
        mapping_id INTEGER PRIMARY KEY AUTOINCREMENT,
        jira_attachment_id TEXT NOT NULL UNIQUE,
        jira_issue_id TEXT,
        jira_filesize INTEGER,
        redmine_attachment_id INTEGER,
        redmine_upload_token TEXT,
        migration_status TEXT NOT NULL DEFAULT 'PENDING_DOWNLOAD',
        local_filepath TEXT,
        association_hint TEXT,
        download_enabled INTEGER NOT NULL DEFAULT 1,
        upload_enabled INTEGER NOT NULL DEFAULT 1,
        notes TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        last_updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # Workflow and configuration metadata
    """
    CREATE TABLE IF NOT EXISTS staging_jira_workflows (
        workflow_name TEXT NOT NULL,
        source TEXT NOT NULL,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (workflow_name, source)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staging_jira_config_objects (
        kind TEXT NOT NULL,
        object_id TEXT NOT NULL,
        name TEXT,
        source TEXT NOT NULL,
        raw_payload TEXT,
        extracted_at TEXT DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (kind, object_id, source)
    )
    """,
)


def storage_value(value: Any) -> Any:
    """Convert a Python value to the form SQLite hands back on read.

    Hashes are computed over this form, so a value written and re-read
    always hashes the same.
    """
    match value:
        case bool():
            return int(value)
        case list() | tuple() | dict():
            return json.dumps(value, ensure_ascii=False)
        case _:
            return value


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class MappingStore:
    """Thin wrapper around a SQLite connection holding staging and mapping tables."""

    def __init__(self, path: Path | str = MEMORY_DATABASE) -> None:
        """Open (and create when missing) the store at ``path``."""
        self.path = str(path)
        if self.path != MEMORY_DATABASE:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.connection = sqlite3.connect(self.path)
        self.connection.row_factory = sqlite3.Row
        self.connection.execute("PRAGMA foreign_keys = ON")
        self._depth = 0

    @classmethod
    def from_config(cls) -> "MappingStore":
        """Open the store configured under ``database.path``."""
        from src import config  # noqa: PLC0415

        configured = config.database_config.get("path")
        path = Path(configured) if configured else config.get_path("data") / "migration.sqlite3"
        logger.debug("Opening mapping store at %s", path)
        return cls(path)

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> "MappingStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def initialize_schema(self) -> None:
        with self.transaction() as connection:
            for statement in SCHEMA:
                connection.execute(statement)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on leaving the outermost block; roll back on any error."""
        self._depth += 1
        try:
            yield self.connection
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self.connection.rollback()
            raise
        self._depth -= 1
        if self._depth == 0:
            self.connection.commit()

    def execute(self, sql: str, params: Sequence[Any] | Mapping[str, Any] = ()) -> sqlite3.Cursor:
        return self.connection.execute(sql, params)

    def fetch_all(self, sql: str, params: Sequence[Any] | Mapping[str, Any] = ()) -> list[dict[str, Any]]:
        return [dict(row) for row in self.connection.execute(sql, params).fetchall()]

    def fetch_one(self, sql: str, params: Sequence[Any] | Mapping[str, Any] = ()) -> dict[str, Any] | None:
        row = self.connection.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def scalar(self, sql: str, params: Sequence[Any] | Mapping[str, Any] = ()) -> Any:
        row = self.connection.execute(sql, params).fetchone()
        return row[0] if row is not None else None

    def replace_staging(
        self,
        table: str,
        columns: Sequence[str],
        rows: Iterable[Mapping[str, Any]],
        *,
        scope: Mapping[str, Any] | None = None,
    ) -> int:
        """Replace a staging snapshot (or the ``scope`` slice of it) with ``rows``."""
        column_list = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        values = [tuple(storage_value(row.get(column)) for column in columns) for row in rows]

        with self.transaction() as connection:
            if scope:
                condition = " AND ".join(f"{column} = ?" for column in scope)
                connection.execute(f"DELETE FROM {table} WHERE {condition}", tuple(scope.values()))  # noqa: S608
            else:
                connection.execute(f"DELETE FROM {table}")  # noqa: S608
            connection.executemany(
                f"INSERT OR REPLACE INTO {table} ({column_list}) VALUES ({placeholders})",  # noqa: S608
                values,
            )
        logger.debug("Staged %d rows into %s", len(values), table)
        return len(values)

    def update_mapping(self, table: str, key_column: str, key: Any, values: Mapping[str, Any]) -> None:
        """Update one mapping row and stamp ``last_updated_at``.

        Raises:
            MigrationError: When no row has the given key

        """
        assignments = ", ".join(f"{column} = ?" for column in values)
        params = [storage_value(value) for value in values.values()]
        params.append(key)
        with self.transaction() as connection:
            cursor = connection.execute(
                f"UPDATE {table} SET {assignments}, last_updated_at = CURRENT_TIMESTAMP WHERE {key_column} = ?",  # noqa: S608
                params,
            )
            if cursor.rowcount == 0:
                msg = f"No mapping row in {table} with {key_column} = {key!r}"
                raise MigrationError(msg)

    def status_counts(self, table: str) -> dict[str, int]:
        rows = self.fetch_all(
            f"SELECT migration_status, COUNT(*) AS total FROM {table} GROUP BY migration_status ORDER BY migration_status",  # noqa: S608
        )
        return {row["migration_status"]: row["total"] for row in rows}

    def count(self, table: str) -> int:
        return int(self.scalar(f"SELECT COUNT(*) FROM {table}"))  # noqa: S608
