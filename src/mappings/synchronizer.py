"""Mapping synchronizer.

Guarantees one mapping row per staged Jira entity. Existing rows keep their
status, Redmine id, notes and automation hash; only denormalized reference
columns copied from staging are refreshed.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field

from src.display import configure_logging
from src.mappings.store import MappingStore

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)


@dataclass(frozen=True)
class SyncSpec:
    """How to derive mapping rows for one entity type.

    ``select_sql`` must produce the ``columns`` in order, one row per Jira
    entity; ``conflict_columns`` is the mapping table's unique key and
    ``refresh_columns`` the reference columns overwritten on every sync.
    """

    table: str
    columns: tuple[str, ...]
    select_sql: str
    conflict_columns: tuple[str, ...]
    refresh_columns: tuple[str, ...] = field(default_factory=tuple)


@dataclass
class SyncResult:
    inserted: int = 0
    refreshed: int = 0


class MappingSynchronizer:
    """Upsert mapping rows from staging snapshots."""

    def __init__(self, store: MappingStore) -> None:
        self.store = store

    @staticmethod
    def build_sql(spec: SyncSpec) -> str:
        column_list = ", ".join(spec.columns)
        conflict = ", ".join(spec.conflict_columns)
        # The outer WHERE keeps SQLite from parsing ON CONFLICT as a join constraint
        sql = f"INSERT INTO {spec.table} ({column_list}) SELECT * FROM ({spec.select_sql}) WHERE true ON CONFLICT ({conflict}) "  # noqa: S608
        if not spec.refresh_columns:
            return sql + "DO NOTHING"
        assignments = ", ".join(f"{column} = excluded.{column}" for column in spec.refresh_columns)
        changed = " OR ".join(f"{spec.table}.{column} IS NOT excluded.{column}" for column in spec.refresh_columns)
        return sql + f"DO UPDATE SET {assignments}, last_updated_at = CURRENT_TIMESTAMP WHERE {changed}"

    def sync(self, spec: SyncSpec, params: Sequence[object] = ()) -> SyncResult:
        """Insert missing mapping rows and refresh reference columns of existing ones."""
        before = self.store.count(spec.table)
        with self.store.transaction() as connection:
            changes_before = connection.total_changes
            connection.execute(self.build_sql(spec), params)
            touched = connection.total_changes - changes_before
        inserted = self.store.count(spec.table) - before
        result = SyncResult(inserted=inserted, refreshed=touched - inserted)
        logger.info(
            "Synchronized %s: %d new mapping rows, %d refreshed",
            spec.table,
            result.inserted,
            result.refreshed,
        )
        return result

    def backfill_member_groups(self) -> int:
        """Copy group id and name from the group mappings into the member mappings.

        Only a known Redmine group id is propagated; members whose group id
        changes lose their automation hash. A group mapping without an id
        never clears the id on its members.
        """
        with self.store.transaction() as connection:
            cursor = connection.execute(
                """
                UPDATE migration_mapping_group_members
                SET automation_hash = CASE
                        WHEN grp.redmine_group_id IS NOT NULL
                         AND migration_mapping_group_members.redmine_group_id IS NOT grp.redmine_group_id THEN NULL
                        ELSE migration_mapping_group_members.automation_hash
                    END,
                    redmine_group_id = COALESCE(grp.redmine_group_id, migration_mapping_group_members.redmine_group_id),
                    jira_group_name = COALESCE(grp.jira_group_name, migration_mapping_group_members.jira_group_name),
                    last_updated_at = CURRENT_TIMESTAMP
                FROM migration_mapping_groups AS grp
                WHERE grp.jira_group_id = migration_mapping_group_members.jira_group_id
                  AND (
                    (
                      grp.redmine_group_id IS NOT NULL
                      AND migration_mapping_group_members.redmine_group_id IS NOT grp.redmine_group_id
                    )
                    OR (
                      grp.jira_group_name IS NOT NULL
                      AND migration_mapping_group_members.jira_group_name IS NOT grp.jira_group_name
                    )
                  )
                """,
            )
            updated = cursor.rowcount
        if updated:
            logger.info("Backfilled Redmine group ids on %d membership mappings", updated)
        return updated
