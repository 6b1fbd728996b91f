"""Priority migration module for Jira to Redmine migration.

Redmine issue priorities are enumerations; plain REST cannot create them, so
creation goes through the extended API plugin or a manual checklist.
"""

from collections.abc import Mapping
from typing import Any, ClassVar

from src.display import configure_logging
from src.mappings.store import to_json
from src.mappings.synchronizer import MappingSynchronizer, SyncSpec
from src.migrations.base_migration import BaseMigration, Phase, Resolution, RunOptions, register_entity_types
from src.migrations.push_executor import PushOperation, created_id
from src.models import ComponentResult
from src.models.result import Result
from src.models.status import CREATION, CreationStatus
from src.utils.match_index import AmbiguousMatch, LookupIndex, SingleMatch
from src.utils.normalization import normalize_bool, normalize_int, normalize_string

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)

PRIORITY_SYNC = SyncSpec(
    table="migration_mapping_priorities",
    columns=("jira_priority_id", "jira_priority_name", "jira_priority_description"),
    select_sql="SELECT id, name, description FROM staging_jira_priorities",
    conflict_columns=("jira_priority_id",),
    refresh_columns=("jira_priority_name", "jira_priority_description"),
)


@register_entity_types("priorities")
class PriorityMigration(BaseMigration):
    """Handles the migration of issue priorities from Jira to Redmine."""

    PHASES: ClassVar[tuple[Phase, ...]] = (Phase.JIRA, Phase.REDMINE, Phase.TRANSFORM, Phase.PUSH)
    MAPPING_TABLE = "migration_mapping_priorities"
    LABEL_COLUMN = "jira_priority_id"
    ENTITY_LABEL = "Jira priority"
    STATUS_FAMILY = CREATION
    OWNED_FIELDS = (
        "redmine_priority_id",
        "migration_status",
        "proposed_redmine_name",
        "proposed_is_default",
        "proposed_redmine_position",
        "notes",
    )

    def run_jira_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        priorities = self.jira_client.get_priorities()
        rows = [
            {
                "id": priority.get("id"),
                "name": priority.get("name"),
                "description": priority.get("description"),
                "raw_payload": to_json(priority),
            }
            for priority in priorities
            if priority.get("id") is not None
        ]
        extracted = self.store.replace_staging(
            "staging_jira_priorities",
            ("id", "name", "description", "raw_payload"),
            rows,
        )
        synced = MappingSynchronizer(self.store).sync(PRIORITY_SYNC)
        return ComponentResult(extracted=extracted, synchronized=synced.inserted)

    def run_redmine_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        payload = self.redmine_client.get_json("enumerations/issue_priorities.json") or {}
        rows = [
            {
                "id": priority.get("id"),
                "name": priority.get("name"),
                "is_default": normalize_bool(priority.get("is_default")),
                "position": normalize_int(priority.get("position")) or position,
                "raw_payload": to_json(priority),
            }
            for position, priority in enumerate(payload.get("issue_priorities") or [], start=1)
        ]
        staged = self.store.replace_staging(
            "staging_redmine_issue_priorities",
            ("id", "name", "is_default", "position", "raw_payload"),
            rows,
        )
        logger.info("Staged %d Redmine issue priorities", staged)
        return ComponentResult(extracted=staged)

    def run_transform_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        index = LookupIndex(
            self.store.fetch_all("SELECT * FROM staging_redmine_issue_priorities ORDER BY id"),
            "name",
        )
        rows = self.store.fetch_all(
            """
            SELECT m.*, s.id AS staged_id, s.name AS staged_name
            FROM migration_mapping_priorities m
            LEFT JOIN staging_jira_priorities s ON s.id = m.jira_priority_id
            ORDER BY m.mapping_id
            """,
        )
        return self.reconcile(rows, lambda row: self.resolve_priority(row, index))

    def resolve_priority(self, row: Mapping[str, Any], index: LookupIndex) -> Resolution:
        if row.get("staged_id") is None:
            return self.manual(
                "No staging data available for this Jira priority. Re-run the extraction phase.",
                redmine_priority_id=None,
            )
        name = normalize_string(row.get("staged_name"))
        if name is None:
            return self.manual("Missing Jira priority name in the staging snapshot.", redmine_priority_id=None)

        match index.resolve(name):
            case AmbiguousMatch():
                return self.manual(
                    f'Multiple Redmine priorities share the name "{name}".',
                    redmine_priority_id=None,
                    proposed_redmine_name=name,
                )
            case SingleMatch(row=redmine_priority):
                return Resolution(
                    CreationStatus.MATCH_FOUND,
                    {
                        "redmine_priority_id": redmine_priority["id"],
                        "proposed_redmine_name": redmine_priority.get("name"),
                        "proposed_is_default": bool(normalize_bool(redmine_priority.get("is_default"))),
                        "proposed_redmine_position": redmine_priority.get("position"),
                        "notes": None,
                    },
                )

        is_default = normalize_bool(row.get("proposed_is_default"))
        return Resolution(
            CreationStatus.READY_FOR_CREATION,
            {
                "redmine_priority_id": None,
                "proposed_redmine_name": name,
                "proposed_is_default": bool(is_default),
                "notes": None,
            },
        )

    @staticmethod
    def describe(row: Mapping[str, Any]) -> str:
        return (
            f"Proposed Redmine name: {row.get('proposed_redmine_name')} | "
            f"Default: {'yes' if normalize_bool(row.get('proposed_is_default')) else 'no'} | "
            f"Position: {row.get('proposed_redmine_position') or 'append'}"
        )

    def run_push_phase(self, options: RunOptions) -> ComponentResult:
        rows = self.fetch_mappings("migration_status = ?", (CreationStatus.READY_FOR_CREATION,))
        endpoint = self.extended_path("enumerations/issue_priorities.json")

        def build(row: Mapping[str, Any]) -> PushOperation:
            priority: dict[str, Any] = {
                "name": row.get("proposed_redmine_name"),
                "is_default": bool(normalize_bool(row.get("proposed_is_default"))),
            }
            if row.get("proposed_redmine_position") is not None:
                priority["position"] = row["proposed_redmine_position"]
            return PushOperation(
                mapping_key=row["mapping_id"],
                label=f"Jira priority {row['jira_priority_id']} ({row['proposed_redmine_name']})",
                endpoint=endpoint,
                payload={"issue_priority": priority},
                row=dict(row),
            )

        def send(operation: PushOperation) -> Result[Any]:
            response = self.redmine_client.post_json(
                operation.endpoint,
                operation.payload,
                error_prefix="Failed to create Redmine priority",
            )
            if not response.ok:
                return response
            return created_id(
                response.value,
                "issue_priority",
                "Unable to determine the new Redmine priority ID from the extended API response.",
            )

        return self.push_extended(
            rows,
            options,
            resource="enumerations/issue_priorities.json",
            build=build,
            send=send,
            target_column="redmine_priority_id",
            target_noun="priority",
            describe=self.describe,
        )
