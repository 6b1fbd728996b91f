"""Status migration module for Jira to Redmine migration.

Maps Jira workflow statuses onto Redmine issue statuses. The closed flag of
a status Redmine must create is derived from the Jira status category.
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
from src.utils.normalization import normalize_bool, normalize_string

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)

# Jira status category key -> Redmine is_closed
CATEGORY_CLOSED: dict[str, bool] = {
    "done": True,
    "todo": False,
    "indeterminate": False,
    "new": False,
}

STATUS_SYNC = SyncSpec(
    table="migration_mapping_statuses",
    columns=("jira_status_id", "jira_status_name", "jira_status_category_key"),
    select_sql="SELECT id, name, status_category_key FROM staging_jira_statuses",
    conflict_columns=("jira_status_id",),
    refresh_columns=("jira_status_name", "jira_status_category_key"),
)


def closed_from_category(category_key: Any) -> bool | None:
    key = normalize_string(category_key)
    if key is None:
        return None
    return CATEGORY_CLOSED.get(key.lower())


@register_entity_types("statuses")
class StatusMigration(BaseMigration):
    """Handles the migration of issue statuses from Jira to Redmine."""

    PHASES: ClassVar[tuple[Phase, ...]] = (Phase.JIRA, Phase.REDMINE, Phase.TRANSFORM, Phase.PUSH)
    MAPPING_TABLE = "migration_mapping_statuses"
    LABEL_COLUMN = "jira_status_id"
    ENTITY_LABEL = "Jira status"
    STATUS_FAMILY = CREATION
    OWNED_FIELDS = ("redmine_status_id", "migration_status", "proposed_redmine_name", "proposed_is_closed", "notes")

    def run_jira_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        statuses = self.jira_client.get_statuses()
        rows = [
            {
                "id": status.get("id"),
                "name": status.get("name"),
                "description": status.get("description"),
                "status_category_key": (status.get("statusCategory") or {}).get("key"),
                "raw_payload": to_json(status),
            }
            for status in statuses
            if status.get("id") is not None
        ]
        extracted = self.store.replace_staging(
            "staging_jira_statuses",
            ("id", "name", "description", "status_category_key", "raw_payload"),
            rows,
        )
        synced = MappingSynchronizer(self.store).sync(STATUS_SYNC)
        return ComponentResult(extracted=extracted, synchronized=synced.inserted)

    def run_redmine_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        payload = self.redmine_client.get_json("issue_statuses.json") or {}
        rows = [
            {
                "id": status.get("id"),
                "name": status.get("name"),
                "is_closed": normalize_bool(status.get("is_closed")),
                "raw_payload": to_json(status),
            }
            for status in payload.get("issue_statuses") or []
        ]
        staged = self.store.replace_staging("staging_redmine_issue_statuses", ("id", "name", "is_closed", "raw_payload"), rows)
        logger.info("Staged %d Redmine issue statuses", staged)
        return ComponentResult(extracted=staged)

    def run_transform_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        index = LookupIndex(self.store.fetch_all("SELECT * FROM staging_redmine_issue_statuses ORDER BY id"), "name")
        rows = self.store.fetch_all(
            """
            SELECT m.*, s.id AS staged_id, s.name AS staged_name, s.status_category_key AS staged_category_key
            FROM migration_mapping_statuses m
            LEFT JOIN staging_jira_statuses s ON s.id = m.jira_status_id
            ORDER BY m.mapping_id
            """,
        )
        return self.reconcile(rows, lambda row: self.resolve_status(row, index))

    def resolve_status(self, row: Mapping[str, Any], index: LookupIndex) -> Resolution:
        if row.get("staged_id") is None:
            return self.manual(
                "No staging data available for this Jira status. Re-run the extraction phase.",
                redmine_status_id=None,
            )
        name = normalize_string(row.get("staged_name"))
        if name is None:
            return self.manual("Missing Jira status name in the staging snapshot.", redmine_status_id=None)

        match index.resolve(name):
            case AmbiguousMatch():
                return self.manual(
                    f'Multiple Redmine statuses share the name "{name}".',
                    redmine_status_id=None,
                    proposed_redmine_name=name,
                )
            case SingleMatch(row=redmine_status):
                return Resolution(
                    CreationStatus.MATCH_FOUND,
                    {
                        "redmine_status_id": redmine_status["id"],
                        "proposed_redmine_name": redmine_status.get("name"),
                        "proposed_is_closed": normalize_bool(redmine_status.get("is_closed")),
                        "notes": None,
                    },
                )

        is_closed = normalize_bool(row.get("proposed_is_closed"))
        if is_closed is None:
            is_closed = closed_from_category(row.get("staged_category_key"))
        if is_closed is None:
            return self.manual(
                "Unable to derive closed/open flag from the Jira status category.",
                redmine_status_id=None,
                proposed_redmine_name=name,
            )
        return Resolution(
            CreationStatus.READY_FOR_CREATION,
            {
                "redmine_status_id": None,
                "proposed_redmine_name": name,
                "proposed_is_closed": is_closed,
                "notes": None,
            },
        )

    @staticmethod
    def describe(row: Mapping[str, Any]) -> str:
        return (
            f"Proposed Redmine name: {row.get('proposed_redmine_name')} | "
            f"Should be closed: {'yes' if normalize_bool(row.get('proposed_is_closed')) else 'no'} | "
            f"Jira category: {row.get('jira_status_category_key') or 'unknown'}"
        )

    def run_push_phase(self, options: RunOptions) -> ComponentResult:
        rows = self.fetch_mappings("migration_status = ?", (CreationStatus.READY_FOR_CREATION,))
        endpoint = self.extended_path("issue_statuses.json")

        def build(row: Mapping[str, Any]) -> PushOperation:
            return PushOperation(
                mapping_key=row["mapping_id"],
                label=f"Jira status {row['jira_status_id']} ({row['proposed_redmine_name']})",
                endpoint=endpoint,
                payload={
                    "issue_status": {
                        "name": row.get("proposed_redmine_name"),
                        "is_closed": bool(normalize_bool(row.get("proposed_is_closed"))),
                    },
                },
                row=dict(row),
            )

        def send(operation: PushOperation) -> Result[Any]:
            response = self.redmine_client.post_json(
                operation.endpoint,
                operation.payload,
                error_prefix="Failed to create Redmine status",
            )
            if not response.ok:
                return response
            return created_id(
                response.value,
                "issue_status",
                "Unable to determine the new Redmine status ID from the extended API response.",
            )

        return self.push_extended(
            rows,
            options,
            resource="issue_statuses.json",
            build=build,
            send=send,
            target_column="redmine_status_id",
            target_noun="status",
            describe=self.describe,
        )
