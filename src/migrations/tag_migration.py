"""Tag migration module for Jira to Redmine migration.

Applies Jira issue labels as Redmine issue tags once the issue itself has
been migrated. Labels are trimmed and deduplicated in their original order.
"""

import json
from collections.abc import Mapping
from typing import Any, ClassVar

from src.display import configure_logging
from src.mappings.issues import stage_issues
from src.mappings.synchronizer import MappingSynchronizer, SyncSpec
from src.migrations.base_migration import BaseMigration, Phase, Resolution, RunOptions, register_entity_types
from src.migrations.push_executor import PushExecutor, PushOperation
from src.models import ComponentResult
from src.models.result import Err, Ok, Result
from src.models.status import TAG, TagStatus
from src.utils.normalization import normalize_string

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)

TAG_SYNC = SyncSpec(
    table="migration_mapping_issue_tags",
    columns=("jira_issue_id", "jira_issue_key"),
    select_sql="SELECT id, issue_key FROM staging_jira_issues",
    conflict_columns=("jira_issue_id",),
    refresh_columns=("jira_issue_key",),
)

NOTHING_TO_TAG = "No tags to apply or missing Redmine issue id."


def decode_labels(value: Any) -> list[str]:
    """Labels from a staged JSON column, trimmed, without blanks or duplicates."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    if not isinstance(value, list):
        return []
    labels: list[str] = []
    for label in value:
        text = normalize_string(label)
        if text is not None and text not in labels:
            labels.append(text)
    return labels


@register_entity_types("tags")
class TagMigration(BaseMigration):
    """Handles the migration of Jira labels to Redmine issue tags."""

    PHASES: ClassVar[tuple[Phase, ...]] = (Phase.JIRA, Phase.TRANSFORM, Phase.PUSH)
    MAPPING_TABLE = "migration_mapping_issue_tags"
    LABEL_COLUMN = "jira_issue_key"
    ENTITY_LABEL = "Jira issue"
    STATUS_FAMILY = TAG
    OWNED_FIELDS = ("redmine_issue_id", "proposed_tags", "migration_status", "notes")

    def run_jira_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        issues = self.jira_client.search_issues()
        extracted = stage_issues(self.store, issues)
        synced = MappingSynchronizer(self.store).sync(TAG_SYNC)
        return ComponentResult(extracted=extracted, synchronized=synced.inserted)

    def run_transform_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        rows = self.store.fetch_all(
            """
            SELECT m.*, s.id AS staged_id, s.labels AS staged_labels, i.redmine_issue_id AS mapped_issue_id
            FROM migration_mapping_issue_tags m
            LEFT JOIN staging_jira_issues s ON s.id = m.jira_issue_id
            LEFT JOIN migration_mapping_issues i ON i.jira_issue_id = m.jira_issue_id
            ORDER BY m.mapping_id
            """,
        )
        return self.reconcile(rows, self.resolve_tags)

    def resolve_tags(self, row: Mapping[str, Any]) -> Resolution | None:
        if row.get("staged_id") is None:
            # Issue no longer staged: keep the last decision
            return None
        labels = decode_labels(row.get("staged_labels"))
        issue_id = row.get("mapped_issue_id")
        values = {
            "redmine_issue_id": issue_id,
            "proposed_tags": labels or None,
            "notes": None,
        }
        if not labels:
            return Resolution(TagStatus.IGNORED, values)
        if issue_id is None:
            return Resolution(TagStatus.PENDING_ANALYSIS, values)
        return Resolution(TagStatus.READY_FOR_PUSH, values)

    def run_push_phase(self, options: RunOptions) -> ComponentResult:
        rows = self.fetch_mappings("migration_status = ?", (TagStatus.READY_FOR_PUSH,))
        result = ComponentResult(entity=self.entity_type)
        push_options = options.push_options()
        operations: list[PushOperation] = []

        for row in self.guarded(rows, result):
            tags = decode_labels(row.get("proposed_tags"))
            issue_id = row.get("redmine_issue_id")
            if issue_id is None or not tags:
                if not push_options.preview_only:
                    self.write_owned(row, TagStatus.IGNORED, {"notes": NOTHING_TO_TAG})
                result.skipped += 1
                continue
            operations.append(
                PushOperation(
                    mapping_key=row["mapping_id"],
                    label=f"Issue #{issue_id} ({row['jira_issue_key']}): {', '.join(tags)}",
                    endpoint=f"issues/{issue_id}/tags.json",
                    payload={"tags": tags},
                    row=dict(row),
                ),
            )

        if operations:
            self.logger.info("%d issue(s) queued for tag push.", len(operations))

        def send(operation: PushOperation) -> Result[Any]:
            issue_id = operation.row["redmine_issue_id"]
            response = self.redmine_client.post_json(
                operation.endpoint,
                operation.payload,
                error_prefix=f"Failed to apply tags to Redmine issue #{issue_id}",
            )
            if not response.ok:
                return response
            return Ok(issue_id)

        def record_success(operation: PushOperation, issue_id: Any) -> None:
            self.write_owned(operation.row, TagStatus.SUCCESS, {"notes": None})
            self.logger.success("[tagged] Redmine issue #%s updated.", issue_id)

        def record_failure(operation: PushOperation, error: Err) -> None:
            self.write_owned(operation.row, TagStatus.FAILED, {"notes": error.message})

        executor = PushExecutor(push_options, description="Applying Redmine tags")
        result.merge(executor.run(operations, send, record_success, record_failure))
        return result
