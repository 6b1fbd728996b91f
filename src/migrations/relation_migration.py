"""Relation migration module for Jira to Redmine migration.

Turns Jira issue links into Redmine issue relations. The relation type is
derived from the link's directional phrases through a vocabulary of phrase
rules; links whose endpoints contradict the relation (a closed blocked issue)
are routed to manual review instead of being created.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar

from src.clients.exceptions import ExtendedApiUnavailableError
from src.display import configure_logging
from src.mappings.issues import stage_issues
from src.mappings.synchronizer import MappingSynchronizer, SyncSpec
from src.migrations.base_migration import BaseMigration, Phase, Resolution, RunOptions, register_entity_types
from src.migrations.push_executor import PushOperation, created_id
from src.migrations.status_migration import StatusMigration
from src.models import ComponentResult
from src.models.result import Result
from src.models.status import CREATION, CreationStatus
from src.utils.normalization import merge_notes, normalize_bool, normalize_string

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)


class RelationType(StrEnum):
    """Redmine issue relation types."""

    RELATES = "relates"
    DUPLICATES = "duplicates"
    DUPLICATED_BY = "duplicated_by"
    BLOCKS = "blocks"
    BLOCKED_BY = "blocked_by"
    PRECEDES = "precedes"
    FOLLOWS = "follows"
    COPIED_TO = "copied_to"
    COPIED_FROM = "copied_from"


@dataclass(frozen=True)
class PhraseRule:
    """Link phrases containing ``phrase`` map to ``forward`` read outward, ``reverse`` read inward."""

    phrase: str
    forward: RelationType
    reverse: RelationType


R = RelationType
DEFAULT_RULES: tuple[PhraseRule, ...] = (
    # "blocked by" must be tested before "blocks"
    PhraseRule("blocked by", R.BLOCKED_BY, R.BLOCKS),
    PhraseRule("blocks", R.BLOCKS, R.BLOCKED_BY),
    PhraseRule("duplicated by", R.DUPLICATED_BY, R.DUPLICATES),
    PhraseRule("duplicates", R.DUPLICATES, R.DUPLICATED_BY),
    PhraseRule("copied from", R.COPIED_FROM, R.COPIED_TO),
    PhraseRule("copied by", R.COPIED_FROM, R.COPIED_TO),
    PhraseRule("copied to", R.COPIED_TO, R.COPIED_FROM),
    PhraseRule("copies", R.COPIED_TO, R.COPIED_FROM),
    PhraseRule("clones", R.COPIED_TO, R.COPIED_FROM),
    PhraseRule("preced", R.PRECEDES, R.FOLLOWS),
    PhraseRule("follows", R.FOLLOWS, R.PRECEDES),
    PhraseRule("depend", R.FOLLOWS, R.PRECEDES),
    PhraseRule("relat", R.RELATES, R.RELATES),
)

UNRECOGNISED_NOTE = "Jira relation type not recognised; defaulted to relates."
MISSING_ISSUE_NOTE = "Missing Redmine issue mapping for source or target; rerun the issue migration."


@dataclass(frozen=True)
class RelationVocabulary:
    """Phrase rules plus the relation types the Redmine instance accepts."""

    rules: tuple[PhraseRule, ...] = DEFAULT_RULES
    supported: frozenset[RelationType] = field(default_factory=lambda: frozenset(RelationType))

    def _match(self, text: str | None, *, outward: bool) -> RelationType | None:
        normalized = normalize_string(text)
        if normalized is None:
            return None
        lowered = normalized.lower()
        for rule in self.rules:
            if rule.phrase in lowered:
                return rule.forward if outward else rule.reverse
        return None

    def map_link(self, inward: str | None, outward: str | None, name: str | None) -> tuple[RelationType, str | None]:
        """Return the Redmine relation type for a link, with a note when defaulted.

        The outward phrase is tried first, then the inward phrase (reversed),
        then the link type name read as outward.
        """
        candidates = ((outward, True), (inward, False), (name, True))
        for text, is_outward in candidates:
            relation_type = self._match(text, outward=is_outward)
            if relation_type is None:
                continue
            if relation_type not in self.supported:
                label = normalize_string(name) or normalize_string(outward) or str(relation_type)
                return RelationType.RELATES, f'Jira relation "{label}" not supported by Redmine; defaulted to relates.'
            return relation_type, None
        return RelationType.RELATES, UNRECOGNISED_NOTE


def conflict_note(relation_type: str, source_closed: bool | None, target_closed: bool | None) -> str | None:
    """Explain why a blocking relation contradicts its issues' closed states."""
    if relation_type == RelationType.BLOCKS:
        blocker, blocked = source_closed, target_closed
        noun = "blocks"
    elif relation_type == RelationType.BLOCKED_BY:
        blocker, blocked = target_closed, source_closed
        noun = "blocked_by"
    else:
        return None

    if blocked:
        return f"Blocked issue is already closed; review before creating a {noun} relation."
    if blocker and blocked is False:
        return "Blocking issue is closed while the blocked issue is open; review relation before creating."
    return None


RELATION_SYNC = SyncSpec(
    table="migration_mapping_issue_relations",
    columns=(
        "jira_link_id",
        "jira_source_issue_id",
        "jira_source_issue_key",
        "jira_target_issue_id",
        "jira_target_issue_key",
        "jira_link_type_id",
        "jira_link_type_name",
        "jira_link_type_inward",
        "jira_link_type_outward",
    ),
    select_sql="""
        SELECT link_id, source_issue_id, source_issue_key, target_issue_id, target_issue_key,
               link_type_id, link_type_name, link_type_inward, link_type_outward
        FROM staging_jira_issue_links
    """,
    conflict_columns=("jira_link_id",),
    refresh_columns=(
        "jira_source_issue_id",
        "jira_source_issue_key",
        "jira_target_issue_id",
        "jira_target_issue_key",
        "jira_link_type_id",
        "jira_link_type_name",
        "jira_link_type_inward",
        "jira_link_type_outward",
    ),
)


@register_entity_types("relations")
class RelationMigration(BaseMigration):
    """Handles the migration of issue links to Redmine issue relations."""

    PHASES: ClassVar[tuple[Phase, ...]] = (Phase.JIRA, Phase.REDMINE, Phase.TRANSFORM, Phase.PUSH)
    MAPPING_TABLE = "migration_mapping_issue_relations"
    LABEL_COLUMN = "jira_link_id"
    ENTITY_LABEL = "Jira link"
    STATUS_FAMILY = CREATION
    OWNED_FIELDS = (
        "redmine_issue_from_id",
        "redmine_issue_to_id",
        "redmine_relation_id",
        "proposed_relation_type",
        "migration_status",
        "notes",
    )

    def __init__(self, *args: Any, vocabulary: RelationVocabulary | None = None, **kwargs: Any) -> None:  # noqa: D107
        super().__init__(*args, **kwargs)
        self.vocabulary = vocabulary or RelationVocabulary()

    def is_eligible(self, row: Mapping[str, Any]) -> bool:
        # Manual rows are re-evaluated as well
        return super().is_eligible(row) or row.get("migration_status") == CreationStatus.MANUAL_INTERVENTION_REQUIRED

    def run_jira_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        issues = self.jira_client.search_issues()
        extracted = stage_issues(self.store, issues)
        synced = MappingSynchronizer(self.store).sync(RELATION_SYNC)
        return ComponentResult(extracted=extracted, synchronized=synced.inserted)

    def run_redmine_phase(self, options: RunOptions) -> ComponentResult:
        """Refresh the Redmine issue status snapshot used for conflict checks."""
        return StatusMigration(self.store, redmine_client=self.redmine_client).run_redmine_phase(options)

    def run_transform_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        rows = self.store.fetch_all(
            """
            SELECT m.*,
                   src.redmine_issue_id AS mapped_from_id,
                   dst.redmine_issue_id AS mapped_to_id,
                   src_status.is_closed AS source_closed,
                   dst_status.is_closed AS target_closed
            FROM migration_mapping_issue_relations m
            LEFT JOIN migration_mapping_issues src ON src.jira_issue_id = m.jira_source_issue_id
            LEFT JOIN migration_mapping_issues dst ON dst.jira_issue_id = m.jira_target_issue_id
            LEFT JOIN staging_redmine_issue_statuses src_status ON src_status.id = src.redmine_status_id
            LEFT JOIN staging_redmine_issue_statuses dst_status ON dst_status.id = dst.redmine_status_id
            ORDER BY m.mapping_id
            """,
        )
        return self.reconcile(rows, self.resolve_relation)

    def resolve_relation(self, row: Mapping[str, Any]) -> Resolution:
        """Existing relation, then missing issue mapping, then type and conflict checks."""
        if row.get("redmine_relation_id") is not None:
            return Resolution(
                CreationStatus.CREATION_SUCCESS,
                {"proposed_relation_type": row.get("proposed_relation_type") or RelationType.RELATES, "notes": None},
            )

        from_id = row.get("mapped_from_id")
        to_id = row.get("mapped_to_id")
        if from_id is None or to_id is None:
            return self.manual(
                MISSING_ISSUE_NOTE,
                redmine_issue_from_id=from_id,
                redmine_issue_to_id=to_id,
                proposed_relation_type=RelationType.RELATES,
            )

        relation_type, note = self.vocabulary.map_link(
            row.get("jira_link_type_inward"),
            row.get("jira_link_type_outward"),
            row.get("jira_link_type_name"),
        )
        values = {
            "redmine_issue_from_id": from_id,
            "redmine_issue_to_id": to_id,
            "proposed_relation_type": str(relation_type),
            "notes": note,
        }
        conflict = conflict_note(
            relation_type,
            normalize_bool(row.get("source_closed")),
            normalize_bool(row.get("target_closed")),
        )
        if conflict:
            values["notes"] = merge_notes(note, conflict)
            return Resolution(CreationStatus.MANUAL_INTERVENTION_REQUIRED, values)
        return Resolution(CreationStatus.READY_FOR_CREATION, values)

    def run_push_phase(self, options: RunOptions) -> ComponentResult:
        rows = self.fetch_mappings("migration_status = ?", (CreationStatus.READY_FOR_CREATION,))
        use_extended = self.extended_api_enabled(options)
        push_options = options.push_options()
        warning = None
        if rows and use_extended and not push_options.preview_only:
            try:
                self.redmine_client.check_extended_api("issue_statuses.json")
            except ExtendedApiUnavailableError as e:
                warning = f"{e} Falling back to the standard relations endpoint."
                self.logger.warning("%s", warning)
                use_extended = False

        def build(row: Mapping[str, Any]) -> PushOperation:
            resource = f"issues/{row['redmine_issue_from_id']}/relations.json"
            payload: dict[str, Any] = {
                "relation": {
                    "issue_to_id": row["redmine_issue_to_id"],
                    "relation_type": row["proposed_relation_type"],
                },
            }
            if use_extended:
                payload["notify"] = False
            return PushOperation(
                mapping_key=row["mapping_id"],
                label=(
                    f"Jira link {row['jira_link_id']} (Redmine #{row['redmine_issue_from_id']} "
                    f"{row['proposed_relation_type']} #{row['redmine_issue_to_id']})"
                ),
                endpoint=self.extended_path(resource) if use_extended else resource,
                payload=payload,
                row=dict(row),
            )

        def send(operation: PushOperation) -> Result[Any]:
            response = self.redmine_client.post_json(
                operation.endpoint,
                operation.payload,
                error_prefix="Failed to create Redmine relation",
            )
            if not response.ok:
                return response
            return created_id(response.value, "relation", "Redmine did not return a relation identifier.")

        result = self.push_created(rows, push_options, build, send, "redmine_relation_id", "relation")
        if warning:
            result.add_warning(warning)
        return result
