"""Group migration module for Jira to Redmine migration.

Groups are matched to Redmine groups by normalized name. Memberships are a
second mapping table keyed by (Jira group, Jira account) that can only be
assigned once both the Redmine group and the Redmine user exist.
"""

from collections.abc import Mapping
from typing import Any, ClassVar

from src.display import ProgressTracker, configure_logging
from src.mappings.store import to_json
from src.mappings.synchronizer import MappingSynchronizer, SyncSpec
from src.migrations.base_migration import BaseMigration, Phase, Resolution, RunOptions, register_entity_types
from src.migrations.push_executor import PushOperation, created_id
from src.models import ComponentResult
from src.models.result import Err, Ok, Result
from src.models.status import ASSIGNMENT, CREATION, AssignmentStatus, CreationStatus
from src.utils.match_index import AmbiguousMatch, LookupIndex, SingleMatch
from src.utils.normalization import lookup_key, normalize_string

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)

HTTP_UNPROCESSABLE_ENTITY = 422

GROUP_SYNC = SyncSpec(
    table="migration_mapping_groups",
    columns=("jira_group_id", "jira_group_name"),
    select_sql="SELECT group_id, name FROM staging_jira_groups",
    conflict_columns=("jira_group_id",),
    refresh_columns=("jira_group_name",),
)

MEMBER_SYNC = SyncSpec(
    table="migration_mapping_group_members",
    columns=("jira_group_id", "jira_group_name", "jira_account_id"),
    select_sql="""
        SELECT gm.group_id, g.name, gm.account_id
        FROM staging_jira_group_members gm
        LEFT JOIN staging_jira_groups g ON g.group_id = gm.group_id
    """,
    conflict_columns=("jira_group_id", "jira_account_id"),
    refresh_columns=("jira_group_name",),
)

# Group mapping states that need a human before members can be assigned
BLOCKING_GROUP_STATUSES = frozenset(
    {CreationStatus.MANUAL_INTERVENTION_REQUIRED, CreationStatus.IGNORED, CreationStatus.CREATION_FAILED},
)
PENDING_GROUP_STATUSES = frozenset({CreationStatus.PENDING_ANALYSIS, CreationStatus.READY_FOR_CREATION})
RESOLVED_USER_STATUSES = frozenset({CreationStatus.MATCH_FOUND, CreationStatus.CREATION_SUCCESS})


def is_already_member_error(error: Err) -> bool:
    """Redmine answers 422 when the user already belongs to the group.

    Only the server text is inspected, never the caller prefix.
    """
    message = (error.detail or "").lower()
    return error.status_code == HTTP_UNPROCESSABLE_ENTITY and "already" in message and "group" in message


@register_entity_types("groups")
class GroupMigration(BaseMigration):
    """Handles the migration of groups from Jira to Redmine."""

    PHASES: ClassVar[tuple[Phase, ...]] = (Phase.JIRA, Phase.REDMINE, Phase.TRANSFORM, Phase.PUSH)
    MAPPING_TABLE = "migration_mapping_groups"
    LABEL_COLUMN = "jira_group_id"
    ENTITY_LABEL = "Jira group"
    STATUS_FAMILY = CREATION
    OWNED_FIELDS = ("redmine_group_id", "migration_status", "proposed_redmine_name", "notes")

    def run_jira_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        """Stage Jira groups with their members and sync both mapping tables."""
        groups = [group for group in self.jira_client.get_groups() if group.get("groupId")]
        group_rows: list[dict[str, Any]] = []
        member_rows: list[dict[str, Any]] = []

        with ProgressTracker("Fetching Jira group members", len(groups), "Recent Groups") as tracker:
            for group in groups:
                group_id = group["groupId"]
                group_rows.append({"group_id": group_id, "name": group.get("name"), "raw_payload": to_json(group)})
                for member in self.jira_client.get_group_members(group_id):
                    if member.get("accountId"):
                        member_rows.append(
                            {"group_id": group_id, "account_id": member["accountId"], "raw_payload": to_json(member)},
                        )
                tracker.add_log_item(str(group.get("name") or group_id))
                tracker.increment()

        extracted = self.store.replace_staging("staging_jira_groups", ("group_id", "name", "raw_payload"), group_rows)
        self.store.replace_staging(
            "staging_jira_group_members",
            ("group_id", "account_id", "raw_payload"),
            member_rows,
        )

        synchronizer = MappingSynchronizer(self.store)
        synced = synchronizer.sync(GROUP_SYNC)
        members = synchronizer.sync(MEMBER_SYNC)
        synchronizer.backfill_member_groups()
        logger.info("Staged %d Jira groups with %d memberships", extracted, len(member_rows))
        return ComponentResult(
            extracted=extracted,
            synchronized=synced.inserted + members.inserted,
        )

    def run_redmine_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        """Snapshot Redmine groups and their current members."""
        groups = self.redmine_client.get_paged("groups.json", "groups")
        group_rows = [{"id": group.get("id"), "name": group.get("name"), "raw_payload": to_json(group)} for group in groups]
        member_rows: list[dict[str, Any]] = []
        for group in groups:
            detail = self.redmine_client.get_json(f"groups/{group['id']}.json", {"include": "users"}) or {}
            for user in (detail.get("group") or {}).get("users") or []:
                member_rows.append({"group_id": group["id"], "user_id": user.get("id")})

        staged = self.store.replace_staging("staging_redmine_groups", ("id", "name", "raw_payload"), group_rows)
        self.store.replace_staging("staging_redmine_group_members", ("group_id", "user_id"), member_rows)
        logger.info("Staged %d Redmine groups with %d memberships", staged, len(member_rows))
        return ComponentResult(extracted=staged)

    def run_transform_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        index = LookupIndex(self.store.fetch_all("SELECT * FROM staging_redmine_groups ORDER BY id"), "name")
        rows = self.store.fetch_all(
            """
            SELECT m.*, s.group_id AS staged_group_id, s.name AS staged_name
            FROM migration_mapping_groups m
            LEFT JOIN staging_jira_groups s ON s.group_id = m.jira_group_id
            ORDER BY m.mapping_id
            """,
        )
        result = self.reconcile(rows, lambda row: self.resolve_group(row, index))
        MappingSynchronizer(self.store).backfill_member_groups()
        return result

    def resolve_group(self, row: Mapping[str, Any], index: LookupIndex) -> Resolution:
        if row.get("staged_group_id") is None:
            return self.manual(
                "No staging data available for this Jira group. Re-run the extraction phase.",
                redmine_group_id=None,
            )
        name = normalize_string(row.get("staged_name"))
        if name is None:
            return self.manual("Missing Jira group name in the staging snapshot.", redmine_group_id=None)

        match index.resolve(name):
            case AmbiguousMatch():
                return self.manual(
                    f'Multiple Redmine groups share the normalized name "{lookup_key(name)}".',
                    redmine_group_id=None,
                    proposed_redmine_name=name,
                )
            case SingleMatch(row=redmine_group):
                return Resolution(
                    CreationStatus.MATCH_FOUND,
                    {
                        "redmine_group_id": redmine_group["id"],
                        "proposed_redmine_name": redmine_group.get("name"),
                        "notes": None,
                    },
                )
        return Resolution(
            CreationStatus.READY_FOR_CREATION,
            {"redmine_group_id": None, "proposed_redmine_name": name, "notes": None},
        )

    def run_push_phase(self, options: RunOptions) -> ComponentResult:
        rows = self.fetch_mappings("migration_status = ?", (CreationStatus.READY_FOR_CREATION,))

        def build(row: Mapping[str, Any]) -> PushOperation:
            return PushOperation(
                mapping_key=row["mapping_id"],
                label=f"Jira group {row['jira_group_name'] or row['jira_group_id']}",
                endpoint="groups.json",
                payload={"group": {"name": row.get("proposed_redmine_name")}},
                row=dict(row),
            )

        def send(operation: PushOperation) -> Result[Any]:
            response = self.redmine_client.post_json(
                operation.endpoint,
                operation.payload,
                error_prefix="Failed to create Redmine group",
            )
            if not response.ok:
                return response
            return created_id(response.value, "group", "Redmine did not return a group identifier.")

        result = self.push_created(rows, options.push_options(), build, send, "redmine_group_id", "group")
        MappingSynchronizer(self.store).backfill_member_groups()
        return result


@register_entity_types("group_members")
class GroupMemberMigration(BaseMigration):
    """Assigns Redmine users to Redmine groups mirroring Jira memberships.

    Staging comes from the ``groups`` jira and redmine phases; this migration
    refreshes the Redmine membership snapshot, resolves and assigns.
    """

    PHASES: ClassVar[tuple[Phase, ...]] = (Phase.REDMINE, Phase.TRANSFORM, Phase.PUSH)
    MAPPING_TABLE = "migration_mapping_group_members"
    KEY_COLUMN = "member_mapping_id"
    LABEL_COLUMN = "jira_account_id"
    ENTITY_LABEL = "Jira membership"
    STATUS_FAMILY = ASSIGNMENT
    OWNED_FIELDS = ("redmine_group_id", "redmine_user_id", "migration_status", "notes")

    def run_redmine_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        """Refresh the Redmine membership snapshot of every known Redmine group."""
        group_ids = [row["id"] for row in self.store.fetch_all("SELECT id FROM staging_redmine_groups ORDER BY id")]
        member_rows: list[dict[str, Any]] = []
        for group_id in group_ids:
            detail = self.redmine_client.get_json(f"groups/{group_id}.json", {"include": "users"}) or {}
            for user in (detail.get("group") or {}).get("users") or []:
                member_rows.append({"group_id": group_id, "user_id": user.get("id")})
        staged = self.store.replace_staging("staging_redmine_group_members", ("group_id", "user_id"), member_rows)
        return ComponentResult(extracted=staged)

    def run_transform_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        MappingSynchronizer(self.store).backfill_member_groups()
        memberships = {
            (row["group_id"], row["user_id"])
            for row in self.store.fetch_all("SELECT group_id, user_id FROM staging_redmine_group_members")
        }
        rows = self.store.fetch_all(
            """
            SELECT mm.*,
                   sm.account_id AS staged_account_id,
                   g.redmine_group_id AS mapped_group_id,
                   g.migration_status AS group_status,
                   u.redmine_user_id AS mapped_user_id,
                   u.migration_status AS user_status
            FROM migration_mapping_group_members mm
            LEFT JOIN staging_jira_group_members sm
                   ON sm.group_id = mm.jira_group_id AND sm.account_id = mm.jira_account_id
            LEFT JOIN migration_mapping_groups g ON g.jira_group_id = mm.jira_group_id
            LEFT JOIN migration_mapping_users u ON u.jira_account_id = mm.jira_account_id
            ORDER BY mm.member_mapping_id
            """,
        )
        return self.reconcile(rows, lambda row: self.resolve_member(row, memberships))

    def resolve_member(self, row: Mapping[str, Any], memberships: set[tuple[int, int]]) -> Resolution:
        """Decide whether a membership can be assigned or waits on a dependency."""
        manual = AssignmentStatus.MANUAL_INTERVENTION_REQUIRED
        if row.get("staged_account_id") is None:
            return self.manual("No staging data available for this Jira membership. Re-run the extraction phase.", manual)

        group_id = row.get("mapped_group_id")
        if group_id is None:
            group_id = row.get("redmine_group_id")
        group_status = row.get("group_status")

        if group_status in BLOCKING_GROUP_STATUSES:
            return self.manual(
                f"Group mapping is currently {group_status}. Resolve before assigning members.",
                manual,
                redmine_group_id=group_id,
            )

        if group_id is None:
            if group_status in PENDING_GROUP_STATUSES:
                note = f"Redmine group mapping currently {group_status}; wait for the group to exist before assigning members."
            else:
                note = "Redmine group has not been created yet. Re-run after the group exists."
            return Resolution(AssignmentStatus.AWAITING_GROUP, {"redmine_group_id": None, "notes": note})

        user_id = row.get("redmine_user_id")
        if user_id is None:
            user_id = row.get("mapped_user_id")
        if user_id is None:
            return Resolution(
                AssignmentStatus.AWAITING_USER,
                {
                    "redmine_group_id": group_id,
                    "redmine_user_id": None,
                    "notes": "No Redmine user mapping is available for this Jira account yet.",
                },
            )

        values = {"redmine_group_id": group_id, "redmine_user_id": user_id, "notes": None}
        if (group_id, user_id) in memberships:
            return Resolution(AssignmentStatus.MATCH_FOUND, values)

        user_status = row.get("user_status")
        if user_status not in RESOLVED_USER_STATUSES:
            values["notes"] = f"Redmine user mapping is currently {user_status}; wait for the user to exist before assignment."
            return Resolution(AssignmentStatus.AWAITING_USER, values)

        return Resolution(AssignmentStatus.READY_FOR_ASSIGNMENT, values)

    def run_push_phase(self, options: RunOptions) -> ComponentResult:
        rows = self.fetch_mappings("migration_status = ?", (AssignmentStatus.READY_FOR_ASSIGNMENT,))

        def build(row: Mapping[str, Any]) -> PushOperation:
            return PushOperation(
                mapping_key=row["member_mapping_id"],
                label=(
                    f"Jira account {row['jira_account_id']} -> Redmine group #{row['redmine_group_id']}"
                    f" (user #{row['redmine_user_id']})"
                ),
                endpoint=f"groups/{row['redmine_group_id']}/users.json",
                payload={"user_id": row["redmine_user_id"]},
                row=dict(row),
            )

        def send(operation: PushOperation) -> Result[Any]:
            response = self.redmine_client.post_json(
                operation.endpoint,
                operation.payload,
                error_prefix="Failed to add user to Redmine group",
            )
            if isinstance(response, Err) and is_already_member_error(response):
                logger.info("%s is already a member; treating as assigned.", operation.label)
                return Ok(None)
            if not response.ok:
                return response
            return Ok(None)

        return self.push_created(rows, options.push_options(), build, send)
