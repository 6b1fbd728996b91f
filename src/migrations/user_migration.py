"""User migration module for Jira to Redmine migration.

Matches Jira accounts to existing Redmine users by login, then by mail, and
proposes new Redmine accounts for the rest. Jira Cloud has no usable login,
so the Jira email address doubles as the proposed Redmine login.
"""

from collections.abc import Mapping
from typing import Any, ClassVar

from src import config
from src.display import configure_logging
from src.mappings.store import to_json
from src.mappings.synchronizer import MappingSynchronizer, SyncSpec
from src.migrations.base_migration import BaseMigration, Phase, Resolution, RunOptions, register_entity_types
from src.migrations.push_executor import PushOperation, created_id
from src.models import ComponentResult
from src.models.result import Result
from src.models.status import CREATION, CreationStatus
from src.utils.match_index import AmbiguousMatch, LookupIndex, SingleMatch
from src.utils.normalization import derive_name_parts, normalize_string

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)

REDMINE_STATUS_ACTIVE = 1
REDMINE_STATUS_LOCKED = 3

USER_SYNC = SyncSpec(
    table="migration_mapping_users",
    columns=("jira_account_id", "jira_display_name", "jira_email_address"),
    select_sql="SELECT account_id, display_name, email_address FROM staging_jira_users",
    conflict_columns=("jira_account_id",),
    refresh_columns=("jira_display_name", "jira_email_address"),
)


@register_entity_types("users")
class UserMigration(BaseMigration):
    """Handles the migration of users from Jira to Redmine."""

    PHASES: ClassVar[tuple[Phase, ...]] = (Phase.JIRA, Phase.REDMINE, Phase.TRANSFORM, Phase.PUSH)
    MAPPING_TABLE = "migration_mapping_users"
    LABEL_COLUMN = "jira_account_id"
    ENTITY_LABEL = "Jira account"
    STATUS_FAMILY = CREATION
    OWNED_FIELDS = (
        "redmine_user_id",
        "match_type",
        "proposed_redmine_login",
        "proposed_redmine_mail",
        "proposed_firstname",
        "proposed_lastname",
        "proposed_redmine_status",
        "migration_status",
        "notes",
    )

    @property
    def default_status(self) -> str:
        status = str(config.redmine_config.get("default_user_status") or "LOCKED").upper()
        return status if status in {"ACTIVE", "LOCKED"} else "LOCKED"

    def run_jira_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        """Stage every Jira account and make sure each has a mapping row."""
        users = self.jira_client.get_users()
        rows = [
            {
                "account_id": user.get("accountId"),
                "account_type": user.get("accountType"),
                "display_name": user.get("displayName"),
                "email_address": user.get("emailAddress"),
                "is_active": user.get("active"),
                "group_memberships": to_json(user.get("groups", {}).get("items", [])) if user.get("groups") else None,
                "raw_payload": to_json(user),
            }
            for user in users
            if user.get("accountId")
        ]
        extracted = self.store.replace_staging(
            "staging_jira_users",
            ("account_id", "account_type", "display_name", "email_address", "is_active", "group_memberships", "raw_payload"),
            rows,
        )
        synced = MappingSynchronizer(self.store).sync(USER_SYNC)
        return ComponentResult(extracted=extracted, synchronized=synced.inserted)

    def run_redmine_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        """Snapshot all Redmine users, locked and registered ones included."""
        users = self.redmine_client.get_paged("users.json", "users", params={"status": ""})
        rows = [
            {
                "id": user.get("id"),
                "login": user.get("login"),
                "firstname": user.get("firstname"),
                "lastname": user.get("lastname"),
                "mail": user.get("mail"),
                "status": user.get("status"),
                "raw_payload": to_json(user),
            }
            for user in users
        ]
        staged = self.store.replace_staging(
            "staging_redmine_users",
            ("id", "login", "firstname", "lastname", "mail", "status", "raw_payload"),
            rows,
        )
        logger.info("Staged %d Redmine users", staged)
        return ComponentResult(extracted=staged)

    def run_transform_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        redmine_users = self.store.fetch_all("SELECT * FROM staging_redmine_users ORDER BY id")
        by_login = LookupIndex(redmine_users, "login")
        by_mail = LookupIndex(redmine_users, "mail")
        rows = self.store.fetch_all(
            """
            SELECT m.*, s.account_id AS staged_account_id, s.display_name AS staged_display_name,
                   s.email_address AS staged_email_address
            FROM migration_mapping_users m
            LEFT JOIN staging_jira_users s ON s.account_id = m.jira_account_id
            ORDER BY m.mapping_id
            """,
        )
        return self.reconcile(rows, lambda row: self.resolve_user(row, by_login, by_mail))

    def resolve_user(self, row: Mapping[str, Any], by_login: LookupIndex, by_mail: LookupIndex) -> Resolution | None:
        """Classify one account: matched, ready for creation or manual review."""
        if row.get("match_type") == "MANUAL":
            return None
        if row.get("staged_account_id") is None:
            return self.manual(
                "No staging data available for this Jira account. Re-run the extraction phase.",
                redmine_user_id=None,
            )

        email = normalize_string(row.get("staged_email_address"))
        display_name = normalize_string(row.get("staged_display_name"))
        firstname, lastname = derive_name_parts(display_name)
        proposal = {
            "redmine_user_id": None,
            "match_type": "NONE",
            "proposed_redmine_login": email,
            "proposed_redmine_mail": email,
            "proposed_firstname": firstname,
            "proposed_lastname": lastname,
            "proposed_redmine_status": self.default_status,
        }

        if email is None:
            return self.manual(
                "Missing Jira email address; unable to auto-match or propose a Redmine login.",
                **proposal,
            )

        for index, match_type, noun in ((by_login, "LOGIN", "login"), (by_mail, "MAIL", "email")):
            match index.resolve(email):
                case AmbiguousMatch():
                    return self.manual(f'Multiple Redmine accounts share the {noun} "{email}".', **proposal)
                case SingleMatch(row=redmine_user):
                    return self._matched(redmine_user, match_type, firstname, lastname)

        if firstname is None or lastname is None:
            return self.manual(
                f'Unable to derive firstname/lastname from Jira display name "{display_name or "[unknown]"}".',
                **proposal,
            )
        return Resolution(CreationStatus.READY_FOR_CREATION, {**proposal, "notes": None})

    @staticmethod
    def _matched(
        redmine_user: Mapping[str, Any],
        match_type: str,
        firstname: str | None,
        lastname: str | None,
    ) -> Resolution:
        status = "ACTIVE" if redmine_user.get("status") == REDMINE_STATUS_ACTIVE else "LOCKED"
        return Resolution(
            CreationStatus.MATCH_FOUND,
            {
                "redmine_user_id": redmine_user["id"],
                "match_type": match_type,
                "proposed_redmine_login": redmine_user.get("login"),
                "proposed_redmine_mail": redmine_user.get("mail"),
                "proposed_firstname": normalize_string(redmine_user.get("firstname")) or firstname,
                "proposed_lastname": normalize_string(redmine_user.get("lastname")) or lastname,
                "proposed_redmine_status": status,
                "notes": None,
            },
        )

    def build_payload(self, row: Mapping[str, Any]) -> dict[str, Any]:
        user: dict[str, Any] = {
            "login": row.get("proposed_redmine_login"),
            "firstname": row.get("proposed_firstname"),
            "lastname": row.get("proposed_lastname"),
            "mail": row.get("proposed_redmine_mail"),
            "generate_password": True,
            "must_change_passwd": True,
            "status": REDMINE_STATUS_ACTIVE if row.get("proposed_redmine_status") == "ACTIVE" else REDMINE_STATUS_LOCKED,
        }
        auth_source_id = config.redmine_config.get("auth_source_id")
        if auth_source_id:
            user["auth_source_id"] = int(auth_source_id)
        return {"user": user}

    def run_push_phase(self, options: RunOptions) -> ComponentResult:
        rows = self.fetch_mappings("migration_status = ?", (CreationStatus.READY_FOR_CREATION,))

        def build(row: Mapping[str, Any]) -> PushOperation:
            return PushOperation(
                mapping_key=row["mapping_id"],
                label=f"Jira account {row['jira_account_id']}",
                endpoint="users.json",
                payload=self.build_payload(row),
                row=dict(row),
            )

        def send(operation: PushOperation) -> Result[Any]:
            response = self.redmine_client.post_json(
                operation.endpoint,
                operation.payload,
                error_prefix="Failed to create Redmine user",
            )
            if not response.ok:
                return response
            return created_id(response.value, "user", "Redmine did not return a user identifier.")

        return self.push_created(rows, options.push_options(), build, send, "redmine_user_id", "user")
