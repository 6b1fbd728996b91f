"""Tests for status and priority matching and extended API creation."""

from typing import Any

import pytest

from src import config
from src.clients.exceptions import ExtendedApiUnavailableError
from src.mappings.store import MappingStore
from src.migrations.base_migration import Phase, RunOptions
from src.migrations.priority_migration import PriorityMigration
from src.migrations.status_migration import StatusMigration, closed_from_category
from src.models.status import CreationStatus

pytestmark = pytest.mark.unit

JIRA_STATUSES = [
    {"id": "1", "name": "Open", "statusCategory": {"key": "new"}},
    {"id": "3", "name": "In Progress", "statusCategory": {"key": "indeterminate"}},
    {"id": "5", "name": "Shipped", "statusCategory": {"key": "done"}},
    {"id": "7", "name": "Parked", "statusCategory": {"key": "mystery"}},
    {"name": "No id"},
]


@pytest.fixture(autouse=True)
def _extended_api_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(config.redmine_config, "extended_api", {"enabled": False, "prefix": "extended_api"})


@pytest.fixture
def redmine(make_redmine: Any) -> Any:
    return make_redmine(
        **{
            "issue_statuses.json": {"issue_statuses": [{"id": 1, "name": "open", "is_closed": False}]},
            "enumerations/issue_priorities.json": {
                "issue_priorities": [{"id": 4, "name": "medium", "is_default": True}],
            },
        },
    )


@pytest.fixture
def statuses(store: MappingStore, make_jira: Any, redmine: Any) -> StatusMigration:
    migration = StatusMigration(store, jira_client=make_jira(statuses=JIRA_STATUSES), redmine_client=redmine)
    migration.run([Phase.JIRA, Phase.REDMINE, Phase.TRANSFORM])
    return migration


def status_row(store: MappingStore, status_id: str) -> dict[str, Any]:
    row = store.fetch_one("SELECT * FROM migration_mapping_statuses WHERE jira_status_id = ?", (status_id,))
    assert row is not None
    return row


@pytest.mark.parametrize(
    ("key", "expected"),
    [("done", True), ("DONE", True), ("new", False), ("indeterminate", False), ("todo", False), ("other", None), (None, None)],
)
def test_closed_from_category(key: str | None, expected: bool | None) -> None:
    assert closed_from_category(key) is expected


def test_unmatched_status_is_ready_for_creation(statuses: StatusMigration, store: MappingStore) -> None:
    row = status_row(store, "3")
    assert row["migration_status"] == CreationStatus.READY_FOR_CREATION
    assert row["proposed_redmine_name"] == "In Progress"
    assert row["redmine_status_id"] is None
    assert row["proposed_is_closed"] == 0
    assert status_row(store, "5")["proposed_is_closed"] == 1


def test_match_takes_the_redmine_spelling(statuses: StatusMigration, store: MappingStore) -> None:
    row = status_row(store, "1")
    assert row["migration_status"] == CreationStatus.MATCH_FOUND
    assert row["redmine_status_id"] == 1
    assert row["proposed_redmine_name"] == "open"


def test_unknown_category_needs_review(statuses: StatusMigration, store: MappingStore) -> None:
    row = status_row(store, "7")
    assert row["migration_status"] == CreationStatus.MANUAL_INTERVENTION_REQUIRED
    assert row["notes"] == "Unable to derive closed/open flag from the Jira status category."


def test_push_without_extended_api_logs_checklist(statuses: StatusMigration, redmine: Any) -> None:
    result = statuses.run([Phase.PUSH], RunOptions(confirm_push=True))

    assert redmine.posts == []
    assert redmine.extended_checks == []
    assert result.details["statuses_checklist"] == 2


def test_dry_run_with_extended_api_sends_nothing(statuses: StatusMigration, redmine: Any, store: MappingStore) -> None:
    result = statuses.run([Phase.PUSH], RunOptions(dry_run=True, use_extended_api=True))

    assert redmine.posts == []
    assert redmine.extended_checks == []
    assert result.previewed == 2
    assert status_row(store, "3")["migration_status"] == CreationStatus.READY_FOR_CREATION


def test_extended_push_creates_statuses(statuses: StatusMigration, redmine: Any, store: MappingStore) -> None:
    result = statuses.run([Phase.PUSH], RunOptions(confirm_push=True, use_extended_api=True))

    assert redmine.extended_checks == ["issue_statuses.json"]
    assert redmine.posts == [
        ("extended_api/issue_statuses.json", {"issue_status": {"name": "In Progress", "is_closed": False}}),
        ("extended_api/issue_statuses.json", {"issue_status": {"name": "Shipped", "is_closed": True}}),
    ]
    assert result.succeeded == 2
    row = status_row(store, "3")
    assert row["migration_status"] == CreationStatus.CREATION_SUCCESS
    assert row["redmine_status_id"] == 101


def test_missing_plugin_falls_back_to_checklist(statuses: StatusMigration, redmine: Any) -> None:
    redmine.extended_error = ExtendedApiUnavailableError("Extended API sentinel header missing")
    result = statuses.run([Phase.PUSH], RunOptions(confirm_push=True, use_extended_api=True))

    assert redmine.posts == []
    assert result.warnings == ["Extended API sentinel header missing"]
    assert result.details["statuses_checklist"] == 2


def test_priorities_match_and_push(store: MappingStore, make_jira: Any, redmine: Any) -> None:
    jira = make_jira(priorities=[{"id": "1", "name": "Highest"}, {"id": "3", "name": "Medium"}])
    migration = PriorityMigration(store, jira_client=jira, redmine_client=redmine)
    migration.run([Phase.JIRA, Phase.REDMINE, Phase.TRANSFORM])

    medium = store.fetch_one("SELECT * FROM migration_mapping_priorities WHERE jira_priority_id = '3'")
    assert medium is not None
    assert medium["migration_status"] == CreationStatus.MATCH_FOUND
    assert (medium["redmine_priority_id"], medium["proposed_redmine_name"]) == (4, "medium")
    assert (medium["proposed_is_default"], medium["proposed_redmine_position"]) == (1, 1)

    result = migration.run([Phase.PUSH], RunOptions(confirm_push=True, use_extended_api=True))
    assert result.succeeded == 1
    assert redmine.posts == [
        ("extended_api/enumerations/issue_priorities.json", {"issue_priority": {"name": "Highest", "is_default": False}}),
    ]
    highest = store.fetch_one("SELECT * FROM migration_mapping_priorities WHERE jira_priority_id = '1'")
    assert highest is not None
    assert highest["redmine_priority_id"] == 101
