"""Tests for the relation vocabulary, conflict checks and relation pipeline."""

from typing import Any

import pytest

from src import config
from src.clients.exceptions import ExtendedApiUnavailableError
from src.mappings.store import MappingStore
from src.migrations.base_migration import Phase, RunOptions
from src.migrations.relation_migration import (
    MISSING_ISSUE_NOTE,
    UNRECOGNISED_NOTE,
    RelationMigration,
    RelationType,
    RelationVocabulary,
    conflict_note,
)
from src.models.status import CreationStatus

pytestmark = pytest.mark.unit

BLOCKS = {"id": "1", "name": "Blocks", "inward": "is blocked by", "outward": "blocks"}
RELATES = {"id": "2", "name": "Relates", "inward": "relates to", "outward": "relates to"}
CLONERS = {"id": "3", "name": "Cloners", "inward": "is cloned by", "outward": "clones"}

ISSUES = [
    {
        "id": "10001",
        "key": "PRJ-1",
        "fields": {
            "summary": "First",
            "issuelinks": [
                {"id": "500", "type": BLOCKS, "outwardIssue": {"id": "10002", "key": "PRJ-2"}},
                {"id": "501", "type": RELATES, "outwardIssue": {"id": "10003", "key": "PRJ-3"}},
                {"id": "502", "type": CLONERS, "inwardIssue": {"id": "10004", "key": "PRJ-4"}},
            ],
        },
    },
    {
        "id": "10002",
        "key": "PRJ-2",
        "fields": {
            "summary": "Second",
            "issuelinks": [{"id": "500", "type": BLOCKS, "inwardIssue": {"id": "10001", "key": "PRJ-1"}}],
        },
    },
]


@pytest.mark.parametrize(
    ("inward", "outward", "name", "expected"),
    [
        ("is blocked by", "blocks", "Blocks", RelationType.BLOCKS),
        ("is blocked by", None, None, RelationType.BLOCKS),
        ("blocks", None, None, RelationType.BLOCKED_BY),
        ("is duplicated by", "duplicates", "Duplicate", RelationType.DUPLICATES),
        ("is cloned by", "clones", "Cloners", RelationType.COPIED_TO),
        ("is preceded by", "precedes", None, RelationType.PRECEDES),
        (None, None, "Relates", RelationType.RELATES),
    ],
)
def test_vocabulary_maps_phrases(inward: str | None, outward: str | None, name: str | None, expected: RelationType) -> None:
    assert RelationVocabulary().map_link(inward, outward, name) == (expected, None)


def test_unrecognised_link_defaults_to_relates() -> None:
    assert RelationVocabulary().map_link("is caused by", "causes", "Problem/Incident") == (RelationType.RELATES, UNRECOGNISED_NOTE)


def test_unsupported_relation_defaults_to_relates() -> None:
    vocabulary = RelationVocabulary(supported=frozenset({RelationType.RELATES}))
    assert vocabulary.map_link("is duplicated by", "duplicates", "Duplicate") == (
        RelationType.RELATES,
        'Jira relation "Duplicate" not supported by Redmine; defaulted to relates.',
    )


@pytest.mark.parametrize(
    ("relation_type", "source_closed", "target_closed", "expected"),
    [
        ("blocks", False, True, "Blocked issue is already closed; review before creating a blocks relation."),
        ("blocks", True, False, "Blocking issue is closed while the blocked issue is open; review relation before creating."),
        ("blocked_by", False, True, "Blocking issue is closed while the blocked issue is open; review relation before creating."),
        ("blocked_by", True, None, "Blocked issue is already closed; review before creating a blocked_by relation."),
        ("blocks", None, None, None),
        ("blocks", False, False, None),
        ("relates", True, True, None),
    ],
)
def test_conflict_note(relation_type: str, source_closed: bool | None, target_closed: bool | None, expected: str | None) -> None:
    assert conflict_note(relation_type, source_closed, target_closed) == expected


def add_issue_mapping(store: MappingStore, jira_issue_id: str, redmine_issue_id: int, redmine_status_id: int) -> None:
    store.execute(
        "INSERT INTO migration_mapping_issues (jira_issue_id, redmine_issue_id, redmine_status_id) VALUES (?, ?, ?)",
        (jira_issue_id, redmine_issue_id, redmine_status_id),
    )
    store.connection.commit()


def relation_row(store: MappingStore, link_id: str) -> dict[str, Any]:
    row = store.fetch_one("SELECT * FROM migration_mapping_issue_relations WHERE jira_link_id = ?", (link_id,))
    assert row is not None
    return row


@pytest.fixture(autouse=True)
def _extended_api_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(config.redmine_config, "extended_api", {"enabled": False, "prefix": "extended_api"})


@pytest.fixture
def redmine(make_redmine: Any) -> Any:
    statuses = [{"id": 1, "name": "New", "is_closed": False}, {"id": 5, "name": "Closed", "is_closed": True}]
    return make_redmine(**{"issue_statuses.json": {"issue_statuses": statuses}})


@pytest.fixture
def relations(store: MappingStore, make_jira: Any, redmine: Any) -> RelationMigration:
    add_issue_mapping(store, "10001", 1, 1)
    add_issue_mapping(store, "10002", 2, 5)
    add_issue_mapping(store, "10003", 3, 1)
    migration = RelationMigration(store, jira_client=make_jira(issues=ISSUES), redmine_client=redmine)
    migration.run([Phase.JIRA, Phase.REDMINE, Phase.TRANSFORM])
    return migration


def test_links_are_deduplicated_and_oriented(relations: RelationMigration, store: MappingStore) -> None:
    assert store.count("migration_mapping_issue_relations") == 3
    cloned = relation_row(store, "502")
    assert (cloned["jira_source_issue_key"], cloned["jira_target_issue_key"]) == ("PRJ-4", "PRJ-1")


def test_transform_outcomes(relations: RelationMigration, store: MappingStore) -> None:
    blocked = relation_row(store, "500")
    assert blocked["migration_status"] == CreationStatus.MANUAL_INTERVENTION_REQUIRED
    assert blocked["proposed_relation_type"] == "blocks"
    assert blocked["notes"] == "Blocked issue is already closed; review before creating a blocks relation."

    related = relation_row(store, "501")
    assert related["migration_status"] == CreationStatus.READY_FOR_CREATION
    assert (related["redmine_issue_from_id"], related["redmine_issue_to_id"]) == (1, 3)
    assert related["notes"] is None

    missing = relation_row(store, "502")
    assert missing["migration_status"] == CreationStatus.MANUAL_INTERVENTION_REQUIRED
    assert missing["notes"] == MISSING_ISSUE_NOTE
    assert missing["redmine_issue_from_id"] is None
    assert missing["redmine_issue_to_id"] == 1


def test_manual_relations_are_re_evaluated(relations: RelationMigration, store: MappingStore) -> None:
    add_issue_mapping(store, "10004", 4, 1)
    relations.run([Phase.TRANSFORM])

    cloned = relation_row(store, "502")
    assert cloned["migration_status"] == CreationStatus.READY_FOR_CREATION
    assert cloned["proposed_relation_type"] == "copied_to"
    assert (cloned["redmine_issue_from_id"], cloned["redmine_issue_to_id"]) == (4, 1)


def test_existing_relation_is_recorded_as_created(relations: RelationMigration) -> None:
    resolution = relations.resolve_relation({"redmine_relation_id": 9, "proposed_relation_type": "blocks"})
    assert resolution.status == CreationStatus.CREATION_SUCCESS
    assert resolution.values["proposed_relation_type"] == "blocks"


def test_push_uses_standard_endpoint(relations: RelationMigration, redmine: Any, store: MappingStore) -> None:
    result = relations.run([Phase.PUSH], RunOptions(confirm_push=True))

    assert result.succeeded == 1
    assert redmine.posts == [("issues/1/relations.json", {"relation": {"issue_to_id": 3, "relation_type": "relates"}})]
    row = relation_row(store, "501")
    assert row["migration_status"] == CreationStatus.CREATION_SUCCESS
    assert row["redmine_relation_id"] == 101


def test_push_through_extended_api(relations: RelationMigration, redmine: Any) -> None:
    relations.run([Phase.PUSH], RunOptions(confirm_push=True, use_extended_api=True))

    assert redmine.extended_checks == ["issue_statuses.json"]
    path, payload = redmine.posts[0]
    assert path == "extended_api/issues/1/relations.json"
    assert payload["notify"] is False


def test_unavailable_extended_api_falls_back(relations: RelationMigration, redmine: Any) -> None:
    redmine.extended_error = ExtendedApiUnavailableError("Extended API sentinel header missing.")
    result = relations.run([Phase.PUSH], RunOptions(confirm_push=True, use_extended_api=True))

    assert redmine.posts[0][0] == "issues/1/relations.json"
    assert "notify" not in redmine.posts[0][1]
    assert result.warnings == ["Extended API sentinel header missing. Falling back to the standard relations endpoint."]
