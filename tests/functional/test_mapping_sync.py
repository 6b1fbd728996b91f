"""Mapping synchronization keeps decisions while staging snapshots change."""

from typing import Any

import pytest

from src import config
from src.mappings.store import MappingStore
from src.mappings.synchronizer import MappingSynchronizer, SyncSpec
from src.migrations.base_migration import Phase
from src.migrations.user_migration import USER_SYNC, UserMigration
from src.models.status import CreationStatus

pytestmark = pytest.mark.functional


@pytest.fixture(autouse=True)
def _user_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(config.redmine_config, "default_user_status", "LOCKED")


def test_resync_refreshes_reference_columns_only(file_store: MappingStore, make_jira: Any, make_redmine: Any) -> None:
    jira = make_jira(users=[{"accountId": "acc-1", "displayName": "Grace Hopper", "emailAddress": "grace@example.com"}])
    migration = UserMigration(file_store, jira_client=jira, redmine_client=make_redmine(**{"users.json": {"users": []}}))
    migration.run([Phase.JIRA, Phase.REDMINE, Phase.TRANSFORM])
    decided = file_store.fetch_one("SELECT * FROM migration_mapping_users")
    assert decided is not None
    assert decided["migration_status"] == CreationStatus.READY_FOR_CREATION

    file_store.execute("UPDATE staging_jira_users SET display_name = 'Rear Admiral Hopper' WHERE account_id = 'acc-1'")
    file_store.connection.commit()
    synced = MappingSynchronizer(file_store).sync(USER_SYNC)

    assert (synced.inserted, synced.refreshed) == (0, 1)
    refreshed = file_store.fetch_one("SELECT * FROM migration_mapping_users")
    assert refreshed is not None
    assert refreshed["jira_display_name"] == "Rear Admiral Hopper"
    for column in ("mapping_id", "migration_status", "proposed_firstname", "notes", "automation_hash"):
        assert refreshed[column] == decided[column]

    assert MappingSynchronizer(file_store).sync(USER_SYNC).refreshed == 0


def test_sync_without_refresh_columns_only_inserts(file_store: MappingStore) -> None:
    spec = SyncSpec(
        table="migration_mapping_groups",
        columns=("jira_group_id", "jira_group_name"),
        select_sql="SELECT group_id, name FROM staging_jira_groups",
        conflict_columns=("jira_group_id",),
    )
    file_store.replace_staging("staging_jira_groups", ("group_id", "name"), [{"group_id": "g-1", "name": "Dev"}])
    assert MappingSynchronizer(file_store).sync(spec).inserted == 1

    file_store.replace_staging(
        "staging_jira_groups",
        ("group_id", "name"),
        [{"group_id": "g-1", "name": "Developers"}, {"group_id": "g-2", "name": "Ops"}],
    )
    result = MappingSynchronizer(file_store).sync(spec)

    assert (result.inserted, result.refreshed) == (1, 0)
    names = file_store.fetch_all("SELECT jira_group_id, jira_group_name FROM migration_mapping_groups ORDER BY jira_group_id")
    assert names == [{"jira_group_id": "g-1", "jira_group_name": "Dev"}, {"jira_group_id": "g-2", "jira_group_name": "Ops"}]


def test_mapping_rows_outlive_their_staging_rows(file_store: MappingStore) -> None:
    spec = SyncSpec(
        table="migration_mapping_groups",
        columns=("jira_group_id", "jira_group_name"),
        select_sql="SELECT group_id, name FROM staging_jira_groups",
        conflict_columns=("jira_group_id",),
        refresh_columns=("jira_group_name",),
    )
    file_store.replace_staging("staging_jira_groups", ("group_id", "name"), [{"group_id": "g-1", "name": "Dev"}])
    MappingSynchronizer(file_store).sync(spec)
    file_store.replace_staging("staging_jira_groups", ("group_id", "name"), [])

    assert MappingSynchronizer(file_store).sync(spec).inserted == 0
    assert file_store.count("migration_mapping_groups") == 1


def seed_membership(store: MappingStore, group_status: str, group_id: int | None, member_group_id: int | None) -> None:
    store.execute(
        "INSERT INTO migration_mapping_groups (jira_group_id, jira_group_name, redmine_group_id, migration_status)"
        " VALUES ('g-ops', 'Ops', ?, ?)",
        (group_id, group_status),
    )
    store.execute(
        "INSERT INTO migration_mapping_group_members"
        " (jira_group_id, jira_group_name, jira_account_id, redmine_group_id, redmine_user_id, migration_status, automation_hash)"
        " VALUES ('g-ops', 'Ops', 'acc-1', ?, 50, 'READY_FOR_ASSIGNMENT', ?)",
        (member_group_id, "a" * 64),
    )
    store.connection.commit()


def member(store: MappingStore) -> dict[str, Any]:
    row = store.fetch_one("SELECT * FROM migration_mapping_group_members WHERE jira_account_id = 'acc-1'")
    assert row is not None
    return row


@pytest.mark.parametrize("group_status", ["READY_FOR_CREATION", "MANUAL_INTERVENTION_REQUIRED"])
def test_backfill_keeps_hand_set_group_id_while_group_is_unresolved(file_store: MappingStore, group_status: str) -> None:
    seed_membership(file_store, group_status, group_id=None, member_group_id=7)

    assert MappingSynchronizer(file_store).backfill_member_groups() == 0
    row = member(file_store)
    assert row["redmine_group_id"] == 7
    assert row["automation_hash"] == "a" * 64
    assert row["jira_group_name"] == "Ops"


def test_backfill_propagates_created_group_id(file_store: MappingStore) -> None:
    seed_membership(file_store, "CREATION_SUCCESS", group_id=12, member_group_id=None)

    assert MappingSynchronizer(file_store).backfill_member_groups() == 1
    row = member(file_store)
    assert row["redmine_group_id"] == 12
    assert row["automation_hash"] is None

    assert MappingSynchronizer(file_store).backfill_member_groups() == 0


def test_backfill_refreshes_name_without_touching_hash(file_store: MappingStore) -> None:
    seed_membership(file_store, "READY_FOR_CREATION", group_id=None, member_group_id=7)
    file_store.execute("UPDATE migration_mapping_groups SET jira_group_name = 'Operations'")
    file_store.connection.commit()

    assert MappingSynchronizer(file_store).backfill_member_groups() == 1
    row = member(file_store)
    assert row["jira_group_name"] == "Operations"
    assert row["redmine_group_id"] == 7
    assert row["automation_hash"] == "a" * 64
