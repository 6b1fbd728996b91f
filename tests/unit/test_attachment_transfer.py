"""Tests for the attachment download pool, requeue and upload steps."""

import threading
import time
from pathlib import Path
from typing import Any

import pytest

from src import config
from src.clients.exceptions import RateLimitError
from src.clients.jira_client import JiraApiError
from src.mappings.store import MappingStore
from src.migrations.attachments_migration import (
    MISSING_URL_NOTE,
    AttachmentsMigration,
    attachment_rows,
    token_attachment_id,
)
from src.migrations.base_migration import Phase, RunOptions
from src.models.status import TransferStatus

pytestmark = pytest.mark.unit

FAILING_IDS = {"3", "7"}


def make_issue(count: int) -> dict[str, Any]:
    return {
        "id": "10001",
        "key": "PRJ-1",
        "fields": {
            "created": "2024-03-01T10:15:00.000+0100",
            "attachment": [
                {
                    "id": str(index),
                    "filename": f"file {index}.txt",
                    "content": f"https://jira.example.com/secure/attachment/{index}/file{index}.txt",
                    "size": 12,
                    "author": {"accountId": "acc-a"},
                    "created": "2024-03-01T10:15:30.000+0100",
                }
                for index in range(1, count + 1)
            ],
        },
    }


class DownloadingJira:
    """Serves attachment bodies; ids in ``failing`` answer 404 after a partial write."""

    def __init__(self, issues: list[dict[str, Any]], failing: set[str] = frozenset()) -> None:
        self.issues = issues
        self.failing = failing
        self.downloads: list[str] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def search_issues(self, jql: str | None = None) -> list[dict[str, Any]]:  # noqa: ARG002
        return self.issues

    def download_to(self, url: str, target: Path) -> int:
        attachment_id = url.rsplit("/", 2)[-2]
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.downloads.append(attachment_id)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(b"partial")
            if attachment_id in self.failing:
                msg = "Failed to download attachment (HTTP 404): Not Found"
                raise JiraApiError(msg, status_code=404)
            target.write_bytes(b"hello world!")
            return 12
        finally:
            with self._lock:
                self.active -= 1


def mapping(store: MappingStore, attachment_id: str) -> dict[str, Any]:
    row = store.fetch_one("SELECT * FROM migration_mapping_attachments WHERE jira_attachment_id = ?", (attachment_id,))
    assert row is not None
    return row


@pytest.fixture(autouse=True)
def _extended_api_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(config.redmine_config, "extended_api", {"enabled": False, "prefix": "extended_api"})


@pytest.fixture
def jira() -> DownloadingJira:
    return DownloadingJira([make_issue(10)], FAILING_IDS)


@pytest.fixture
def attachments(store: MappingStore, jira: DownloadingJira, dummy_redmine: Any, attachment_dir: Path) -> AttachmentsMigration:
    migration = AttachmentsMigration(
        store,
        jira_client=jira,
        redmine_client=dummy_redmine,
        storage_dir=attachment_dir,
        concurrency=4,
    )
    migration.run([Phase.JIRA])
    return migration


@pytest.mark.parametrize(
    ("token", "expected"),
    [("12.abcdef", 12), (" 7.d ", 7), ("0.abc", None), ("abc", None), ("x.y", None), ("", None), (None, None)],
)
def test_token_attachment_id(token: str | None, expected: int | None) -> None:
    assert token_attachment_id(token) == expected


def test_attachment_rows_normalize_timestamps() -> None:
    rows = attachment_rows([make_issue(1)])
    assert rows[0]["created_at"] == "2024-03-01 09:15:30"
    assert rows[0]["author_account_id"] == "acc-a"
    assert rows[0]["size_bytes"] == 12


def test_association_hint(store: MappingStore, dummy_redmine: Any, attachment_dir: Path) -> None:
    issue = make_issue(2)
    issue["fields"]["attachment"][1]["created"] = "2024-03-02T08:00:00.000+0100"
    migration = AttachmentsMigration(store, jira_client=DownloadingJira([issue]), redmine_client=dummy_redmine, storage_dir=attachment_dir)
    result = migration.run([Phase.JIRA])

    assert result.synchronized == 2
    assert mapping(store, "1")["association_hint"] == "ISSUE"
    assert mapping(store, "2")["association_hint"] == "JOURNAL"
    assert mapping(store, "1")["migration_status"] == TransferStatus.PENDING_DOWNLOAD


def test_pool_downloads_and_isolates_failures(attachments: AttachmentsMigration, store: MappingStore, jira: DownloadingJira) -> None:
    result = attachments.run([Phase.PULL], RunOptions(confirm_pull=True))

    assert (result.succeeded, result.failed) == (8, 2)
    assert sorted(jira.downloads, key=int) == [str(index) for index in range(1, 11)]
    assert jira.peak <= 4

    downloaded = store.fetch_all(
        "SELECT * FROM migration_mapping_attachments WHERE migration_status = ?",
        (TransferStatus.PENDING_UPLOAD,),
    )
    assert len(downloaded) == 8
    for row in downloaded:
        path = Path(row["local_filepath"])
        assert path.is_absolute()
        assert path.read_bytes() == b"hello world!"

    for attachment_id in FAILING_IDS:
        row = mapping(store, attachment_id)
        assert row["migration_status"] == TransferStatus.FAILED
        assert row["local_filepath"] is None
        assert "HTTP 404" in row["notes"]
        assert not attachments.target_path(row).exists()


def test_pull_without_confirmation_previews(attachments: AttachmentsMigration, jira: DownloadingJira) -> None:
    result = attachments.run([Phase.PULL], RunOptions())
    assert result.previewed == 10
    assert jira.downloads == []


def test_download_limit(attachments: AttachmentsMigration, store: MappingStore) -> None:
    result = attachments.run([Phase.PULL], RunOptions(confirm_pull=True, download_limit=2))
    assert result.succeeded == 2
    assert store.status_counts("migration_mapping_attachments") == {"PENDING_DOWNLOAD": 8, "PENDING_UPLOAD": 2}


def test_missing_url_fails_without_request(store: MappingStore, dummy_redmine: Any, attachment_dir: Path) -> None:
    issue = make_issue(1)
    del issue["fields"]["attachment"][0]["content"]
    jira = DownloadingJira([issue])
    migration = AttachmentsMigration(store, jira_client=jira, redmine_client=dummy_redmine, storage_dir=attachment_dir)
    migration.run([Phase.JIRA, Phase.PULL], RunOptions(confirm_pull=True))

    assert jira.downloads == []
    row = mapping(store, "1")
    assert row["migration_status"] == TransferStatus.FAILED
    assert row["notes"] == MISSING_URL_NOTE


def test_transform_requeues_failures(attachments: AttachmentsMigration, store: MappingStore) -> None:
    attachments.run([Phase.PULL], RunOptions(confirm_pull=True))
    result = attachments.run([Phase.TRANSFORM])

    assert result.requeued == 2
    for attachment_id in FAILING_IDS:
        row = mapping(store, attachment_id)
        assert row["migration_status"] == TransferStatus.PENDING_DOWNLOAD
        assert row["notes"] is None


def test_upload_keeps_token(attachments: AttachmentsMigration, store: MappingStore, dummy_redmine: Any) -> None:
    attachments.run([Phase.PULL], RunOptions(confirm_pull=True))
    result = attachments.run([Phase.PUSH], RunOptions(confirm_push=True))

    assert result.succeeded == 8
    path, filename, params = dummy_redmine.uploads[0]
    assert (path, filename, params) == ("uploads.json", "1__file_1.txt", None)
    row = mapping(store, "1")
    assert row["migration_status"] == TransferStatus.PENDING_ASSOCIATION
    assert row["redmine_upload_token"] == "101.abcdef"
    assert row["redmine_attachment_id"] == 101


def test_extended_upload_passes_author(attachments: AttachmentsMigration, store: MappingStore, dummy_redmine: Any) -> None:
    store.execute("INSERT INTO migration_mapping_users (jira_account_id, redmine_user_id) VALUES ('acc-a', 50)")
    store.connection.commit()
    attachments.run([Phase.PULL], RunOptions(confirm_pull=True))
    attachments.run([Phase.PUSH], RunOptions(confirm_push=True, use_extended_api=True, upload_limit=1))

    assert dummy_redmine.extended_checks == ["issues.json"]
    assert dummy_redmine.uploads == [
        ("extended_api/uploads.json", "1__file_1.txt", {"author_id": 50, "created_on": "2024-03-01 09:15:30"}),
    ]


def test_missing_or_empty_local_file_fails_upload(attachments: AttachmentsMigration, store: MappingStore, dummy_redmine: Any) -> None:
    attachments.run([Phase.PULL], RunOptions(confirm_pull=True))
    Path(mapping(store, "1")["local_filepath"]).unlink()
    Path(mapping(store, "2")["local_filepath"]).write_bytes(b"")

    result = attachments.run([Phase.PUSH], RunOptions(confirm_push=True))

    assert (result.succeeded, result.failed) == (6, 2)
    assert len(dummy_redmine.uploads) == 6
    missing = mapping(store, "1")
    assert missing["migration_status"] == TransferStatus.FAILED
    assert missing["notes"].startswith("Local attachment missing:")
    assert mapping(store, "2")["notes"].startswith("Local attachment is empty:")


class ThrottledJira(DownloadingJira):
    """Attachment 2 exhausts its 429 retries while attachment 1 is still downloading."""

    def __init__(self, issues: list[dict[str, Any]]) -> None:
        super().__init__(issues)
        self.throttled = threading.Event()

    def download_to(self, url: str, target: Path) -> int:
        attachment_id = url.rsplit("/", 2)[-2]
        if attachment_id == "2":
            self.throttled.set()
            msg = "Jira rate limit exceeded after 5 retries"
            raise RateLimitError(msg)
        if attachment_id == "1":
            self.throttled.wait(timeout=5)
            time.sleep(0.2)
        return super().download_to(url, target)


def test_rate_limit_in_pool_records_finished_downloads(
    store: MappingStore,
    dummy_redmine: Any,
    attachment_dir: Path,
) -> None:
    jira = ThrottledJira([make_issue(6)])
    migration = AttachmentsMigration(
        store,
        jira_client=jira,
        redmine_client=dummy_redmine,
        storage_dir=attachment_dir,
        concurrency=2,
    )
    migration.run([Phase.JIRA])

    with pytest.raises(RateLimitError):
        migration.run([Phase.PULL], RunOptions(confirm_pull=True))

    assert mapping(store, "1")["migration_status"] == TransferStatus.PENDING_UPLOAD
    assert mapping(store, "2")["migration_status"] == TransferStatus.PENDING_DOWNLOAD
    for index in range(1, 7):
        row = mapping(store, str(index))
        on_disk = migration.target_path(row).exists()
        assert on_disk == (row["migration_status"] == TransferStatus.PENDING_UPLOAD)
