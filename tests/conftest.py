"""Shared pytest fixtures and configuration for all tests."""

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any, cast

import pytest
from _pytest.config import Config

from src.mappings.store import MappingStore
from src.models.result import Ok, Result


def pytest_configure(config: Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark a test as a unit test")
    config.addinivalue_line("markers", "functional: mark a test as a functional test (local SQLite, no network)")
    config.addinivalue_line(
        "markers",
        "integration: mark a test as an integration test against live Jira/Redmine",
    )


def _env_flag(name: str, default: bool = False) -> bool:
    """Read boolean environment flag (true/false)."""
    val = os.environ.get(name, "true" if default else "false").strip().lower()
    return val in {"1", "true", "yes", "on"}


def pytest_collection_modifyitems(config: Config, items: list[pytest.Item]) -> None:  # noqa: ARG001
    """Apply default skipping for integration and unmarked tests.

    - Unit and functional tests always run; both only touch local SQLite files.
    - Integration tests are skipped unless J2R_RUN_INTEGRATION=true.
    - Unmarked tests are skipped unless J2R_RUN_ALL_TESTS=true.
    """
    run_all = _env_flag("J2R_RUN_ALL_TESTS", False)
    run_integration = _env_flag("J2R_RUN_INTEGRATION", False) or run_all

    skip_integration = pytest.mark.skip(
        reason="Integration tests disabled by default. Set J2R_RUN_INTEGRATION=true to enable.",
    )
    skip_unmarked = pytest.mark.skip(
        reason="Unmarked test skipped by default. Mark with unit/functional/integration or set J2R_RUN_ALL_TESTS=true.",
    )

    for item in items:
        kws = item.keywords
        if "integration" in kws and not run_integration:
            item.add_marker(skip_integration)
            continue
        if not run_all and not any(m in kws for m in ("unit", "functional", "integration")):
            item.add_marker(skip_unmarked)


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment() -> Generator[None]:
    """Flag test mode for the whole session and restore the environment afterwards."""
    original_env = os.environ.copy()
    os.environ["J2R_TEST_MODE"] = "true"
    os.environ["J2R_DISABLE_LOCK"] = "1"
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def test_env() -> Generator[dict[str, str]]:
    """Let a test override environment variables; originals are restored afterwards."""
    original_env = os.environ.copy()
    try:
        yield cast("dict[str, str]", os.environ)
    finally:
        os.environ.clear()
        os.environ.update(original_env)


@pytest.fixture
def store() -> Generator[MappingStore]:
    """In-memory mapping store with the full schema."""
    mapping_store = MappingStore()
    mapping_store.initialize_schema()
    try:
        yield mapping_store
    finally:
        mapping_store.close()


@pytest.fixture
def file_store(tmp_path: Path) -> Generator[MappingStore]:
    """On-disk mapping store, for tests that reopen the database."""
    mapping_store = MappingStore(tmp_path / "migration.sqlite3")
    mapping_store.initialize_schema()
    try:
        yield mapping_store
    finally:
        mapping_store.close()


@pytest.fixture
def attachment_dir(tmp_path: Path) -> Path:
    path = tmp_path / "attachments"
    path.mkdir()
    return path


class DummyJira:
    """Jira double answering from canned payloads."""

    def __init__(self, **payloads: Any) -> None:
        self.payloads = payloads
        self.calls: list[str] = []

    def _get(self, name: str) -> Any:
        self.calls.append(name)
        return self.payloads.get(name, [])

    def get_users(self) -> list[dict[str, Any]]:
        return self._get("users")

    def get_groups(self) -> list[dict[str, Any]]:
        return self._get("groups")

    def get_group_members(self, group_id: str) -> list[dict[str, Any]]:
        self.calls.append(f"members:{group_id}")
        return self.payloads.get("members", {}).get(group_id, [])

    def get_statuses(self) -> list[dict[str, Any]]:
        return self._get("statuses")

    def get_priorities(self) -> list[dict[str, Any]]:
        return self._get("priorities")

    def search_issues(self, jql: str | None = None) -> list[dict[str, Any]]:  # noqa: ARG002
        return self._get("issues")

    def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:  # noqa: ARG002
        self.calls.append(path)
        return self.payloads.get("json", {}).get(path)

    def get_paged(self, path: str, key: str = "values", params: dict[str, Any] | None = None) -> list[Any]:  # noqa: ARG002
        self.calls.append(path)
        return self.payloads.get("paged", {}).get(path, [])


class DummyRedmine:
    """Redmine double recording every write."""

    def __init__(self, **payloads: Any) -> None:
        self.payloads = payloads
        self.posts: list[tuple[str, dict[str, Any]]] = []
        self.uploads: list[tuple[str, str, dict[str, Any] | None]] = []
        self.extended_checks: list[str] = []
        self.responses: list[Result[Any]] = []
        self.extended_error: Exception | None = None
        self.next_id = 100

    def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:  # noqa: ARG002
        return self.payloads.get(path)

    def get_paged(self, path: str, key: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:  # noqa: ARG002
        return (self.payloads.get(path) or {}).get(key, [])

    def post_json(self, path: str, payload: dict[str, Any], *, error_prefix: str | None = None) -> Result[Any]:  # noqa: ARG002
        self.posts.append((path, payload))
        if self.responses:
            return self.responses.pop(0)
        self.next_id += 1
        return Ok({"id": self.next_id})

    def upload(
        self,
        path: str,
        stream: Any,
        filename: str,
        content_type: str = "application/octet-stream",  # noqa: ARG002
        *,
        params: dict[str, Any] | None = None,
        error_prefix: str | None = None,  # noqa: ARG002
    ) -> Result[Any]:
        stream.read()
        self.uploads.append((path, filename, params))
        if self.responses:
            return self.responses.pop(0)
        self.next_id += 1
        return Ok({"upload": {"token": f"{self.next_id}.abcdef"}})

    def check_extended_api(self, resource: str = "issue_statuses.json", prefix: str | None = None) -> None:  # noqa: ARG002
        self.extended_checks.append(resource)
        if self.extended_error is not None:
            raise self.extended_error


@pytest.fixture
def make_jira() -> type[DummyJira]:
    """Factory for Jira doubles: ``make_jira(users=[...], issues=[...])``."""
    return DummyJira


@pytest.fixture
def make_redmine() -> type[DummyRedmine]:
    """Factory for Redmine doubles keyed by request path."""
    return DummyRedmine


@pytest.fixture
def dummy_redmine() -> DummyRedmine:
    return DummyRedmine()
