"""Workflow migration module for Jira to Redmine migration.

Redmine workflows are configured per role and tracker by an administrator,
so this migration only exports the Jira workflow configuration (workflows,
schemes, projects, issue types, roles, fields and screens) into staging
tables for offline analysis.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

from src.display import configure_logging
from src.mappings.store import to_json
from src.migrations.base_migration import BaseMigration, Phase, RunOptions, register_entity_types
from src.models import ComponentResult

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)

API = "/rest/api/3"


@dataclass(frozen=True)
class ConfigExport:
    """One Jira configuration collection to copy into ``staging_jira_config_objects``.

    ``paged`` collections are read with ``startAt``/``maxResults``; the others
    answer with a bare list. When ``detail_path`` is set, each object is also
    fetched individually and stored with source ``detail``.
    """

    kind: str
    path: str
    paged: bool = True
    detail_path: str | None = None


CONFIG_EXPORTS: tuple[ConfigExport, ...] = (
    ConfigExport("workflow_scheme", f"{API}/workflowscheme", detail_path=f"{API}/workflowscheme/{{id}}"),
    ConfigExport("project", f"{API}/project/search"),
    ConfigExport("issue_type", f"{API}/issuetype", paged=False),
    ConfigExport("issue_type_scheme", f"{API}/issuetypescheme", detail_path=f"{API}/issuetypescheme/{{id}}"),
    ConfigExport("field", f"{API}/field", paged=False),
    ConfigExport("screen", f"{API}/screens"),
    ConfigExport("screen_scheme", f"{API}/screenscheme"),
    ConfigExport("field_configuration", f"{API}/fieldconfiguration"),
)

CONFIG_COLUMNS = ("kind", "object_id", "name", "source", "raw_payload")


def workflow_name(workflow: Mapping[str, Any]) -> str:
    """First of ``name``, ``workflowName``, ``id.name`` and ``id``; ``unknown`` otherwise."""
    for key in ("name", "workflowName"):
        value = workflow.get(key)
        if isinstance(value, str) and value:
            return value
    identifier = workflow.get("id")
    if isinstance(identifier, Mapping):
        value = identifier.get("name")
        if isinstance(value, str) and value:
            return value
    elif isinstance(identifier, str) and identifier:
        return identifier
    return "unknown"


def role_id_from_url(url: str) -> str | None:
    last = url.rstrip("/").rsplit("/", 1)[-1]
    return last or None


def config_row(kind: str, item: Mapping[str, Any], source: str) -> dict[str, Any] | None:
    object_id = item.get("id")
    if isinstance(object_id, Mapping):
        object_id = object_id.get("entityId") or object_id.get("name")
    if object_id is None or object_id == "":
        return None
    return {
        "kind": kind,
        "object_id": str(object_id),
        "name": item.get("name"),
        "source": source,
        "raw_payload": to_json(item),
    }


@register_entity_types("workflows")
class WorkflowMigration(BaseMigration):
    """Exports Jira workflow configuration for manual Redmine setup."""

    PHASES: ClassVar[tuple[Phase, ...]] = (Phase.JIRA,)

    def __init__(self, *args: Any, exports: tuple[ConfigExport, ...] = CONFIG_EXPORTS, **kwargs: Any) -> None:  # noqa: D107
        super().__init__(*args, **kwargs)
        self.exports = exports

    def run_jira_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        result = ComponentResult(entity=self.entity_type)
        result.details["workflows"] = self.export_workflows()
        for export in self.exports:
            result.details[export.kind] = self.export_collection(export)
        result.details["project_role"] = self.export_project_roles()
        result.extracted = sum(result.details.values())
        return result

    def _fetch(self, path: str, *, paged: bool, key: str = "values") -> list[dict[str, Any]]:
        if paged:
            items = self.jira_client.get_paged(path, key)
        else:
            payload = self.jira_client.get_json(path)
            items = payload if isinstance(payload, list) else (payload or {}).get(key) or []
        return [item for item in items if isinstance(item, Mapping)]

    def export_workflows(self) -> int:
        searched = self._fetch(f"{API}/workflow/search", paged=True)
        legacy_payload = self.jira_client.get_json(f"{API}/workflow")
        if isinstance(legacy_payload, list):
            legacy = legacy_payload
        else:
            legacy = (legacy_payload or {}).get("values") or (legacy_payload or {}).get("workflows") or []

        rows = [
            {"workflow_name": workflow_name(workflow), "source": source, "raw_payload": to_json(workflow)}
            for source, workflows in (("search", searched), ("legacy", legacy))
            for workflow in workflows
            if isinstance(workflow, Mapping)
        ]
        self.store.replace_staging("staging_jira_workflows", ("workflow_name", "source", "raw_payload"), rows)
        self.logger.info("Workflows exported: %d", len(rows))
        return len(rows)

    def _stage(self, kind: str, rows: Iterable[dict[str, Any] | None]) -> int:
        count = self.store.replace_staging(
            "staging_jira_config_objects",
            CONFIG_COLUMNS,
            [row for row in rows if row is not None],
            scope={"kind": kind},
        )
        self.logger.info("%s exported: %d", kind.replace("_", " ").capitalize(), count)
        return count

    def export_collection(self, export: ConfigExport) -> int:
        items = self._fetch(export.path, paged=export.paged)
        rows = [config_row(export.kind, item, "list") for item in items]
        if export.detail_path:
            for item in items:
                if item.get("id") is None:
                    continue
                detail = self.jira_client.get_json(export.detail_path.format(id=item["id"]))
                if isinstance(detail, Mapping):
                    rows.append(config_row(export.kind, {"id": item["id"], **detail}, "detail"))
        return self._stage(export.kind, rows)

    def export_project_roles(self) -> int:
        """Roles linked from each exported project, then each role's detail."""
        projects = self.store.fetch_all(
            "SELECT object_id, name FROM staging_jira_config_objects WHERE kind = 'project' ORDER BY object_id",
        )
        rows: list[dict[str, Any] | None] = []
        role_ids: list[str] = []
        for project in projects:
            links = self.jira_client.get_json(f"{API}/project/{project['object_id']}/role")
            if not isinstance(links, Mapping):
                continue
            for role_name, url in links.items():
                role_id = role_id_from_url(url) if isinstance(url, str) else None
                if role_id is None:
                    continue
                rows.append(
                    {
                        "kind": "project_role",
                        "object_id": f"{project['object_id']}:{role_id}",
                        "name": role_name,
                        "source": "project",
                        "raw_payload": to_json({"project_id": project["object_id"], "url": url, "name": role_name}),
                    },
                )
                if role_id not in role_ids:
                    role_ids.append(role_id)

        for role_id in role_ids:
            detail = self.jira_client.get_json(f"{API}/role/{role_id}")
            if isinstance(detail, Mapping):
                rows.append(config_row("project_role", {**detail, "id": role_id}, "detail"))
        return self._stage("project_role", rows)
