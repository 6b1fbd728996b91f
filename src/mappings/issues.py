"""Jira issue snapshot shared by the relation, tag and attachment migrations."""

from collections.abc import Iterable, Mapping
from typing import Any

from src.mappings.store import MappingStore, to_json
from src.utils.normalization import normalize_timestamp

ISSUE_COLUMNS = (
    "id",
    "issue_key",
    "summary",
    "project_id",
    "issuetype_id",
    "status_id",
    "priority_id",
    "labels",
    "created_at",
    "updated_at",
    "raw_payload",
)

LINK_COLUMNS = (
    "link_id",
    "source_issue_id",
    "source_issue_key",
    "target_issue_id",
    "target_issue_key",
    "link_type_id",
    "link_type_name",
    "link_type_inward",
    "link_type_outward",
    "raw_payload",
)


def _ref_id(value: Any) -> Any:
    return value.get("id") if isinstance(value, Mapping) else None


def issue_row(issue: Mapping[str, Any]) -> dict[str, Any]:
    fields = issue.get("fields") or {}
    return {
        "id": issue.get("id"),
        "issue_key": issue.get("key"),
        "summary": fields.get("summary"),
        "project_id": _ref_id(fields.get("project")),
        "issuetype_id": _ref_id(fields.get("issuetype")),
        "status_id": _ref_id(fields.get("status")),
        "priority_id": _ref_id(fields.get("priority")),
        "labels": list(fields.get("labels") or []),
        "created_at": normalize_timestamp(fields.get("created")),
        "updated_at": normalize_timestamp(fields.get("updated")),
        "raw_payload": to_json(issue),
    }


def link_rows(issues: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Flatten ``fields.issuelinks`` into one row per link, oriented outward.

    Jira reports every link on both issues; the source is always the issue on
    the outward side, so both reports produce the same row.
    """
    rows: dict[str, dict[str, Any]] = {}
    for issue in issues:
        for link in (issue.get("fields") or {}).get("issuelinks") or []:
            link_id = link.get("id")
            if link_id is None:
                continue
            if link.get("outwardIssue"):
                source = {"id": issue.get("id"), "key": issue.get("key")}
                target = link["outwardIssue"]
            elif link.get("inwardIssue"):
                source = link["inwardIssue"]
                target = {"id": issue.get("id"), "key": issue.get("key")}
            else:
                continue
            link_type = link.get("type") or {}
            rows[str(link_id)] = {
                "link_id": str(link_id),
                "source_issue_id": source.get("id"),
                "source_issue_key": source.get("key"),
                "target_issue_id": target.get("id"),
                "target_issue_key": target.get("key"),
                "link_type_id": link_type.get("id"),
                "link_type_name": link_type.get("name"),
                "link_type_inward": link_type.get("inward"),
                "link_type_outward": link_type.get("outward"),
                "raw_payload": to_json(link),
            }
    return list(rows.values())


def stage_issues(store: MappingStore, issues: list[dict[str, Any]]) -> int:
    """Replace the issue and issue-link snapshots with the given search result."""
    count = store.replace_staging("staging_jira_issues", ISSUE_COLUMNS, [issue_row(issue) for issue in issues if issue.get("id")])
    store.replace_staging("staging_jira_issue_links", LINK_COLUMNS, link_rows(issues))
    return count
