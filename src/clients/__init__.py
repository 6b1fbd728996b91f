"""API clients package for the Jira to Redmine migration.

Lazily expose the client classes so importing the package does not pull in
the ``jira`` library until a Jira client is actually needed.
"""

__all__ = ["JiraClient", "RedmineClient"]


def __getattr__(name: str) -> object:  # pragma: no cover - simple lazy import shim
    if name == "JiraClient":
        from .jira_client import JiraClient as _JiraClient  # noqa: PLC0415

        return _JiraClient
    if name == "RedmineClient":
        from .redmine_client import RedmineClient as _RedmineClient  # noqa: PLC0415

        return _RedmineClient
    raise AttributeError(name)
