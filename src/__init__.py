"""Jira to Redmine migration tool."""

__version__ = "0.1.0"
