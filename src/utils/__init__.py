"""Utility modules for the Jira to Redmine migration tool."""
