"""Configuration package for Jira to Redmine migration.

This package provides the type-safe settings schema built on Pydantic v2
and pydantic-settings.
"""

from .schemas.settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
