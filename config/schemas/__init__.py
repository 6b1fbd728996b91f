"""Configuration schemas package.

This package contains Pydantic models for configuration validation.
"""

from .settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
