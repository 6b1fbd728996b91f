"""Staging and mapping persistence."""

from src.mappings.store import MappingStore, storage_value
from src.mappings.synchronizer import MappingSynchronizer, SyncResult, SyncSpec

__all__ = ["MappingStore", "MappingSynchronizer", "SyncResult", "SyncSpec", "storage_value"]
