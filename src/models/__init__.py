"""Models package for data structures used in the application."""

from src.models.component_results import ComponentResult
from src.models.migration_error import InvalidTransitionError, MigrationError
from src.models.result import Err, ErrorKind, Ok, Result

__all__ = [
    "ComponentResult",
    "Err",
    "ErrorKind",
    "InvalidTransitionError",
    "MigrationError",
    "Ok",
    "Result",
]
