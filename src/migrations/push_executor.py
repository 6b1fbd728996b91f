"""Push executor: confirmable, previewable writes against Redmine.

Each ready mapping row becomes one :class:`PushOperation`. Without
``--confirm-push`` (or with ``--dry-run``) the executor only prints the
request it would send. Confirmed pushes call the endpoint once per row and
never retry a non-429 failure: the row moves to its failed status and waits
for the next transform pass to requeue it.
"""

import json
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from src.display import ProgressTracker, configure_logging
from src.models import ComponentResult, MigrationError
from src.models.result import Err, ErrorKind, Ok, Result

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)


@dataclass(frozen=True)
class PushOptions:
    """Gates for a push phase."""

    confirm: bool = False
    dry_run: bool = False
    limit: int | None = None
    use_extended_api: bool = False

    @property
    def preview_only(self) -> bool:
        return self.dry_run or not self.confirm


@dataclass(frozen=True)
class PushOperation:
    """One request the push phase intends to send."""

    mapping_key: Any
    label: str
    endpoint: str
    payload: dict[str, Any]
    row: dict[str, Any] = field(default_factory=dict, compare=False)


type SendFn = Callable[[PushOperation], Result[Any]]
type SuccessFn = Callable[[PushOperation, Any], None]
type FailureFn = Callable[[PushOperation, Err], None]


class PushExecutor:
    """Run push operations under the confirm/dry-run gates."""

    def __init__(self, options: PushOptions, *, description: str = "Pushing to Redmine") -> None:
        self.options = options
        self.description = description

    def select(self, operations: Sequence[PushOperation]) -> list[PushOperation]:
        if self.options.limit is not None and self.options.limit >= 0:
            return list(operations[: self.options.limit])
        return list(operations)

    def preview(self, operations: Sequence[PushOperation]) -> ComponentResult:
        result = ComponentResult(dry_run=True)
        tag = "[dry-run]" if self.options.dry_run else "[preview]"
        for operation in operations:
            logger.info(
                "%s %s -> POST %s %s",
                tag,
                operation.label,
                operation.endpoint,
                json.dumps(operation.payload, ensure_ascii=False, sort_keys=True),
            )
            result.previewed += 1
        if operations and not self.options.dry_run:
            logger.notice(
                "Push not confirmed: re-run with --confirm-push to apply %d change(s).",
                len(operations),
            )
        return result

    def run(
        self,
        operations: Sequence[PushOperation],
        send: SendFn,
        record_success: SuccessFn,
        record_failure: FailureFn,
    ) -> ComponentResult:
        """Send each operation once and record its outcome.

        ``send`` returns ``Ok(value)`` with whatever ``record_success`` needs
        (typically the new Redmine id) or an ``Err`` describing the failure.

        Raises:
            MigrationError: When recording an outcome in the mapping store fails

        """
        selected = self.select(operations)
        if not selected:
            logger.info("Nothing to push")
            return ComponentResult()
        if self.options.preview_only:
            return self.preview(selected)

        result = ComponentResult()
        with ProgressTracker(self.description, len(selected)) as tracker:
            for operation in selected:
                outcome = send(operation)
                try:
                    match outcome:
                        case Ok(value=value):
                            record_success(operation, value)
                            result.succeeded += 1
                            tracker.add_log_item(f"{operation.label}: ok")
                        case Err() as error:
                            record_failure(operation, error)
                            result.failed += 1
                            result.add_error(f"{operation.label}: {error.message}")
                            logger.error("[error] %s: %s", operation.label, error.message)
                            tracker.add_log_item(f"{operation.label}: failed")
                except sqlite3.Error as e:
                    msg = f"Failed to record push outcome for {operation.label}: {e!s}"
                    raise MigrationError(msg) from e
                tracker.increment()

        logger.info("Push finished: %d succeeded, %d failed", result.succeeded, result.failed)
        return result


def created_id(body: Any, key: str, missing_message: str) -> Result[int]:
    """Read the new Redmine id from ``body[key]["id"]``, falling back to ``body["id"]``."""
    candidate = None
    if isinstance(body, dict):
        entity = body.get(key)
        if isinstance(entity, dict):
            candidate = entity.get("id")
        if candidate is None:
            candidate = body.get("id")
    if isinstance(candidate, bool) or candidate is None:
        return Err(ErrorKind.PERMANENT, missing_message)
    try:
        return Ok(int(candidate))
    except (TypeError, ValueError):
        return Err(ErrorKind.PERMANENT, missing_message)
