"""Main entry point for the Jira to Redmine migration tool.

One invocation migrates one entity type through the selected phases:

    j2r users --phases jira,redmine,transform
    j2r users --phases push --confirm-push
"""

import argparse
import atexit
import os
import sys
from collections.abc import Sequence
from pathlib import Path

from src import __version__
from src.config import get_path, get_settings, logger, update_from_cli_args, validate_config
from src.display import print_summary
from src.mappings.store import MappingStore
from src.migrations import (  # noqa: F401
    attachments_migration,
    group_migration,
    priority_migration,
    relation_migration,
    status_migration,
    tag_migration,
    user_migration,
    workflow_migration,
)
from src.migrations.base_migration import EntityTypeRegistry, Phase, RunOptions
from src.models import MigrationError


def _pid_is_running(pid: int) -> bool:
    """Return True if a process with PID is running (and accessible)."""
    if pid <= 0:
        return False
    try:
        # On POSIX, signal 0 checks existence without sending a signal
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _read_pid(lock_file: Path) -> int:
    try:
        return int(lock_file.read_text(encoding="utf-8").strip() or "0")
    except (OSError, ValueError):
        return 0


def ensure_singleton_lock(lock_file: Path) -> None:
    """Ensure only one migration writes to the mapping store at a time.

    A lock whose PID is no longer alive is treated as stale and replaced.
    The lock is removed on process exit.

    Raises:
        MigrationError: If another instance holds the lock

    """
    if os.environ.get("J2R_DISABLE_LOCK") in {"1", "true", "True"}:
        logger.warning("Singleton lock disabled via J2R_DISABLE_LOCK=1")
        return

    lock_file.parent.mkdir(parents=True, exist_ok=True)
    current_pid = os.getpid()

    if lock_file.exists():
        existing = _read_pid(lock_file)
        if existing and _pid_is_running(existing):
            msg = f"Another migration instance is running (pid={existing}). Lock: {lock_file}"
            raise MigrationError(msg)
        lock_file.unlink(missing_ok=True)

    try:
        with lock_file.open("x", encoding="utf-8") as f:
            f.write(str(current_pid))
    except FileExistsError as e:
        msg = f"Concurrent migration detected (pid={_read_pid(lock_file)}). Lock: {lock_file}"
        raise MigrationError(msg) from e

    def _cleanup_lock() -> None:
        # Only remove if the file still contains our PID
        if _read_pid(lock_file) == current_pid:
            lock_file.unlink(missing_ok=True)

    atexit.register(_cleanup_lock)


def _limit(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as e:
        msg = f"expected a positive integer, got {value!r}"
        raise argparse.ArgumentTypeError(msg) from e
    if parsed <= 0:
        msg = f"expected a positive integer, got {value!r}"
        raise argparse.ArgumentTypeError(msg)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="j2r",
        description="Jira to Redmine migration tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "entity",
        choices=sorted(EntityTypeRegistry.get_all_registered_types()),
        help="Entity type to migrate",
    )
    parser.add_argument(
        "--phases",
        metavar="LIST",
        help="Comma separated list of phases to run (default: every phase of the entity)",
    )
    parser.add_argument("--skip", metavar="LIST", help="Comma separated list of phases to skip")
    parser.add_argument(
        "--confirm-push",
        action="store_true",
        help="Required to write to Redmine in the push phase",
    )
    parser.add_argument(
        "--confirm-pull",
        action="store_true",
        help="Required to download attachment binaries in the pull phase",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview pushes and downloads without performing them",
    )
    parser.add_argument(
        "--use-extended-api",
        action="store_true",
        help="Use the Redmine extended API plugin where Redmine offers no REST endpoint",
    )
    parser.add_argument("--download-limit", type=_limit, metavar="N", help="Download at most N attachments")
    parser.add_argument("--upload-limit", type=_limit, metavar="N", help="Upload at most N attachments")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def run(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, run the selected phases and print a summary.

    Raises:
        MigrationError: For an unknown phase, missing credentials or a lock held elsewhere

    """
    args = build_parser().parse_args(argv)
    update_from_cli_args(args)

    migration_class = EntityTypeRegistry.get_class_for_type(args.entity)
    if migration_class is None:
        msg = f"Unsupported entity type: {args.entity}"
        raise MigrationError(msg)

    phases = migration_class.select_phases(args.phases, args.skip)
    get_settings()
    needs_jira = any(phase in phases for phase in (Phase.JIRA, Phase.PULL))
    needs_redmine = any(phase in phases for phase in (Phase.REDMINE, Phase.PUSH))
    if not validate_config(require_jira=needs_jira, require_redmine=needs_redmine):
        msg = "Missing required configuration; set the variables listed above."
        raise MigrationError(msg)

    options = RunOptions(
        confirm_push=args.confirm_push,
        confirm_pull=args.confirm_pull,
        dry_run=args.dry_run,
        use_extended_api=args.use_extended_api,
        download_limit=args.download_limit,
        upload_limit=args.upload_limit,
    )

    ensure_singleton_lock(get_path("root") / "run" / "j2r.pid")
    logger.info("Running %s: %s", args.entity, ", ".join(phases))
    with MappingStore.from_config() as store:
        result = migration_class(store).run(phases, options)

    print_summary(f"{args.entity} migration", result.summary())
    for warning in result.warnings:
        logger.warning("%s", warning)
    logger.success(result.message)
    return 0


def main() -> None:
    """Console entry point: exit 0 on success, 1 with ``[ERROR] <message>`` otherwise."""
    try:
        sys.exit(run())
    except KeyboardInterrupt:
        logger.info("Migration interrupted by user")
        sys.exit(1)
    except Exception as e:  # noqa: BLE001
        logger.debug("Migration aborted", exc_info=True)
        print(f"[ERROR] {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)


if __name__ == "__main__":
    main()
