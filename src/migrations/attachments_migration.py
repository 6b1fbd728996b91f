"""Migrate Jira attachment binaries to Redmine uploads.

Flow:
- jira: stage attachments listed on the searched issues and keep one mapping
  row per attachment, with a hint whether it belongs to the issue itself or
  to a later journal entry.
- pull: stream pending binaries to local storage, sequentially or through a
  bounded thread pool.
- transform: requeue failed transfers for another download.
- push: stream local files to ``uploads.json`` and keep the returned token
  for the association step.

Attachment mappings carry no automation hash; every status change goes
through the transfer status family instead.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, ClassVar

from src import config
from src.clients.exceptions import ClientError, ExtendedApiUnavailableError, RateLimitError
from src.display import ProgressTracker, configure_logging
from src.mappings.issues import stage_issues
from src.mappings.store import to_json
from src.mappings.synchronizer import MappingSynchronizer, SyncSpec
from src.migrations.base_migration import BaseMigration, Phase, RunOptions, register_entity_types
from src.migrations.push_executor import PushExecutor, PushOperation
from src.models import ComponentResult
from src.models.result import Err, ErrorKind, Ok, Result
from src.models.status import TRANSFER, TransferStatus
from src.utils.normalization import normalize_int, normalize_string, normalize_timestamp, sanitize_filename

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)

ATTACHMENT_COLUMNS = (
    "id",
    "issue_id",
    "filename",
    "author_account_id",
    "created_at",
    "size_bytes",
    "mime_type",
    "content_url",
    "raw_payload",
)

# Attachments added within this many seconds of the issue belong to the issue itself
ISSUE_ATTACHMENT_WINDOW_SECONDS = 60

ATTACHMENT_SYNC = SyncSpec(
    table="migration_mapping_attachments",
    columns=("jira_attachment_id", "jira_issue_id", "jira_filesize", "association_hint"),
    select_sql=f"""
        SELECT att.id, att.issue_id, att.size_bytes,
               CASE
                   WHEN issue.created_at IS NULL OR att.created_at IS NULL THEN NULL
                   WHEN att.created_at <= datetime(issue.created_at, '+{ISSUE_ATTACHMENT_WINDOW_SECONDS} seconds')
                       THEN 'ISSUE'
                   ELSE 'JOURNAL'
               END
        FROM staging_jira_attachments att
        LEFT JOIN staging_jira_issues issue ON issue.id = att.issue_id
    """,  # noqa: S608
    conflict_columns=("jira_attachment_id",),
    refresh_columns=("jira_issue_id", "jira_filesize", "association_hint"),
)

MISSING_URL_NOTE = "Missing Jira attachment content URL."
MISSING_TOKEN_NOTE = "Redmine did not return an upload token."


def attachment_rows(issues: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Flatten ``fields.attachment`` of each issue into staging rows."""
    rows: list[dict[str, Any]] = []
    for issue in issues:
        fields = issue.get("fields") or {}
        issue_created = normalize_timestamp(fields.get("created"))
        for attachment in fields.get("attachment") or []:
            attachment_id = attachment.get("id")
            if attachment_id is None:
                continue
            rows.append(
                {
                    "id": str(attachment_id),
                    "issue_id": issue.get("id"),
                    "filename": attachment.get("filename") or f"attachment-{attachment_id}",
                    "author_account_id": (attachment.get("author") or {}).get("accountId"),
                    "created_at": normalize_timestamp(attachment.get("created")) or issue_created,
                    "size_bytes": normalize_int(attachment.get("size")),
                    "mime_type": attachment.get("mimeType"),
                    "content_url": attachment.get("content"),
                    "raw_payload": to_json(attachment),
                },
            )
    return rows


def token_attachment_id(token: str | None) -> int | None:
    """Redmine upload tokens look like ``<attachment id>.<digest>``."""
    prefix, dot, _ = (token or "").strip().partition(".")
    if not dot or not prefix.isdigit():
        return None
    value = int(prefix)
    return value if value > 0 else None


@register_entity_types("attachments")
class AttachmentsMigration(BaseMigration):
    """Handles the transfer of Jira attachment binaries into Redmine uploads."""

    PHASES: ClassVar[tuple[Phase, ...]] = (Phase.JIRA, Phase.PULL, Phase.TRANSFORM, Phase.PUSH)
    MAPPING_TABLE = "migration_mapping_attachments"
    LABEL_COLUMN = "jira_attachment_id"
    ENTITY_LABEL = "Jira attachment"
    STATUS_FAMILY = TRANSFER

    def __init__(  # noqa: D107
        self,
        *args: Any,
        storage_dir: Path | str | None = None,
        concurrency: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        configured_dir = storage_dir or config.attachments_config.get("storage_dir")
        self.storage_dir = Path(configured_dir) if configured_dir else config.get_path("temp") / "attachments" / "jira"
        if concurrency is None:
            concurrency = normalize_int(config.attachments_config.get("download_concurrency")) or 1
        self.concurrency = max(1, concurrency)

    # jira

    def run_jira_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        issues = self.jira_client.search_issues()
        stage_issues(self.store, issues)
        extracted = self.store.replace_staging("staging_jira_attachments", ATTACHMENT_COLUMNS, attachment_rows(issues))
        synced = MappingSynchronizer(self.store).sync(ATTACHMENT_SYNC)
        self.logger.info("Indexed %d attachments from %d issues", extracted, len(issues))
        return ComponentResult(extracted=extracted, synchronized=synced.inserted)

    # shared helpers

    def set_status(self, row: Mapping[str, Any], status: TransferStatus, **values: Any) -> None:
        """Validate the transfer transition and persist it with ``values``."""
        new_status = TRANSFER.transition(row["migration_status"], status)
        self.store.update_mapping(
            self.MAPPING_TABLE,
            self.KEY_COLUMN,
            row[self.KEY_COLUMN],
            {"migration_status": str(new_status), **values},
        )

    def log_queue_status(self) -> dict[str, int]:
        breakdown = self.store.status_counts(self.MAPPING_TABLE)
        self.logger.info("Attachment queue status:")
        for status, total in breakdown.items():
            self.logger.info("  - %-24s %d", status, total)
        return breakdown

    @staticmethod
    def _limit_clause(limit: int | None) -> tuple[str, tuple[Any, ...]]:
        if limit is not None and limit > 0:
            return " LIMIT ?", (limit,)
        return "", ()

    def target_path(self, row: Mapping[str, Any]) -> Path:
        """``<storage_dir>/<attachment id>__<sanitized filename>``."""
        attachment_id = str(row["jira_attachment_id"])
        filename = normalize_string(row.get("filename")) or f"attachment-{attachment_id}"
        return self.storage_dir / f"{attachment_id}__{sanitize_filename(filename)}"

    # pull

    def pending_downloads(self, limit: int | None = None) -> list[dict[str, Any]]:
        clause, params = self._limit_clause(limit)
        return self.store.fetch_all(
            f"""
            SELECT map.*, att.filename, att.content_url, att.created_at AS attachment_created_at, att.mime_type
            FROM migration_mapping_attachments map
            JOIN staging_jira_attachments att ON att.id = map.jira_attachment_id
            WHERE map.migration_status IN (?, ?)
              AND map.download_enabled = 1
            ORDER BY map.mapping_id{clause}
            """,  # noqa: S608
            (TransferStatus.PENDING_DOWNLOAD, TransferStatus.FAILED, *params),
        )

    def run_pull_phase(self, options: RunOptions) -> ComponentResult:
        self.log_queue_status()
        rows = self.pending_downloads(options.download_limit)
        result = ComponentResult(entity=self.entity_type)
        if not rows:
            self.logger.info("No attachments queued for download.")
            return result

        if options.dry_run or not options.confirm_pull:
            tag = "[dry-run]" if options.dry_run else "[preview]"
            for row in rows:
                self.logger.info("%s download %s -> %s", tag, row.get("content_url") or "[no url]", self.target_path(row))
                result.previewed += 1
            if options.dry_run:
                self.logger.notice("Dry-run active; Jira attachment downloads are skipped.")
            else:
                self.logger.notice("Pull confirmation missing; rerun with --confirm-pull to download attachments.")
            return result

        self.storage_dir.mkdir(parents=True, exist_ok=True)
        result.merge(self.download_all(rows))
        self.logger.info(
            "Jira attachment download summary: queued %d, downloaded %d, failed %d.",
            len(rows),
            result.succeeded,
            result.failed,
        )
        return result

    def download_one(self, row: Mapping[str, Any]) -> Result[Path]:
        """Fetch one binary; any failure leaves no file behind."""
        url = normalize_string(row.get("content_url"), 2048)
        if url is None:
            return Err(ErrorKind.PERMANENT, MISSING_URL_NOTE)
        target = self.target_path(row)
        try:
            self.jira_client.download_to(url, target)
        except RateLimitError:
            raise
        except (ClientError, OSError) as e:
            target.unlink(missing_ok=True)
            message = str(e) if str(e).startswith("Failed to download attachment") else f"Failed to download attachment: {e}"
            return Err(ErrorKind.PERMANENT, message, getattr(e, "status_code", None))
        return Ok(target.resolve())

    def record_download(self, row: Mapping[str, Any], outcome: Result[Path], result: ComponentResult) -> None:
        match outcome:
            case Ok(value=path):
                self.set_status(row, TransferStatus.PENDING_UPLOAD, local_filepath=str(path), notes=None)
                result.succeeded += 1
                self.logger.debug("[downloaded] %s -> %s", row["jira_attachment_id"], path)
            case Err(message=message):
                self.set_status(row, TransferStatus.FAILED, local_filepath=None, notes=message)
                result.failed += 1
                result.add_error(f"{row['jira_attachment_id']}: {message}")
                self.logger.error("[error] Jira attachment %s: %s", row["jira_attachment_id"], message)

    def download_all(self, rows: Sequence[Mapping[str, Any]]) -> ComponentResult:
        """Download ``rows`` with at most ``self.concurrency`` requests in flight.

        Workers only fetch; every status write happens on the calling thread.
        """
        result = ComponentResult(entity=self.entity_type)
        total = len(rows)

        def settle(row: Mapping[str, Any], outcome: Result[Path], tracker: ProgressTracker) -> None:
            self.record_download(row, outcome, result)
            tracker.increment()
            tracker.add_log_item(f"{row['jira_attachment_id']}: {'ok' if outcome.ok else 'failed'}")
            self.logger.debug("Progress: %d/%d attachments processed", tracker.processed_count, total)

        with ProgressTracker("Downloading Jira attachments", total) as tracker:
            if self.concurrency <= 1:
                for row in rows:
                    settle(row, self.download_one(row), tracker)
            else:
                with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                    futures = {pool.submit(self.download_one, row): row for row in rows}
                    unsettled = set(futures)
                    try:
                        for future in as_completed(futures):
                            unsettled.discard(future)
                            settle(futures[future], future.result(), tracker)
                    except RateLimitError:
                        # Drop queued downloads, then record the ones that still finished
                        pool.shutdown(wait=True, cancel_futures=True)
                        for future in unsettled:
                            if not future.cancelled() and future.exception() is None:
                                settle(futures[future], future.result(), tracker)
                        raise
        return result

    # transform

    def run_transform_phase(self, options: RunOptions) -> ComponentResult:  # noqa: ARG002
        """Requeue every failed transfer for a fresh download."""
        with self.store.transaction() as connection:
            cursor = connection.execute(
                """
                UPDATE migration_mapping_attachments
                SET migration_status = ?,
                    local_filepath = NULL,
                    redmine_upload_token = NULL,
                    notes = NULL,
                    last_updated_at = CURRENT_TIMESTAMP
                WHERE migration_status = ?
                """,
                (TransferStatus.PENDING_DOWNLOAD, TransferStatus.FAILED),
            )
            requeued = cursor.rowcount
        self.logger.info("Requeued %d failed attachment transfers", requeued)
        self.log_queue_status()
        return ComponentResult(entity=self.entity_type, requeued=requeued)

    # push

    def pending_uploads(self, limit: int | None = None) -> list[dict[str, Any]]:
        clause, params = self._limit_clause(limit)
        return self.store.fetch_all(
            f"""
            SELECT map.*, att.filename, att.mime_type, att.author_account_id,
                   att.created_at AS attachment_created_at, users.redmine_user_id AS author_redmine_id
            FROM migration_mapping_attachments map
            JOIN staging_jira_attachments att ON att.id = map.jira_attachment_id
            LEFT JOIN migration_mapping_users users ON users.jira_account_id = att.author_account_id
            WHERE map.migration_status = ?
              AND map.upload_enabled = 1
            ORDER BY map.mapping_id{clause}
            """,  # noqa: S608
            (TransferStatus.PENDING_UPLOAD, *params),
        )

    def upload_name(self, row: Mapping[str, Any]) -> str:
        local = Path(row.get("local_filepath") or "")
        original = normalize_string(row.get("filename")) or local.name or "attachment"
        return f"{row['jira_attachment_id']}__{sanitize_filename(original)}"

    @staticmethod
    def author_overrides(row: Mapping[str, Any]) -> dict[str, Any]:
        """Extra upload parameters the extended API understands."""
        overrides: dict[str, Any] = {}
        if row.get("author_redmine_id") is not None:
            overrides["author_id"] = row["author_redmine_id"]
        if row.get("attachment_created_at"):
            overrides["created_on"] = row["attachment_created_at"]
        return overrides

    def upload_one(self, operation: PushOperation, use_extended: bool) -> Result[str]:
        local = normalize_string(operation.row.get("local_filepath"), 4096)
        path = Path(local) if local else None
        if path is None or not path.is_file():
            return Err(ErrorKind.PERMANENT, f"Local attachment missing: {local or '[unknown path]'}")
        if path.stat().st_size == 0:
            return Err(ErrorKind.PERMANENT, f"Local attachment is empty: {path}")

        with path.open("rb") as stream:
            response = self.redmine_client.upload(
                operation.endpoint,
                stream,
                operation.payload["filename"],
                params=self.author_overrides(operation.row) if use_extended else None,
                error_prefix="Failed to upload attachment to Redmine",
            )
        if not response.ok:
            return response
        token = normalize_string(((response.value or {}).get("upload") or {}).get("token"), 512)
        if token is None:
            return Err(ErrorKind.PERMANENT, MISSING_TOKEN_NOTE)
        return Ok(token)

    def run_push_phase(self, options: RunOptions) -> ComponentResult:
        self.log_queue_status()
        rows = self.pending_uploads(options.upload_limit)
        push_options = options.push_options()
        result = ComponentResult(entity=self.entity_type)

        use_extended = self.extended_api_enabled(options)
        if rows and use_extended and not push_options.preview_only:
            try:
                self.redmine_client.check_extended_api("issues.json")
            except ExtendedApiUnavailableError as e:
                warning = f"{e} Uploading through the standard endpoint."
                self.logger.warning("%s", warning)
                result.add_warning(warning)
                use_extended = False
        endpoint = self.extended_path("uploads.json") if use_extended else "uploads.json"

        operations = [
            PushOperation(
                mapping_key=row["mapping_id"],
                label=f"Jira attachment {row['jira_attachment_id']} ({row.get('filename')})",
                endpoint=endpoint,
                payload={"filename": self.upload_name(row), "local_filepath": row.get("local_filepath")},
                row=dict(row),
            )
            for row in rows
        ]

        def send(operation: PushOperation) -> Result[Any]:
            return self.upload_one(operation, use_extended)

        def record_success(operation: PushOperation, token: str) -> None:
            self.set_status(
                operation.row,
                TransferStatus.PENDING_ASSOCIATION,
                redmine_upload_token=token,
                redmine_attachment_id=token_attachment_id(token),
                notes=None,
            )
            self.logger.success("[uploaded] %s as %s.", operation.label, operation.payload["filename"])

        def record_failure(operation: PushOperation, error: Err) -> None:
            self.set_status(
                operation.row,
                TransferStatus.FAILED,
                redmine_upload_token=None,
                redmine_attachment_id=None,
                notes=error.message,
            )

        executor = PushExecutor(push_options, description="Uploading attachments to Redmine")
        result.merge(executor.run(operations, send, record_success, record_failure))
        return result
