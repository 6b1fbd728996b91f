"""Base migration class providing the reconcile engine shared by all entity migrations."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence  # noqa: TC003
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

from src import config
from src.clients.exceptions import ExtendedApiUnavailableError
from src.clients.redmine_client import extended_path as redmine_extended_path
from src.display import configure_logging
from src.mappings.store import MappingStore, storage_value
from src.migrations.push_executor import PushExecutor, PushOperation, PushOptions, SendFn
from src.models import ComponentResult, MigrationError
from src.models.result import Err
from src.models.status import AssignmentStatus, CreationStatus, StatusFamily
from src.utils.hash_guard import compute_owned_hash, is_overridden, normalize_stored_hash, owned_fields
from src.utils.normalization import normalize_string

if TYPE_CHECKING:
    from src.clients.jira_client import JiraClient
    from src.clients.redmine_client import RedmineClient

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)


class Phase(StrEnum):
    """Independently re-runnable steps of an entity migration."""

    JIRA = "jira"
    REDMINE = "redmine"
    PULL = "pull"
    TRANSFORM = "transform"
    PUSH = "push"


class EntityTypeRegistry:
    """Centralized registry for mapping migration classes to their supported entity types.

    The CLI resolves its entity argument through this registry, so an entity
    name that no class registered fails fast.
    """

    _registry: ClassVar[dict[type[BaseMigration], list[str]]] = {}
    _type_to_class_map: ClassVar[dict[str, type[BaseMigration]]] = {}

    @classmethod
    def register(
        cls,
        migration_class: type[BaseMigration],
        entity_types: list[str],
    ) -> None:
        """Register a migration class with its supported entity types.

        Args:
            migration_class: The migration class to register
            entity_types: List of entity types this class supports

        Raises:
            ValueError: If migration_class is None
            TypeError: If entity_types is empty or the class is not a BaseMigration

        """
        if migration_class is None:
            msg = "Migration class cannot be None"
            raise ValueError(msg)

        if not entity_types:
            msg = f"Migration class {migration_class.__name__} must support at least one entity type"
            raise TypeError(msg)

        if not issubclass(migration_class, BaseMigration):
            msg = f"Class {migration_class.__name__} must inherit from BaseMigration"
            raise TypeError(msg)

        cls._registry[migration_class] = entity_types.copy()

        for entity_type in entity_types:
            existing_class = cls._type_to_class_map.get(entity_type)
            if existing_class is not None and existing_class != migration_class:
                logger.warning(
                    "Entity type '%s' is supported by multiple classes: %s and %s. Using %s.",
                    entity_type,
                    existing_class.__name__,
                    migration_class.__name__,
                    migration_class.__name__,
                )
            cls._type_to_class_map[entity_type] = migration_class

    @classmethod
    def resolve(cls, migration_class: type[BaseMigration]) -> str:
        """Resolve the primary entity type for a migration class.

        Raises:
            ValueError: If the migration class is not registered

        """
        if migration_class not in cls._registry:
            msg = f"Migration class {migration_class.__name__} is not registered with EntityTypeRegistry"
            raise ValueError(msg)
        return cls._registry[migration_class][0]

    @classmethod
    def get_supported_types(cls, migration_class: type[BaseMigration]) -> list[str]:
        """Get all entity types supported by a migration class."""
        if migration_class not in cls._registry:
            msg = f"Migration class {migration_class.__name__} is not registered with EntityTypeRegistry"
            raise ValueError(msg)
        return cls._registry[migration_class].copy()

    @classmethod
    def get_class_for_type(cls, entity_type: str) -> type[BaseMigration] | None:
        return cls._type_to_class_map.get(entity_type)

    @classmethod
    def clear_registry(cls) -> None:
        """Clear all registrations. Used primarily for testing."""
        cls._registry.clear()
        cls._type_to_class_map.clear()

    @classmethod
    def get_all_registered_types(cls) -> set[str]:
        all_types: set[str] = set()
        for entity_types in cls._registry.values():
            all_types.update(entity_types)
        return all_types


def register_entity_types(*entity_types: str) -> Callable[[type[BaseMigration]], type[BaseMigration]]:
    """Register entity types for a migration class.

    Example:
        @register_entity_types("users")
        class UserMigration(BaseMigration):
            pass

    """

    def decorator(cls: type[BaseMigration]) -> type[BaseMigration]:
        EntityTypeRegistry.register(cls, list(entity_types))
        return cls

    return decorator


@dataclass(frozen=True)
class RunOptions:
    """Command-line switches that change what the phases are allowed to do."""

    confirm_push: bool = False
    confirm_pull: bool = False
    dry_run: bool = False
    use_extended_api: bool = False
    download_limit: int | None = None
    upload_limit: int | None = None

    def push_options(self, limit: int | None = None) -> PushOptions:
        return PushOptions(
            confirm=self.confirm_push,
            dry_run=self.dry_run,
            limit=limit,
            use_extended_api=self.use_extended_api,
        )


@dataclass(frozen=True)
class Resolution:
    """Proposed state of one mapping row after matching.

    ``values`` holds the owned fields the resolver decided on; fields it
    leaves out keep their stored value.
    """

    status: StrEnum
    values: Mapping[str, Any] = field(default_factory=dict)


_MANUAL_STATUSES = frozenset({CreationStatus.MANUAL_INTERVENTION_REQUIRED, AssignmentStatus.MANUAL_INTERVENTION_REQUIRED})
_AWAITING_STATUSES = frozenset({AssignmentStatus.AWAITING_GROUP, AssignmentStatus.AWAITING_USER})
_MATCHED_STATUSES = frozenset({CreationStatus.MATCH_FOUND, AssignmentStatus.MATCH_FOUND})


def parse_phase_list(value: str | Sequence[str] | None) -> list[str]:
    """Split a comma/whitespace separated phase list, lowercased and deduplicated in order."""
    if value is None:
        return []
    raw = value if isinstance(value, str) else " ".join(value)
    phases: list[str] = []
    for token in raw.replace(",", " ").split():
        phase = token.strip().lower()
        if phase and phase not in phases:
            phases.append(phase)
    return phases


class BaseMigration:
    """Base class for all entity migrations.

    Subclasses declare their mapping table, the owned fields protected by the
    automation hash and the status family of the table, then implement one
    ``run_<phase>_phase`` method per entry of ``PHASES``.
    """

    PHASES: ClassVar[tuple[Phase, ...]] = ()
    MAPPING_TABLE: ClassVar[str] = ""
    KEY_COLUMN: ClassVar[str] = "mapping_id"
    LABEL_COLUMN: ClassVar[str] = "mapping_id"
    ENTITY_LABEL: ClassVar[str] = "Mapping"
    OWNED_FIELDS: ClassVar[tuple[str, ...]] = ()
    STATUS_FAMILY: ClassVar[StatusFamily[Any] | None] = None

    def __init__(  # noqa: D107
        self,
        store: MappingStore,
        jira_client: JiraClient | None = None,
        redmine_client: RedmineClient | None = None,
    ) -> None:
        self.store = store
        self._jira_client = jira_client
        self._redmine_client = redmine_client
        self.logger = logger

    @property
    def jira_client(self) -> JiraClient:
        if self._jira_client is None:
            from src.clients.jira_client import JiraClient  # noqa: PLC0415

            self._jira_client = JiraClient()
        return self._jira_client

    @property
    def redmine_client(self) -> RedmineClient:
        if self._redmine_client is None:
            from src.clients.redmine_client import RedmineClient  # noqa: PLC0415

            self._redmine_client = RedmineClient()
        return self._redmine_client

    @property
    def entity_type(self) -> str:
        return EntityTypeRegistry.resolve(type(self))

    # Phase selection and dispatch

    @classmethod
    def valid_phases(cls) -> list[str]:
        return [str(phase) for phase in cls.PHASES]

    @classmethod
    def select_phases(
        cls,
        requested: str | Sequence[str] | None = None,
        skipped: str | Sequence[str] | None = None,
    ) -> list[Phase]:
        """Apply ``--phases`` and ``--skip`` to the declared phase order.

        Raises:
            MigrationError: For an unknown phase or when nothing remains to run

        """
        valid = cls.valid_phases()
        wanted = parse_phase_list(requested)
        excluded = parse_phase_list(skipped)
        for phase in [*wanted, *excluded]:
            if phase not in valid:
                msg = f'Unknown phase "{phase}". Valid phases: {", ".join(valid)}'
                raise MigrationError(msg)

        selected = [phase for phase in cls.PHASES if (not wanted or phase in wanted) and phase not in excluded]
        if not selected:
            msg = "No phases remain to execute after applying the provided CLI options."
            raise MigrationError(msg)
        return selected

    def run(self, phases: Sequence[Phase] | None = None, options: RunOptions | None = None) -> ComponentResult:
        """Run the selected phases in declaration order and merge their counters."""
        options = options or RunOptions()
        selected = list(phases) if phases is not None else list(self.PHASES)
        self.store.initialize_schema()

        result = ComponentResult(entity=self.entity_type, dry_run=options.dry_run)
        for phase in self.PHASES:
            if phase not in selected:
                continue
            self.logger.info("Running %s phase for %s", phase, self.entity_type)
            handler: Callable[[RunOptions], ComponentResult] = getattr(self, f"run_{phase}_phase")
            result.merge(handler(options))
            result.phases.append(str(phase))

        if self.MAPPING_TABLE:
            result.status_counts = self.store.status_counts(self.MAPPING_TABLE)
        result.message = f"{self.entity_type}: completed phases {', '.join(result.phases)}"
        return result

    # Hash guard

    def current_owned(self, row: Mapping[str, Any]) -> dict[str, Any]:
        return owned_fields(row, self.OWNED_FIELDS)

    def is_preserved(self, row: Mapping[str, Any]) -> bool:
        return is_overridden(row.get("automation_hash"), self.current_owned(row))

    def log_preserved(self, row: Mapping[str, Any]) -> None:
        self.logger.notice(
            "[preserved] %s %s has manual overrides; skipping automated changes.",
            self.ENTITY_LABEL,
            row.get(self.LABEL_COLUMN),
        )

    def guarded(self, rows: Iterable[Mapping[str, Any]], result: ComponentResult) -> Iterator[Mapping[str, Any]]:
        """Yield only rows whose stored hash still matches their owned fields."""
        for row in rows:
            if self.is_preserved(row):
                result.manual_overrides += 1
                self.log_preserved(row)
                continue
            yield row

    def write_owned(self, row: Mapping[str, Any], status: StrEnum, values: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Persist a status change plus values and stamp a fresh automation hash.

        The transition is validated against the table's status family. Values
        outside ``OWNED_FIELDS`` are written but not hashed.
        """
        family = self._family()
        new_status = family.transition(row["migration_status"], status)
        proposed = self.current_owned(row)
        extra: dict[str, Any] = {}
        for name, value in (values or {}).items():
            if name in proposed:
                proposed[name] = storage_value(value)
            else:
                extra[name] = value
        proposed["migration_status"] = str(new_status)
        update = {**extra, **proposed, "automation_hash": compute_owned_hash(proposed)}
        with self.store.transaction():
            self.store.update_mapping(self.MAPPING_TABLE, self.KEY_COLUMN, row[self.KEY_COLUMN], update)
        return update

    def push_created(
        self,
        rows: Iterable[Mapping[str, Any]],
        options: PushOptions,
        build: Callable[[Mapping[str, Any]], PushOperation],
        send: SendFn,
        target_column: str | None = None,
        target_noun: str = "entity",
    ) -> ComponentResult:
        """Push ready rows and record success or failure on each mapping row.

        ``send`` yields the created Redmine id, which lands in
        ``target_column`` when one is given.
        """
        family = self._family()
        result = ComponentResult(entity=self.entity_type)
        operations = [build(row) for row in self.guarded(rows, result)]

        def record_success(operation: PushOperation, target_id: Any) -> None:
            values: dict[str, Any] = {"notes": None}
            if target_column is not None:
                values[target_column] = target_id
            self.write_owned(operation.row, family.success, values)
            if target_id is None:
                self.logger.success("[assigned] %s.", operation.label)
            else:
                self.logger.success("[created] %s -> Redmine %s #%s.", operation.label, target_noun, target_id)

        def record_failure(operation: PushOperation, error: Err) -> None:
            self.write_owned(operation.row, family.failed, {"notes": error.message})

        result.merge(PushExecutor(options).run(operations, send, record_success, record_failure))
        return result

    def extended_path(self, resource: str) -> str:
        extended = config.redmine_config.get("extended_api") or {}
        return redmine_extended_path(extended.get("prefix"), resource)

    def extended_api_enabled(self, options: RunOptions) -> bool:
        extended = config.redmine_config.get("extended_api") or {}
        return options.use_extended_api or bool(extended.get("enabled"))

    def log_checklist(self, rows: Iterable[Mapping[str, Any]], describe: Callable[[Mapping[str, Any]], str]) -> ComponentResult:
        """Log the pending rows as a checklist for an administrator to create by hand."""
        result = ComponentResult(entity=self.entity_type)
        pending = list(self.guarded(rows, result))
        if not pending:
            return result
        self.logger.notice(
            "Manual checklist: create %d %s in Redmine, then re-run the redmine and transform phases.",
            len(pending),
            self.entity_type,
        )
        for row in pending:
            self.logger.notice("  - %s %s: %s", self.ENTITY_LABEL, row.get(self.LABEL_COLUMN), describe(row))
        result.details[f"{self.entity_type}_checklist"] = len(pending)
        return result

    def push_extended(
        self,
        rows: Sequence[Mapping[str, Any]],
        options: RunOptions,
        *,
        resource: str,
        build: Callable[[Mapping[str, Any]], PushOperation],
        send: SendFn,
        target_column: str,
        target_noun: str,
        describe: Callable[[Mapping[str, Any]], str],
    ) -> ComponentResult:
        """Create rows through the extended API plugin, or fall back to a checklist.

        The plugin is verified through its sentinel header before the first
        confirmed write.
        """
        if not rows:
            self.logger.info("Nothing to push")
            return ComponentResult(entity=self.entity_type)
        if not self.extended_api_enabled(options):
            self.logger.notice("Redmine offers no REST endpoint to create %s without the extended API plugin.", self.entity_type)
            return self.log_checklist(rows, describe)

        push_options = options.push_options()
        if not push_options.preview_only:
            try:
                self.redmine_client.check_extended_api(resource)
            except ExtendedApiUnavailableError as e:
                self.logger.warning("%s", e)
                result = self.log_checklist(rows, describe)
                result.add_warning(str(e))
                return result
        return self.push_created(rows, push_options, build, send, target_column, target_noun)

    def _family(self) -> StatusFamily[Any]:
        if self.STATUS_FAMILY is None:
            msg = f"{type(self).__name__} does not declare a status family"
            raise MigrationError(msg)
        return self.STATUS_FAMILY

    # Reconcile

    def is_eligible(self, row: Mapping[str, Any]) -> bool:
        return self._family().is_resolvable(row.get("migration_status"))

    def reconcile(
        self,
        rows: Iterable[Mapping[str, Any]],
        resolve: Callable[[Mapping[str, Any]], Resolution | None],
    ) -> ComponentResult:
        """Re-evaluate eligible mapping rows and write what changed.

        Rows outside the allow-list, rows the resolver declines (``None``) and
        rows a human edited are left alone; rows whose resolution equals their
        stored state are counted as unchanged and not written.
        """
        family = self._family()
        result = ComponentResult(entity=self.entity_type)

        for row in rows:
            if not self.is_eligible(row):
                result.skipped += 1
                continue

            current = self.current_owned(row)
            if is_overridden(row.get("automation_hash"), current):
                result.manual_overrides += 1
                self.log_preserved(row)
                continue

            resolution = resolve(row)
            if resolution is None:
                result.skipped += 1
                continue

            new_status = family.transition(row["migration_status"], resolution.status)
            proposed = dict(current)
            for name, value in resolution.values.items():
                if name in proposed:
                    proposed[name] = storage_value(value)
            proposed["migration_status"] = str(new_status)
            new_hash = compute_owned_hash(proposed)

            self._tally(result, new_status)
            if new_status in _MANUAL_STATUSES:
                self.logger.info(
                    "[manual] %s %s: %s",
                    self.ENTITY_LABEL,
                    row.get(self.LABEL_COLUMN),
                    proposed.get("notes") or "",
                )

            if proposed == current and normalize_stored_hash(row.get("automation_hash")) == new_hash:
                result.unchanged += 1
                continue

            update = dict(proposed)
            update["automation_hash"] = new_hash
            with self.store.transaction():
                self.store.update_mapping(self.MAPPING_TABLE, self.KEY_COLUMN, row[self.KEY_COLUMN], update)

        self.logger.info(
            "%s transform: %d matched, %d ready, %d manual, %d awaiting, %d preserved, %d skipped, %d unchanged",
            self.entity_type,
            result.matched,
            result.ready,
            result.manual_review,
            result.awaiting,
            result.manual_overrides,
            result.skipped,
            result.unchanged,
        )
        return result

    def _tally(self, result: ComponentResult, status: StrEnum) -> None:
        if status in _MATCHED_STATUSES:
            result.matched += 1
        elif status == self._family().ready:
            result.ready += 1
        elif status in _MANUAL_STATUSES:
            result.manual_review += 1
        elif status in _AWAITING_STATUSES:
            result.awaiting += 1

    def fetch_mappings(self, where: str = "", params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Mapping rows of this migration's table in primary-key order."""
        clause = f" WHERE {where}" if where else ""
        return self.store.fetch_all(
            f"SELECT * FROM {self.MAPPING_TABLE}{clause} ORDER BY {self.KEY_COLUMN}",  # noqa: S608
            params,
        )

    @staticmethod
    def manual(note: str, status: StrEnum = CreationStatus.MANUAL_INTERVENTION_REQUIRED, **values: Any) -> Resolution:
        """Route a row to manual review with an explanatory note."""
        return Resolution(status, {**values, "notes": normalize_string(note, 2000)})
