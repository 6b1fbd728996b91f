"""Component result models for tracking migration phases."""

from typing import Any

from pydantic import BaseModel, Field


class ComponentResult(BaseModel):
    """Represents the result of one entity migration run (all selected phases)."""

    success: bool = True
    message: str = ""
    entity: str = ""
    phases: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    dry_run: bool = False

    # Staging / sync
    extracted: int = 0
    synchronized: int = 0

    # Transform
    matched: int = 0
    ready: int = 0
    manual_review: int = 0
    awaiting: int = 0
    manual_overrides: int = 0
    skipped: int = 0
    unchanged: int = 0
    requeued: int = 0

    # Push / transfer
    previewed: int = 0
    succeeded: int = 0
    failed: int = 0

    status_counts: dict[str, int] = Field(default_factory=dict)

    def add_error(self, error: str) -> None:
        """Add an error message to the errors list."""
        self.errors.append(error)

    def add_warning(self, warning: str) -> None:
        """Add a warning message to the warnings list."""
        self.warnings.append(warning)

    def merge(self, other: "ComponentResult") -> None:
        """Accumulate the counters of another phase result into this one."""
        for name in (
            "extracted",
            "synchronized",
            "matched",
            "ready",
            "manual_review",
            "awaiting",
            "manual_overrides",
            "skipped",
            "unchanged",
            "requeued",
            "previewed",
            "succeeded",
            "failed",
        ):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.details.update(other.details)
        if other.status_counts:
            self.status_counts = dict(other.status_counts)
        self.success = self.success and other.success

    def summary(self) -> dict[str, Any]:
        """Counters worth showing to an operator, zero values omitted."""
        counters = {
            "extracted": self.extracted,
            "synchronized": self.synchronized,
            "matched": self.matched,
            "ready": self.ready,
            "manual_review": self.manual_review,
            "awaiting": self.awaiting,
            "manual_overrides": self.manual_overrides,
            "skipped": self.skipped,
            "unchanged": self.unchanged,
            "requeued": self.requeued,
            "previewed": self.previewed,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }
        data: dict[str, Any] = {key: value for key, value in counters.items() if value}
        if self.status_counts:
            data["status distribution"] = dict(self.status_counts)
        return data
