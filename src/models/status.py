"""Closed migration-status families and their allowed transitions.

Every mapping table stores its ``migration_status`` as one of these enums.
Status changes go through :meth:`StatusFamily.transition` so that a move the
family does not allow fails loudly instead of silently corrupting state.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

from src.models.migration_error import InvalidTransitionError


class CreationStatus(StrEnum):
    """Lifecycle of entities the migration may create (users, groups, statuses, ...)."""

    PENDING_ANALYSIS = "PENDING_ANALYSIS"
    MATCH_FOUND = "MATCH_FOUND"
    READY_FOR_CREATION = "READY_FOR_CREATION"
    MANUAL_INTERVENTION_REQUIRED = "MANUAL_INTERVENTION_REQUIRED"
    CREATION_SUCCESS = "CREATION_SUCCESS"
    CREATION_FAILED = "CREATION_FAILED"
    IGNORED = "IGNORED"


class AssignmentStatus(StrEnum):
    """Lifecycle of relationship records that depend on two other mappings."""

    PENDING_ANALYSIS = "PENDING_ANALYSIS"
    MATCH_FOUND = "MATCH_FOUND"
    READY_FOR_ASSIGNMENT = "READY_FOR_ASSIGNMENT"
    AWAITING_GROUP = "AWAITING_GROUP"
    AWAITING_USER = "AWAITING_USER"
    MANUAL_INTERVENTION_REQUIRED = "MANUAL_INTERVENTION_REQUIRED"
    ASSIGNMENT_SUCCESS = "ASSIGNMENT_SUCCESS"
    ASSIGNMENT_FAILED = "ASSIGNMENT_FAILED"
    IGNORED = "IGNORED"


class TransferStatus(StrEnum):
    """Lifecycle of attachment binaries (download, upload, association)."""

    PENDING_DOWNLOAD = "PENDING_DOWNLOAD"
    PENDING_UPLOAD = "PENDING_UPLOAD"
    PENDING_ASSOCIATION = "PENDING_ASSOCIATION"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    IGNORED = "IGNORED"


class TagStatus(StrEnum):
    """Lifecycle of per-issue tag sets."""

    PENDING_ANALYSIS = "PENDING_ANALYSIS"
    READY_FOR_PUSH = "READY_FOR_PUSH"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    IGNORED = "IGNORED"


type AnyStatus = CreationStatus | AssignmentStatus | TransferStatus | TagStatus


@dataclass(frozen=True, slots=True)
class StatusFamily[S: StrEnum]:
    """Transition table plus the well-known statuses of one enum family."""

    name: str
    enum: type[S]
    transitions: Mapping[S, frozenset[S]]
    resolvable: frozenset[S]
    ready: S
    success: S
    failed: S

    def parse(self, value: str | S | None) -> S:
        """Convert a stored column value into the family enum.

        Raises:
            InvalidTransitionError: If the value is not a member of the family

        """
        try:
            return self.enum(value)
        except ValueError as e:
            msg = f"Unknown {self.name} status {value!r}"
            raise InvalidTransitionError(msg) from e

    def can_transition(self, current: S, new: S) -> bool:
        return current == new or new in self.transitions.get(current, frozenset())

    def transition(self, current: str | S, new: str | S) -> S:
        """Validate a status change and return the new status.

        Staying in the same status is always allowed.

        Raises:
            InvalidTransitionError: If the family forbids the move

        """
        current_status = self.parse(current)
        new_status = self.parse(new)
        if not self.can_transition(current_status, new_status):
            msg = f"Invalid {self.name} status transition {current_status} -> {new_status}"
            raise InvalidTransitionError(msg)
        return new_status

    def is_resolvable(self, value: str | S | None) -> bool:
        try:
            return self.enum(value) in self.resolvable
        except ValueError:
            return False


_C = CreationStatus
CREATION = StatusFamily(
    name="creation",
    enum=CreationStatus,
    transitions={
        _C.PENDING_ANALYSIS: frozenset(
            {_C.MATCH_FOUND, _C.READY_FOR_CREATION, _C.MANUAL_INTERVENTION_REQUIRED, _C.CREATION_SUCCESS, _C.IGNORED},
        ),
        _C.MATCH_FOUND: frozenset(
            {_C.PENDING_ANALYSIS, _C.READY_FOR_CREATION, _C.MANUAL_INTERVENTION_REQUIRED, _C.CREATION_SUCCESS},
        ),
        _C.READY_FOR_CREATION: frozenset(
            {
                _C.PENDING_ANALYSIS,
                _C.MATCH_FOUND,
                _C.MANUAL_INTERVENTION_REQUIRED,
                _C.CREATION_SUCCESS,
                _C.CREATION_FAILED,
            },
        ),
        _C.MANUAL_INTERVENTION_REQUIRED: frozenset(
            {_C.PENDING_ANALYSIS, _C.MATCH_FOUND, _C.READY_FOR_CREATION, _C.CREATION_SUCCESS},
        ),
        _C.CREATION_FAILED: frozenset(
            {
                _C.PENDING_ANALYSIS,
                _C.MATCH_FOUND,
                _C.READY_FOR_CREATION,
                _C.MANUAL_INTERVENTION_REQUIRED,
                _C.CREATION_SUCCESS,
            },
        ),
        _C.CREATION_SUCCESS: frozenset(),
        _C.IGNORED: frozenset(),
    },
    resolvable=frozenset({_C.PENDING_ANALYSIS, _C.READY_FOR_CREATION, _C.MATCH_FOUND, _C.CREATION_FAILED}),
    ready=_C.READY_FOR_CREATION,
    success=_C.CREATION_SUCCESS,
    failed=_C.CREATION_FAILED,
)

_A = AssignmentStatus
_ASSIGNMENT_OUTCOMES = frozenset(
    {
        _A.PENDING_ANALYSIS,
        _A.MATCH_FOUND,
        _A.READY_FOR_ASSIGNMENT,
        _A.AWAITING_GROUP,
        _A.AWAITING_USER,
        _A.MANUAL_INTERVENTION_REQUIRED,
    },
)
ASSIGNMENT = StatusFamily(
    name="assignment",
    enum=AssignmentStatus,
    transitions={
        _A.PENDING_ANALYSIS: _ASSIGNMENT_OUTCOMES | {_A.IGNORED},
        _A.MATCH_FOUND: _ASSIGNMENT_OUTCOMES,
        _A.READY_FOR_ASSIGNMENT: _ASSIGNMENT_OUTCOMES | {_A.ASSIGNMENT_SUCCESS, _A.ASSIGNMENT_FAILED},
        _A.AWAITING_GROUP: _ASSIGNMENT_OUTCOMES,
        _A.AWAITING_USER: _ASSIGNMENT_OUTCOMES,
        _A.MANUAL_INTERVENTION_REQUIRED: _ASSIGNMENT_OUTCOMES,
        _A.ASSIGNMENT_FAILED: _ASSIGNMENT_OUTCOMES,
        _A.ASSIGNMENT_SUCCESS: frozenset(),
        _A.IGNORED: frozenset(),
    },
    resolvable=frozenset(
        {
            _A.PENDING_ANALYSIS,
            _A.READY_FOR_ASSIGNMENT,
            _A.MATCH_FOUND,
            _A.AWAITING_GROUP,
            _A.AWAITING_USER,
            _A.ASSIGNMENT_FAILED,
        },
    ),
    ready=_A.READY_FOR_ASSIGNMENT,
    success=_A.ASSIGNMENT_SUCCESS,
    failed=_A.ASSIGNMENT_FAILED,
)

_X = TransferStatus
TRANSFER = StatusFamily(
    name="transfer",
    enum=TransferStatus,
    transitions={
        _X.PENDING_DOWNLOAD: frozenset({_X.PENDING_UPLOAD, _X.FAILED, _X.IGNORED}),
        _X.FAILED: frozenset({_X.PENDING_DOWNLOAD, _X.PENDING_UPLOAD}),
        _X.PENDING_UPLOAD: frozenset({_X.PENDING_ASSOCIATION, _X.FAILED}),
        _X.PENDING_ASSOCIATION: frozenset({_X.SUCCESS, _X.FAILED}),
        _X.SUCCESS: frozenset(),
        _X.IGNORED: frozenset(),
    },
    resolvable=frozenset({_X.FAILED}),
    ready=_X.PENDING_UPLOAD,
    success=_X.PENDING_ASSOCIATION,
    failed=_X.FAILED,
)

_T = TagStatus
TAG = StatusFamily(
    name="tag",
    enum=TagStatus,
    transitions={
        _T.PENDING_ANALYSIS: frozenset({_T.READY_FOR_PUSH, _T.IGNORED}),
        _T.READY_FOR_PUSH: frozenset({_T.PENDING_ANALYSIS, _T.IGNORED, _T.SUCCESS, _T.FAILED}),
        _T.IGNORED: frozenset({_T.PENDING_ANALYSIS, _T.READY_FOR_PUSH}),
        _T.FAILED: frozenset({_T.PENDING_ANALYSIS, _T.READY_FOR_PUSH, _T.IGNORED}),
        _T.SUCCESS: frozenset(),
    },
    resolvable=frozenset({_T.PENDING_ANALYSIS, _T.READY_FOR_PUSH, _T.IGNORED, _T.FAILED}),
    ready=_T.READY_FOR_PUSH,
    success=_T.SUCCESS,
    failed=_T.FAILED,
)
