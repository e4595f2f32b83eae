# Overview: Guarded status transitions shared by orders and payments.

"""
Status transitions are table driven:

    transitions = {(current_status, event): next_status, ...}

apply_transition() looks up the next status and writes it with
UPDATE ... WHERE id = :id AND status = :current. If another request moved
the row first, zero rows match and StateConflictError is raised, so a
duplicated capture or confirm can never apply twice.
"""

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..validation import ConflictError, NotFoundError
from .concurrency import guarded_update
from settlehub.time_utils import utcnow


class InvalidStateTransition(ConflictError):
    """Raised when the event is not allowed from the row's current status."""


class StateConflictError(ConflictError):
    """Raised when the row changed status between read and write."""


def next_status(transitions: dict, current: str, event: str) -> str | None:
    return transitions.get((current, event))


def apply_transition(model, row_id: int, *, transitions: dict, event: str, values: dict | None = None) -> str:
    """
    Move one row to the status the table prescribes for event.

    Args:
        model: Mapped class with id/status/updated_at columns
        row_id: Primary key
        transitions: {(from, event): to}
        event: Event name (authorize, capture, cancel, ...)
        values: Extra columns written in the same UPDATE

    Returns:
        The new status

    Raises:
        NotFoundError: No such row
        InvalidStateTransition: Event not allowed from current status
        StateConflictError: Concurrent transition won
    """
    row = db.session.get(model, row_id)
    if row is None:
        raise NotFoundError(f"{model.__name__} {row_id} not found")

    current = row.status
    target = next_status(transitions, current, event)
    if target is None:
        raise InvalidStateTransition(f"{model.__name__} {row_id}: cannot {event} from status {current}")

    affected = guarded_update(
        update(model)
        .where(model.id == row_id, model.status == current)
        .values(status=target, updated_at=utcnow(), **(values or {}))
    )
    if affected == 0:
        raise StateConflictError(f"{model.__name__} {row_id} was modified concurrently; retry")
    return target
