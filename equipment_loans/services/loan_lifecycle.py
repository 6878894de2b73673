"""Borrow lifecycle: states, role-gated transitions and the field writes each one performs.

The module works on any object exposing the ``Borrow`` column attributes, so the
transition table can be exercised without a database.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from equipment_loans.services.errors import Forbidden, InvalidWindow, TransitionRejected
from equipment_loans.services.intervals import TimeWindow, make_window, utcnow

LOGGER = logging.getLogger("equipment_loans.lifecycle")

PENDING = "PENDING"
APPROVED = "APPROVED"
REJECTED = "REJECTED"
CANCELLED = "CANCELLED"
ACTIVE = "ACTIVE"
OVERDUE = "OVERDUE"
PENDING_RETURN = "PENDING_RETURN"
RETURNED = "RETURNED"
COMPLETED = "COMPLETED"
DELETED = "DELETED"

LOAN_STATES = {PENDING, APPROVED, REJECTED, CANCELLED, ACTIVE, OVERDUE, PENDING_RETURN, RETURNED, COMPLETED}
CLOSED_STATES = {REJECTED, CANCELLED, RETURNED, COMPLETED}
UNIT_HOLDING_STATES = {APPROVED, ACTIVE, OVERDUE, PENDING_RETURN}
CHECKED_OUT_STATES = {ACTIVE, OVERDUE}

ROLE_REGULAR = "REGULAR"
ROLE_STAFF = "STAFF"
ROLE_FACULTY = "FACULTY"
ROLE_SYSTEM = "SYSTEM"
KNOWN_ROLES = {ROLE_REGULAR, ROLE_STAFF, ROLE_FACULTY}
PRIVILEGED_ROLES = {ROLE_STAFF, ROLE_FACULTY}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


ALLOW_EARLY_CHECKOUT = _env_flag("LOANS_ALLOW_EARLY_CHECKOUT", True)


@dataclass(frozen=True)
class Actor:
    id: int
    role: str

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES


SYSTEM_ACTOR = Actor(id=0, role=ROLE_SYSTEM)


def is_owner(actor: Actor, loan: Any) -> bool:
    return loan.RequesterID is not None and int(loan.RequesterID) == int(actor.id)


def _privileged(actor: Actor, loan: Any) -> bool:
    return actor.is_privileged


def _owner_or_privileged(actor: Actor, loan: Any) -> bool:
    return actor.is_privileged or is_owner(actor, loan)


def _system(actor: Actor, loan: Any) -> bool:
    return actor.role == ROLE_SYSTEM


@dataclass(frozen=True)
class Transition:
    command: str
    sources: frozenset
    target: str
    guard: Callable[[Actor, Any], bool]
    denied: str


TRANSITIONS: dict[str, Transition] = {
    "approve": Transition(
        "approve", frozenset({PENDING}), APPROVED, _privileged,
        "Only staff or faculty can approve requests.",
    ),
    "reject": Transition(
        "reject", frozenset({PENDING, APPROVED}), REJECTED, _privileged,
        "Only staff or faculty can reject requests.",
    ),
    "cancel": Transition(
        "cancel", frozenset({PENDING, APPROVED}), CANCELLED, _owner_or_privileged,
        "You do not have permission to cancel this request.",
    ),
    "delete": Transition(
        "delete", frozenset({PENDING}), DELETED, _owner_or_privileged,
        "You do not have permission to delete this request.",
    ),
    "checkout": Transition(
        "checkout", frozenset({APPROVED}), ACTIVE, _owner_or_privileged,
        "You do not have permission to check out this item.",
    ),
    "request_return": Transition(
        "request_return", frozenset({ACTIVE, OVERDUE}), PENDING_RETURN, _owner_or_privileged,
        "You did not borrow this item.",
    ),
    "finalize_return": Transition(
        "finalize_return", frozenset({PENDING_RETURN}), RETURNED, _privileged,
        "Only staff or faculty can confirm returns.",
    ),
    "complete": Transition(
        "complete", frozenset({PENDING_RETURN}), COMPLETED, _privileged,
        "Only staff or faculty can confirm returns.",
    ),
    "mark_overdue": Transition(
        "mark_overdue", frozenset({ACTIVE}), OVERDUE, _system,
        "Overdue status is set by the system only.",
    ),
    "edit_window": Transition(
        "edit_window", frozenset({APPROVED}), APPROVED, _privileged,
        "Only staff or faculty can edit approved times.",
    ),
}


def get_transition(command: str) -> Transition:
    try:
        return TRANSITIONS[command]
    except KeyError:
        raise ValueError(f"Unknown lifecycle command: {command}") from None


def check_transition(loan: Any, command: str, actor: Actor) -> Transition:
    """Validate status first, then role/ownership, and return the transition."""
    transition = get_transition(command)
    current = loan.Status
    if current not in transition.sources:
        raise TransitionRejected(current, transition.target)
    if not transition.guard(actor, loan):
        raise Forbidden(transition.denied)
    return transition


def effective_window(loan: Any) -> TimeWindow:
    if loan.ApprovedStart is not None and loan.ApprovedEnd is not None:
        return TimeWindow(loan.ApprovedStart, loan.ApprovedEnd)
    return TimeWindow(loan.RequestedStart, loan.RequestedEnd)


def is_overdue_due(loan: Any, now: datetime) -> bool:
    if loan.Status != ACTIVE:
        return False
    end = loan.ApprovedEnd or loan.RequestedEnd
    return end is not None and now > end


def refresh_overdue(loan: Any, now: datetime | None = None) -> str:
    """Apply the time-driven ACTIVE -> OVERDUE flip lazily and return the status."""
    now = now or utcnow()
    if is_overdue_due(loan, now):
        apply_transition(loan, "mark_overdue", SYSTEM_ACTOR, now=now)
    return loan.Status


def apply_transition(
    loan: Any,
    command: str,
    actor: Actor,
    now: datetime | None = None,
    window: TimeWindow | None = None,
    allow_early_checkout: bool | None = None,
) -> Transition:
    transition = check_transition(loan, command, actor)
    now = now or utcnow()
    previous = loan.Status

    if command == "approve":
        approved = window or make_window(loan.RequestedStart, loan.RequestedEnd)
        loan.ApprovedStart = approved.start
        loan.ApprovedEnd = approved.end
        loan.ApproverID = actor.id
        loan.RejectedByRole = None
    elif command == "edit_window":
        if window is None:
            raise InvalidWindow("A new approved window is required.")
        loan.ApprovedStart = window.start
        loan.ApprovedEnd = window.end
    elif command == "reject":
        loan.ApprovedStart = None
        loan.ApprovedEnd = None
        loan.ApproverID = actor.id
        loan.RejectedByRole = actor.role
    elif command == "checkout":
        early_allowed = ALLOW_EARLY_CHECKOUT if allow_early_checkout is None else allow_early_checkout
        if not early_allowed and loan.ApprovedStart is not None and now < loan.ApprovedStart:
            raise TransitionRejected(
                previous,
                transition.target,
                f"Cannot check out before the approved start time ({loan.ApprovedStart.isoformat()}).",
            )
        loan.CheckoutTime = now
    elif command in {"finalize_return", "complete"}:
        loan.ActualReturnTime = now
    elif command == "mark_overdue":
        if not is_overdue_due(loan, now):
            raise TransitionRejected(previous, transition.target, "Loan is not past its approved end time.")

    if transition.target != DELETED:
        loan.Status = transition.target
    loan.UpdatedDate = now
    LOGGER.info(
        "Loan transition loan_id=%s command=%s from=%s to=%s actor=%s role=%s",
        getattr(loan, "BorrowID", None),
        command,
        previous,
        transition.target,
        actor.id,
        actor.role,
    )
    return transition
