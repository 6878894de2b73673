"""Applies one lifecycle command to a batch of loans inside the caller's transaction.

A single loan is a batch of one. For a group the batch is every live member of
the group, and the command either applies to all of them or fails before any
write reaches the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_loans.models.loan_models import Borrow
from equipment_loans.services.errors import NoEligibleMembers, NotFound, TransitionRejected
from equipment_loans.services.intervals import TimeWindow
from equipment_loans.services.loan_lifecycle import (
    CHECKED_OUT_STATES,
    CLOSED_STATES,
    PENDING_RETURN,
    Actor,
    apply_transition,
    get_transition,
    refresh_overdue,
)
from equipment_loans.services.overlap_resolver import reject_overlapping_pending
from equipment_loans.services.status_sync import lock_equipment, sync_equipment_status

LOGGER = logging.getLogger("equipment_loans.lifecycle")

GROUP_COMMANDS = {"approve", "reject", "cancel", "checkout", "request_return", "finalize_return", "complete"}

# Members a single-loan command has already carried past the source states.
ALREADY_PAST = {
    "checkout": CHECKED_OUT_STATES | {PENDING_RETURN},
    "request_return": {PENDING_RETURN},
}


@dataclass
class TransitionResult:
    updated: list[Borrow] = field(default_factory=list)
    auto_rejected: list[Borrow] = field(default_factory=list)

    @property
    def auto_rejected_count(self) -> int:
        return len(self.auto_rejected)


def load_group(db: Session, group_id: str) -> list[Borrow]:
    members = db.execute(
        select(Borrow)
        .where(Borrow.GroupID == group_id)
        .order_by(Borrow.BorrowID)
        .execution_options(populate_existing=True)
    ).scalars().all()
    if not members:
        raise NotFound(f"Loan group {group_id} not found.")
    return list(members)


def lock_group(db: Session, group_id: str) -> list[Borrow]:
    """Lock the equipment of every member, then re-read the members."""
    members = load_group(db, group_id)
    lock_equipment(db, [member.EquipmentID for member in members])
    return load_group(db, group_id)


def select_eligible(members: list[Borrow], command: str, now: datetime) -> list[Borrow]:
    transition = get_transition(command)
    already_past = ALREADY_PAST.get(command, set())
    live = []
    for member in members:
        refresh_overdue(member, now)
        if member.Status not in CLOSED_STATES and member.Status not in already_past:
            live.append(member)

    eligible = [member for member in live if member.Status in transition.sources]
    if not eligible:
        raise NoEligibleMembers(
            f"No members of the group are eligible for {command.replace('_', ' ')}."
        )
    stragglers = [member for member in live if member.Status not in transition.sources]
    if stragglers:
        first = stragglers[0]
        raise TransitionRejected(
            first.Status,
            transition.target,
            f"Loan {first.BorrowID} is {first.Status}; handle it on its own before running "
            f"{command.replace('_', ' ')} on the group.",
        )
    return eligible


def apply_to_loans(
    db: Session,
    loans: list[Borrow],
    command: str,
    actor: Actor,
    now: datetime,
    window: TimeWindow | None = None,
    data_request: dict | None = None,
    return_condition: str | None = None,
    return_remarks: str | None = None,
    allow_early_checkout: bool | None = None,
) -> TransitionResult:
    """Run ``command`` against every loan, then resync each touched equipment once.

    Any guard failure propagates before the caller commits, so the batch is
    rolled back as a whole.
    """
    result = TransitionResult()
    batch_ids = {loan.BorrowID for loan in loans}
    touched_equipment: list[int] = []

    for loan in loans:
        apply_transition(
            loan,
            command,
            actor,
            now=now,
            window=window,
            allow_early_checkout=allow_early_checkout,
        )
        if command == "request_return":
            _apply_data_request(loan, data_request)
        elif command in {"finalize_return", "complete"}:
            if return_condition is not None:
                loan.ReturnCondition = return_condition
            if return_remarks is not None:
                loan.ReturnRemarks = return_remarks
        result.updated.append(loan)
        if loan.EquipmentID not in touched_equipment:
            touched_equipment.append(loan.EquipmentID)

    if command in {"approve", "edit_window"}:
        for loan in loans:
            rejected = reject_overlapping_pending(db, loan, actor, now, exclude_ids=batch_ids)
            result.auto_rejected.extend(rejected)

    for equipment_id in touched_equipment:
        sync_equipment_status(db, equipment_id, now)

    LOGGER.debug(
        "Batch applied command=%s loans=%s auto_rejected=%s",
        command,
        len(result.updated),
        result.auto_rejected_count,
    )
    return result


def _apply_data_request(loan: Borrow, data_request: dict | None) -> None:
    requested = set((data_request or {}).get("equipmentIDs") or [])
    if data_request and (not requested or loan.EquipmentID in requested):
        loan.DataRequested = True
        loan.DataRequestStatus = "Pending"
        loan.DataRequestRemarks = data_request.get("remarks")
    else:
        loan.DataRequested = False
        loan.DataRequestStatus = None
        loan.DataRequestRemarks = None


def run_group_command(
    db: Session,
    group_id: str,
    command: str,
    actor: Actor,
    now: datetime,
    **options,
) -> TransitionResult:
    if command not in GROUP_COMMANDS:
        raise ValueError(f"Command {command} cannot be applied to a group.")
    members = lock_group(db, group_id)
    eligible = select_eligible(members, command, now)
    result = apply_to_loans(db, eligible, command, actor, now, **options)
    LOGGER.info(
        "Group command group_id=%s command=%s members=%s auto_rejected=%s actor=%s",
        group_id,
        command,
        len(result.updated),
        result.auto_rejected_count,
        actor.id,
    )
    return result
