"""Public loan operations.

Each mutating call is one transaction: equipment rows are locked, the lifecycle
command runs against a single loan or a whole group, and the session is either
committed or rolled back as a unit.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_loans.models.loan_models import Borrow, Deficiency, Equipment
from equipment_loans.schemas.loans import DataRequest, DeficiencyCreate
from equipment_loans.services.errors import Forbidden, LoanError, NotFound, TransitionRejected
from equipment_loans.services.group_service import (
    TransitionResult,
    apply_to_loans,
    load_group,
    run_group_command,
)
from equipment_loans.services.intervals import TimeWindow, make_window, utcnow
from equipment_loans.services.loan_lifecycle import (
    ACTIVE,
    CHECKED_OUT_STATES,
    COMPLETED,
    KNOWN_ROLES,
    OVERDUE,
    PENDING,
    PENDING_RETURN,
    RETURNED,
    Actor,
    apply_transition,
    is_owner,
    refresh_overdue,
)
from equipment_loans.services.status_sync import ARCHIVED, lock_equipment, sync_equipment_status
from equipment_loans.services.transaction import unit_of_work

LOGGER = logging.getLogger("equipment_loans.lifecycle")

DEFICIENCY_OPEN_STATES = {PENDING_RETURN, RETURNED, COMPLETED}


@dataclass(frozen=True)
class LoanRef:
    """Target of a lifecycle command: one loan or one group, never both."""

    loan_id: int | None = None
    group_id: str | None = None

    def __post_init__(self):
        if (self.loan_id is None) == (self.group_id is None):
            raise ValueError("LoanRef needs exactly one of loan_id or group_id.")

    @classmethod
    def single(cls, loan_id: int) -> "LoanRef":
        return cls(loan_id=int(loan_id))

    @classmethod
    def group(cls, group_id: str) -> "LoanRef":
        return cls(group_id=str(group_id))


def generate_group_id() -> str:
    return uuid.uuid4().hex


def _get_loan(db: Session, loan_id: int) -> Borrow:
    loan = db.get(Borrow, loan_id)
    if not loan:
        raise NotFound(f"Loan {loan_id} not found.")
    return loan


def _lock_loan(db: Session, loan_id: int) -> Borrow:
    loan = _get_loan(db, loan_id)
    lock_equipment(db, [loan.EquipmentID])
    loan = db.execute(
        select(Borrow)
        .where(Borrow.BorrowID == loan_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not loan:
        raise NotFound(f"Loan {loan_id} not found.")
    return loan


def _dispatch(
    db: Session,
    target: LoanRef,
    command: str,
    actor: Actor,
    now: datetime,
    **options,
) -> TransitionResult:
    if target.group_id is not None:
        return run_group_command(db, target.group_id, command, actor, now, **options)
    loan = _lock_loan(db, target.loan_id)
    refresh_overdue(loan, now)
    return apply_to_loans(db, [loan], command, actor, now, **options)


def _run(db: Session, target: LoanRef, command: str, actor: Actor, now: datetime | None = None, **options):
    now = now or utcnow()
    with unit_of_work(db):
        result = _dispatch(db, target, command, actor, now, **options)
    return result


def _validated(window: TimeWindow | None) -> TimeWindow | None:
    if window is None:
        return None
    return make_window(window.start, window.end)


def _get_requestable_equipment(db: Session, equipment_id: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment or equipment.Status == ARCHIVED:
        raise NotFound(f"Equipment {equipment_id} not found.")
    return equipment


def _new_loan(
    equipment: Equipment,
    actor: Actor,
    window: TimeWindow,
    now: datetime,
    class_id: int | None = None,
    group_id: str | None = None,
) -> Borrow:
    return Borrow(
        GroupID=group_id,
        EquipmentID=equipment.EquipmentID,
        RequesterID=actor.id,
        ClassID=class_id,
        RequestedStart=window.start,
        RequestedEnd=window.end,
        Status=PENDING,
        DataRequested=False,
        CreatedDate=now,
        UpdatedDate=now,
    )


def _require_known_role(actor: Actor) -> None:
    if actor.role not in KNOWN_ROLES:
        raise Forbidden("Only authenticated users can submit loan requests.")


def submit_loan(
    db: Session,
    equipment_id: int,
    actor: Actor,
    window: TimeWindow,
    class_id: int | None = None,
    now: datetime | None = None,
) -> Borrow:
    _require_known_role(actor)
    window = _validated(window)
    now = now or utcnow()
    with unit_of_work(db):
        equipment = _get_requestable_equipment(db, equipment_id)
        loan = _new_loan(equipment, actor, window, now, class_id=class_id)
        db.add(loan)
        db.flush()
    LOGGER.info(
        "Loan submitted loan_id=%s equipment_id=%s requester=%s start=%s end=%s",
        loan.BorrowID,
        loan.EquipmentID,
        actor.id,
        window.start.isoformat(),
        window.end.isoformat(),
    )
    return loan


def submit_group_loan(
    db: Session,
    equipment_ids: Iterable[int],
    actor: Actor,
    window: TimeWindow,
    class_id: int | None = None,
    now: datetime | None = None,
) -> list[Borrow]:
    _require_known_role(actor)
    window = _validated(window)
    ids: list[int] = []
    for value in equipment_ids:
        if int(value) not in ids:
            ids.append(int(value))
    if not ids:
        raise LoanError("At least one equipment item is required.")

    now = now or utcnow()
    group_id = generate_group_id()
    loans: list[Borrow] = []
    with unit_of_work(db):
        for equipment_id in ids:
            equipment = _get_requestable_equipment(db, equipment_id)
            loan = _new_loan(equipment, actor, window, now, class_id=class_id, group_id=group_id)
            db.add(loan)
            loans.append(loan)
        db.flush()
    LOGGER.info(
        "Loan group submitted group_id=%s members=%s requester=%s",
        group_id,
        len(loans),
        actor.id,
    )
    return loans


def approve(
    db: Session,
    target: LoanRef,
    actor: Actor,
    window: TimeWindow | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    return _run(db, target, "approve", actor, now, window=_validated(window))


def reject(db: Session, target: LoanRef, actor: Actor, now: datetime | None = None) -> TransitionResult:
    return _run(db, target, "reject", actor, now)


def cancel(db: Session, target: LoanRef, actor: Actor, now: datetime | None = None) -> TransitionResult:
    return _run(db, target, "cancel", actor, now)


def checkout(
    db: Session,
    target: LoanRef,
    actor: Actor,
    now: datetime | None = None,
    allow_early_checkout: bool | None = None,
) -> TransitionResult:
    return _run(db, target, "checkout", actor, now, allow_early_checkout=allow_early_checkout)


def request_return(
    db: Session,
    target: LoanRef,
    actor: Actor,
    data_request: DataRequest | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    payload = data_request.model_dump() if data_request is not None else None
    return _run(db, target, "request_return", actor, now, data_request=payload)


def _deficiency_targets(loans: list[Borrow], deficiency: DeficiencyCreate) -> list[Borrow]:
    """A deficiency belongs to one item, so a group return must say which."""
    if deficiency.equipmentID is not None:
        matches = [loan for loan in loans if loan.EquipmentID == deficiency.equipmentID]
        if not matches:
            raise NotFound(f"Equipment {deficiency.equipmentID} is not part of this return.")
        return matches
    if len(loans) > 1:
        raise LoanError("A deficiency on a group return must name its equipmentID.")
    return loans


def finalize_return(
    db: Session,
    target: LoanRef,
    actor: Actor,
    deficiency: DeficiencyCreate | None = None,
    condition: str | None = None,
    remarks: str | None = None,
    completed: bool = False,
    now: datetime | None = None,
) -> TransitionResult:
    now = now or utcnow()
    command = "complete" if completed else "finalize_return"
    with unit_of_work(db):
        result = _dispatch(
            db,
            target,
            command,
            actor,
            now,
            return_condition=condition,
            return_remarks=remarks,
        )
        if deficiency is not None:
            for loan in _deficiency_targets(result.updated, deficiency):
                _add_deficiency(db, loan, actor, deficiency, now)
    return result


def update_approved_window(
    db: Session,
    loan_id: int,
    actor: Actor,
    window: TimeWindow,
    now: datetime | None = None,
) -> TransitionResult:
    return _run(db, LoanRef.single(loan_id), "edit_window", actor, now, window=_validated(window))


def delete_pending(db: Session, loan_id: int, actor: Actor, now: datetime | None = None) -> None:
    now = now or utcnow()
    with unit_of_work(db):
        loan = _lock_loan(db, loan_id)
        apply_transition(loan, "delete", actor, now=now)
        equipment_id = loan.EquipmentID
        db.delete(loan)
        sync_equipment_status(db, equipment_id, now)


def _add_deficiency(
    db: Session,
    loan: Borrow,
    actor: Actor,
    deficiency: DeficiencyCreate,
    now: datetime,
) -> Deficiency:
    row = Deficiency(
        UserID=deficiency.userID if deficiency.userID is not None else loan.RequesterID,
        TaggedByID=actor.id,
        Type=deficiency.type,
        Status="UNRESOLVED",
        Description=deficiency.description,
        CreatedDate=now,
    )
    loan.Deficiencies.append(row)
    db.flush()
    LOGGER.info(
        "Deficiency recorded deficiency_id=%s loan_id=%s type=%s tagged_by=%s",
        row.DeficiencyID,
        loan.BorrowID,
        row.Type,
        actor.id,
    )
    return row


def record_deficiency(
    db: Session,
    loan_id: int,
    actor: Actor,
    deficiency: DeficiencyCreate,
    now: datetime | None = None,
) -> Deficiency:
    now = now or utcnow()
    with unit_of_work(db):
        loan = _get_loan(db, loan_id)
        refresh_overdue(loan, now)
        if loan.Status not in DEFICIENCY_OPEN_STATES | CHECKED_OUT_STATES:
            raise TransitionRejected(
                loan.Status,
                loan.Status,
                "Deficiencies can only be recorded on checked-out or returned loans.",
            )
        if loan.Status in CHECKED_OUT_STATES and not actor.is_privileged:
            raise Forbidden("Only staff or faculty can tag a loan that is still checked out.")
        if not (actor.is_privileged or is_owner(actor, loan)):
            raise Forbidden("You do not have permission to tag this loan.")
        row = _add_deficiency(db, loan, actor, deficiency, now)
    return row


def mark_overdue_loans(db: Session, now: datetime | None = None) -> int:
    """Flip every ACTIVE loan past its end to OVERDUE and return how many changed."""
    now = now or utcnow()
    with unit_of_work(db):
        loans = db.execute(select(Borrow).where(Borrow.Status == ACTIVE)).scalars().all()
        flipped = [loan for loan in loans if refresh_overdue(loan, now) == OVERDUE]
    if flipped:
        LOGGER.info("Overdue sweep flipped=%s", len(flipped))
    return len(flipped)


def _refresh_for_read(db: Session, loans: list[Borrow], now: datetime) -> None:
    changed = False
    for loan in loans:
        before = loan.Status
        if refresh_overdue(loan, now) != before:
            changed = True
    if changed:
        db.commit()


def get_loan(db: Session, loan_id: int, now: datetime | None = None) -> Borrow:
    loan = _get_loan(db, loan_id)
    _refresh_for_read(db, [loan], now or utcnow())
    return loan


def list_group(db: Session, group_id: str, now: datetime | None = None) -> list[Borrow]:
    members = load_group(db, group_id)
    _refresh_for_read(db, members, now or utcnow())
    return members


def serialize_deficiency(deficiency: Deficiency) -> dict:
    return {
        "deficiencyID": deficiency.DeficiencyID,
        "loanID": deficiency.BorrowID,
        "userID": deficiency.UserID,
        "taggedByID": deficiency.TaggedByID,
        "type": deficiency.Type,
        "status": deficiency.Status,
        "description": deficiency.Description,
        "createdDate": deficiency.CreatedDate,
    }


def serialize_loan(loan: Borrow) -> dict:
    return {
        "loanID": loan.BorrowID,
        "groupID": loan.GroupID,
        "equipmentID": loan.EquipmentID,
        "requesterID": loan.RequesterID,
        "classID": loan.ClassID,
        "requestedStart": loan.RequestedStart,
        "requestedEnd": loan.RequestedEnd,
        "approvedStart": loan.ApprovedStart,
        "approvedEnd": loan.ApprovedEnd,
        "checkoutTime": loan.CheckoutTime,
        "actualReturnTime": loan.ActualReturnTime,
        "status": loan.Status,
        "rejectedByRole": loan.RejectedByRole,
        "approverID": loan.ApproverID,
        "returnCondition": loan.ReturnCondition,
        "returnRemarks": loan.ReturnRemarks,
        "dataRequested": bool(loan.DataRequested),
        "dataRequestStatus": loan.DataRequestStatus,
        "dataRequestRemarks": loan.DataRequestRemarks,
        "deficiencies": [serialize_deficiency(row) for row in loan.Deficiencies],
    }


def serialize_result(result: TransitionResult, message: str) -> dict:
    return {
        "message": message,
        "updated": [serialize_loan(loan) for loan in result.updated],
        "autoRejectedCount": result.auto_rejected_count,
    }
