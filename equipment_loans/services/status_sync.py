"""Derives an equipment item's coarse status from its loans and persists it."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_loans.models.loan_models import Borrow, Equipment
from equipment_loans.services.errors import NotFound
from equipment_loans.services.intervals import utcnow
from equipment_loans.services.loan_lifecycle import APPROVED, CHECKED_OUT_STATES, refresh_overdue

LOGGER = logging.getLogger("equipment_loans.lifecycle")

AVAILABLE = "AVAILABLE"
RESERVED = "RESERVED"
BORROWED = "BORROWED"
UNDER_MAINTENANCE = "UNDER_MAINTENANCE"
DEFECTIVE = "DEFECTIVE"
OUT_OF_SERVICE = "OUT_OF_SERVICE"
ARCHIVED = "ARCHIVED"

DERIVED_EQUIPMENT_STATUSES = {AVAILABLE, RESERVED, BORROWED}
TERMINAL_EQUIPMENT_STATUSES = {UNDER_MAINTENANCE, DEFECTIVE, OUT_OF_SERVICE, ARCHIVED}
EQUIPMENT_STATUSES = DERIVED_EQUIPMENT_STATUSES | TERMINAL_EQUIPMENT_STATUSES

_SYNC_LOAN_STATES = CHECKED_OUT_STATES | {APPROVED}


def _committed_now(loan: Any, now: datetime) -> bool:
    if loan.ApprovedStart is None or loan.ApprovedEnd is None:
        return True
    return loan.ApprovedStart <= now < loan.ApprovedEnd


def derive_equipment_status(
    unit_count: int,
    current_status: str | None,
    loans: Iterable[Any],
    now: datetime,
) -> tuple[str, datetime | None]:
    """Return ``(status, next_reserved_from)`` for one equipment item.

    A terminal status always stands. Otherwise the item is BORROWED when every
    unit is checked out, RESERVED when checked-out plus currently committed
    approvals use every unit, and AVAILABLE in all other cases.
    """
    active_now = 0
    committed_now = 0
    next_reserved_from: datetime | None = None
    for loan in loans:
        if loan.Status in CHECKED_OUT_STATES:
            active_now += 1
        elif loan.Status == APPROVED:
            if _committed_now(loan, now):
                committed_now += 1
            elif loan.ApprovedStart is not None and loan.ApprovedStart > now:
                if next_reserved_from is None or loan.ApprovedStart < next_reserved_from:
                    next_reserved_from = loan.ApprovedStart

    if current_status in TERMINAL_EQUIPMENT_STATUSES:
        return current_status, next_reserved_from

    units = max(1, int(unit_count or 1))
    if active_now >= units:
        return BORROWED, next_reserved_from
    if active_now + committed_now >= units:
        return RESERVED, next_reserved_from
    return AVAILABLE, next_reserved_from


def lock_equipment(db: Session, equipment_ids: Iterable[int]) -> dict[int, Equipment]:
    """Lock equipment rows in ascending id order for the rest of the transaction."""
    ids = sorted({int(value) for value in equipment_ids})
    if not ids:
        return {}
    rows = db.execute(
        select(Equipment)
        .where(Equipment.EquipmentID.in_(ids))
        .order_by(Equipment.EquipmentID)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    return {row.EquipmentID: row for row in rows}


def sync_equipment_status(db: Session, equipment_id: int, now: datetime | None = None) -> Equipment:
    """Recompute and store the derived status of one equipment item.

    Pending session changes are flushed first so the derivation sees the loan
    writes made earlier in the same transaction.
    """
    now = now or utcnow()
    db.flush()
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFound(f"Equipment {equipment_id} not found.")

    loans = db.execute(
        select(Borrow)
        .where(Borrow.EquipmentID == equipment_id)
        .where(Borrow.Status.in_(_SYNC_LOAN_STATES))
    ).scalars().all()
    for loan in loans:
        refresh_overdue(loan, now)

    previous = equipment.Status
    status, next_reserved_from = derive_equipment_status(equipment.UnitCount, equipment.Status, loans, now)
    equipment.Status = status
    equipment.NextReservedFrom = next_reserved_from
    # Always touch the row so the version counter serialises concurrent writers.
    equipment.UpdatedDate = now
    if previous != status:
        LOGGER.info("Equipment status equipment_id=%s from=%s to=%s", equipment_id, previous, status)
    return equipment
