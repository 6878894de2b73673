from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Any, Iterable

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from equipment_loans.models.loan_models import Borrow, Equipment
from equipment_loans.services.errors import InvalidWindow, NotFound
from equipment_loans.services.intervals import TimeWindow, max_concurrent, utcnow
from equipment_loans.services.loan_lifecycle import APPROVED, UNIT_HOLDING_STATES, effective_window
from equipment_loans.services.status_sync import TERMINAL_EQUIPMENT_STATUSES

MAX_BOOKED_DAYS = 366


def count_free_units(unit_count: int, loans: Iterable[Any], window: TimeWindow) -> int:
    """Units of one item not held by any unit-holding loan at the busiest instant of ``window``."""
    units = max(0, int(unit_count or 0))
    holding = [
        effective_window(loan)
        for loan in loans
        if loan.Status in UNIT_HOLDING_STATES
    ]
    peak = max_concurrent(holding, bounds=window)
    return max(0, units - peak)


def _load_holding_loans(db: Session, equipment_id: int, window: TimeWindow) -> list[Borrow]:
    # The approved window wins when present, otherwise the requested one.
    approved_overlap = and_(
        Borrow.ApprovedStart.is_not(None),
        Borrow.ApprovedStart < window.end,
        Borrow.ApprovedEnd > window.start,
    )
    requested_overlap = and_(
        Borrow.ApprovedStart.is_(None),
        Borrow.RequestedStart < window.end,
        Borrow.RequestedEnd > window.start,
    )
    return db.execute(
        select(Borrow)
        .where(Borrow.EquipmentID == equipment_id)
        .where(Borrow.Status.in_(UNIT_HOLDING_STATES))
        .where(or_(approved_overlap, requested_overlap))
        .order_by(Borrow.BorrowID)
    ).scalars().all()


def _get_equipment_or_404(db: Session, equipment_id: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFound(f"Equipment {equipment_id} not found.")
    return equipment


def _next_reserved_from(db: Session, equipment_id: int, now: datetime) -> datetime | None:
    """Earliest approved start after ``now``, whatever window is being queried."""
    return db.execute(
        select(func.min(Borrow.ApprovedStart))
        .where(Borrow.EquipmentID == equipment_id)
        .where(Borrow.Status == APPROVED)
        .where(Borrow.ApprovedStart > now)
    ).scalar()


def get_availability(db: Session, equipment_id: int, window: TimeWindow, now: datetime | None = None) -> dict:
    now = now or utcnow()
    equipment = _get_equipment_or_404(db, equipment_id)
    loans = _load_holding_loans(db, equipment_id, window)
    if equipment.Status in TERMINAL_EQUIPMENT_STATUSES:
        free_units = 0
    else:
        free_units = count_free_units(equipment.UnitCount, loans, window)
    return {
        "equipmentID": equipment.EquipmentID,
        "unitCount": equipment.UnitCount,
        "start": window.start,
        "end": window.end,
        "freeUnits": free_units,
        "nextReservedFrom": _next_reserved_from(db, equipment_id, now),
    }


def get_booked_days(db: Session, equipment_id: int, start_day: date, days: int) -> list[date]:
    """Calendar days, starting at ``start_day``, on which no unit is free."""
    if days < 1 or days > MAX_BOOKED_DAYS:
        raise InvalidWindow(f"days must be between 1 and {MAX_BOOKED_DAYS}.")
    equipment = _get_equipment_or_404(db, equipment_id)
    first = datetime.combine(start_day, time.min)
    horizon = TimeWindow(first, first + timedelta(days=days))
    loans = _load_holding_loans(db, equipment_id, horizon)

    booked: list[date] = []
    for offset in range(days):
        day_start = first + timedelta(days=offset)
        day = TimeWindow(day_start, day_start + timedelta(days=1))
        if equipment.Status in TERMINAL_EQUIPMENT_STATUSES:
            booked.append(day_start.date())
            continue
        if count_free_units(equipment.UnitCount, loans, day) == 0:
            booked.append(day_start.date())
    return booked
