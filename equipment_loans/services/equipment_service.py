from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_loans.models.loan_models import Equipment
from equipment_loans.services.errors import Forbidden, NotFound, TransitionRejected
from equipment_loans.services.intervals import utcnow
from equipment_loans.services.loan_lifecycle import Actor
from equipment_loans.services.status_sync import (
    AVAILABLE,
    TERMINAL_EQUIPMENT_STATUSES,
    lock_equipment,
    sync_equipment_status,
)
from equipment_loans.services.transaction import unit_of_work

LOGGER = logging.getLogger("equipment_loans.lifecycle")


def _parse_seq(serial_number: str) -> Optional[int]:
    parts = serial_number.split("-")
    if len(parts) != 2:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def generate_next_registration_number(db: Session) -> str:
    year = date.today().year
    prefix = f"EQ{year}-"

    existing = db.execute(
        select(Equipment.SerialNumber).where(Equipment.SerialNumber.startswith(prefix))
    ).scalars().all()

    max_seq = 0
    for serial in existing:
        if not serial:
            continue
        seq = _parse_seq(serial)
        if seq and seq > max_seq:
            max_seq = seq

    return f"{prefix}{max_seq + 1:04d}"


def create_equipment(
    db: Session,
    name: str,
    actor: Actor,
    unit_count: int = 1,
    serial_number: str | None = None,
    description: str | None = None,
    now: datetime | None = None,
) -> Equipment:
    if not actor.is_privileged:
        raise Forbidden("Only staff or faculty can register equipment.")
    now = now or utcnow()
    equipment = Equipment(
        EquipmentName=name.strip(),
        SerialNumber=serial_number or generate_next_registration_number(db),
        Description=description,
        UnitCount=max(1, int(unit_count or 1)),
        Status=AVAILABLE,
        CreatedDate=now,
        UpdatedDate=now,
    )
    with unit_of_work(db):
        db.add(equipment)
        db.flush()
    LOGGER.info(
        "Equipment registered equipment_id=%s serial=%s units=%s actor=%s",
        equipment.EquipmentID,
        equipment.SerialNumber,
        equipment.UnitCount,
        actor.id,
    )
    return equipment


def get_equipment(db: Session, equipment_id: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFound(f"Equipment {equipment_id} not found.")
    return equipment


def set_equipment_condition(
    db: Session,
    equipment_id: int,
    status: str | None,
    actor: Actor,
    now: datetime | None = None,
) -> Equipment:
    """Set or clear the terminal condition of an equipment item.

    ``status=None`` clears a terminal condition and hands the item back to the
    synchronizer.
    """
    if not actor.is_privileged:
        raise Forbidden("Only staff or faculty can change equipment condition.")

    now = now or utcnow()
    with unit_of_work(db):
        locked = lock_equipment(db, [equipment_id])
        equipment = locked.get(int(equipment_id))
        if not equipment:
            raise NotFound(f"Equipment {equipment_id} not found.")

        previous = equipment.Status
        if status is not None and status not in TERMINAL_EQUIPMENT_STATUSES:
            raise TransitionRejected(
                previous,
                status,
                f"Equipment status {status} is derived from loans and cannot be set directly.",
            )
        if status is None:
            equipment.Status = AVAILABLE
            equipment = sync_equipment_status(db, equipment.EquipmentID, now)
        else:
            equipment.Status = status
            equipment.UpdatedDate = now
    LOGGER.info(
        "Equipment condition equipment_id=%s from=%s to=%s actor=%s",
        equipment.EquipmentID,
        previous,
        equipment.Status,
        actor.id,
    )
    return equipment


def serialize_equipment(equipment: Equipment) -> dict:
    return {
        "equipmentID": equipment.EquipmentID,
        "equipmentName": equipment.EquipmentName,
        "serialNumber": equipment.SerialNumber,
        "description": equipment.Description,
        "unitCount": equipment.UnitCount,
        "status": equipment.Status,
        "nextReservedFrom": equipment.NextReservedFrom,
    }
