from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_loans.models.loan_models import Borrow
from equipment_loans.services.loan_lifecycle import PENDING, Actor, apply_transition

LOGGER = logging.getLogger("equipment_loans.lifecycle")


def find_overlapping_pending(
    db: Session,
    loan: Borrow,
    exclude_ids: Iterable[int] = (),
) -> list[Borrow]:
    excluded = {int(value) for value in exclude_ids}
    excluded.add(int(loan.BorrowID))
    db.flush()
    stmt = (
        select(Borrow)
        .where(Borrow.EquipmentID == loan.EquipmentID)
        .where(Borrow.Status == PENDING)
        .where(Borrow.BorrowID.not_in(excluded))
        .where(Borrow.RequestedStart < loan.ApprovedEnd)
        .where(Borrow.RequestedEnd > loan.ApprovedStart)
        .order_by(Borrow.BorrowID)
    )
    return [row for row in db.execute(stmt).scalars().all() if row.Status == PENDING]


def reject_overlapping_pending(
    db: Session,
    loan: Borrow,
    approver: Actor,
    now: datetime,
    exclude_ids: Iterable[int] = (),
) -> list[Borrow]:
    """Reject every other PENDING request on the same equipment that overlaps the approved window.

    Multi-unit equipment gets the same blanket rejection; pending requests are
    provisional and can be resubmitted.
    """
    if loan.ApprovedStart is None or loan.ApprovedEnd is None:
        return []
    competing = find_overlapping_pending(db, loan, exclude_ids)
    for row in competing:
        apply_transition(row, "reject", approver, now=now)
    if competing:
        LOGGER.info(
            "Auto-rejected overlapping requests approved_loan_id=%s equipment_id=%s count=%s ids=%s",
            loan.BorrowID,
            loan.EquipmentID,
            len(competing),
            ",".join(str(row.BorrowID) for row in competing),
        )
    return competing
