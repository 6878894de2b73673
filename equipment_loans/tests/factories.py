import os
from datetime import datetime, timedelta

os.environ.setdefault("LOANS_DB_URL", "sqlite+pysqlite:///:memory:")

from equipment_loans.db.base import Base
from equipment_loans.db.engine import build_engine, build_sessionmaker
from equipment_loans.models.loan_models import Borrow, Equipment
from equipment_loans.services.intervals import TimeWindow

# Monday 2 March 2026; NOW is the Sunday morning before.
MONDAY = datetime(2026, 3, 2)
NOW = datetime(2026, 3, 1, 8, 0)


def at(hour: int, minute: int = 0, day_offset: int = 0) -> datetime:
    return MONDAY + timedelta(days=day_offset, hours=hour, minutes=minute)


def window(start_hour: int, end_hour: int, day_offset: int = 0) -> TimeWindow:
    return TimeWindow(at(start_hour, day_offset=day_offset), at(end_hour, day_offset=day_offset))


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return build_sessionmaker(engine)()


def add_equipment(db, units: int = 1, status: str = "AVAILABLE", name: str = "Camera") -> Equipment:
    equipment = Equipment(
        EquipmentName=name,
        UnitCount=units,
        Status=status,
        CreatedDate=NOW,
        UpdatedDate=NOW,
    )
    db.add(equipment)
    db.commit()
    return equipment


def add_loan(db, equipment: Equipment, requester_id: int, requested: TimeWindow, status: str = "PENDING", **fields) -> Borrow:
    loan = Borrow(
        EquipmentID=equipment.EquipmentID,
        RequesterID=requester_id,
        RequestedStart=requested.start,
        RequestedEnd=requested.end,
        Status=status,
        CreatedDate=NOW,
        UpdatedDate=NOW,
        **fields,
    )
    db.add(loan)
    db.commit()
    return loan
