#!/usr/bin/env python3
"""Database overview and integrity checks for the equipment loan store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import and_, func, inspect, or_, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from equipment_loans.db.engine import build_engine
from equipment_loans.models.loan_models import Borrow, Deficiency, Equipment
from equipment_loans.services.intervals import utcnow
from equipment_loans.services.loan_lifecycle import APPROVED, CHECKED_OUT_STATES, COMPLETED, RETURNED
from equipment_loans.services.status_sync import derive_equipment_status


EXPECTED_TABLES = ["Equipment", "Borrows", "Deficiencies"]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Equipment": [
        "EquipmentID",
        "EquipmentName",
        "UnitCount",
        "Status",
        "NextReservedFrom",
        "VersionID",
    ],
    "Borrows": [
        "BorrowID",
        "GroupID",
        "EquipmentID",
        "RequesterID",
        "RequestedStart",
        "RequestedEnd",
        "ApprovedStart",
        "ApprovedEnd",
        "CheckoutTime",
        "ActualReturnTime",
        "Status",
        "RejectedByRole",
        "ApproverID",
    ],
    "Deficiencies": ["DeficiencyID", "BorrowID", "UserID", "TaggedByID", "Type", "Status"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = _table_exists(engine, table)
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if not _table_exists(engine, table):
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(name: str, count) -> CheckResult:
    return CheckResult(name, int(count or 0) == 0, f"count={int(count or 0)}")


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []
    if not all(_table_exists(engine, table) for table in ("Equipment", "Borrows")):
        return checks

    with Session(engine) as db:
        half_window = db.execute(
            select(func.count())
            .select_from(Borrow)
            .where(
                or_(
                    and_(Borrow.ApprovedStart.is_(None), Borrow.ApprovedEnd.is_not(None)),
                    and_(Borrow.ApprovedStart.is_not(None), Borrow.ApprovedEnd.is_(None)),
                )
            )
        ).scalar()
        checks.append(_count_check("borrows:approved_window_half_set", half_window))

        inverted = db.execute(
            select(func.count())
            .select_from(Borrow)
            .where(Borrow.RequestedEnd <= Borrow.RequestedStart)
        ).scalar()
        checks.append(_count_check("borrows:requested_window_inverted", inverted))

        closed = {RETURNED, COMPLETED}
        return_time_mismatch = db.execute(
            select(func.count())
            .select_from(Borrow)
            .where(
                (Borrow.Status.in_(closed) & Borrow.ActualReturnTime.is_(None))
                | (Borrow.Status.not_in(closed) & Borrow.ActualReturnTime.is_not(None))
            )
        ).scalar()
        checks.append(_count_check("borrows:return_time_vs_status", return_time_mismatch))

        orphan_equipment = db.execute(
            select(func.count())
            .select_from(Borrow)
            .outerjoin(Equipment, Equipment.EquipmentID == Borrow.EquipmentID)
            .where(Equipment.EquipmentID.is_(None))
        ).scalar()
        checks.append(_count_check("borrows:orphan_equipmentid", orphan_equipment))

        checks.append(_status_drift_check(db))
    return checks


def _status_drift_check(db: Session) -> CheckResult:
    """Compare stored equipment status with a fresh derivation, without writing."""
    now = utcnow()
    drifted: list[str] = []
    for equipment in db.execute(select(Equipment).order_by(Equipment.EquipmentID)).scalars():
        loans = db.execute(
            select(Borrow)
            .where(Borrow.EquipmentID == equipment.EquipmentID)
            .where(Borrow.Status.in_(CHECKED_OUT_STATES | {APPROVED}))
        ).scalars().all()
        expected, _ = derive_equipment_status(equipment.UnitCount, equipment.Status, loans, now)
        if expected != equipment.Status:
            drifted.append(f"{equipment.EquipmentID}:{equipment.Status}->{expected}")
    db.rollback()
    return CheckResult(
        "equipment:status_drift",
        not drifted,
        "ok" if not drifted else f"drifted={','.join(drifted)}",
    )


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f'SELECT COUNT(*) FROM "{table}"')
        print(f"{table}: {int(count or 0)}")


def _print_status_breakdown(engine: Engine) -> None:
    _print_section("Loan Status Breakdown")
    if not _table_exists(engine, "Borrows"):
        print("Borrows: missing")
        return
    with Session(engine) as db:
        rows = db.execute(
            select(Borrow.Status, func.count()).group_by(Borrow.Status).order_by(Borrow.Status)
        ).all()
    for status, count in rows:
        print(f"{status}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    with Session(engine) as db:
        if _table_exists(engine, "Borrows"):
            print("Borrows (recent):")
            rows = db.execute(
                select(Borrow.BorrowID, Borrow.GroupID, Borrow.EquipmentID, Borrow.Status, Borrow.ApprovedStart)
                .order_by(Borrow.BorrowID.desc())
                .limit(sample_size)
            ).all()
            for row in rows:
                print(f"  - {tuple(row)}")
        if _table_exists(engine, "Deficiencies"):
            print("Deficiencies (recent):")
            rows = db.execute(
                select(Deficiency.DeficiencyID, Deficiency.BorrowID, Deficiency.Type, Deficiency.Status)
                .order_by(Deficiency.DeficiencyID.desc())
                .limit(sample_size)
            ).all()
            for row in rows:
                print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Equipment loans DB overview")
    parser.add_argument("--db-url", default=os.environ.get("LOANS_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LOANS_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = build_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_status_breakdown(engine)
    _print_samples(engine, args.samples)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
