import os
import tempfile
import unittest
from unittest import mock

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from equipment_loans.tests.factories import NOW, add_equipment, at, make_session, window
from equipment_loans.db.base import Base
from equipment_loans.db.engine import build_engine, build_sessionmaker
from equipment_loans.models.loan_models import Borrow, Deficiency, Equipment
from equipment_loans.schemas.loans import DataRequest, DeficiencyCreate
from equipment_loans.services import loan_service
from equipment_loans.services.availability_service import get_availability
from equipment_loans.services.equipment_service import set_equipment_condition
from equipment_loans.services.errors import (
    Conflict,
    Forbidden,
    InvalidWindow,
    LoanError,
    NoEligibleMembers,
    NotFound,
    TransitionRejected,
)
from equipment_loans.services.intervals import TimeWindow
from equipment_loans.services.loan_lifecycle import ROLE_FACULTY, ROLE_REGULAR, ROLE_STAFF, Actor
from equipment_loans.services.loan_service import LoanRef
from equipment_loans.services.status_sync import sync_equipment_status
from equipment_loans.services.transaction import unit_of_work

STAFF = Actor(id=1, role=ROLE_STAFF)
FACULTY = Actor(id=2, role=ROLE_FACULTY)
ALICE = Actor(id=10, role=ROLE_REGULAR)
BOB = Actor(id=11, role=ROLE_REGULAR)


class ServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.db = make_session()

    def tearDown(self):
        self.db.close()

    def reload(self, loan):
        return self.db.get(Borrow, loan.BorrowID)

    def statuses(self, loans):
        return [self.reload(loan).Status for loan in loans]


class OverlapResolverTests(ServiceTestCase):
    def test_approval_rejects_overlapping_pending_requests(self):
        camera = add_equipment(self.db, units=1)
        first = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        second = loan_service.submit_loan(self.db, camera.EquipmentID, BOB, window(11, 13), now=NOW)
        touching = loan_service.submit_loan(self.db, camera.EquipmentID, BOB, window(12, 14), now=NOW)

        result = loan_service.approve(self.db, LoanRef.single(first.BorrowID), STAFF, now=NOW)

        self.assertEqual(result.auto_rejected_count, 1)
        self.assertEqual([loan.BorrowID for loan in result.updated], [first.BorrowID])
        rejected = self.reload(second)
        self.assertEqual(rejected.Status, "REJECTED")
        self.assertEqual(rejected.RejectedByRole, ROLE_STAFF)
        self.assertEqual(rejected.ApproverID, STAFF.id)
        self.assertEqual(self.reload(touching).Status, "PENDING")

        with self.assertRaises(TransitionRejected) as ctx:
            loan_service.approve(self.db, LoanRef.single(second.BorrowID), STAFF, now=NOW)
        self.assertEqual(ctx.exception.current, "REJECTED")
        self.assertEqual(ctx.exception.target, "APPROVED")

    def test_other_equipment_is_untouched(self):
        camera = add_equipment(self.db, units=1)
        tripod = add_equipment(self.db, units=1, name="Tripod")
        first = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        other = loan_service.submit_loan(self.db, tripod.EquipmentID, BOB, window(10, 12), now=NOW)

        result = loan_service.approve(self.db, LoanRef.single(first.BorrowID), STAFF, now=NOW)

        self.assertEqual(result.auto_rejected_count, 0)
        self.assertEqual(self.reload(other).Status, "PENDING")

    def test_multi_unit_items_still_reject_overlaps(self):
        camera = add_equipment(self.db, units=3)
        first = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        second = loan_service.submit_loan(self.db, camera.EquipmentID, BOB, window(10, 12), now=NOW)

        result = loan_service.approve(self.db, LoanRef.single(first.BorrowID), STAFF, now=NOW)

        self.assertEqual(result.auto_rejected_count, 1)
        self.assertEqual(self.reload(second).Status, "REJECTED")

    def test_window_edit_reruns_resolver(self):
        camera = add_equipment(self.db, units=1)
        first = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        later = loan_service.submit_loan(self.db, camera.EquipmentID, BOB, window(14, 16), now=NOW)
        loan_service.approve(self.db, LoanRef.single(first.BorrowID), STAFF, now=NOW)
        self.assertEqual(self.reload(later).Status, "PENDING")

        result = loan_service.update_approved_window(
            self.db, first.BorrowID, FACULTY, TimeWindow(at(13), at(15)), now=NOW
        )

        self.assertEqual(result.auto_rejected_count, 1)
        self.assertEqual(self.reload(later).Status, "REJECTED")
        self.assertEqual(self.reload(first).ApprovedStart, at(13))

    def test_window_edit_validates_window(self):
        camera = add_equipment(self.db, units=1)
        loan = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        loan_service.approve(self.db, LoanRef.single(loan.BorrowID), STAFF, now=NOW)
        with self.assertRaises(InvalidWindow):
            loan_service.update_approved_window(self.db, loan.BorrowID, STAFF, TimeWindow(at(15), at(13)), now=NOW)


class GroupCoordinatorTests(ServiceTestCase):
    def setUp(self):
        super().setUp()
        self.items = [add_equipment(self.db, units=1, name=name) for name in ("Camera", "Tripod", "Light")]
        self.members = loan_service.submit_group_loan(
            self.db,
            [item.EquipmentID for item in self.items],
            ALICE,
            window(10, 12),
            now=NOW,
        )
        self.group = LoanRef.group(self.members[0].GroupID)

    def test_submission_shares_one_group_id(self):
        self.assertEqual(len(self.members), 3)
        self.assertEqual(len({member.GroupID for member in self.members}), 1)
        self.assertEqual(self.statuses(self.members), ["PENDING"] * 3)

    def test_group_approval_spares_its_own_members(self):
        outsider = loan_service.submit_loan(self.db, self.items[0].EquipmentID, BOB, window(11, 13), now=NOW)

        result = loan_service.approve(self.db, self.group, STAFF, now=NOW)

        self.assertEqual(len(result.updated), 3)
        self.assertEqual(result.auto_rejected_count, 1)
        self.assertEqual(self.statuses(self.members), ["APPROVED"] * 3)
        self.assertEqual(self.reload(outsider).Status, "REJECTED")

    def test_inconsistent_member_aborts_whole_group(self):
        loan_service.approve(self.db, LoanRef.single(self.members[1].BorrowID), STAFF, now=NOW)

        with self.assertRaises(TransitionRejected):
            loan_service.approve(self.db, self.group, STAFF, now=NOW)

        self.assertEqual(self.statuses(self.members), ["PENDING", "APPROVED", "PENDING"])
        self.assertIsNone(self.reload(self.members[0]).ApprovedStart)
        self.assertIsNone(self.reload(self.members[2]).ApprovedStart)

    def test_guard_failure_leaves_every_member_unchanged(self):
        loan_service.approve(self.db, self.group, STAFF, now=NOW)

        with self.assertRaises(Forbidden):
            loan_service.checkout(self.db, self.group, BOB, now=at(10))

        self.assertEqual(self.statuses(self.members), ["APPROVED"] * 3)
        self.assertTrue(all(self.reload(member).CheckoutTime is None for member in self.members))

    def test_closed_members_are_ignored(self):
        loan_service.reject(self.db, LoanRef.single(self.members[1].BorrowID), STAFF, now=NOW)

        result = loan_service.approve(self.db, self.group, STAFF, now=NOW)

        self.assertEqual(len(result.updated), 2)
        self.assertEqual(self.statuses(self.members), ["APPROVED", "REJECTED", "APPROVED"])

    def test_no_eligible_members(self):
        loan_service.cancel(self.db, self.group, ALICE, now=NOW)
        self.assertEqual(self.statuses(self.members), ["CANCELLED"] * 3)

        with self.assertRaises(NoEligibleMembers):
            loan_service.cancel(self.db, self.group, ALICE, now=NOW)

    def test_unknown_group(self):
        with self.assertRaises(NotFound):
            loan_service.approve(self.db, LoanRef.group("missing"), STAFF, now=NOW)

    def test_full_group_round_trip_through_return(self):
        loan_service.approve(self.db, self.group, STAFF, now=NOW)
        loan_service.checkout(self.db, self.group, ALICE, now=at(10))
        self.assertEqual(
            [self.db.get(Equipment, item.EquipmentID).Status for item in self.items],
            ["BORROWED"] * 3,
        )

        loan_service.request_return(
            self.db,
            self.group,
            ALICE,
            data_request=DataRequest(remarks="Raw footage", equipmentIDs=[self.items[0].EquipmentID]),
            now=at(11),
        )
        self.assertEqual(self.statuses(self.members), ["PENDING_RETURN"] * 3)
        self.assertTrue(self.reload(self.members[0]).DataRequested)
        self.assertEqual(self.reload(self.members[0]).DataRequestRemarks, "Raw footage")
        self.assertFalse(self.reload(self.members[1]).DataRequested)

        result = loan_service.finalize_return(
            self.db,
            self.group,
            STAFF,
            condition="Good",
            completed=True,
            now=at(11, 30),
        )
        self.assertEqual(len(result.updated), 3)
        self.assertEqual(self.statuses(self.members), ["COMPLETED"] * 3)
        self.assertTrue(all(self.reload(member).ActualReturnTime == at(11, 30) for member in self.members))
        self.assertEqual(
            [self.db.get(Equipment, item.EquipmentID).Status for item in self.items],
            ["AVAILABLE"] * 3,
        )

    def test_group_checkout_skips_member_already_checked_out(self):
        loan_service.approve(self.db, self.group, STAFF, now=NOW)
        loan_service.checkout(self.db, LoanRef.single(self.members[0].BorrowID), ALICE, now=at(10))

        result = loan_service.checkout(self.db, self.group, ALICE, now=at(10, 15))

        self.assertEqual([loan.BorrowID for loan in result.updated], [m.BorrowID for m in self.members[1:]])
        self.assertEqual(self.statuses(self.members), ["ACTIVE"] * 3)
        self.assertEqual(self.reload(self.members[0]).CheckoutTime, at(10))

    def test_group_return_request_skips_member_already_returning(self):
        loan_service.approve(self.db, self.group, STAFF, now=NOW)
        loan_service.checkout(self.db, self.group, ALICE, now=at(10))
        loan_service.request_return(self.db, LoanRef.single(self.members[2].BorrowID), ALICE, now=at(10, 30))

        result = loan_service.request_return(self.db, self.group, ALICE, now=at(11))

        self.assertEqual(len(result.updated), 2)
        self.assertEqual(self.statuses(self.members), ["PENDING_RETURN"] * 3)

    def test_group_checkout_still_refuses_member_left_behind(self):
        for member in self.members[:2]:
            loan_service.approve(self.db, LoanRef.single(member.BorrowID), STAFF, now=NOW)

        with self.assertRaises(TransitionRejected) as caught:
            loan_service.checkout(self.db, self.group, ALICE, now=at(10))

        self.assertEqual(caught.exception.current, "PENDING")
        self.assertIn(f"Loan {self.members[2].BorrowID}", caught.exception.message)
        self.assertEqual(self.statuses(self.members), ["APPROVED", "APPROVED", "PENDING"])

    def test_group_deficiency_lands_on_the_named_member(self):
        loan_service.approve(self.db, self.group, STAFF, now=NOW)
        loan_service.checkout(self.db, self.group, ALICE, now=at(10))
        loan_service.request_return(self.db, self.group, ALICE, now=at(11))

        with self.assertRaises(LoanError):
            loan_service.finalize_return(
                self.db, self.group, STAFF, deficiency=DeficiencyCreate(type="DAMAGE"), now=at(11, 30)
            )
        self.assertEqual(self.statuses(self.members), ["PENDING_RETURN"] * 3)

        with self.assertRaises(NotFound):
            loan_service.finalize_return(
                self.db, self.group, STAFF, deficiency=DeficiencyCreate(type="DAMAGE", equipmentID=999), now=at(11, 30)
            )

        tripod = self.items[1].EquipmentID
        loan_service.finalize_return(
            self.db,
            self.group,
            STAFF,
            deficiency=DeficiencyCreate(type="DAMAGE", description="Bent leg", equipmentID=tripod),
            now=at(11, 30),
        )
        self.assertEqual(self.statuses(self.members), ["RETURNED"] * 3)
        tagged = self.db.execute(select(Deficiency)).scalars().all()
        self.assertEqual([row.BorrowID for row in tagged], [self.members[1].BorrowID])


class SingleLoanFlowTests(ServiceTestCase):
    def test_submit_validation(self):
        camera = add_equipment(self.db, units=1)
        archived = add_equipment(self.db, units=1, status="ARCHIVED")
        with self.assertRaises(InvalidWindow):
            loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, TimeWindow(at(12), at(10)), now=NOW)
        with self.assertRaises(NotFound):
            loan_service.submit_loan(self.db, archived.EquipmentID, ALICE, window(10, 12), now=NOW)
        with self.assertRaises(NotFound):
            loan_service.submit_loan(self.db, 999, ALICE, window(10, 12), now=NOW)
        with self.assertRaises(Forbidden):
            loan_service.submit_loan(self.db, camera.EquipmentID, Actor(id=5, role="GUEST"), window(10, 12), now=NOW)
        self.assertEqual(self.db.execute(select(Borrow)).scalars().all(), [])

    def test_checkout_return_and_deficiency(self):
        camera = add_equipment(self.db, units=1)
        loan = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        ref = LoanRef.single(loan.BorrowID)

        with self.assertRaises(TransitionRejected) as ctx:
            loan_service.checkout(self.db, ref, ALICE, now=at(10))
        self.assertEqual((ctx.exception.current, ctx.exception.target), ("PENDING", "ACTIVE"))

        loan_service.approve(self.db, ref, STAFF, now=NOW)
        self.assertEqual(self.db.get(Equipment, camera.EquipmentID).NextReservedFrom, at(10))
        loan_service.checkout(self.db, ref, ALICE, now=at(10))
        self.assertEqual(self.db.get(Equipment, camera.EquipmentID).Status, "BORROWED")

        with self.assertRaises(Forbidden):
            loan_service.record_deficiency(self.db, loan.BorrowID, ALICE, DeficiencyCreate(type="DAMAGE"), now=at(11))

        loan_service.request_return(self.db, ref, ALICE, now=at(11))
        self.assertEqual(self.db.get(Equipment, camera.EquipmentID).Status, "AVAILABLE")

        loan_service.finalize_return(
            self.db,
            ref,
            STAFF,
            deficiency=DeficiencyCreate(type="DAMAGE", description="Cracked lens"),
            condition="Damaged",
            remarks="Lens hood missing",
            now=at(11, 45),
        )
        returned = self.reload(loan)
        self.assertEqual(returned.Status, "RETURNED")
        self.assertEqual(returned.ReturnCondition, "Damaged")
        self.assertEqual(returned.ReturnRemarks, "Lens hood missing")
        deficiencies = self.db.execute(select(Deficiency)).scalars().all()
        self.assertEqual(len(deficiencies), 1)
        self.assertEqual(deficiencies[0].UserID, ALICE.id)
        self.assertEqual(deficiencies[0].TaggedByID, STAFF.id)
        self.assertEqual(deficiencies[0].Status, "UNRESOLVED")

    def test_deficiency_needs_a_checked_out_or_returned_loan(self):
        camera = add_equipment(self.db, units=1)
        loan = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        with self.assertRaises(TransitionRejected):
            loan_service.record_deficiency(self.db, loan.BorrowID, STAFF, DeficiencyCreate(type="LOSS"), now=NOW)

    def test_delete_only_while_pending(self):
        camera = add_equipment(self.db, units=1)
        pending = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        approved = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(14, 16), now=NOW)
        loan_service.approve(self.db, LoanRef.single(approved.BorrowID), STAFF, now=NOW)

        with self.assertRaises(Forbidden):
            loan_service.delete_pending(self.db, pending.BorrowID, BOB, now=NOW)
        loan_service.delete_pending(self.db, pending.BorrowID, ALICE, now=NOW)
        self.assertIsNone(self.db.get(Borrow, pending.BorrowID))

        with self.assertRaises(TransitionRejected):
            loan_service.delete_pending(self.db, approved.BorrowID, ALICE, now=NOW)

    def test_overdue_sweep_and_lazy_read(self):
        camera = add_equipment(self.db, units=1)
        first = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        second = loan_service.submit_loan(self.db, camera.EquipmentID, BOB, window(13, 14), now=NOW)
        for loan in (first, second):
            loan_service.approve(self.db, LoanRef.single(loan.BorrowID), STAFF, now=NOW)
        loan_service.checkout(self.db, LoanRef.single(first.BorrowID), ALICE, now=at(10))

        self.assertEqual(loan_service.get_loan(self.db, first.BorrowID, now=at(11)).Status, "ACTIVE")
        self.assertEqual(loan_service.mark_overdue_loans(self.db, now=at(12, 30)), 1)
        self.assertEqual(self.reload(first).Status, "OVERDUE")
        self.assertEqual(loan_service.mark_overdue_loans(self.db, now=at(12, 30)), 0)

        loan_service.checkout(self.db, LoanRef.single(second.BorrowID), BOB, now=at(13))
        self.assertEqual(loan_service.get_loan(self.db, second.BorrowID, now=at(15)).Status, "OVERDUE")

    def test_write_races_surface_as_conflict(self):
        with self.assertRaises(Conflict):
            with unit_of_work(self.db):
                raise StaleDataError("row changed")


class ConcurrentWriterTests(unittest.TestCase):
    """Two sessions on one file-backed database, interleaved by hand."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        path = os.path.join(self.tmpdir.name, "loans.db")
        self.engine = build_engine(f"sqlite+pysqlite:///{path}")
        Base.metadata.create_all(self.engine)
        self.Session = build_sessionmaker(self.engine)
        self.first = self.Session()
        self.second = self.Session()

    def tearDown(self):
        self.first.close()
        self.second.close()
        self.engine.dispose()
        self.tmpdir.cleanup()

    def read_status(self, loan_id):
        with self.Session() as fresh:
            return fresh.get(Borrow, loan_id).Status

    def test_second_overlapping_approval_is_refused(self):
        camera = add_equipment(self.first, units=1)
        mine = loan_service.submit_loan(self.first, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        theirs = loan_service.submit_loan(self.first, camera.EquipmentID, BOB, window(11, 13), now=NOW)

        stale_loan = self.second.get(Borrow, theirs.BorrowID)
        self.second.get(Equipment, camera.EquipmentID)
        self.assertEqual(stale_loan.Status, "PENDING")

        loan_service.approve(self.first, LoanRef.single(mine.BorrowID), STAFF, now=NOW)

        with self.assertRaises((TransitionRejected, Conflict)):
            loan_service.approve(self.second, LoanRef.single(theirs.BorrowID), FACULTY, now=NOW)

        self.assertEqual(self.read_status(mine.BorrowID), "APPROVED")
        self.assertEqual(self.read_status(theirs.BorrowID), "REJECTED")

    def test_equipment_changed_mid_operation_raises_conflict(self):
        camera = add_equipment(self.first, units=1)
        loan = loan_service.submit_loan(self.first, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        real_lock = loan_service.lock_equipment

        def lock_then_relabel(db, equipment_ids):
            locked = real_lock(db, equipment_ids)
            other = self.first.get(Equipment, camera.EquipmentID)
            other.Description = "Relabelled"
            self.first.commit()
            return locked

        with mock.patch.object(loan_service, "lock_equipment", side_effect=lock_then_relabel):
            with self.assertRaises(Conflict):
                loan_service.approve(self.second, LoanRef.single(loan.BorrowID), STAFF, now=NOW)

        self.assertEqual(self.read_status(loan.BorrowID), "PENDING")
        with self.Session() as fresh:
            self.assertEqual(fresh.get(Equipment, camera.EquipmentID).Description, "Relabelled")


class EquipmentStatusTests(ServiceTestCase):
    def test_sync_is_idempotent(self):
        camera = add_equipment(self.db, units=1)
        loan = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        loan_service.approve(self.db, LoanRef.single(loan.BorrowID), STAFF, now=NOW)

        first = sync_equipment_status(self.db, camera.EquipmentID, at(10, 30))
        snapshot = (first.Status, first.NextReservedFrom)
        second = sync_equipment_status(self.db, camera.EquipmentID, at(10, 30))
        self.assertEqual((second.Status, second.NextReservedFrom), snapshot)
        self.assertEqual(snapshot, ("RESERVED", None))
        self.db.rollback()

    def test_condition_overrides_and_clears(self):
        camera = add_equipment(self.db, units=2)

        set_equipment_condition(self.db, camera.EquipmentID, "DEFECTIVE", STAFF, now=NOW)
        self.assertEqual(get_availability(self.db, camera.EquipmentID, window(9, 17))["freeUnits"], 0)

        loan = loan_service.submit_loan(self.db, camera.EquipmentID, ALICE, window(10, 12), now=NOW)
        loan_service.approve(self.db, LoanRef.single(loan.BorrowID), STAFF, now=NOW)
        self.assertEqual(self.db.get(Equipment, camera.EquipmentID).Status, "DEFECTIVE")

        cleared = set_equipment_condition(self.db, camera.EquipmentID, None, FACULTY, now=NOW)
        self.assertEqual(cleared.Status, "AVAILABLE")
        self.assertEqual(cleared.NextReservedFrom, at(10))

    def test_condition_rules(self):
        camera = add_equipment(self.db, units=1)
        with self.assertRaises(Forbidden):
            set_equipment_condition(self.db, camera.EquipmentID, "DEFECTIVE", ALICE, now=NOW)
        with self.assertRaises(TransitionRejected):
            set_equipment_condition(self.db, camera.EquipmentID, "BORROWED", STAFF, now=NOW)
        with self.assertRaises(NotFound):
            set_equipment_condition(self.db, 999, "DEFECTIVE", STAFF, now=NOW)
        self.assertEqual(self.db.get(Equipment, camera.EquipmentID).Status, "AVAILABLE")


if __name__ == "__main__":
    unittest.main()
