import unittest

from equipment_loans.tests.factories import add_equipment, add_loan, make_session, window
from equipment_loans.scripts import db_overview


class DbOverviewTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.engine = self.db.get_bind()

    def tearDown(self):
        self.db.close()

    def checks_by_name(self):
        return {row.name: row for row in db_overview.run_integrity_checks(self.engine)}

    def test_clean_store_passes(self):
        camera = add_equipment(self.db, units=1)
        add_loan(self.db, camera, 10, window(10, 12))
        checks = self.checks_by_name()
        self.assertTrue(all(row.ok for row in checks.values()), checks)
        self.assertIn("equipment:status_drift", checks)

    def test_detects_inconsistent_rows(self):
        camera = add_equipment(self.db, units=1, status="BORROWED")
        add_loan(self.db, camera, 10, window(10, 12), status="RETURNED")
        add_loan(self.db, camera, 11, window(13, 14), status="APPROVED", ApprovedStart=window(13, 14).start)

        checks = self.checks_by_name()
        self.assertFalse(checks["equipment:status_drift"].ok)
        self.assertFalse(checks["borrows:return_time_vs_status"].ok)
        self.assertFalse(checks["borrows:approved_window_half_set"].ok)
        self.assertTrue(checks["borrows:requested_window_inverted"].ok)

    def test_main_requires_a_url(self):
        self.assertEqual(db_overview.main(["--db-url", ""]), 2)

    def test_existence_checks(self):
        rows = db_overview._run_existence_checks(self.engine)
        self.assertEqual([row.ok for row in rows], [True, True, True])


if __name__ == "__main__":
    unittest.main()
