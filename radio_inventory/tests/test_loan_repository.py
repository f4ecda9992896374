import itertools
import unittest
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest import mock

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from inventory_fixtures import InventoryStore

from models.inventory_models import Device
from scripts.loan_integrity_check import run_invariant_checks
from services import loan_repository
from services.loan_errors import (
    LoanConflictError,
    LoanInternalError,
    LoanNotFoundError,
    LoanTimeoutError,
)
from services.loan_repository import LoanRepository, _return_timestamp


class LoanScenarioTests(unittest.TestCase):
    def setUp(self):
        self.store = InventoryStore()
        self.repository = LoanRepository(self.store.session_factory)
        self.store.add_device("dev-1")

    def tearDown(self):
        self.store.close()

    def test_create_marks_available_device_on_loan(self):
        loan = self.repository.create("dev-1", "Max")

        self.assertEqual(loan["deviceId"], "dev-1")
        self.assertEqual(loan["borrowerName"], "Max")
        self.assertIsNotNone(loan["borrowedAt"])
        self.assertIsNone(loan["returnedAt"])
        self.assertIsNone(loan["returnNote"])
        self.assertEqual(loan["device"], {"id": "dev-1", "callSign": "Florian dev-1", "status": "ON_LOAN"})
        self.assertEqual(self.store.device_status("dev-1"), "ON_LOAN")

    def test_second_create_on_loaned_device_conflicts(self):
        self.repository.create("dev-1", "Max")

        with self.assertRaises(LoanConflictError) as ctx:
            self.repository.create("dev-1", "Anna")

        self.assertEqual(ctx.exception.reason, "device_not_available")
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(self.store.loan_count("dev-1"), 1)

    def test_create_on_defect_device_conflicts(self):
        self.store.add_device("dev-2", status="DEFECT")

        with self.assertRaises(LoanConflictError):
            self.repository.create("dev-2", "Max")
        self.assertEqual(self.store.device_status("dev-2"), "DEFECT")

    def test_create_on_missing_device_is_not_found(self):
        with self.assertRaises(LoanNotFoundError) as ctx:
            self.repository.create("dev-missing", "X")
        self.assertEqual(ctx.exception.reason, "device_not_found")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_return_unknown_loan_is_not_found(self):
        with self.assertRaises(LoanNotFoundError) as ctx:
            self.repository.return_loan("loan-404", None)
        self.assertEqual(ctx.exception.reason, "loan_not_found")

    def test_second_return_conflicts(self):
        loan = self.repository.create("dev-1", "Max")
        self.repository.return_loan(loan["id"], None)

        with self.assertRaises(LoanConflictError) as ctx:
            self.repository.return_loan(loan["id"], None)

        self.assertEqual(ctx.exception.reason, "already_returned")
        self.assertEqual(self.store.device_status("dev-1"), "AVAILABLE")

    def test_round_trip_restores_device(self):
        loan = self.repository.create("dev-1", "Max")
        returned = self.repository.return_loan(loan["id"], "ok")

        self.assertEqual(returned["id"], loan["id"])
        self.assertEqual(returned["returnNote"], "ok")
        self.assertIsNotNone(returned["returnedAt"])
        self.assertLess(returned["borrowedAt"], returned["returnedAt"])
        self.assertEqual(returned["device"]["status"], "AVAILABLE")
        self.assertEqual(self.store.device_status("dev-1"), "AVAILABLE")

        stored = self.store.get_loan(loan["id"])
        self.assertEqual(stored.ReturnNote, "ok")
        self.assertIsNotNone(stored.ReturnedAt)

    def test_device_can_be_loaned_again_after_return(self):
        first = self.repository.create("dev-1", "Max")
        self.repository.return_loan(first["id"], None)

        second = self.repository.create("dev-1", "Anna")

        self.assertNotEqual(first["id"], second["id"])
        self.assertEqual(self.store.loan_count("dev-1"), 2)
        self.assertEqual(self.store.loan_count("dev-1", active_only=True), 1)

    def test_find_active_tracks_create_and_return(self):
        loan = self.repository.create("dev-1", "Max")

        active = self.repository.find_active()
        self.assertEqual(len(active), 1)
        self.assertEqual(active[0]["deviceId"], "dev-1")
        self.assertEqual(active[0]["device"]["status"], "ON_LOAN")

        self.repository.return_loan(loan["id"], None)
        self.assertEqual(self.repository.find_active(), [])


class FindActivePaginationTests(unittest.TestCase):
    def setUp(self):
        self.store = InventoryStore()
        self.repository = LoanRepository(self.store.session_factory)
        self.loan_ids = []
        for index in range(4):
            device_id = self.store.add_device(f"dev-{index}")
            self.loan_ids.append(self.repository.create(device_id, f"Borrower {index}")["id"])

    def tearDown(self):
        self.store.close()

    def test_newest_first(self):
        active = self.repository.find_active()
        self.assertEqual([row["id"] for row in active], list(reversed(self.loan_ids)))

    def test_take_and_skip(self):
        page = self.repository.find_active(take=2, skip=1)
        self.assertEqual([row["id"] for row in page], [self.loan_ids[2], self.loan_ids[1]])

    def test_take_is_capped_at_max_page_size(self):
        with mock.patch.object(loan_repository, "MAX_PAGE_SIZE", 3):
            self.assertEqual(len(self.repository.find_active(take=50)), 3)

    def test_negative_skip_is_clamped(self):
        self.assertEqual(len(self.repository.find_active(skip=-5)), 4)


class LoanFailureTests(unittest.TestCase):
    def setUp(self):
        self.store = InventoryStore()
        self.repository = LoanRepository(self.store.session_factory)
        self.store.add_device("dev-1")

    def tearDown(self):
        self.store.close()

    def test_lost_race_on_create_persists_nothing(self):
        self.repository.create("dev-1", "Max")
        stale = SimpleNamespace(DeviceID="dev-1", Status="AVAILABLE")

        with mock.patch.object(self.repository, "_find_device_snapshot", return_value=stale):
            with self.assertRaises(LoanConflictError) as ctx:
                self.repository.create("dev-1", "Anna")

        self.assertEqual(ctx.exception.reason, "device_just_loaned")
        self.assertEqual(self.store.loan_count("dev-1"), 1)

    def test_non_canonical_status_is_not_available(self):
        snapshot = SimpleNamespace(DeviceID="dev-1", Status="available")

        with mock.patch.object(self.repository, "_find_device_snapshot", return_value=snapshot):
            with self.assertRaises(LoanConflictError) as ctx:
                self.repository.create("dev-1", "Max")

        self.assertEqual(ctx.exception.reason, "device_not_available")

    def test_store_rejects_unknown_device_status(self):
        with self.assertRaises(IntegrityError):
            self.store.add_device("dev-9", status="available")

    def test_failed_insert_rolls_back_device_claim(self):
        with mock.patch.object(
            self.repository,
            "_insert_loan",
            side_effect=SQLAlchemyError("insert into Loans failed: disk I/O error"),
        ):
            with self.assertLogs("radio_inventory.loans", level="ERROR"):
                with self.assertRaises(LoanInternalError) as ctx:
                    self.repository.create("dev-1", "Max")

        self.assertNotIn("disk", ctx.exception.message)
        self.assertEqual(self.store.device_status("dev-1"), "AVAILABLE")
        self.assertEqual(self.store.loan_count(), 0)

    def test_return_after_admin_override_conflicts(self):
        loan = self.repository.create("dev-1", "Max")
        self.store.force_device_status("dev-1", "MAINTENANCE")

        with self.assertLogs("radio_inventory.loans", level="WARNING") as logs:
            with self.assertRaises(LoanConflictError) as ctx:
                self.repository.return_loan(loan["id"], "ok")

        self.assertEqual(ctx.exception.reason, "device_status_changed")
        self.assertEqual(ctx.exception.cause, "external_override:MAINTENANCE")
        self.assertFalse(any(record.levelname == "ERROR" for record in logs.records))
        self.assertIsNone(self.store.get_loan(loan["id"]).ReturnedAt)

    def test_return_when_device_already_released_reports_duplicate(self):
        loan = self.repository.create("dev-1", "Max")
        self.store.force_device_status("dev-1", "AVAILABLE")

        with self.assertRaises(LoanConflictError) as ctx:
            self.repository.return_loan(loan["id"], None)

        self.assertEqual(ctx.exception.cause, "duplicate_return")

    def test_lost_race_on_loan_update_rolls_back_device(self):
        loan = self.repository.create("dev-1", "Max")

        with mock.patch.object(self.repository, "_close_loan", return_value=False):
            with self.assertRaises(LoanConflictError) as ctx:
                self.repository.return_loan(loan["id"], None)

        self.assertEqual(ctx.exception.reason, "loan_just_returned")
        self.assertEqual(self.store.device_status("dev-1"), "ON_LOAN")

    def test_missing_return_time_is_internal_error(self):
        loan = self.repository.create("dev-1", "Max")

        with mock.patch.object(self.repository, "_close_loan", return_value=True):
            with self.assertLogs("radio_inventory.loans", level="ERROR"):
                with self.assertRaises(LoanInternalError) as ctx:
                    self.repository.return_loan(loan["id"], None)

        self.assertEqual(ctx.exception.reason, "return_not_recorded")
        self.assertEqual(self.store.device_status("dev-1"), "ON_LOAN")
        self.assertIsNone(self.store.get_loan(loan["id"]).ReturnedAt)

    def test_create_past_deadline_times_out_and_rolls_back(self):
        slow_clock = itertools.count(0, 30).__next__
        repository = LoanRepository(self.store.session_factory, transaction_timeout_ms=25000, clock=slow_clock)

        with self.assertLogs("radio_inventory.loans", level="ERROR"):
            with self.assertRaises(LoanTimeoutError) as ctx:
                repository.create("dev-1", "Max")

        self.assertEqual(ctx.exception.status_code, 408)
        self.assertEqual(self.store.device_status("dev-1"), "AVAILABLE")
        self.assertEqual(self.store.loan_count(), 0)

    def test_return_past_deadline_times_out_and_rolls_back(self):
        loan = self.repository.create("dev-1", "Max")
        slow_clock = itertools.count(0, 30).__next__
        repository = LoanRepository(self.store.session_factory, transaction_timeout_ms=25000, clock=slow_clock)

        with self.assertLogs("radio_inventory.loans", level="ERROR"):
            with self.assertRaises(LoanTimeoutError):
                repository.return_loan(loan["id"], None)

        self.assertEqual(self.store.device_status("dev-1"), "ON_LOAN")
        self.assertIsNone(self.store.get_loan(loan["id"]).ReturnedAt)


class InvariantTests(unittest.TestCase):
    def setUp(self):
        self.store = InventoryStore()
        self.repository = LoanRepository(self.store.session_factory)
        for device_id in ("dev-1", "dev-2", "dev-3"):
            self.store.add_device(device_id)
        self.store.add_device("dev-4", status="MAINTENANCE")

    def tearDown(self):
        self.store.close()

    def test_invariants_hold_after_mixed_sequence(self):
        first = self.repository.create("dev-1", "Max")
        second = self.repository.create("dev-2", "Anna")
        self.repository.return_loan(first["id"], "ok")
        self.repository.create("dev-1", "Tim")
        self.repository.return_loan(second["id"], None)
        self.repository.create("dev-3", "Lea")

        failures = [row for row in run_invariant_checks(self.store.engine) if not row.ok]
        self.assertEqual(failures, [])

    def test_checks_flag_device_on_loan_without_loan(self):
        self.store.force_device_status("dev-2", "ON_LOAN")

        results = {row.name: row for row in run_invariant_checks(self.store.engine)}
        self.assertFalse(results["devices:on_loan_without_active_loan"].ok)
        self.assertTrue(results["loans:multiple_active_per_device"].ok)


class ReadWhileWritingTests(unittest.TestCase):
    def setUp(self):
        self.store = InventoryStore(busy_timeout_ms=200)
        self.repository = LoanRepository(self.store.session_factory)
        self.store.add_device("dev-1")
        self.loan = self.repository.create("dev-1", "Max")
        self.store.add_device("dev-2")

    def tearDown(self):
        self.store.close()

    def test_reads_do_not_wait_for_open_write_transaction(self):
        with self.store.session_factory.begin() as writer:
            writer.execute(update(Device).where(Device.DeviceID == "dev-2").values(Notes="pending"))

            active = self.repository.find_active()
            snapshot = self.repository._find_device_snapshot("dev-2")

        self.assertEqual([row["id"] for row in active], [self.loan["id"]])
        self.assertEqual(snapshot.Status, "AVAILABLE")
        self.assertIsNone(snapshot.Notes)


class ReturnTimestampTests(unittest.TestCase):
    def test_uses_current_time_when_later(self):
        borrowed = datetime(2025, 12, 16, 8, 0, 0)
        now = datetime(2025, 12, 16, 9, 0, 0)
        self.assertEqual(_return_timestamp(borrowed, now), now)

    def test_never_precedes_borrow_time(self):
        borrowed = datetime(2025, 12, 16, 8, 0, 0)
        self.assertEqual(_return_timestamp(borrowed, borrowed), borrowed + timedelta(microseconds=1))


if __name__ == "__main__":
    unittest.main()
