"""Tests for the booking admission pipeline.

Run with: pytest test_admission.py -v
"""

import itertools
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest import mock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from admission import Confirmed, Rejected, RejectionReason
from conftest import SHOW_ID
from database_manager import SeatAlreadyBooked
from seating import Seat


def book(pipeline, seats, name="John Doe", email="john@example.com", show_id=SHOW_ID):
    return pipeline.admit(show_id, seats, name, email)


def assert_disjoint(db, show_id=SHOW_ID):
    seen = set()
    for booking in db.list_confirmed_bookings(show_id):
        keys = set(booking.seat_keys)
        assert not (keys & seen), f"seats sold twice: {sorted(keys & seen)}"
        seen |= keys
    return seen


class TestSingleBooking:

    def test_confirmed_booking_amount(self, pipeline, db, show):
        result = book(pipeline, ["A1", "A2"])

        assert isinstance(result, Confirmed)
        assert result.ok
        assert result.total_amount == 20.0
        assert result.reference.startswith("BKG-")

        saved = db.get_booking(result.booking_id)
        assert saved.customer_name == "John Doe"
        assert saved.confirmed is True
        assert saved.seat_keys == ["A1", "A2"]
        assert saved.total_amount == 20.0

    def test_accepts_seat_objects(self, pipeline, show):
        result = book(pipeline, [{"row": "C", "number": 5}, {"row": "C", "number": 6}])
        assert result.ok
        assert result.seats == ("C5", "C6")

    def test_occupied_seat_is_rejected_with_conflicts(self, pipeline, db, show):
        assert book(pipeline, ["B10", "B11"]).ok

        result = book(pipeline, ["B9", "B10", "B11"], name="Jane")

        assert isinstance(result, Rejected)
        assert result.reason is RejectionReason.SEATS_UNAVAILABLE
        assert result.conflicts == ("B10", "B11")
        assert result.retryable
        assert len(db.list_confirmed_bookings(SHOW_ID)) == 1

    def test_rejection_is_repeatable(self, pipeline, show):
        assert book(pipeline, ["D4"]).ok

        first = book(pipeline, ["D4"], name="Late Larry")
        second = book(pipeline, ["D4"], name="Late Larry")

        assert first == second
        assert first.reason is RejectionReason.SEATS_UNAVAILABLE

    def test_unknown_show(self, pipeline, locks):
        result = book(pipeline, ["A1"], show_id="no-such-show")

        assert result.reason is RejectionReason.SHOW_NOT_FOUND
        assert not locks.lock_for("no-such-show").locked()

    def test_seat_outside_layout(self, pipeline, show):
        # Capacity 100: rows E-H have 12 seats.
        result = book(pipeline, ["E13"])
        assert result.reason is RejectionReason.INVALID_REQUEST

    def test_unconfirmed_bookings_do_not_occupy_seats(self, pipeline, db, show):
        held = db.create_booking(
            SHOW_ID, [Seat("A", 1)], "Pending Pam", "pam@example.com", 10.0, confirmed=False
        )
        assert held.confirmed is False

        assert book(pipeline, ["A1"]).ok
        assert db.get_occupied_seats(SHOW_ID) == {"A1"}


class TestInvalidRequests:

    @pytest.mark.parametrize("seats, name, email", [
        ([], "John", "john@example.com"),
        (None, "John", "john@example.com"),
        (["A1", "A1"], "John", "john@example.com"),
        (["A1", {"row": "A", "number": 1}], "John", "john@example.com"),
        (["1A"], "John", "john@example.com"),
        (["A1"], "", "john@example.com"),
        (["A1"], "   ", "john@example.com"),
        (["A1"], "John", ""),
        (["A1"], "John", "not-an-email"),
    ])
    def test_rejected_without_lock_or_ledger_read(self, pipeline, db, locks, show, seats, name, email):
        with mock.patch.object(locks, "hold", wraps=locks.hold) as hold_spy, \
                mock.patch.object(db, "list_confirmed_bookings", wraps=db.list_confirmed_bookings) as read_spy, \
                mock.patch.object(db, "get_show", wraps=db.get_show) as show_spy:
            result = pipeline.admit(SHOW_ID, seats, name, email)

        assert result.reason is RejectionReason.INVALID_REQUEST
        assert not result.retryable
        hold_spy.assert_not_called()
        read_spy.assert_not_called()
        show_spy.assert_not_called()
        assert SHOW_ID not in locks

    def test_valid_request_takes_the_show_lock(self, pipeline, locks, show):
        with mock.patch.object(locks, "hold", wraps=locks.hold) as hold_spy:
            assert book(pipeline, ["A1"]).ok
        hold_spy.assert_called_once_with(SHOW_ID)


class TestStorageFailures:

    def test_persist_failure_releases_lock_and_leaves_ledger_clean(self, pipeline, db, locks, show):
        failure = OperationalError("INSERT INTO bookings", {}, Exception("disk I/O error"))
        with mock.patch.object(db, "create_booking", side_effect=failure):
            result = book(pipeline, ["A1"])

        assert result.reason is RejectionReason.STORAGE_ERROR
        assert result.retryable
        assert not locks.lock_for(SHOW_ID).locked()
        assert db.list_confirmed_bookings(SHOW_ID) == []

        # Same seats succeed once storage recovers.
        assert book(pipeline, ["A1"]).ok

    def test_ledger_read_failure(self, pipeline, db, locks, show):
        failure = OperationalError("SELECT", {}, Exception("database is locked"))
        with mock.patch.object(db, "list_confirmed_bookings", side_effect=failure):
            result = book(pipeline, ["A1"])

        assert result.reason is RejectionReason.STORAGE_ERROR
        assert not locks.lock_for(SHOW_ID).locked()

    def test_uniqueness_backstop_catches_stale_read(self, pipeline, db, show):
        assert book(pipeline, ["F7"]).ok

        # Pretend the ledger scan missed the existing sale.
        with mock.patch.object(db, "list_confirmed_bookings", return_value=[]):
            result = book(pipeline, ["F6", "F7"], name="Racer")

        assert result.reason is RejectionReason.SEATS_UNAVAILABLE
        bookings = db.list_confirmed_bookings(SHOW_ID)
        assert len(bookings) == 1
        assert bookings[0].seat_keys == ["F7"]


    def test_other_integrity_error_is_a_storage_fault(self, pipeline, db, locks, show):
        failure = IntegrityError(
            "INSERT INTO bookings", {}, Exception("UNIQUE constraint failed: bookings.reference")
        )
        with mock.patch.object(db, "create_booking", side_effect=failure):
            result = book(pipeline, ["A1"])

        assert result.reason is RejectionReason.STORAGE_ERROR
        assert result.conflicts == ()
        assert not locks.lock_for(SHOW_ID).locked()


class TestCreateBooking:

    def test_duplicate_seat_raises_seat_already_booked(self, db, show):
        db.create_booking(SHOW_ID, [Seat("C", 3)], "First", "first@example.com", 10.0)

        with pytest.raises(SeatAlreadyBooked):
            db.create_booking(SHOW_ID, [Seat("C", 4), Seat("C", 3)], "Second", "second@example.com", 20.0)

        assert [b.customer_name for b in db.list_confirmed_bookings(SHOW_ID)] == ["First"]

    def test_non_seat_integrity_error_propagates(self, db, show):
        with pytest.raises(IntegrityError) as excinfo:
            db.create_booking(SHOW_ID, [Seat("C", 5)], None, "nobody@example.com", 10.0)

        assert not isinstance(excinfo.value, SeatAlreadyBooked)
        assert db.list_confirmed_bookings(SHOW_ID) == []

    def test_booked_at_is_utc_after_reload(self, db, show):
        created = db.create_booking(SHOW_ID, [Seat("D", 1)], "John", "john@example.com", 10.0)
        loaded = db.get_booking(created.booking_id)

        assert loaded.booked_at.tzinfo is not None
        assert loaded.booked_at.utcoffset() == timedelta(0)
        assert loaded.booked_at.isoformat() == created.booked_at.isoformat()
        assert loaded.to_dict()["booked_at"].endswith("+00:00")
        assert db.list_confirmed_bookings(SHOW_ID)[0].booked_at == created.booked_at


class TestConcurrentAdmission:

    def run_concurrently(self, requests):
        barrier = threading.Barrier(len(requests))

        def attempt(args):
            barrier.wait()
            return args[0](*args[1:])

        with ThreadPoolExecutor(max_workers=len(requests)) as executor:
            return list(executor.map(attempt, requests))

    def test_five_requests_for_seat_b10(self, pipeline, db, show):
        requests = [
            (book, pipeline, ["B10"], f"User{chr(65 + i)}", f"user{i}@example.com")
            for i in range(5)
        ]
        results = self.run_concurrently(requests)

        confirmed = [r for r in results if r.ok]
        rejected = [r for r in results if not r.ok]
        assert len(confirmed) == 1
        assert len(rejected) == 4
        assert all(r.reason is RejectionReason.SEATS_UNAVAILABLE for r in rejected)

        holders = [b for b in db.list_confirmed_bookings(SHOW_ID) if "B10" in b.seat_keys]
        assert len(holders) == 1

    def test_overlapping_requests_exactly_one_wins(self, pipeline, db, show):
        # Every request includes C5, so at most one can be admitted.
        requests = [
            (book, pipeline, [f"C{n}", "C5"] if n != 5 else ["C5"], f"User {n}", f"u{n}@example.com")
            for n in range(1, 11)
        ]
        results = self.run_concurrently(requests)

        assert sum(1 for r in results if r.ok) == 1
        assert all(r.reason is RejectionReason.SEATS_UNAVAILABLE for r in results if not r.ok)
        assert_disjoint(db)

    def test_random_contention_keeps_bookings_disjoint(self, pipeline, db, show):
        rng = random.Random(7)
        pool = [f"A{n}" for n in range(1, 13)]
        requests = [
            (book, pipeline, rng.sample(pool, rng.randint(1, 3)), f"User {i}", f"u{i}@example.com")
            for i in range(24)
        ]
        results = self.run_concurrently(requests)

        sold = assert_disjoint(db)
        confirmed = [r for r in results if r.ok]
        assert sum(len(r.seats) for r in confirmed) == len(sold)
        assert len(db.list_confirmed_bookings(SHOW_ID)) == len(confirmed)
        assert all(r.reason is RejectionReason.SEATS_UNAVAILABLE for r in results if not r.ok)

    def test_sequential_admissions_keep_bookings_disjoint(self, pipeline, db, show):
        for i, pair in enumerate(itertools.combinations(["G1", "G2", "G3", "G4"], 2)):
            book(pipeline, list(pair), name=f"User {i}")
        sold = assert_disjoint(db)
        assert sold <= {"G1", "G2", "G3", "G4"}

    def test_other_show_is_not_blocked(self, pipeline, db, locks, show):
        db.initialize_show("other_show", total_seats=40, ticket_price=8.5)
        outcome = {}

        def admit_other():
            outcome["result"] = book(pipeline, ["A1", "A2"], show_id="other_show")

        with locks.hold(SHOW_ID):
            worker = threading.Thread(target=admit_other)
            worker.start()
            worker.join(timeout=10)
            assert not worker.is_alive()

        assert outcome["result"].ok
        assert outcome["result"].total_amount == 17.0
