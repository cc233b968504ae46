"""Booking admission: the check-then-commit sequence run under a show's lock."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union
import logging
import re
import uuid

from sqlalchemy.exc import SQLAlchemyError

from database_manager import DatabaseManager, SeatAlreadyBooked
from lock_registry import LockRegistry
from seating import InvalidSeatError, Seat, layout_contains, parse_seat, seat_layout

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


class RejectionReason(Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    SHOW_NOT_FOUND = "SHOW_NOT_FOUND"
    SEATS_UNAVAILABLE = "SEATS_UNAVAILABLE"
    STORAGE_ERROR = "STORAGE_ERROR"


@dataclass(frozen=True)
class Confirmed:
    booking_id: uuid.UUID
    total_amount: float
    reference: str = ""
    seats: Tuple[str, ...] = ()

    ok = True

    def to_dict(self) -> dict:
        return {
            "status": "confirmed",
            "booking_id": str(self.booking_id),
            "reference": self.reference,
            "total_amount": self.total_amount,
            "seats": list(self.seats),
        }


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    message: str
    conflicts: Tuple[str, ...] = ()

    ok = False

    @property
    def retryable(self) -> bool:
        """SEATS_UNAVAILABLE is retryable with other seats, STORAGE_ERROR after a delay."""
        return self.reason in (RejectionReason.SEATS_UNAVAILABLE, RejectionReason.STORAGE_ERROR)

    def to_dict(self) -> dict:
        payload = {
            "status": "rejected",
            "reason": self.reason.value,
            "error": self.message,
            "retryable": self.retryable,
        }
        if self.conflicts:
            payload["unavailable_seats"] = list(self.conflicts)
        return payload


BookingResult = Union[Confirmed, Rejected]


def invalid(message: str) -> Rejected:
    return Rejected(RejectionReason.INVALID_REQUEST, message)


def validate_request(
    show_id: Any, seats: Any, customer_name: Any, email: Any
) -> Tuple[Optional[List[Seat]], Optional[Rejected]]:
    """Cheap checks that need neither the lock nor the ledger."""
    if not isinstance(show_id, str) or not show_id.strip():
        return None, invalid("show_id must be a non-empty string")

    if not isinstance(seats, (list, tuple)) or len(seats) == 0:
        return None, invalid("at least one seat must be selected")

    parsed: List[Seat] = []
    for index, raw in enumerate(seats):
        try:
            parsed.append(parse_seat(raw))
        except InvalidSeatError as e:
            return None, invalid(f"seat #{index}: {e}")

    if len({seat.key for seat in parsed}) != len(parsed):
        return None, invalid("duplicate seats in request")

    if not isinstance(customer_name, str) or not customer_name.strip():
        return None, invalid("customer name is required")
    if not isinstance(email, str) or not email.strip():
        return None, invalid("email is required")
    if not EMAIL_PATTERN.match(email.strip()):
        return None, invalid("email address is not valid")

    return parsed, None


def occupied_seat_keys(bookings: Iterable) -> set:
    occupied = set()
    for booking in bookings:
        occupied.update(booking.seat_keys)
    return occupied


class AdmissionPipeline:
    """Decides each booking request with a fresh ledger read under the show's lock."""

    def __init__(self, db: DatabaseManager, locks: Optional[LockRegistry] = None):
        self.db = db
        self.locks = locks if locks is not None else LockRegistry()

    def admit(self, show_id: str, seats: Sequence[Any], customer_name: str, email: str) -> BookingResult:
        parsed, rejection = validate_request(show_id, seats, customer_name, email)
        if rejection is not None:
            logger.info(f"Rejected booking for show {show_id!r}: {rejection.message}")
            return rejection

        with self.locks.hold(show_id):
            result = self._admit_locked(show_id, parsed, customer_name.strip(), email.strip())

        if result.ok:
            logger.info(f"Booking confirmed: show={show_id}, booking_id={result.booking_id}, seats={list(result.seats)}")
        else:
            logger.info(f"Booking rejected: show={show_id}, reason={result.reason.value}, {result.message}")
        return result

    def _admit_locked(self, show_id: str, seats: List[Seat], customer_name: str, email: str) -> BookingResult:
        # Everything below runs with the show's lock held.
        try:
            show = self.db.get_show(show_id)
        except SQLAlchemyError:
            logger.exception("Show lookup failed")
            return Rejected(RejectionReason.STORAGE_ERROR, "storage unavailable, try again later")

        if show is None:
            return Rejected(RejectionReason.SHOW_NOT_FOUND, "show not found")

        layout = seat_layout(show.total_seats)
        outside = sorted(seat.key for seat in seats if not layout_contains(layout, seat))
        if outside:
            return invalid(f"seats not in this show's layout: {', '.join(outside)}")

        try:
            occupied = occupied_seat_keys(self.db.list_confirmed_bookings(show_id))
        except SQLAlchemyError:
            logger.exception("Ledger read failed")
            return Rejected(RejectionReason.STORAGE_ERROR, "storage unavailable, try again later")

        conflicts = tuple(sorted(seat.key for seat in seats if seat.key in occupied))
        if conflicts:
            return Rejected(
                RejectionReason.SEATS_UNAVAILABLE,
                "some selected seats are already booked",
                conflicts=conflicts,
            )

        total_amount = round(len(seats) * show.ticket_price, 2)
        try:
            booking = self.db.create_booking(
                show_id=show_id,
                seats=seats,
                customer_name=customer_name,
                email=email,
                total_amount=total_amount,
                confirmed=True,
            )
        except SeatAlreadyBooked:
            # Unique (show_id, seat_key) index caught a sale the ledger scan missed.
            logger.warning(f"Seat uniqueness constraint rejected booking for show {show_id}")
            return Rejected(
                RejectionReason.SEATS_UNAVAILABLE,
                "some selected seats are already booked",
                conflicts=tuple(sorted(seat.key for seat in seats)),
            )
        except SQLAlchemyError:
            logger.exception("Saving booking failed")
            return Rejected(RejectionReason.STORAGE_ERROR, "could not save booking, try again later")

        return Confirmed(
            booking_id=booking.booking_id,
            total_amount=booking.total_amount,
            reference=booking.reference,
            seats=tuple(booking.seat_keys),
        )
