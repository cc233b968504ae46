"""ORM model definitions describing the cinema booking ledger."""

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, JSON, String,
    Text, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import declarative_base, relationship
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple
import secrets
import uuid

from seating import Seat, parse_seat

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps; SQLite hands DateTime(timezone=True) back without tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def generate_reference() -> str:
    """Short human-facing booking reference, e.g. BKG-1a2b3c4d."""
    return f"BKG-{secrets.token_hex(4)}"


class Movie(Base):
    __tablename__ = 'movies'

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    description = Column(Text, default='')
    duration_minutes = Column(Integer)
    genre = Column(String)

    shows = relationship('Show', back_populates='movie')


class Show(Base):
    __tablename__ = 'shows'

    show_id = Column(String, primary_key=True)
    movie_id = Column(Integer, ForeignKey('movies.id', ondelete='SET NULL'))
    starts_at = Column(DateTime(timezone=True))
    hall_number = Column(Integer, default=1, nullable=False)
    total_seats = Column(Integer, nullable=False)
    ticket_price = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    movie = relationship('Movie', back_populates='shows')
    bookings = relationship('Booking', back_populates='show', cascade='all, delete-orphan')


class Booking(Base):
    __tablename__ = 'bookings'

    booking_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reference = Column(String, nullable=False, unique=True, default=generate_reference)
    show_id = Column(String, ForeignKey('shows.show_id', ondelete='CASCADE'), nullable=False)
    customer_name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    # List of {"row": ..., "number": ...} objects
    seats = Column(JSON, nullable=False)
    total_amount = Column(Float, nullable=False)
    confirmed = Column(Boolean, default=False, nullable=False)
    booked_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    show = relationship('Show', back_populates='bookings')
    booked_seats = relationship('BookedSeat', back_populates='booking', cascade='all, delete-orphan')

    __table_args__ = (
        Index('idx_bookings_show_confirmed', 'show_id', 'confirmed'),
        Index('idx_bookings_unconfirmed_age', 'confirmed', 'booked_at'),
    )


class BookedSeat(Base):
    """One row per seat of a confirmed booking; the unique index is the double-sale backstop."""
    __tablename__ = 'booked_seats'

    id = Column(Integer, primary_key=True, autoincrement=True)
    show_id = Column(String, ForeignKey('shows.show_id', ondelete='CASCADE'), nullable=False)
    seat_key = Column(String, nullable=False)
    booking_id = Column(Uuid(as_uuid=True), ForeignKey('bookings.booking_id', ondelete='CASCADE'), nullable=False)

    booking = relationship('Booking', back_populates='booked_seats')

    __table_args__ = (
        UniqueConstraint('show_id', 'seat_key', name='uq_booked_seats_show_seat'),
    )


@dataclass(frozen=True)
class ShowInfo:
    """Detached view of a show, safe to pass across threads."""

    show_id: str
    total_seats: int
    ticket_price: float
    starts_at: Optional[datetime] = None
    hall_number: int = 1
    movie_title: Optional[str] = None

    @classmethod
    def from_row(cls, show: Show) -> "ShowInfo":
        return cls(
            show_id=show.show_id,
            total_seats=show.total_seats,
            ticket_price=show.ticket_price,
            starts_at=as_utc(show.starts_at),
            hall_number=show.hall_number,
            movie_title=show.movie.title if show.movie else None,
        )


@dataclass(frozen=True)
class BookingRecord:
    booking_id: uuid.UUID
    reference: str
    show_id: str
    customer_name: str
    email: str
    seats: Tuple[Seat, ...]
    total_amount: float
    confirmed: bool
    booked_at: datetime

    @property
    def seat_keys(self) -> List[str]:
        return [seat.key for seat in self.seats]

    @classmethod
    def from_row(cls, booking: Booking) -> "BookingRecord":
        return cls(
            booking_id=booking.booking_id,
            reference=booking.reference,
            show_id=booking.show_id,
            customer_name=booking.customer_name,
            email=booking.email,
            seats=tuple(parse_seat(raw) for raw in booking.seats or ()),
            total_amount=booking.total_amount,
            confirmed=booking.confirmed,
            booked_at=as_utc(booking.booked_at),
        )

    def to_dict(self) -> dict:
        return {
            "booking_id": str(self.booking_id),
            "reference": self.reference,
            "show_id": self.show_id,
            "customer_name": self.customer_name,
            "email": self.email,
            "seats": self.seat_keys,
            "total_amount": self.total_amount,
            "confirmed": self.confirmed,
            "booked_at": self.booked_at.isoformat() if self.booked_at else None,
        }
