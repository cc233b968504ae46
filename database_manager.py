"""Database coordination layer: the seat ledger and the show metadata it depends on."""

from sqlalchemy import create_engine, func, text
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.exc import IntegrityError
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple
import logging
import uuid

from models import Base, Movie, Show, Booking, BookedSeat, BookingRecord, ShowInfo, utcnow
from seating import Seat, seat_layout

logger = logging.getLogger(__name__)

DEMO_MOVIES = [
    ("Inception", "A thief who steals corporate secrets through the use of dream-sharing technology.", 148, "Sci-Fi"),
    ("The Dark Knight", "Batman fights the menace known as the Joker.", 152, "Action"),
    ("Interstellar", "A team of explorers travel through a wormhole in space.", 169, "Sci-Fi"),
]

# (day offset, hour, ticket price)
DEMO_SCHEDULE = [(1, 15, 12.50), (1, 19, 15.00), (2, 17, 12.50)]

# SQLite reports the columns, other backends the constraint name.
SEAT_CONFLICT_MARKERS = ("uq_booked_seats_show_seat", "booked_seats.show_id, booked_seats.seat_key")


class SeatAlreadyBooked(Exception):
    """A confirmed booking tried to claim a seat that already has a booked_seats row."""


def is_seat_conflict(error: IntegrityError) -> bool:
    message = str(error.orig) if error.orig is not None else str(error)
    return any(marker in message for marker in SEAT_CONFLICT_MARKERS)


def _movie_dict(movie: Movie) -> Dict:
    return {
        "id": movie.id,
        "title": movie.title,
        "description": movie.description or "",
        "duration_minutes": movie.duration_minutes,
        "genre": movie.genre,
    }


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions and the booking ledger.

    Ledger operations let SQLAlchemy errors propagate (after rolling back) so the
    admission pipeline can report them as storage faults.
    """

    def __init__(self, database_url: str):
        if database_url.startswith("sqlite"):
            engine_kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        else:
            engine_kwargs = {
                "pool_size": 20,
                "max_overflow": 40,
                "pool_pre_ping": True,  # Reconnect if connection lost
                "pool_recycle": 3600,   # Recycle connections after 1 hour
            }
        self.engine = create_engine(database_url, echo=False, **engine_kwargs)
        self.session_factory = scoped_session(sessionmaker(bind=self.engine, expire_on_commit=False))

        # Create tables
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    def dispose(self):
        self.session_factory.remove()
        self.engine.dispose()

    # Show metadata

    def initialize_show(
        self,
        show_id: str,
        total_seats: int,
        ticket_price: float,
        starts_at: Optional[datetime] = None,
        hall_number: int = 1,
        movie_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """Create a show record if it does not already exist."""
        try:
            with self.get_session() as session:
                if session.get(Show, show_id) is not None:
                    return False, "show already exists"

                session.add(Show(
                    show_id=show_id,
                    movie_id=movie_id,
                    starts_at=starts_at,
                    hall_number=hall_number,
                    total_seats=total_seats,
                    ticket_price=ticket_price,
                ))
                return True, f"show initialized with {total_seats} seats"
        except IntegrityError as e:
            return False, f"database integrity error: {str(e)}"

    def get_show(self, show_id: str) -> Optional[ShowInfo]:
        with self.get_session() as session:
            show = session.get(Show, show_id)
            if show is None:
                return None
            return ShowInfo.from_row(show)

    def list_movies(self) -> List[Dict]:
        """All movies with their scheduled show count, ordered by id."""
        with self.get_session() as session:
            rows = session.query(Movie, func.count(Show.show_id)).outerjoin(
                Show, Show.movie_id == Movie.id
            ).group_by(Movie.id).order_by(Movie.id).all()

            return [dict(_movie_dict(movie), show_count=show_count) for movie, show_count in rows]

    def get_movie(self, movie_id: int) -> Optional[Dict]:
        """One movie with its shows in start-time order, or None if unknown."""
        with self.get_session() as session:
            movie = session.get(Movie, movie_id)
            if movie is None:
                return None

            shows = session.query(Show).filter(Show.movie_id == movie_id).order_by(
                Show.starts_at, Show.show_id
            ).all()
            details = _movie_dict(movie)
            details["shows"] = [
                {
                    "show_id": info.show_id,
                    "starts_at": info.starts_at.isoformat() if info.starts_at else None,
                    "hall_number": info.hall_number,
                    "total_seats": info.total_seats,
                    "ticket_price": info.ticket_price,
                }
                for info in (ShowInfo.from_row(show) for show in shows)
            ]
            return details

    def seed_demo_data(self) -> int:
        """Populate sample movies and shows when the database has none; returns shows created."""
        with self.get_session() as session:
            if session.query(Show).count() > 0:
                return 0

            midnight = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
            created = 0
            for hall, (title, description, duration, genre) in enumerate(DEMO_MOVIES, start=1):
                movie = Movie(title=title, description=description, duration_minutes=duration, genre=genre)
                session.add(movie)
                session.flush()

                slug = title.lower().replace("the ", "").replace(" ", "-")
                for day_offset, hour, price in DEMO_SCHEDULE:
                    starts_at = midnight + timedelta(days=day_offset, hours=hour)
                    session.add(Show(
                        show_id=f"{slug}-{starts_at:%Y%m%d-%H%M}",
                        movie_id=movie.id,
                        starts_at=starts_at,
                        hall_number=hall,
                        total_seats=100,
                        ticket_price=price,
                    ))
                    created += 1

            logger.info(f"Seeded {created} demo shows")
            return created

    # Ledger

    def create_booking(
        self,
        show_id: str,
        seats: Iterable[Seat],
        customer_name: str,
        email: str,
        total_amount: float,
        confirmed: bool = True,
        booked_at: Optional[datetime] = None,
    ) -> BookingRecord:
        """Persist a booking whole or not at all.

        Confirmed bookings also claim one ``booked_seats`` row per seat; if the unique
        (show_id, seat_key) index finds a seat already sold, SeatAlreadyBooked is raised.
        Other integrity errors propagate unchanged.
        """
        seats = list(seats)
        try:
            with self.get_session() as session:
                booking = Booking(
                    booking_id=uuid.uuid4(),
                    show_id=show_id,
                    customer_name=customer_name,
                    email=email,
                    seats=[seat.to_dict() for seat in seats],
                    total_amount=total_amount,
                    confirmed=confirmed,
                    booked_at=booked_at or utcnow(),
                )
                if confirmed:
                    booking.booked_seats = [
                        BookedSeat(show_id=show_id, seat_key=seat.key) for seat in seats
                    ]
                session.add(booking)
                session.flush()
                record = BookingRecord.from_row(booking)
        except IntegrityError as e:
            if is_seat_conflict(e):
                raise SeatAlreadyBooked(f"seat already booked for show {show_id}") from e
            raise
        return record

    def list_confirmed_bookings(self, show_id: str) -> List[BookingRecord]:
        with self.get_session() as session:
            bookings = session.query(Booking).filter(
                Booking.show_id == show_id,
                Booking.confirmed.is_(True)
            ).order_by(Booking.booked_at).all()
            return [BookingRecord.from_row(b) for b in bookings]

    def get_booking(self, booking_id: uuid.UUID) -> Optional[BookingRecord]:
        with self.get_session() as session:
            booking = session.get(Booking, booking_id)
            if booking is None:
                return None
            return BookingRecord.from_row(booking)

    def delete_stale_unconfirmed(self, cutoff: datetime) -> int:
        """Delete unconfirmed bookings created before ``cutoff``; returns the number removed."""
        with self.get_session() as session:
            return session.query(Booking).filter(
                Booking.confirmed.is_(False),
                Booking.booked_at < cutoff
            ).delete(synchronize_session=False)

    # Advisory reads (display only, never used for admission)

    def get_occupied_seats(self, show_id: str) -> Optional[Set[str]]:
        if self.get_show(show_id) is None:
            return None
        occupied: Set[str] = set()
        for booking in self.list_confirmed_bookings(show_id):
            occupied.update(booking.seat_keys)
        return occupied

    def get_seat_map(self, show_id: str) -> Optional[Dict]:
        """Return seat rows with booked flags plus aggregate counts for the given show."""
        show = self.get_show(show_id)
        if show is None:
            return None

        occupied = self.get_occupied_seats(show_id) or set()
        rows = []
        for label, count in seat_layout(show.total_seats).items():
            rows.append({
                "row": label,
                "seats": [
                    {"number": num, "key": f"{label}{num}", "booked": f"{label}{num}" in occupied}
                    for num in range(1, count + 1)
                ],
            })

        return {
            "show_id": show.show_id,
            "movie_title": show.movie_title,
            "starts_at": show.starts_at.isoformat() if show.starts_at else None,
            "hall_number": show.hall_number,
            "ticket_price": show.ticket_price,
            "total_seats": show.total_seats,
            "booked_seats": len(occupied),
            "available_seats": show.total_seats - len(occupied),
            "rows": rows,
        }

    def health_check(self) -> Dict:
        """Report database connectivity and show count; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                show_count = session.query(func.count(Show.show_id)).scalar()

                return {
                    "status": "healthy",
                    "database": "connected",
                    "shows": show_count,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }
