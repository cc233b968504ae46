"""HTTP entrypoint for the cinema booking backend."""

from flask import Flask, current_app, request, jsonify
from flask_cors import CORS
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
import atexit
import logging
import signal
import uuid

from admission import AdmissionPipeline, RejectionReason
from booking_processor import BookingProcessor, ExpirySweeper, ProcessorNotRunning, QueueFull
from config import Settings
from database_manager import DatabaseManager
from lock_registry import LockRegistry

logger = logging.getLogger(__name__)

STATUS_BY_REASON = {
    RejectionReason.INVALID_REQUEST: 400,
    RejectionReason.SHOW_NOT_FOUND: 404,
    RejectionReason.SEATS_UNAVAILABLE: 409,
    RejectionReason.STORAGE_ERROR: 503,
}


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None):
    """Return a uniform 400 payload, optionally including field-level details."""
    payload: Dict[str, Any] = {"error": message}
    if details:
        payload["details"] = details
    return jsonify(payload), 400


def require_json_object() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[str, int]]]:
    """Ensure the request body is a JSON object before proceeding."""
    if not request.is_json:
        return None, bad_request("request body must be a JSON object")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, bad_request("request body must be a JSON object")

    return data, None


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        return None
    return value


def _db() -> DatabaseManager:
    return current_app.extensions["db"]


def _processor() -> BookingProcessor:
    return current_app.extensions["booking_processor"]


def create_app(settings: Optional[Settings] = None, start_workers: bool = True) -> Flask:
    """Wire the database, admission pipeline and background workers into a Flask app."""
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    CORS(app)

    db = DatabaseManager(settings.database_url)
    if settings.seed_demo_data:
        try:
            db.seed_demo_data()
        except Exception as e:
            logger.error(f"Failed to seed demo data: {e}")

    pipeline = AdmissionPipeline(db, LockRegistry())
    processor = BookingProcessor(
        pipeline,
        workers=settings.booking_workers,
        queue_size=settings.booking_queue_size,
    )
    sweeper = ExpirySweeper(
        db,
        interval_seconds=settings.expiry_sweep_interval_seconds,
        grace_minutes=settings.unconfirmed_grace_minutes,
    )

    app.config["BOOKING_TIMEOUT_SECONDS"] = settings.booking_timeout_seconds
    app.extensions["settings"] = settings
    app.extensions["db"] = db
    app.extensions["admission_pipeline"] = pipeline
    app.extensions["booking_processor"] = processor
    app.extensions["expiry_sweeper"] = sweeper

    if start_workers:
        processor.start()
        sweeper.start()

    register_routes(app)
    return app


def shutdown(app: Flask):
    """Stop background workers and release database connections."""
    app.extensions["expiry_sweeper"].stop(timeout=5)
    app.extensions["booking_processor"].stop(timeout=30)
    app.extensions["db"].dispose()


def register_routes(app: Flask):

    @app.route('/health', methods=['GET'])
    def health_check():
        """Expose the database connectivity and show count."""
        health = _db().health_check()
        health["booking_processor"] = "running" if _processor().running else "stopped"
        status = 200 if health["status"] == "healthy" else 500
        return jsonify(health), status

    @app.route('/movies', methods=['GET'])
    def list_movies():
        """Movies on the schedule with their show counts."""
        return jsonify({"movies": _db().list_movies()})

    @app.route('/movies/<movie_id>', methods=['GET'])
    def get_movie(movie_id):
        """One movie and its shows."""
        try:
            key = int(movie_id)
        except ValueError:
            return bad_request("invalid movie id")

        movie = _db().get_movie(key)
        if movie is None:
            return jsonify({"error": "movie not found"}), 404
        return jsonify(movie)

    @app.route('/shows/<show_id>/initialize', methods=['POST'])
    def initialize_show(show_id):
        """Create a new show; the seat map is derived from its capacity."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        total_seats = _positive_int(data.get('total_seats'))
        if total_seats is None:
            return bad_request("total_seats must be a positive integer")

        ticket_price = data.get('ticket_price')
        if isinstance(ticket_price, bool) or not isinstance(ticket_price, (int, float)) or ticket_price < 0:
            return bad_request("ticket_price must be a non-negative number")

        hall_number = _positive_int(data.get('hall_number', 1))
        if hall_number is None:
            return bad_request("hall_number must be a positive integer")

        starts_at = None
        if data.get('starts_at') is not None:
            try:
                starts_at = datetime.fromisoformat(str(data['starts_at']))
            except ValueError:
                return bad_request("starts_at must be an ISO-8601 timestamp")
            if starts_at.tzinfo is None:
                starts_at = starts_at.replace(tzinfo=timezone.utc)

        success, message = _db().initialize_show(
            show_id, total_seats, float(ticket_price), starts_at=starts_at, hall_number=hall_number
        )

        if success:
            logger.info(f"Initialized show {show_id} with {total_seats} seats")
            return jsonify({
                "message": message,
                "show_id": show_id,
                "seat_count": total_seats
            }), 201
        else:
            return jsonify({"error": message}), 409

    @app.route('/shows/<show_id>/seats', methods=['GET'])
    def get_seat_map(show_id):
        """Return the seat map for a show; booked flags are for display only."""
        seat_map = _db().get_seat_map(show_id)
        if seat_map is None:
            return jsonify({"error": "show not found"}), 404

        return jsonify(seat_map)

    @app.route('/shows/<show_id>/book', methods=['POST'])
    def book_seats(show_id):
        """Book seats immediately; the response is always a final verdict."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        try:
            result = _processor().submit_booking(
                show_id,
                data.get('seats'),
                data.get('customer_name'),
                data.get('email'),
                timeout=current_app.config["BOOKING_TIMEOUT_SECONDS"],
            )
        except ProcessorNotRunning:
            return jsonify({"error": "booking service is shutting down"}), 503
        except QueueFull:
            logger.warning(f"Booking queue full, rejecting request for show {show_id}")
            return jsonify({"error": "booking service is busy, try again later"}), 503
        except FutureTimeout:
            logger.warning(f"Timed out waiting for booking verdict on show {show_id}")
            return jsonify({"error": "timed out waiting for booking verdict"}), 504

        if result.ok:
            return jsonify(result.to_dict()), 201
        return jsonify(result.to_dict()), STATUS_BY_REASON[result.reason]

    @app.route('/bookings/<booking_id>', methods=['GET'])
    def get_booking(booking_id):
        """Booking confirmation details."""
        try:
            key = uuid.UUID(booking_id)
        except ValueError:
            return bad_request("invalid booking id")

        booking = _db().get_booking(key)
        if booking is None:
            return jsonify({"error": "booking not found"}), 404
        return jsonify(booking.to_dict())


def main():
    settings = Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    app = create_app(settings)
    stopped = False

    def stop_background_workers(*args):
        """Signal handler to terminate the workers gracefully."""
        nonlocal stopped
        if not stopped:
            stopped = True
            logger.info("Stopping booking workers...")
            shutdown(app)
        if args:
            raise SystemExit(0)

    # Register signal handlers for production (Gunicorn, Docker, etc.)
    signal.signal(signal.SIGTERM, stop_background_workers)
    signal.signal(signal.SIGINT, stop_background_workers)

    # Fallback for local runs
    atexit.register(stop_background_workers)

    logger.info(f"""
    ================================
    CINEMA BOOKING SYSTEM
    ================================
    Database: {settings.database_url}
    Workers: {settings.booking_workers} (queue size {settings.booking_queue_size})
    Concurrency: per-show locks around a fresh ledger read
    ================================
    """)

    app.run(host="0.0.0.0", port=settings.port, debug=False, threaded=True)


if __name__ == '__main__':
    main()
