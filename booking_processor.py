"""Background workers: the booking request queue and the stale-booking sweep."""

from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence, Set
import logging
import queue
import threading
import time

from admission import AdmissionPipeline, BookingResult, Rejected, RejectionReason
from database_manager import DatabaseManager

logger = logging.getLogger(__name__)

# How often idle workers re-check for shutdown, and how often a caller retries a full queue.
_POLL_SECONDS = 0.05


class ProcessorNotRunning(RuntimeError):
    """Raised when a booking is submitted while the workers are stopped."""


class QueueFull(FutureTimeout):
    """Raised when the booking queue stays full for the caller's whole timeout."""


@dataclass
class BookingRequest:
    show_id: str
    seats: Sequence[Any]
    customer_name: str
    email: str
    response: Future = field(default_factory=Future)


class BookingProcessor:
    """Bounded queue drained by worker threads that run the admission pipeline.

    Every submission gets a Future carrying its verdict back. With a single worker
    all bookings are decided in submission order; with more, different shows are
    decided in parallel while the pipeline's per-show lock keeps each show serial.
    """

    def __init__(self, pipeline: AdmissionPipeline, workers: int = 4, queue_size: int = 100):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.pipeline = pipeline
        self.worker_count = workers
        self._requests: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._threads: List[threading.Thread] = []
        self._state_lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        """Requests queued but not yet picked up by a worker."""
        return self._requests.qsize()

    def start(self):
        with self._state_lock:
            if self._running:
                return
            self._running = True
            new_threads = [
                threading.Thread(target=self._work, name=f"booking-worker-{i}", daemon=True)
                for i in range(self.worker_count)
            ]
            self._threads = [t for t in self._threads if t.is_alive()] + new_threads
            for thread in new_threads:
                thread.start()
        logger.info(f"Booking processor started with {self.worker_count} worker(s)")

    def stop(self, timeout: Optional[float] = None):
        """Stop accepting work and join the workers once they have drained the queue.

        ``timeout`` bounds the wait per worker; a worker still busy after that keeps
        draining in the background.
        """
        with self._state_lock:
            was_running = self._running
            self._running = False
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)
        with self._state_lock:
            self._threads = [t for t in self._threads if t.is_alive()]
        if was_running:
            logger.info("Booking processor stopped")

    def submit(
        self,
        show_id: str,
        seats: Sequence[Any],
        customer_name: str,
        email: str,
        timeout: Optional[float] = None,
    ) -> Future:
        """Queue a booking and return the Future of its verdict.

        Waits up to ``timeout`` seconds (forever if None) for room in the queue,
        then raises QueueFull.
        """
        request = BookingRequest(show_id, seats, customer_name, email)
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            # The running check and the enqueue happen together so nothing is queued
            # after stop(); the state lock is never held while waiting for room.
            with self._state_lock:
                if not self._running:
                    raise ProcessorNotRunning("booking processor is not running")
                try:
                    self._requests.put_nowait(request)
                    return request.response
                except queue.Full:
                    pass

            if deadline is None:
                time.sleep(_POLL_SECONDS)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise QueueFull(f"booking queue is full ({self._requests.maxsize} pending)")
            time.sleep(min(_POLL_SECONDS, remaining))

    def submit_booking(
        self,
        show_id: str,
        seats: Sequence[Any],
        customer_name: str,
        email: str,
        timeout: Optional[float] = None,
    ) -> BookingResult:
        """Submit and block until the verdict arrives.

        ``timeout`` covers both waiting for queue space and waiting for the verdict.
        When it expires concurrent.futures.TimeoutError is raised (QueueFull if the
        request never got queued); a queued admission still runs to completion and
        its result is dropped.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        future = self.submit(show_id, seats, customer_name, email, timeout=timeout)
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        return future.result(timeout=remaining)

    def get_availability(self, show_id: str) -> Optional[Set[str]]:
        """Occupied seat keys for display; may be stale and must not drive admission."""
        return self.pipeline.db.get_occupied_seats(show_id)

    def _work(self):
        while True:
            try:
                request = self._requests.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if not self._running:
                    return
                continue
            try:
                self._process(request)
            finally:
                self._requests.task_done()

    def _process(self, request: BookingRequest):
        if not request.response.set_running_or_notify_cancel():
            return
        try:
            result = self.pipeline.admit(
                request.show_id, request.seats, request.customer_name, request.email
            )
        except Exception:
            logger.exception(f"Unexpected error processing booking for show {request.show_id}")
            result = Rejected(RejectionReason.STORAGE_ERROR, "internal error while processing booking")
        request.response.set_result(result)


class ExpirySweeper:
    """Periodically deletes unconfirmed bookings older than the grace window.

    Works only on rows that can never be part of a show's confirmed occupancy,
    so it takes no show locks.
    """

    def __init__(self, db: DatabaseManager, interval_seconds: float = 3600, grace_minutes: float = 15):
        self.db = db
        self.interval_seconds = interval_seconds
        self.grace = timedelta(minutes=grace_minutes)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - self.grace
        removed = self.db.delete_stale_unconfirmed(cutoff)
        if removed > 0:
            logger.info(f"Cleaned up {removed} expired bookings")
        return removed

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="expiry-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Expiry sweeper stopped")

    def _loop(self):
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Background cleanup error: {e}")
