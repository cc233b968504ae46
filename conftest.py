"""Pytest configuration and shared fixtures."""

import pytest

from admission import AdmissionPipeline
from app import create_app, shutdown
from config import Settings
from database_manager import DatabaseManager
from lock_registry import LockRegistry

SHOW_ID = "test_show_123"


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'cinema.db'}")
    yield manager
    manager.dispose()


@pytest.fixture
def show(db):
    """A show with 100 seats (rows A-D x 13, E-H x 12) at 10.00 per ticket."""
    db.initialize_show(SHOW_ID, total_seats=100, ticket_price=10.0)
    return db.get_show(SHOW_ID)


@pytest.fixture
def locks():
    return LockRegistry()


@pytest.fixture
def pipeline(db, locks):
    return AdmissionPipeline(db, locks)


@pytest.fixture
def app(tmp_path):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        booking_workers=4,
        booking_timeout_seconds=10,
        seed_demo_data=False,
    )
    flask_app = create_app(settings)
    flask_app.config["TESTING"] = True
    yield flask_app
    shutdown(flask_app)


@pytest.fixture
def client(app):
    return app.test_client()
