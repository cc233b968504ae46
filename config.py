"""Runtime settings sourced from the environment (and an optional .env file)."""

from dataclasses import dataclass
import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = "sqlite:///cinema.db"
    booking_workers: int = 4
    booking_queue_size: int = 100
    booking_timeout_seconds: int = 30
    expiry_sweep_interval_seconds: int = 3600
    unconfirmed_grace_minutes: int = 15
    seed_demo_data: bool = True
    port: int = 5000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from DATABASE_URL, BOOKING_* and friends."""
        return cls(
            database_url=os.getenv("DATABASE_URL") or cls.database_url,
            booking_workers=_env_int("BOOKING_WORKERS", cls.booking_workers),
            booking_queue_size=_env_int("BOOKING_QUEUE_SIZE", cls.booking_queue_size),
            booking_timeout_seconds=_env_int("BOOKING_TIMEOUT_SECONDS", cls.booking_timeout_seconds),
            expiry_sweep_interval_seconds=_env_int(
                "EXPIRY_SWEEP_INTERVAL_SECONDS", cls.expiry_sweep_interval_seconds
            ),
            unconfirmed_grace_minutes=_env_int("UNCONFIRMED_GRACE_MINUTES", cls.unconfirmed_grace_minutes),
            seed_demo_data=_env_bool("SEED_DEMO_DATA", cls.seed_demo_data),
            port=_env_int("PORT", cls.port),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
