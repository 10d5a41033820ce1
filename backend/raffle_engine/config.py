# backend/raffle_engine/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///raffles.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Ticket generation worker
    GENERATION_BATCH_SIZE = _env_int("GENERATION_BATCH_SIZE", 50_000)
    GENERATION_MAX_BATCHES_PER_RUN = _env_int("GENERATION_MAX_BATCHES_PER_RUN", 20)
    GENERATION_MAX_JOBS_PER_RUN = _env_int("GENERATION_MAX_JOBS_PER_RUN", 5)
    GENERATION_STALE_MINUTES = _env_int("GENERATION_STALE_MINUTES", 10)
    GENERATION_MAX_STALE_RESETS = _env_int("GENERATION_MAX_STALE_RESETS", 3)

    # Reservations
    RESERVATION_TTL_MINUTES = _env_int("RESERVATION_TTL_MINUTES", 30)
    MAX_TICKETS_PER_ORDER = _env_int("MAX_TICKETS_PER_ORDER", 100_000)

    # Archival
    ARCHIVE_RETENTION_DAYS = _env_int("ARCHIVE_RETENTION_DAYS", 90)
    ARCHIVE_MAX_RAFFLES_PER_RUN = _env_int("ARCHIVE_MAX_RAFFLES_PER_RUN", 10)

    # Scheduled draws
    AUTO_DRAW_MAX_RAFFLES_PER_RUN = _env_int("AUTO_DRAW_MAX_RAFFLES_PER_RUN", 10)

    EXPORT_PAGE_SIZE = _env_int("EXPORT_PAGE_SIZE", 1000)
