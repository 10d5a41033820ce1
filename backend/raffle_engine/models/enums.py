"""
Closed status vocabularies for raffles, ticket ranges, orders and generation jobs.

Columns store the lowercase value; SQLAlchemy hands back the enum member.
"""

from __future__ import annotations

from enum import Enum

from ..extensions import db


class RaffleStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELED = "canceled"


class TicketStatus(str, Enum):
    # AVAILABLE is never stored; it is the complement of the stored ranges.
    AVAILABLE = "available"
    RESERVED = "reserved"
    SOLD = "sold"
    CANCELED = "canceled"


class OrderStatus(str, Enum):
    RESERVED = "reserved"
    SOLD = "sold"
    CANCELED = "canceled"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EventType(str, Enum):
    ORDER_RESERVED = "ORDER_RESERVED"
    ORDER_SOLD = "ORDER_SOLD"
    ORDER_CANCELED = "ORDER_CANCELED"
    ORDER_EXPIRED = "ORDER_EXPIRED"
    GENERATION_COMPLETED = "GENERATION_COMPLETED"
    GENERATION_FAILED = "GENERATION_FAILED"
    WINNER_DRAWN = "WINNER_DRAWN"
    RAFFLE_ARCHIVED = "RAFFLE_ARCHIVED"
    ARCHIVE_FAILED = "ARCHIVE_FAILED"


def enum_column(enum_cls, *, length: int = 16):
    """String-backed column restricted to the values of enum_cls."""
    return db.Enum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=length,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )
