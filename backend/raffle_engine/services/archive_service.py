# Overview: Service-layer operations for archiving finished raffles; summary first, then detail deletion.

"""
Archival Compactor

ELIGIBILITY:
    status == completed
    AND draw_date <= now - retention_days
    AND archived_at IS NULL

ORDER OF WRITES (per raffle):
1. ArchivedSummary is computed from the order detail and COMMITTED.
2. Ticket ranges and orders are deleted, archived_at is set, RAFFLE_ARCHIVED
   is emitted (second commit).

A failure before (1) leaves the raffle untouched. A failure between (1) and
(2) is retried safely: the existing summary short-circuits recomputation, so
the summary always describes the detail as it was before deletion.

The Customer ledger, winner draws and domain events are never deleted.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..errors import ArchivePreconditionError, RaffleError
from ..extensions import db
from ..models import (
    ArchivedSummary,
    EventType,
    Order,
    OrderStatus,
    Raffle,
    RaffleStatus,
    TicketRange,
    TicketStatus,
    WinnerDraw,
)
from ..time_utils import utcnow
from .customer_service import buyer_key
from .event_service import append_event
from .inventory_service import RANGE_SCAN_PAGE, get_raffle


DEFAULT_RETENTION_DAYS = 90
DEFAULT_MAX_RAFFLES_PER_RUN = 10


def _ineligibility(raffle: Raffle, now: datetime, retention_days: int) -> str | None:
    if raffle.archived_at is not None:
        return "Raffle is already archived"
    if raffle.status != RaffleStatus.COMPLETED:
        return f"Raffle is {raffle.status.value}, only completed raffles are archived"
    if raffle.draw_date is None:
        return "Raffle has no draw date"
    if raffle.draw_date > now - timedelta(days=retention_days):
        return f"Draw date is within the {retention_days}-day retention window"
    return None


def is_eligible(raffle: Raffle, *, now: datetime | None = None, retention_days: int = DEFAULT_RETENTION_DAYS) -> bool:
    return _ineligibility(raffle, now or utcnow(), retention_days) is None


def check_eligibility(raffle: Raffle, *, now: datetime | None = None, retention_days: int = DEFAULT_RETENTION_DAYS) -> None:
    reason = _ineligibility(raffle, now or utcnow(), retention_days)
    if reason:
        raise ArchivePreconditionError(reason)


def _sum_ranges(raffle_id: int, status: TicketStatus) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(TicketRange.end_index - TicketRange.start_index + 1), 0))
        .filter(TicketRange.raffle_id == raffle_id, TicketRange.status == status)
        .scalar()
    )
    return int(total or 0)


def build_summary(raffle: Raffle) -> dict:
    """Aggregate the raffle's current detail (read only)."""
    revenue = (
        db.session.query(func.coalesce(func.sum(Order.order_total_cents), 0))
        .filter(Order.raffle_id == raffle.id, Order.status == OrderStatus.SOLD)
        .scalar()
    )

    buyers = set()
    cities = Counter()
    rows = (
        db.session.query(Order.buyer_email, Order.buyer_phone, Order.buyer_city)
        .filter(Order.raffle_id == raffle.id, Order.status == OrderStatus.SOLD)
        .yield_per(RANGE_SCAN_PAGE)
    )
    for email, phone, city in rows:
        key = buyer_key(email, phone)
        if key:
            buyers.add(key)
        if city and city.strip():
            cities[city.strip()] += 1

    draws = (
        db.session.query(WinnerDraw)
        .filter_by(raffle_id=raffle.id)
        .order_by(WinnerDraw.drawn_at.asc(), WinnerDraw.id.asc())
        .all()
    )
    winners = [
        {
            "prize_name": d.prize_name,
            "ticket_number": d.ticket_number,
            "winner_name": d.winner_name,
            "winner_city": d.winner_city,
        }
        for d in draws
    ]

    return {
        "tickets_sold": _sum_ranges(raffle.id, TicketStatus.SOLD),
        "tickets_reserved": _sum_ranges(raffle.id, TicketStatus.RESERVED),
        "total_revenue_cents": int(revenue or 0),
        "unique_buyers": len(buyers),
        "buyer_cities": dict(sorted(cities.items())),
        "winners": winners,
        "draw_executed_at": draws[0].drawn_at if draws else None,
    }


def get_summary(raffle_id: int) -> ArchivedSummary | None:
    return db.session.query(ArchivedSummary).filter_by(raffle_id=raffle_id).first()


def archive_raffle(
    raffle_id: int,
    *,
    now: datetime | None = None,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> dict:
    """
    Archive one raffle. Calling it again for an archived raffle is a no-op.

    Raises ArchivePreconditionError when the raffle is not eligible yet.
    """
    now = now or utcnow()
    raffle = get_raffle(raffle_id)

    if raffle.archived_at is not None:
        return {"raffle_id": raffle_id, "archived": False, "summary_created": False, "skipped": "already archived"}
    check_eligibility(raffle, now=now, retention_days=retention_days)

    # 1. Summary, committed before any detail is touched
    summary = get_summary(raffle_id)
    summary_created = summary is None
    if summary_created:
        summary = ArchivedSummary(raffle_id=raffle_id, archived_at=now, **build_summary(raffle))
        db.session.add(summary)
        db.session.commit()

    # 2. Detail deletion
    ranges_deleted = (
        db.session.query(TicketRange)
        .filter(TicketRange.raffle_id == raffle_id)
        .delete(synchronize_session=False)
    )
    orders_deleted = (
        db.session.query(Order)
        .filter(Order.raffle_id == raffle_id)
        .delete(synchronize_session=False)
    )
    raffle.archived_at = now
    append_event(
        event_type=EventType.RAFFLE_ARCHIVED,
        entity_type="raffle",
        entity_id=raffle_id,
        raffle_id=raffle_id,
        payload={
            "tickets_sold": summary.tickets_sold,
            "total_revenue_cents": summary.total_revenue_cents,
            "orders_deleted": orders_deleted,
        },
        occurred_at=now,
    )
    db.session.commit()
    db.session.expire_all()

    current_app.logger.info(
        "Archived raffle %s: %d orders and %d ranges removed", raffle_id, orders_deleted, ranges_deleted,
    )
    return {
        "raffle_id": raffle_id,
        "archived": True,
        "summary_created": summary_created,
        "orders_deleted": orders_deleted,
        "ranges_deleted": ranges_deleted,
    }


def _record_failure(raffle_id: int, exc: Exception, now: datetime) -> None:
    """Emit ARCHIVE_FAILED in its own transaction, after the failed one was rolled back."""
    try:
        append_event(
            event_type=EventType.ARCHIVE_FAILED,
            entity_type="raffle",
            entity_id=raffle_id,
            raffle_id=raffle_id,
            payload={"error": str(exc), "error_type": type(exc).__name__},
            occurred_at=now,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Could not record archival failure for raffle %s", raffle_id)


def archive_old_raffles(
    *,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    limit: int = DEFAULT_MAX_RAFFLES_PER_RUN,
    now: datetime | None = None,
) -> dict:
    """
    Bounded archival run over eligible raffles, oldest draw first.

    One raffle's failure is logged, returned in "failed" and emitted as an
    ARCHIVE_FAILED event; the run continues.
    """
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)
    raffle_ids = [
        rid for (rid,) in (
            db.session.query(Raffle.id)
            .filter(
                Raffle.status == RaffleStatus.COMPLETED,
                Raffle.archived_at.is_(None),
                Raffle.draw_date.isnot(None),
                Raffle.draw_date <= cutoff,
            )
            .order_by(Raffle.draw_date.asc(), Raffle.id.asc())
            .limit(limit)
            .all()
        )
    ]

    archived, failed = [], []
    for raffle_id in raffle_ids:
        try:
            archived.append(archive_raffle(raffle_id, now=now, retention_days=retention_days))
        except ArchivePreconditionError as exc:
            db.session.rollback()
            current_app.logger.info("Skipping raffle %s: %s", raffle_id, exc.message)
        except (RaffleError, SQLAlchemyError) as exc:
            db.session.rollback()
            current_app.logger.error("Archiving raffle %s failed: %s", raffle_id, exc)
            failed.append({"raffle_id": raffle_id, "error": str(exc)})
            _record_failure(raffle_id, exc, now)

    if not raffle_ids:
        current_app.logger.info("No raffles eligible for archival")
    return {"archived": archived, "failed": failed}
