# Overview: Service-layer operations for winner draws; uniform pick over sold ranges without loading them.

"""
Winner Selector

SELECTION:
    sold_count = total length of the raffle's SOLD ranges
    r          = secrets.randbelow(sold_count)
    winner     = the r-th sold ticket under a fixed order

Every sold ticket occupies exactly one position in [0, sold_count), so each
has probability 1/sold_count whichever order is used.

PRIMARY ("window"): ranges ordered by start_index with a running SUM() OVER
window; the database returns the single range whose cumulative length first
exceeds r. Nothing is materialized in Python.

FALLBACK ("creation_order"): when the window query is unavailable the sold
ranges are streamed in order creation order and the cumulative count is
walked until it passes r.

Draw-then-persist: draw_winner() only reads. The caller records the result
once with record_draw(); reading a result never redraws.

SCHEDULED: auto_draw_due() draws once for every active raffle past its
draw_date, under the raffle lock, and completes it.
"""

from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, ProgrammingError, SQLAlchemyError

from ..errors import InvalidTransitionError, NoSoldTicketsError, RaffleError
from ..extensions import db
from ..models import EventType, Order, Raffle, RaffleStatus, TicketRange, TicketStatus, WinnerDraw
from ..time_utils import utcnow
from .event_service import append_event
from .inventory_service import RANGE_SCAN_PAGE, get_raffle, lock_raffle
from .numbering_service import NumberingConfig, format_number


METHOD_WINDOW = "window"
METHOD_CREATION_ORDER = "creation_order"

DRAWABLE_STATUSES = (RaffleStatus.ACTIVE, RaffleStatus.PAUSED, RaffleStatus.COMPLETED)
DEFAULT_AUTO_DRAW_LIMIT = 10


@dataclass(frozen=True)
class DrawResult:
    ticket_index: int
    display_number: str
    order_id: int
    reference_code: str | None
    buyer_name: str | None
    buyer_email: str | None
    buyer_phone: str | None
    buyer_city: str | None
    sold_count: int
    random_offset: int
    method: str

    def to_dict(self) -> dict:
        return asdict(self)


def _range_size():
    return TicketRange.end_index - TicketRange.start_index + 1


def sold_count(raffle_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(_range_size()), 0))
        .filter(TicketRange.raffle_id == raffle_id, TicketRange.status == TicketStatus.SOLD)
        .scalar()
    )
    return int(total or 0)


def _pick_by_window(raffle_id: int, offset: int) -> tuple[int, int]:
    """(ticket_index, order_id) of the offset-th sold ticket in index order."""
    sold = (
        select(
            TicketRange.start_index,
            TicketRange.order_id,
            func.sum(_range_size()).over(order_by=TicketRange.start_index).label("cumulative"),
            _range_size().label("size"),
        )
        .where(TicketRange.raffle_id == raffle_id, TicketRange.status == TicketStatus.SOLD)
        .subquery()
    )
    row = db.session.execute(
        select(sold)
        .where(sold.c.cumulative > offset)
        .order_by(sold.c.start_index.asc())
        .limit(1)
    ).first()
    if row is None:
        raise NoSoldTicketsError(raffle_id)
    preceding = int(row.cumulative) - int(row.size)
    return row.start_index + offset - preceding, row.order_id


def _pick_by_creation_order(raffle_id: int, offset: int) -> tuple[int, int]:
    """(ticket_index, order_id) of the offset-th sold ticket in order creation order."""
    stmt = (
        select(TicketRange.start_index, TicketRange.end_index, TicketRange.order_id)
        .join(Order, Order.id == TicketRange.order_id)
        .where(TicketRange.raffle_id == raffle_id, TicketRange.status == TicketStatus.SOLD)
        .order_by(Order.created_at.asc(), Order.id.asc(), TicketRange.start_index.asc())
        .execution_options(yield_per=RANGE_SCAN_PAGE)
    )
    result = db.session.execute(stmt)
    try:
        seen = 0
        for start, end, order_id in result:
            size = end - start + 1
            if offset < seen + size:
                return start + offset - seen, order_id
            seen += size
    finally:
        result.close()
    raise NoSoldTicketsError(raffle_id)


def draw_winner(raffle_id: int, *, method: str = METHOD_WINDOW) -> DrawResult:
    """
    Pick one sold ticket uniformly at random.

    Raises NoSoldTicketsError when nothing has been sold.
    """
    raffle = get_raffle(raffle_id)
    if raffle.status not in DRAWABLE_STATUSES:
        raise InvalidTransitionError(f"Raffle is {raffle.status.value}, a winner cannot be drawn")
    if raffle.archived_at is not None:
        raise InvalidTransitionError("Raffle is archived")

    count = sold_count(raffle_id)
    if count == 0:
        raise NoSoldTicketsError(raffle_id)

    offset = secrets.randbelow(count)

    picked = None
    if method == METHOD_WINDOW:
        try:
            picked = _pick_by_window(raffle_id, offset)
        except (OperationalError, ProgrammingError) as exc:
            db.session.rollback()
            current_app.logger.warning(
                "Window draw unavailable for raffle %s, using creation order: %s", raffle_id, exc,
            )
            method = METHOD_CREATION_ORDER
    elif method != METHOD_CREATION_ORDER:
        raise ValueError(f"Unknown draw method: {method}")

    if picked is None:
        picked = _pick_by_creation_order(raffle_id, offset)

    ticket_index, order_id = picked
    order = db.session.get(Order, order_id)
    config = NumberingConfig.for_raffle(raffle)

    return DrawResult(
        ticket_index=ticket_index,
        display_number=format_number(ticket_index, config),
        order_id=order_id,
        reference_code=order.reference_code if order else None,
        buyer_name=order.buyer_name if order else None,
        buyer_email=order.buyer_email if order else None,
        buyer_phone=order.buyer_phone if order else None,
        buyer_city=order.buyer_city if order else None,
        sold_count=count,
        random_offset=offset,
        method=method,
    )


def record_draw(
    raffle_id: int,
    result: DrawResult,
    *,
    prize_name: str | None = None,
    complete_raffle: bool = False,
    now: datetime | None = None,
) -> WinnerDraw:
    """Persist a draw result exactly once and announce it."""
    now = now or utcnow()
    raffle = get_raffle(raffle_id)

    draw = WinnerDraw(
        raffle_id=raffle_id,
        prize_name=prize_name,
        ticket_index=result.ticket_index,
        ticket_number=result.display_number,
        order_id=result.order_id,
        winner_name=result.buyer_name,
        winner_email=result.buyer_email,
        winner_phone=result.buyer_phone,
        winner_city=result.buyer_city,
        sold_count=result.sold_count,
        random_offset=result.random_offset,
        method=result.method,
        drawn_at=now,
    )
    db.session.add(draw)
    db.session.flush()

    if complete_raffle and raffle.status != RaffleStatus.COMPLETED:
        raffle.status = RaffleStatus.COMPLETED
    if complete_raffle and raffle.draw_date is None:
        raffle.draw_date = now

    append_event(
        event_type=EventType.WINNER_DRAWN,
        entity_type="winner_draw",
        entity_id=draw.id,
        raffle_id=raffle_id,
        payload={
            "prize_name": prize_name,
            "ticket_number": result.display_number,
            "order_id": result.order_id,
            "method": result.method,
        },
        occurred_at=now,
    )
    db.session.commit()
    current_app.logger.info(
        "Winner drawn for raffle %s: ticket %s (order %s, %s of %s sold, %s)",
        raffle_id, result.display_number, result.order_id,
        result.random_offset, result.sold_count, result.method,
    )
    return draw


def list_draws(raffle_id: int) -> list[WinnerDraw]:
    return (
        db.session.query(WinnerDraw)
        .filter_by(raffle_id=raffle_id)
        .order_by(WinnerDraw.drawn_at.asc(), WinnerDraw.id.asc())
        .all()
    )


# =============================================================================
# SCHEDULED DRAWS
# =============================================================================

def _due_raffle_ids(now: datetime, limit: int) -> list[int]:
    return [
        rid for (rid,) in (
            db.session.query(Raffle.id)
            .filter(
                Raffle.status == RaffleStatus.ACTIVE,
                Raffle.archived_at.is_(None),
                Raffle.draw_date.isnot(None),
                Raffle.draw_date < now,
            )
            .order_by(Raffle.draw_date.asc(), Raffle.id.asc())
            .limit(limit)
            .all()
        )
    ]


def _auto_draw_one(raffle_id: int, now: datetime) -> dict | None:
    """Draw, record and complete one due raffle. None when another caller got there first."""
    raffle = lock_raffle(raffle_id)
    if raffle.status != RaffleStatus.ACTIVE:
        db.session.rollback()
        return None

    already_drawn = db.session.query(WinnerDraw.id).filter_by(raffle_id=raffle_id).first() is not None
    if already_drawn:
        # Winners were drawn by an operator; only the completion is missing
        raffle.status = RaffleStatus.COMPLETED
        db.session.commit()
        return {"raffle_id": raffle_id, "drawn": False, "reason": "already drawn"}

    try:
        result = draw_winner(raffle_id)
    except NoSoldTicketsError:
        raffle.status = RaffleStatus.COMPLETED
        db.session.commit()
        current_app.logger.info(
            "Raffle %s reached its draw date with no sold tickets; completed without winner", raffle_id,
        )
        return {"raffle_id": raffle_id, "drawn": False, "reason": "no sold tickets"}

    draw = record_draw(raffle_id, result, complete_raffle=True, now=now)
    return {
        "raffle_id": raffle_id,
        "drawn": True,
        "draw_id": draw.id,
        "ticket_number": result.display_number,
        "winner_name": result.buyer_name,
    }


def auto_draw_due(*, now: datetime | None = None, limit: int = DEFAULT_AUTO_DRAW_LIMIT) -> dict:
    """
    Scheduled draw for active raffles whose draw_date has passed.

    Each due raffle gets one winner and is completed; a raffle without sold
    tickets is completed without a winner. One raffle's failure is logged and
    recorded, the run continues.
    """
    now = now or utcnow()
    raffle_ids = _due_raffle_ids(now, limit)
    if not raffle_ids:
        current_app.logger.info("No raffles due for an automatic draw")

    processed, failed = [], []
    for raffle_id in raffle_ids:
        try:
            outcome = _auto_draw_one(raffle_id, now)
        except (RaffleError, SQLAlchemyError) as exc:
            db.session.rollback()
            current_app.logger.error("Automatic draw for raffle %s failed: %s", raffle_id, exc)
            failed.append({"raffle_id": raffle_id, "error": str(exc)})
            continue
        if outcome is not None:
            processed.append(outcome)

    return {"processed": processed, "failed": failed}
