# Overview: Service-layer operations for ticket reservations; reserve, confirm, expire and cancel orders.

"""
Reservation Manager

TICKET RANGE LIFECYCLE:
    available -> reserved -> sold
                          -> canceled (order canceled, range released)
                          -> expired  (TTL passed without proof, range released)

ORDER GROUPING:
All ranges reserved under one reference code belong to one Order and move
together: confirm_sold() and cancel() transition every range of the order in
one transaction, or none of them.

CONCURRENCY:
Every operation below runs as one unit of work that starts with
lock_raffle(). On SQLite that is BEGIN IMMEDIATE (writers on the database
serialize); elsewhere it is SELECT ... FOR UPDATE on the raffle row. The
raffle's version_id is bumped by every mutation, so a writer that slipped
past the lock fails with StaleDataError, is retried, and finally surfaces
as RangeConflictError.

EXPIRY:
There is no timer. expire_stale() is called by the periodic sweep and lazily
by reserve() for the raffle being reserved. An order with payment proof is
never expired; it waits for confirmation.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..errors import (
    InvalidTransitionError,
    NotFoundError,
    RangeConflictError,
    ReservationExpiredError,
)
from ..extensions import db
from ..models import EventType, Order, OrderStatus, Raffle, RaffleStatus, TicketStatus
from ..time_utils import utcnow
from .concurrency import run_with_retry
from .customer_service import record_purchase
from .event_service import append_event
from .inventory_service import (
    find_available,
    indices_to_spans,
    lock_raffle,
    mark_range,
    touch_inventory,
    unavailable_indices,
)
from .numbering_service import NumberingConfig, format_number, parse_number
from .pricing_service import price


DEFAULT_TTL_MINUTES = 30
DEFAULT_MAX_TICKETS_PER_ORDER = 100_000
DEFAULT_EXPIRE_LIMIT = 500

CANCEL_REASON_EXPIRED = "expired"
CANCEL_REASON_CANCELED = "canceled"
CANCEL_REASON_RELEASED = "released"

BUYER_FIELDS = ("name", "email", "phone", "city")


def _conflict_after_retries(exc) -> RangeConflictError:
    return RangeConflictError()


def _ticket_status_for(order: Order) -> TicketStatus:
    if order.status == OrderStatus.SOLD:
        return TicketStatus.SOLD
    return TicketStatus.RESERVED


def _apply_buyer(order: Order, buyer: dict | None) -> None:
    if not buyer:
        return
    unknown = set(buyer) - set(BUYER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown buyer fields: {sorted(unknown)}")
    for field in BUYER_FIELDS:
        value = buyer.get(field)
        if value is not None:
            setattr(order, f"buyer_{field}", str(value).strip() or None)


# =============================================================================
# LOOKUPS
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def get_order_by_reference(raffle_id: int, reference_code: str) -> Order:
    order = (
        db.session.query(Order)
        .filter_by(raffle_id=raffle_id, reference_code=reference_code)
        .first()
    )
    if order is None:
        raise NotFoundError("Order", reference_code)
    return order


def _lock_order(order_id: int) -> tuple[Raffle, Order]:
    """Lock the order's raffle, then load the order fresh inside the lock."""
    raffle_id = db.session.query(Order.raffle_id).filter_by(id=order_id).scalar()
    if raffle_id is None:
        raise NotFoundError("Order", order_id)
    raffle = lock_raffle(raffle_id)
    order = db.session.query(Order).populate_existing().filter_by(id=order_id).one()
    return raffle, order


# =============================================================================
# RESERVE
# =============================================================================

def _reserve_spans(
    raffle_id: int,
    reference_code: str,
    choose_spans,
    *,
    ttl_minutes: int | None,
    buyer: dict | None,
    now: datetime | None,
    default_ttl_minutes: int,
) -> Order:
    """
    Shared reserve unit of work. choose_spans(raffle) returns the [start, end]
    spans to take; it runs inside the raffle lock.
    """
    if not reference_code or not reference_code.strip():
        raise ValueError("reference_code is required")
    reference_code = reference_code.strip()

    def _op():
        current = now or utcnow()
        raffle = lock_raffle(raffle_id)
        if raffle.status != RaffleStatus.ACTIVE:
            raise InvalidTransitionError(f"Raffle is {raffle.status.value}, tickets cannot be reserved")

        _expire_locked(raffle, current)

        order = (
            db.session.query(Order)
            .filter_by(raffle_id=raffle.id, reference_code=reference_code)
            .first()
        )
        if order is not None:
            if order.status != OrderStatus.RESERVED:
                raise ValueError(
                    f"Reference code {reference_code} is already {order.status.value}; use a new one"
                )
            if order.is_expired(current):
                raise ReservationExpiredError(order.id)

        spans = choose_spans(raffle)
        count = sum(end - start + 1 for start, end in spans)

        if order is None:
            order = Order(
                raffle_id=raffle.id,
                reference_code=reference_code,
                status=OrderStatus.RESERVED,
                ticket_count=0,
            )
            db.session.add(order)
            db.session.flush()

        for start, end in spans:
            mark_range(
                raffle, start, end, TicketStatus.RESERVED,
                expected_status=TicketStatus.AVAILABLE,
                order_id=order.id,
            )

        ttl = ttl_minutes or raffle.reservation_ttl_minutes or default_ttl_minutes
        _apply_buyer(order, buyer)
        order.ticket_count += count
        order.reserved_until = current + timedelta(minutes=ttl)
        order.order_total_cents = price(raffle.id, order.ticket_count)

        touch_inventory(raffle, current)
        append_event(
            event_type=EventType.ORDER_RESERVED,
            entity_type="order",
            entity_id=order.id,
            raffle_id=raffle.id,
            payload={
                "reference_code": order.reference_code,
                "spans": [[start, end] for start, end in spans],
                "ticket_count": order.ticket_count,
                "reserved_until": order.reserved_until.isoformat(),
            },
            occurred_at=current,
        )
        db.session.commit()
        return order

    return run_with_retry(_op, on_exhausted=_conflict_after_retries)


def reserve(
    raffle_id: int,
    count: int,
    reference_code: str,
    *,
    ttl_minutes: int | None = None,
    buyer: dict | None = None,
    now: datetime | None = None,
    max_tickets: int = DEFAULT_MAX_TICKETS_PER_ORDER,
    default_ttl_minutes: int = DEFAULT_TTL_MINUTES,
) -> Order:
    """
    Reserve `count` available tickets under reference_code.

    All-or-nothing: raises InsufficientInventoryError (nothing reserved) when
    fewer than `count` tickets are available. Reusing a reference code that is
    still reserved adds the new ranges to the same order.
    """
    if count <= 0:
        raise ValueError("count must be positive")
    if count > max_tickets:
        raise ValueError(f"At most {max_tickets} tickets can be reserved at once")

    return _reserve_spans(
        raffle_id,
        reference_code,
        lambda raffle: find_available(raffle.id, count),
        ttl_minutes=ttl_minutes,
        buyer=buyer,
        now=now,
        default_ttl_minutes=default_ttl_minutes,
    )


def _resolve_indices(raffle: Raffle, numbers) -> list[int]:
    """Ticket indices for a mix of display numbers (str) and indices (int)."""
    config = NumberingConfig.for_raffle(raffle)
    indices = set()
    for number in numbers:
        if isinstance(number, bool):
            raise ValueError(f"Invalid ticket number: {number!r}")
        if isinstance(number, int):
            index = number if 0 <= number < raffle.total_tickets else None
        else:
            index = parse_number(str(number), config, raffle.total_tickets)
        if index is None:
            raise ValueError(f"Ticket number {number} does not exist in this raffle")
        indices.add(index)
    return sorted(indices)


def reserve_numbers(
    raffle_id: int,
    numbers,
    reference_code: str,
    *,
    ttl_minutes: int | None = None,
    buyer: dict | None = None,
    now: datetime | None = None,
    max_tickets: int = DEFAULT_MAX_TICKETS_PER_ORDER,
    default_ttl_minutes: int = DEFAULT_TTL_MINUTES,
) -> Order:
    """
    Reserve specific tickets, given as display numbers or indices.

    Raises RangeConflictError naming the taken numbers if any of them is not
    available; nothing is reserved in that case.
    """
    numbers = list(numbers or [])
    if not numbers:
        raise ValueError("numbers must not be empty")
    if len(numbers) > max_tickets:
        raise ValueError(f"At most {max_tickets} tickets can be reserved at once")

    def _choose(raffle: Raffle):
        indices = _resolve_indices(raffle, numbers)
        config = NumberingConfig.for_raffle(raffle)
        taken = unavailable_indices(raffle.id, indices)
        if taken:
            shown = ", ".join(format_number(i, config) for i in taken[:20])
            raise RangeConflictError(
                f"Tickets no longer available: {shown}",
                indices=taken,
            )
        return indices_to_spans(indices)

    return _reserve_spans(
        raffle_id,
        reference_code,
        _choose,
        ttl_minutes=ttl_minutes,
        buyer=buyer,
        now=now,
        default_ttl_minutes=default_ttl_minutes,
    )


# =============================================================================
# PAYMENT
# =============================================================================

def attach_proof(order_id: int, proof_ref: str, *, now: datetime | None = None) -> Order:
    """
    Store an opaque reference (URL/key) to the buyer's payment proof.

    Idempotent for the same reference. Only while the order is reserved and
    unexpired; an order with proof is no longer expired by the sweep.
    """
    if not proof_ref or not proof_ref.strip():
        raise ValueError("proof_ref is required")
    proof_ref = proof_ref.strip()

    def _op():
        current = now or utcnow()
        _, order = _lock_order(order_id)
        if order.payment_proof_ref == proof_ref and order.status != OrderStatus.CANCELED:
            db.session.rollback()
            return order
        if order.status != OrderStatus.RESERVED:
            raise InvalidTransitionError(f"Order is {order.status.value}, proof can no longer be attached")
        if order.is_expired(current):
            raise ReservationExpiredError(order.id)

        order.payment_proof_ref = proof_ref
        db.session.commit()
        return order

    return run_with_retry(_op, on_exhausted=_conflict_after_retries)


def confirm_sold(order_id: int, *, override: bool = False, now: datetime | None = None) -> Order:
    """
    Reserved -> sold for every range of the order.

    Rejected with ReservationExpiredError after reserved_until unless an
    operator passes override=True. Confirming an already sold order is a
    no-op, so payment callbacks may be delivered more than once.
    """
    def _op():
        current = now or utcnow()
        raffle, order = _lock_order(order_id)

        if order.status == OrderStatus.SOLD:
            # Nothing to write; end the transaction so the write lock is released
            db.session.rollback()
            return order
        if order.status == OrderStatus.CANCELED:
            if order.cancel_reason == CANCEL_REASON_EXPIRED:
                raise ReservationExpiredError(order.id)
            raise InvalidTransitionError("Order was canceled and cannot be confirmed")
        if order.is_expired(current) and not override:
            raise ReservationExpiredError(order.id)

        for rng in list(order.ranges):
            mark_range(
                raffle, rng.start_index, rng.end_index, TicketStatus.SOLD,
                expected_status=TicketStatus.RESERVED,
                order_id=order.id,
                expected_order_id=order.id,
            )
        db.session.expire(order, ["ranges"])

        if order.order_total_cents is None:
            order.order_total_cents = price(raffle.id, order.ticket_count)
        order.status = OrderStatus.SOLD
        order.sold_at = current

        record_purchase(order, occurred_at=current)
        touch_inventory(raffle, current)
        append_event(
            event_type=EventType.ORDER_SOLD,
            entity_type="order",
            entity_id=order.id,
            raffle_id=raffle.id,
            payload={
                "reference_code": order.reference_code,
                "ticket_count": order.ticket_count,
                "order_total_cents": order.order_total_cents,
                "override": bool(override),
            },
            occurred_at=current,
        )
        db.session.commit()
        current_app.logger.info(
            "Order %s (%s) sold: %d tickets", order.id, order.reference_code, order.ticket_count,
        )
        return order

    return run_with_retry(_op, on_exhausted=_conflict_after_retries)


def confirm_reference(
    raffle_id: int,
    reference_code: str,
    *,
    override: bool = False,
    now: datetime | None = None,
) -> Order:
    """Inbound payment confirmation: "this reference code is paid"."""
    order = get_order_by_reference(raffle_id, reference_code)
    return confirm_sold(order.id, override=override, now=now)


# =============================================================================
# RELEASE (EXPIRE / CANCEL)
# =============================================================================

def _release_order_locked(raffle: Raffle, order: Order, *, reason: str, now: datetime) -> None:
    """Give every range of the order back to available and cancel it."""
    status = _ticket_status_for(order)
    for rng in list(order.ranges):
        mark_range(
            raffle, rng.start_index, rng.end_index, TicketStatus.AVAILABLE,
            expected_status=status,
            expected_order_id=order.id,
        )
    db.session.expire(order, ["ranges"])

    order.status = OrderStatus.CANCELED
    order.cancel_reason = reason
    order.canceled_at = now


def _expired_orders_query(now: datetime):
    return db.session.query(Order).filter(
        Order.status == OrderStatus.RESERVED,
        Order.reserved_until <= now,
        Order.payment_proof_ref.is_(None),
    )


def _expire_locked(raffle: Raffle, now: datetime, limit: int | None = None) -> list[int]:
    """Expire the raffle's stale reservations inside the caller's transaction."""
    q = _expired_orders_query(now).filter(Order.raffle_id == raffle.id).order_by(Order.reserved_until.asc())
    if limit is not None:
        q = q.limit(limit)

    expired = []
    for order in q.all():
        _release_order_locked(raffle, order, reason=CANCEL_REASON_EXPIRED, now=now)
        append_event(
            event_type=EventType.ORDER_EXPIRED,
            entity_type="order",
            entity_id=order.id,
            raffle_id=raffle.id,
            payload={"reference_code": order.reference_code, "ticket_count": order.ticket_count},
            occurred_at=now,
        )
        expired.append(order.id)

    if expired:
        touch_inventory(raffle, now)
    return expired


def expire_stale(
    raffle_id: int | None = None,
    *,
    now: datetime | None = None,
    limit: int = DEFAULT_EXPIRE_LIMIT,
) -> list[int]:
    """
    Sweep: cancel reserved orders past reserved_until that have no proof and
    release their tickets. Returns the expired order ids.

    Each raffle is swept under its own lock, so the sweep and a concurrent
    confirm_sold() on the same order serialize; the loser sees the new state.
    """
    current = now or utcnow()

    if raffle_id is not None:
        raffle_ids = [raffle_id]
    else:
        raffle_ids = [
            rid for (rid,) in (
                _expired_orders_query(current)
                .with_entities(Order.raffle_id)
                .distinct()
                .order_by(Order.raffle_id.asc())
                .all()
            )
        ]

    expired: list[int] = []
    for rid in raffle_ids:
        remaining = limit - len(expired)
        if remaining <= 0:
            break

        def _op(rid=rid, remaining=remaining):
            raffle = lock_raffle(rid)
            ids = _expire_locked(raffle, current, remaining)
            db.session.commit()
            return ids

        ids = run_with_retry(_op, on_exhausted=_conflict_after_retries)
        if ids:
            current_app.logger.info("Expired %d reservations for raffle %s", len(ids), rid)
        expired.extend(ids)

    return expired


def cancel(
    order_id: int,
    reason: str = CANCEL_REASON_CANCELED,
    *,
    force: bool = False,
    now: datetime | None = None,
) -> Order:
    """
    Cancel an order and release its tickets, regardless of TTL.

    A sold order is only canceled with force=True (operator refund).
    Canceling a canceled order is a no-op.
    """
    def _op():
        current = now or utcnow()
        raffle, order = _lock_order(order_id)

        if order.status == OrderStatus.CANCELED:
            db.session.rollback()
            return order
        if order.status == OrderStatus.SOLD and not force:
            raise InvalidTransitionError("Sold orders can only be canceled by an operator")

        previous = order.status
        _release_order_locked(raffle, order, reason=reason or CANCEL_REASON_CANCELED, now=current)
        touch_inventory(raffle, current)
        append_event(
            event_type=EventType.ORDER_CANCELED,
            entity_type="order",
            entity_id=order.id,
            raffle_id=raffle.id,
            payload={
                "reference_code": order.reference_code,
                "ticket_count": order.ticket_count,
                "previous_status": previous.value,
                "reason": order.cancel_reason,
            },
            occurred_at=current,
        )
        db.session.commit()
        current_app.logger.info("Order %s canceled (%s)", order.id, order.cancel_reason)
        return order

    return run_with_retry(_op, on_exhausted=_conflict_after_retries)


def release_tickets(order_id: int, indices, *, now: datetime | None = None) -> Order:
    """
    Give back some tickets of a reserved order.

    The order keeps the rest, ticket_count shrinks and the total is repriced.
    Releasing every ticket cancels the order.
    """
    wanted = sorted({int(i) for i in indices or []})
    if not wanted:
        raise ValueError("indices must not be empty")

    def _op():
        current = now or utcnow()
        raffle, order = _lock_order(order_id)
        if order.status != OrderStatus.RESERVED:
            raise InvalidTransitionError(f"Order is {order.status.value}, tickets cannot be released")

        for start, end in indices_to_spans(wanted):
            mark_range(
                raffle, start, end, TicketStatus.AVAILABLE,
                expected_status=TicketStatus.RESERVED,
                expected_order_id=order.id,
            )
        db.session.expire(order, ["ranges"])

        order.ticket_count -= len(wanted)
        if order.ticket_count <= 0:
            order.ticket_count = 0
            order.status = OrderStatus.CANCELED
            order.cancel_reason = CANCEL_REASON_RELEASED
            order.canceled_at = current
            append_event(
                event_type=EventType.ORDER_CANCELED,
                entity_type="order",
                entity_id=order.id,
                raffle_id=raffle.id,
                payload={"reference_code": order.reference_code, "reason": CANCEL_REASON_RELEASED},
                occurred_at=current,
            )
        else:
            order.order_total_cents = price(raffle.id, order.ticket_count)

        touch_inventory(raffle, current)
        db.session.commit()
        return order

    return run_with_retry(_op, on_exhausted=_conflict_after_retries)
