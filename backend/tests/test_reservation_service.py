# Overview: Pytest coverage for reservations; reserve, confirm, expiry, cancel, release and the buyer ledger.

from datetime import datetime, timedelta

import pytest

from raffle_engine.errors import (
    InsufficientInventoryError,
    InvalidTransitionError,
    NotFoundError,
    RangeConflictError,
    ReservationExpiredError,
)
from raffle_engine.extensions import db
from raffle_engine.models import DomainEvent, EventType, OrderStatus, TicketRange
from raffle_engine.services import inventory_service, raffle_service, reservation_service
from raffle_engine.services.customer_service import get_customer


T0 = datetime(2026, 3, 1, 12, 0, 0)
TTL = 30
EPSILON = timedelta(seconds=1)

BUYER = {"name": "Ana Diaz", "email": "Ana@Example.com", "phone": "+1 555 0100", "city": "Quito"}


def _ranges(order):
    return [
        (r.start_index, r.end_index, r.status.value)
        for r in db.session.query(TicketRange).filter_by(order_id=order.id).order_by(TicketRange.start_index)
    ]


def _event_types(raffle_id):
    return [
        e.event_type
        for e in db.session.query(DomainEvent).filter_by(raffle_id=raffle_id).order_by(DomainEvent.id)
    ]


class TestReserve:
    def test_reserve_takes_lowest_contiguous_tickets(self, raffle):
        order = reservation_service.reserve(raffle.id, 3, "CHK-1", buyer=BUYER, ttl_minutes=TTL, now=T0)

        assert order.status == OrderStatus.RESERVED
        assert order.ticket_count == 3
        assert order.reserved_until == T0 + timedelta(minutes=TTL)
        assert order.order_total_cents == 1500
        assert order.buyer_name == "Ana Diaz"
        assert _ranges(order) == [(0, 2, "reserved")]
        assert inventory_service.count_by_status(raffle.id)["available"] == 97
        order_events = [t for t in _event_types(raffle.id) if t.startswith("ORDER_")]
        assert order_events == [EventType.ORDER_RESERVED.value]

    def test_insufficient_inventory_reserves_nothing(self, raffle):
        reservation_service.reserve(raffle.id, 98, "BIG", now=T0)

        with pytest.raises(InsufficientInventoryError) as exc_info:
            reservation_service.reserve(raffle.id, 3, "LATE", now=T0)
        assert exc_info.value.available == 2
        assert exc_info.value.to_dict()["code"] == "INSUFFICIENT_INVENTORY"

        with pytest.raises(NotFoundError):
            reservation_service.get_order_by_reference(raffle.id, "LATE")
        assert inventory_service.count_by_status(raffle.id)["available"] == 2

    def test_same_reference_appends_ranges(self, raffle):
        reservation_service.reserve(raffle.id, 2, "CART", now=T0)
        reservation_service.reserve(raffle.id, 3, "OTHER", now=T0)
        order = reservation_service.reserve(raffle.id, 2, "CART", now=T0)

        assert order.ticket_count == 4
        assert _ranges(order) == [(0, 1, "reserved"), (5, 6, "reserved")]
        assert order.order_total_cents == 2000

    def test_reference_of_finished_order_rejected(self, raffle):
        order = reservation_service.reserve(raffle.id, 1, "DONE", now=T0)
        reservation_service.confirm_sold(order.id, now=T0)
        with pytest.raises(ValueError):
            reservation_service.reserve(raffle.id, 1, "DONE", now=T0)

    def test_package_price_applied(self, make_raffle):
        raffle = make_raffle(100, ticket_price_cents=500, packages={5: 2000})
        five = reservation_service.reserve(raffle.id, 5, "PKG", now=T0)
        four = reservation_service.reserve(raffle.id, 4, "UNIT", now=T0)
        assert five.order_total_cents == 2000
        assert four.order_total_cents == 2000

    def test_raffle_must_be_active(self, make_raffle):
        raffle = make_raffle(100, activate=False)
        with pytest.raises(InvalidTransitionError):
            reservation_service.reserve(raffle.id, 1, "X", now=T0)

        raffle_service.activate_raffle(raffle.id)
        raffle_service.pause_raffle(raffle.id)
        with pytest.raises(InvalidTransitionError):
            reservation_service.reserve(raffle.id, 1, "X", now=T0)

    def test_invalid_requests(self, raffle):
        with pytest.raises(ValueError):
            reservation_service.reserve(raffle.id, 0, "X", now=T0)
        with pytest.raises(ValueError):
            reservation_service.reserve(raffle.id, 1, "   ", now=T0)
        with pytest.raises(ValueError):
            reservation_service.reserve(raffle.id, 11, "X", now=T0, max_tickets=10)
        with pytest.raises(ValueError):
            reservation_service.reserve(raffle.id, 1, "X", buyer={"age": 30}, now=T0)

    def test_raffle_ttl_used_when_not_given(self, make_raffle):
        raffle = make_raffle(100, reservation_ttl_minutes=45)
        order = reservation_service.reserve(raffle.id, 1, "TTL", now=T0)
        assert order.reserved_until == T0 + timedelta(minutes=45)

    def test_default_ttl(self, raffle):
        order = reservation_service.reserve(raffle.id, 1, "TTL", now=T0, default_ttl_minutes=10)
        assert order.reserved_until == T0 + timedelta(minutes=10)


class TestReserveNumbers:
    def test_by_display_number_and_index(self, raffle):
        order = reservation_service.reserve_numbers(raffle.id, ["007", "008", 41], "PICK", now=T0)
        assert _ranges(order) == [(6, 7, "reserved"), (41, 41, "reserved")]
        assert order.ticket_count == 3

    def test_conflict_names_taken_numbers(self, raffle):
        reservation_service.reserve_numbers(raffle.id, ["010"], "FIRST", now=T0)

        with pytest.raises(RangeConflictError) as exc_info:
            reservation_service.reserve_numbers(raffle.id, ["009", "010", "011"], "SECOND", now=T0)
        assert "010" in exc_info.value.message
        assert exc_info.value.indices == [9]
        assert exc_info.value.retryable is True

        # All or nothing
        assert inventory_service.count_by_status(raffle.id)["reserved"] == 1

    def test_unknown_number(self, raffle):
        with pytest.raises(ValueError):
            reservation_service.reserve_numbers(raffle.id, ["101"], "X", now=T0)
        with pytest.raises(ValueError):
            reservation_service.reserve_numbers(raffle.id, [], "X", now=T0)

    def test_random_pick_then_reserve(self, raffle):
        picks = inventory_service.pick_random_available(raffle.id, 5)
        order = reservation_service.reserve_numbers(raffle.id, picks, "LUCKY", now=T0)
        assert order.ticket_count == 5


class TestConfirm:
    def test_confirm_sells_every_range(self, raffle):
        reservation_service.reserve(raffle.id, 2, "MULTI", buyer=BUYER, now=T0)
        reservation_service.reserve(raffle.id, 1, "GAP", now=T0)
        order = reservation_service.reserve(raffle.id, 2, "MULTI", now=T0)

        sold = reservation_service.confirm_sold(order.id, now=T0 + timedelta(minutes=5))
        assert sold.status == OrderStatus.SOLD
        assert sold.sold_at == T0 + timedelta(minutes=5)
        assert _ranges(sold) == [(0, 1, "sold"), (3, 4, "sold")]
        assert inventory_service.count_by_status(raffle.id)["sold"] == 4

    def test_confirm_is_idempotent(self, raffle):
        order = reservation_service.reserve(raffle.id, 2, "TWICE", buyer=BUYER, now=T0)
        reservation_service.confirm_sold(order.id, now=T0)
        reservation_service.confirm_sold(order.id, now=T0)

        assert _event_types(raffle.id).count(EventType.ORDER_SOLD.value) == 1
        assert get_customer(email="ana@example.com").total_orders == 1

    def test_confirm_by_reference(self, raffle):
        reservation_service.reserve(raffle.id, 1, "PAY-77", now=T0)
        order = reservation_service.confirm_reference(raffle.id, "PAY-77", now=T0)
        assert order.status == OrderStatus.SOLD

    def test_confirm_unknown_reference(self, raffle):
        with pytest.raises(NotFoundError):
            reservation_service.confirm_reference(raffle.id, "NOPE", now=T0)

    def test_confirm_after_expiry_rejected(self, raffle):
        order = reservation_service.reserve(raffle.id, 1, "SLOW", ttl_minutes=TTL, now=T0)
        with pytest.raises(ReservationExpiredError):
            reservation_service.confirm_sold(order.id, now=T0 + timedelta(minutes=TTL) + EPSILON)
        assert reservation_service.get_order(order.id).status == OrderStatus.RESERVED

    def test_operator_override(self, raffle):
        order = reservation_service.reserve(raffle.id, 1, "SLOW", ttl_minutes=TTL, now=T0)
        sold = reservation_service.confirm_sold(
            order.id, override=True, now=T0 + timedelta(minutes=TTL) + EPSILON,
        )
        assert sold.status == OrderStatus.SOLD

    def test_confirm_expired_and_swept_order(self, raffle):
        order = reservation_service.reserve(raffle.id, 1, "GONE", ttl_minutes=TTL, now=T0)
        reservation_service.expire_stale(raffle.id, now=T0 + timedelta(hours=1))
        with pytest.raises(ReservationExpiredError):
            reservation_service.confirm_sold(order.id, override=True, now=T0 + timedelta(hours=1))

    def test_confirm_canceled_order(self, raffle):
        order = reservation_service.reserve(raffle.id, 1, "CXL", now=T0)
        reservation_service.cancel(order.id, now=T0)
        with pytest.raises(InvalidTransitionError):
            reservation_service.confirm_sold(order.id, now=T0)


class TestExpiry:
    """Reservation TTL boundary."""

    def test_still_reserved_just_before_ttl(self, raffle):
        order = reservation_service.reserve(raffle.id, 3, "EDGE", ttl_minutes=TTL, now=T0)
        expired = reservation_service.expire_stale(now=T0 + timedelta(minutes=TTL) - EPSILON)

        assert expired == []
        assert reservation_service.get_order(order.id).status == OrderStatus.RESERVED
        assert inventory_service.count_by_status(raffle.id)["reserved"] == 3

    def test_expired_just_after_ttl_and_reservable_again(self, raffle):
        order = reservation_service.reserve(raffle.id, 3, "EDGE", ttl_minutes=TTL, now=T0)
        later = T0 + timedelta(minutes=TTL) + EPSILON

        expired = reservation_service.expire_stale(now=later)
        assert expired == [order.id]

        order = reservation_service.get_order(order.id)
        assert order.status == OrderStatus.CANCELED
        assert order.cancel_reason == reservation_service.CANCEL_REASON_EXPIRED
        assert inventory_service.count_by_status(raffle.id)["available"] == 100
        assert EventType.ORDER_EXPIRED.value in _event_types(raffle.id)

        again = reservation_service.reserve(raffle.id, 3, "NEXT", now=later)
        assert _ranges(again) == [(0, 2, "reserved")]

    def test_reserve_expires_lazily(self, raffle):
        reservation_service.reserve(raffle.id, 100, "ALL", ttl_minutes=TTL, now=T0)
        with pytest.raises(InsufficientInventoryError):
            reservation_service.reserve(raffle.id, 1, "WAIT", now=T0 + timedelta(minutes=1))

        order = reservation_service.reserve(raffle.id, 1, "WAIT", now=T0 + timedelta(minutes=TTL + 1))
        assert order.ticket_count == 1

    def test_proof_prevents_expiry(self, raffle):
        order = reservation_service.reserve(raffle.id, 2, "PROOF", ttl_minutes=TTL, now=T0)
        reservation_service.attach_proof(order.id, "s3://proofs/1.jpg", now=T0 + timedelta(minutes=10))

        assert reservation_service.expire_stale(now=T0 + timedelta(hours=5)) == []
        # Proof still needs confirmation; late confirmation needs an operator
        sold = reservation_service.confirm_sold(order.id, override=True, now=T0 + timedelta(hours=5))
        assert sold.status == OrderStatus.SOLD

    def test_sweep_limit(self, raffle):
        for i in range(3):
            reservation_service.reserve(raffle.id, 1, f"R{i}", ttl_minutes=TTL, now=T0)
        first = reservation_service.expire_stale(now=T0 + timedelta(hours=1), limit=2)
        second = reservation_service.expire_stale(now=T0 + timedelta(hours=1), limit=2)
        assert len(first) == 2
        assert len(second) == 1

    def test_sweep_across_raffles(self, make_raffle):
        a = make_raffle(10)
        b = make_raffle(10)
        reservation_service.reserve(a.id, 1, "A", ttl_minutes=TTL, now=T0)
        reservation_service.reserve(b.id, 1, "B", ttl_minutes=TTL, now=T0)
        assert len(reservation_service.expire_stale(now=T0 + timedelta(hours=1))) == 2


class TestProof:
    def test_attach_is_idempotent(self, raffle):
        order = reservation_service.reserve(raffle.id, 1, "P", now=T0)
        reservation_service.attach_proof(order.id, "ref-1", now=T0)
        again = reservation_service.attach_proof(order.id, "ref-1", now=T0)
        assert again.payment_proof_ref == "ref-1"

    def test_attach_after_expiry_rejected(self, raffle):
        order = reservation_service.reserve(raffle.id, 1, "P", ttl_minutes=TTL, now=T0)
        with pytest.raises(ReservationExpiredError):
            reservation_service.attach_proof(order.id, "ref-1", now=T0 + timedelta(minutes=TTL))

    def test_attach_requires_reference(self, raffle):
        order = reservation_service.reserve(raffle.id, 1, "P", now=T0)
        with pytest.raises(ValueError):
            reservation_service.attach_proof(order.id, " ", now=T0)


class TestCancel:
    def test_cancel_releases_tickets(self, raffle):
        order = reservation_service.reserve(raffle.id, 5, "BYE", now=T0)
        canceled = reservation_service.cancel(order.id, "buyer request", now=T0)

        assert canceled.status == OrderStatus.CANCELED
        assert canceled.cancel_reason == "buyer request"
        assert _ranges(canceled) == []
        assert inventory_service.count_by_status(raffle.id)["available"] == 100

    def test_cancel_sold_requires_force(self, raffle):
        order = reservation_service.reserve(raffle.id, 2, "REFUND", buyer=BUYER, now=T0)
        reservation_service.confirm_sold(order.id, now=T0)

        with pytest.raises(InvalidTransitionError):
            reservation_service.cancel(order.id, now=T0)

        reservation_service.cancel(order.id, "refund", force=True, now=T0)
        assert inventory_service.count_by_status(raffle.id)["sold"] == 0
        # Ledger keeps the purchase history
        assert get_customer(email="ana@example.com").total_tickets == 2

    def test_cancel_twice_is_noop(self, raffle):
        order = reservation_service.reserve(raffle.id, 1, "X", now=T0)
        reservation_service.cancel(order.id, now=T0)
        reservation_service.cancel(order.id, now=T0)
        assert _event_types(raffle.id).count(EventType.ORDER_CANCELED.value) == 1


class TestRelease:
    def test_partial_release_reprices(self, raffle):
        order = reservation_service.reserve(raffle.id, 5, "PART", now=T0)
        order = reservation_service.release_tickets(order.id, [1, 2], now=T0)

        assert order.ticket_count == 3
        assert order.order_total_cents == 1500
        assert _ranges(order) == [(0, 0, "reserved"), (3, 4, "reserved")]

    def test_release_everything_cancels(self, raffle):
        order = reservation_service.reserve(raffle.id, 2, "ALL", now=T0)
        order = reservation_service.release_tickets(order.id, [0, 1], now=T0)
        assert order.status == OrderStatus.CANCELED
        assert order.cancel_reason == reservation_service.CANCEL_REASON_RELEASED

    def test_release_foreign_tickets_rejected(self, raffle):
        mine = reservation_service.reserve(raffle.id, 2, "MINE", now=T0)
        reservation_service.reserve(raffle.id, 2, "THEIRS", now=T0)
        with pytest.raises(RangeConflictError):
            reservation_service.release_tickets(mine.id, [2], now=T0)
        assert reservation_service.get_order(mine.id).ticket_count == 2


class TestCustomerLedger:
    def test_sale_creates_and_updates_customer(self, raffle):
        first = reservation_service.reserve(raffle.id, 2, "L1", buyer=BUYER, now=T0)
        reservation_service.confirm_sold(first.id, now=T0)
        second = reservation_service.reserve(raffle.id, 3, "L2", buyer=BUYER, now=T0 + timedelta(days=1))
        reservation_service.confirm_sold(second.id, now=T0 + timedelta(days=1))

        customer = get_customer(email=" ANA@example.com ")
        assert customer.total_orders == 2
        assert customer.total_tickets == 5
        assert customer.total_spent_cents == 2500
        assert customer.first_purchase_at == T0
        assert customer.last_purchase_at == T0 + timedelta(days=1)
        assert customer.city == "Quito"

    def test_phone_only_buyer(self, raffle):
        order = reservation_service.reserve(raffle.id, 1, "TEL", buyer={"phone": "(555) 0199"}, now=T0)
        reservation_service.confirm_sold(order.id, now=T0)
        assert get_customer(phone="555-0199").total_orders == 1

    def test_reservation_alone_does_not_touch_ledger(self, raffle):
        reservation_service.reserve(raffle.id, 1, "NOPAY", buyer=BUYER, now=T0)
        assert get_customer(email="ana@example.com") is None
