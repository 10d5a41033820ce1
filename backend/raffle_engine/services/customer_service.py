# Overview: Service-layer operations for the permanent buyer ledger.

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..models import Customer, Order


def buyer_key(email: str | None, phone: str | None) -> str | None:
    """
    Stable identity for a buyer: lowercased email, else digits of the phone.

    Returns None for anonymous orders (no contact data at all).
    """
    if email and email.strip():
        return email.strip().lower()
    if phone:
        digits = "".join(ch for ch in phone if ch.isdigit())
        if digits:
            return f"tel:{digits}"
    return None


def record_purchase(order: Order, *, occurred_at: datetime) -> Customer | None:
    """
    Fold a sold order into the buyer's ledger row (created on first purchase).

    Runs inside the caller's transaction.
    """
    key = buyer_key(order.buyer_email, order.buyer_phone)
    if key is None:
        return None

    customer = db.session.query(Customer).filter_by(buyer_key=key).first()
    if customer is None:
        customer = Customer(
            buyer_key=key,
            total_orders=0,
            total_tickets=0,
            total_spent_cents=0,
            first_purchase_at=occurred_at,
        )
        db.session.add(customer)

    # Latest contact data wins
    customer.name = order.buyer_name or customer.name
    customer.email = order.buyer_email or customer.email
    customer.phone = order.buyer_phone or customer.phone
    customer.city = order.buyer_city or customer.city

    customer.total_orders += 1
    customer.total_tickets += order.ticket_count
    customer.total_spent_cents += order.order_total_cents or 0
    customer.last_purchase_at = occurred_at

    db.session.flush()
    return customer


def get_customer(email: str | None = None, phone: str | None = None) -> Customer | None:
    key = buyer_key(email, phone)
    if key is None:
        return None
    return db.session.query(Customer).filter_by(buyer_key=key).first()
