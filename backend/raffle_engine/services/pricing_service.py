# Overview: Service-layer operations for order pricing; package prices with per-ticket fallback.

"""
Order Pricing Resolver

RULE:
    total(raffle, quantity) = package price    if a package for exactly `quantity` exists
                            = unit * quantity  otherwise

The same function prices new reservations and repairs historical orders
that were stored without a total (backfill_order_totals).

PACKAGES AFTER PUBLICATION:
Packages are add-only once the raffle has left draft. Buyers may already
have paid a package price, so changing or removing it would be unfair.
"""

from __future__ import annotations

from flask import current_app

from ..errors import StaleConfigChangeError
from ..extensions import db
from ..models import Order, OrderStatus, PackagePrice
from .inventory_service import get_raffle


def package_map(raffle_id: int) -> dict[int, int]:
    rows = db.session.query(PackagePrice.quantity, PackagePrice.price_cents).filter_by(raffle_id=raffle_id).all()
    return {quantity: price for quantity, price in rows}


def price(raffle_id: int, quantity: int) -> int:
    """Total in cents for `quantity` tickets of a raffle."""
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    package = (
        db.session.query(PackagePrice.price_cents)
        .filter_by(raffle_id=raffle_id, quantity=quantity)
        .scalar()
    )
    if package is not None:
        return int(package)

    raffle = get_raffle(raffle_id)
    return int(raffle.ticket_price_cents or 0) * quantity


def set_package_price(raffle_id: int, quantity: int, price_cents: int) -> PackagePrice:
    """
    Create a package, or update it while the raffle is still a draft.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    if price_cents < 0:
        raise ValueError("price_cents must not be negative")

    raffle = get_raffle(raffle_id)
    package = db.session.query(PackagePrice).filter_by(raffle_id=raffle_id, quantity=quantity).first()

    if package is None:
        package = PackagePrice(raffle_id=raffle_id, quantity=quantity, price_cents=price_cents)
        db.session.add(package)
    elif package.price_cents != price_cents:
        if raffle.is_published:
            raise StaleConfigChangeError(
                "packages",
                "Existing packages cannot be changed after publishing; add a new one instead",
            )
        package.price_cents = price_cents

    db.session.commit()
    return package


def remove_package(raffle_id: int, quantity: int) -> None:
    raffle = get_raffle(raffle_id)
    if raffle.is_published:
        raise StaleConfigChangeError(
            "packages",
            "Existing packages cannot be removed after publishing",
        )
    db.session.query(PackagePrice).filter_by(raffle_id=raffle_id, quantity=quantity).delete()
    db.session.commit()


def backfill_order_totals(*, limit: int = 500) -> list[dict]:
    """
    Repair: price reserved/sold orders that have no total.

    Returns one entry per updated order.
    """
    orders = (
        db.session.query(Order)
        .filter(
            Order.order_total_cents.is_(None),
            Order.status.in_([OrderStatus.RESERVED, OrderStatus.SOLD]),
            Order.ticket_count > 0,
        )
        .order_by(Order.id.asc())
        .limit(limit)
        .all()
    )

    updates = []
    for order in orders:
        order.order_total_cents = price(order.raffle_id, order.ticket_count)
        updates.append({
            "order_id": order.id,
            "reference_code": order.reference_code,
            "ticket_count": order.ticket_count,
            "order_total_cents": order.order_total_cents,
        })
    db.session.commit()

    current_app.logger.info("Backfilled totals for %d orders", len(updates))
    return updates
