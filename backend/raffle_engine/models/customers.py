from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Customer(db.Model):
    """
    Permanent per-buyer ledger.

    One row per buyer key (normalized email, or phone when no email was
    given). Aggregates are bumped when an order is confirmed sold.

    WHY: Orders are deleted when a raffle is archived; this table is the
    durable record of who bought what and is never touched by archival.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("buyer_key", name="uq_customers_buyer_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    buyer_key = db.Column(db.String(255), nullable=False)

    name = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    city = db.Column(db.String(128), nullable=True)

    # Denormalized aggregates (updated when orders are sold)
    total_orders = db.Column(db.Integer, nullable=False, default=0)
    total_tickets = db.Column(db.Integer, nullable=False, default=0)
    total_spent_cents = db.Column(db.Integer, nullable=False, default=0)
    first_purchase_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_purchase_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer_key": self.buyer_key,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "city": self.city,
            "total_orders": self.total_orders,
            "total_tickets": self.total_tickets,
            "total_spent_cents": self.total_spent_cents,
            "first_purchase_at": to_utc_z(self.first_purchase_at),
            "last_purchase_at": to_utc_z(self.last_purchase_at),
        }
