from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import OrderStatus, enum_column


class Order(db.Model):
    """
    A buyer's claim over one or more ticket ranges of a raffle.

    GROUPING:
    reference_code is the checkout-session key. One order per
    (raffle, reference_code); every range reserved under that code belongs to
    it and moves with it through sold/canceled.

    ticket_count always equals the summed length of the order's ranges while
    the order is reserved or sold.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("raffle_id", "reference_code", name="uq_orders_raffle_reference"),
        db.Index("ix_orders_raffle_status", "raffle_id", "status"),
        db.Index("ix_orders_status_reserved_until", "status", "reserved_until"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    raffle_id = db.Column(db.Integer, db.ForeignKey("raffles.id"), nullable=False, index=True)
    reference_code = db.Column(db.String(64), nullable=False)

    status = db.Column(enum_column(OrderStatus), nullable=False, default=OrderStatus.RESERVED)
    ticket_count = db.Column(db.Integer, nullable=False, default=0)

    buyer_name = db.Column(db.String(255), nullable=True)
    buyer_email = db.Column(db.String(255), nullable=True)
    buyer_phone = db.Column(db.String(32), nullable=True)
    buyer_city = db.Column(db.String(128), nullable=True)

    reserved_until = db.Column(db.DateTime(timezone=True), nullable=True)
    order_total_cents = db.Column(db.Integer, nullable=True)
    payment_proof_ref = db.Column(db.String(512), nullable=True)

    cancel_reason = db.Column(db.String(32), nullable=True)
    sold_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    raffle = db.relationship("Raffle", backref=db.backref("orders", lazy="dynamic"))
    ranges = db.relationship(
        "TicketRange",
        backref="order",
        lazy=True,
        order_by="TicketRange.start_index",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} ref={self.reference_code!r} {self.status} tickets={self.ticket_count}>"

    def is_expired(self, now) -> bool:
        return (
            self.status == OrderStatus.RESERVED
            and self.reserved_until is not None
            and self.reserved_until <= now
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "raffle_id": self.raffle_id,
            "reference_code": self.reference_code,
            "status": self.status.value,
            "ticket_count": self.ticket_count,
            "ranges": [[r.start_index, r.end_index] for r in self.ranges],
            "buyer_name": self.buyer_name,
            "buyer_email": self.buyer_email,
            "buyer_phone": self.buyer_phone,
            "buyer_city": self.buyer_city,
            "reserved_until": to_utc_z(self.reserved_until),
            "order_total_cents": self.order_total_cents,
            "payment_proof_ref": self.payment_proof_ref,
            "cancel_reason": self.cancel_reason,
            "sold_at": to_utc_z(self.sold_at),
            "canceled_at": to_utc_z(self.canceled_at),
            "created_at": to_utc_z(self.created_at),
        }
