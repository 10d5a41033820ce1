from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import RaffleStatus, enum_column


MAX_TOTAL_TICKETS = 10_000_000


class Raffle(db.Model):
    """
    A raffle and its ticket space.

    TICKET SPACE:
    Tickets are addressed by a zero-based index in [0, total_tickets).
    The numbering columns are the codec configuration that turns an index
    into the display number printed for buyers.

    LOCKED FIELDS:
    total_tickets, the numbering columns and ticket_price_cents are frozen
    once any ticket has been reserved or sold (see raffle_service).

    CONCURRENCY:
    version_id is bumped on every inventory mutation, so two writers on the
    same raffle conflict instead of both succeeding.
    """
    __tablename__ = "raffles"
    __table_args__ = (
        db.CheckConstraint(
            f"total_tickets >= 1 AND total_tickets <= {MAX_TOTAL_TICKETS}",
            name="ck_raffles_total_tickets",
        ),
        db.Index("ix_raffles_status_draw_date", "status", "draw_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)

    status = db.Column(enum_column(RaffleStatus), nullable=False, default=RaffleStatus.DRAFT, index=True)

    total_tickets = db.Column(db.Integer, nullable=False)
    # Unit price in cents; packages override it for exact quantities
    ticket_price_cents = db.Column(db.Integer, nullable=False, default=0)

    # Numbering codec configuration
    number_pad_width = db.Column(db.Integer, nullable=False)
    number_pad_char = db.Column(db.String(1), nullable=False, default="0")
    number_prefix = db.Column(db.String(32), nullable=True)
    number_suffix = db.Column(db.String(32), nullable=True)
    number_start = db.Column(db.Integer, nullable=False, default=1)
    number_step = db.Column(db.Integer, nullable=False, default=1)

    # Falls back to RESERVATION_TTL_MINUTES when NULL
    reservation_ttl_minutes = db.Column(db.Integer, nullable=True)

    draw_date = db.Column(db.DateTime(timezone=True), nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    inventory_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    packages = db.relationship(
        "PackagePrice",
        backref="raffle",
        lazy=True,
        order_by="PackagePrice.quantity",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Raffle id={self.id} title={self.title!r} status={self.status} total={self.total_tickets}>"

    @property
    def is_published(self) -> bool:
        return self.status != RaffleStatus.DRAFT

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value if self.status else None,
            "total_tickets": self.total_tickets,
            "ticket_price_cents": self.ticket_price_cents,
            "numbering": {
                "pad_width": self.number_pad_width,
                "pad_char": self.number_pad_char,
                "prefix": self.number_prefix,
                "suffix": self.number_suffix,
                "start": self.number_start,
                "step": self.number_step,
            },
            "reservation_ttl_minutes": self.reservation_ttl_minutes,
            "draw_date": to_utc_z(self.draw_date),
            "archived_at": to_utc_z(self.archived_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class PackagePrice(db.Model):
    """Bulk price for an exact ticket quantity (e.g. 5 tickets for 400)."""
    __tablename__ = "package_prices"
    __table_args__ = (
        db.UniqueConstraint("raffle_id", "quantity", name="uq_package_prices_raffle_quantity"),
        db.CheckConstraint("quantity > 0", name="ck_package_prices_quantity"),
        db.CheckConstraint("price_cents >= 0", name="ck_package_prices_price"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    raffle_id = db.Column(db.Integer, db.ForeignKey("raffles.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "raffle_id": self.raffle_id,
            "quantity": self.quantity,
            "price_cents": self.price_cents,
        }
