from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class WinnerDraw(db.Model):
    """
    Recorded outcome of a winner draw.

    Draw-then-persist: the row is written once by the caller that performed
    the draw. Buyer fields are copied so the record survives archival.
    """
    __tablename__ = "winner_draws"
    __table_args__ = (
        db.Index("ix_winner_draws_raffle_drawn", "raffle_id", "drawn_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    raffle_id = db.Column(db.Integer, db.ForeignKey("raffles.id"), nullable=False, index=True)
    prize_name = db.Column(db.String(255), nullable=True)

    ticket_index = db.Column(db.Integer, nullable=False)
    ticket_number = db.Column(db.String(64), nullable=False)
    # Plain integer, not a foreign key: orders are deleted on archival
    order_id = db.Column(db.Integer, nullable=True)

    winner_name = db.Column(db.String(255), nullable=True)
    winner_email = db.Column(db.String(255), nullable=True)
    winner_phone = db.Column(db.String(32), nullable=True)
    winner_city = db.Column(db.String(128), nullable=True)

    sold_count = db.Column(db.Integer, nullable=False)
    random_offset = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(32), nullable=False)

    drawn_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "raffle_id": self.raffle_id,
            "prize_name": self.prize_name,
            "ticket_index": self.ticket_index,
            "ticket_number": self.ticket_number,
            "order_id": self.order_id,
            "winner_name": self.winner_name,
            "winner_email": self.winner_email,
            "winner_phone": self.winner_phone,
            "winner_city": self.winner_city,
            "sold_count": self.sold_count,
            "random_offset": self.random_offset,
            "method": self.method,
            "drawn_at": to_utc_z(self.drawn_at),
        }


class ArchivedSummary(db.Model):
    """
    Aggregate snapshot of a raffle written before its order detail is deleted.

    Created once per raffle and never updated.
    """
    __tablename__ = "archived_summaries"
    __table_args__ = (
        db.UniqueConstraint("raffle_id", name="uq_archived_summaries_raffle"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    raffle_id = db.Column(db.Integer, db.ForeignKey("raffles.id"), nullable=False)

    tickets_sold = db.Column(db.Integer, nullable=False, default=0)
    tickets_reserved = db.Column(db.Integer, nullable=False, default=0)
    total_revenue_cents = db.Column(db.Integer, nullable=False, default=0)
    unique_buyers = db.Column(db.Integer, nullable=False, default=0)
    buyer_cities = db.Column(db.JSON, nullable=False, default=dict)
    winners = db.Column(db.JSON, nullable=False, default=list)

    draw_executed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "raffle_id": self.raffle_id,
            "tickets_sold": self.tickets_sold,
            "tickets_reserved": self.tickets_reserved,
            "total_revenue_cents": self.total_revenue_cents,
            "unique_buyers": self.unique_buyers,
            "buyer_cities": self.buyer_cities,
            "winners": self.winners,
            "draw_executed_at": to_utc_z(self.draw_executed_at),
            "archived_at": to_utc_z(self.archived_at),
        }
