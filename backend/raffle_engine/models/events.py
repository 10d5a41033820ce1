from __future__ import annotations

import json

from ..extensions import db
from ..time_utils import to_utc_z


class DomainEvent(db.Model):
    """
    Append-only outbox of engine events for external notifiers.

    Rows are written in the same DB transaction as the state change they
    describe and are never updated or deleted by the engine.
    """
    __tablename__ = "domain_events"
    __table_args__ = (
        db.Index("ix_domain_events_raffle_occurred", "raffle_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Plain integer so events outlive archived detail
    raffle_id = db.Column(db.Integer, nullable=True, index=True)

    # What happened
    event_type = db.Column(db.String(64), nullable=False, index=True)

    # What it refers to (generic pointer)
    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    # Optional structured metadata (keep small; do not denormalize domain state)
    payload = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "raffle_id": self.raffle_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "payload": json.loads(self.payload) if self.payload else None,
        }
