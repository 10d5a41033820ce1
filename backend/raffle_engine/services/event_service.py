# Overview: Service-layer operations for the domain-event outbox read by external notifiers.

"""
Domain Event Outbox Invariants (authoritative)

- Append-only: the engine never updates or deletes events.
- Events are written inside the same DB transaction as the change they record,
  so a rolled-back change never leaves an event behind.
- Consumers poll in id order with list_events(after_id=...).
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from ..extensions import db
from ..models import DomainEvent, EventType


def append_event(
    *,
    event_type: EventType,
    entity_type: str,
    entity_id: int,
    raffle_id: int | None = None,
    payload: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
) -> DomainEvent:
    """
    Stage an event in the current transaction (flushed, not committed).
    """
    ev = DomainEvent(
        raffle_id=raffle_id,
        event_type=event_type.value,
        entity_type=entity_type,
        entity_id=entity_id,
        occurred_at=occurred_at,  # if None, db default applies
        payload=json.dumps(payload, sort_keys=True, default=str) if payload else None,
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def list_events(
    *,
    after_id: int = 0,
    limit: int = 100,
    raffle_id: int | None = None,
    event_type: EventType | None = None,
) -> list[DomainEvent]:
    q = db.session.query(DomainEvent).filter(DomainEvent.id > after_id)
    if raffle_id is not None:
        q = q.filter(DomainEvent.raffle_id == raffle_id)
    if event_type is not None:
        q = q.filter(DomainEvent.event_type == event_type.value)
    return q.order_by(DomainEvent.id.asc()).limit(limit).all()
