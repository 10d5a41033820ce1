# Overview: Flask API route for the domain-event outbox polled by external notifiers.

# backend/raffle_engine/routes/events.py
from flask import Blueprint, jsonify, request

from ..models import EventType
from ..services.event_service import list_events
from ..validation import ValidationError, coerce_int


events_bp = Blueprint("events", __name__, url_prefix="/api/events")

MAX_PAGE = 500


@events_bp.get("")
def list_events_route():
    """
    Poll events in id order.

    Query: ?after_id=0&limit=100&raffle_id=&event_type=ORDER_SOLD
    Consumers store the last id they processed and pass it as after_id.
    """
    try:
        after_id = coerce_int("after_id", request.args.get("after_id", "0"))
        limit = min(coerce_int("limit", request.args.get("limit", "100")), MAX_PAGE)
        raffle_id = request.args.get("raffle_id")
        raffle_id = coerce_int("raffle_id", raffle_id) if raffle_id else None
        event_type = request.args.get("event_type")
        event_type = EventType(event_type) if event_type else None
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError:
        return jsonify({"error": "Unknown event_type"}), 400

    if limit <= 0:
        return jsonify({"error": "limit must be > 0"}), 400

    events = list_events(after_id=after_id, limit=limit, raffle_id=raffle_id, event_type=event_type)
    return jsonify({
        "events": [e.to_dict() for e in events],
        "last_id": events[-1].id if events else after_id,
    }), 200
