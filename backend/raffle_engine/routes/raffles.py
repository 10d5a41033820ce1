# Overview: Flask API routes for raffles; setup, availability, reservations, draws and export.

# backend/raffle_engine/routes/raffles.py
"""
Raffle API Routes

DESIGN:
- Raffle setup and lifecycle (draft -> active -> completed)
- Availability counts straight from the range inventory
- Reservations by quantity, by chosen numbers, and random number picks
- Inbound payment confirmation by reference code
- Winner draw (draw, then record once)
- Ticket export as streamed NDJSON, one ticket per line, in index order

Domain errors are returned as {"error", "code", "retryable"} with the status
from errors.HTTP_STATUS; retryable=true means "try again".
"""

import json

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from ..errors import RaffleError, http_status
from ..models import Order, Raffle, TicketStatus
from ..services import (
    archive_service,
    draw_service,
    generation_service,
    inventory_service,
    pricing_service,
    raffle_service,
    reservation_service,
)
from ..services.numbering_service import NumberingConfig, format_number
from ..validation import (
    BUYER_POLICY,
    RAFFLE_CREATE_POLICY,
    RAFFLE_UPDATE_POLICY,
    ValidationError,
    buyer_from_patch,
    coerce_int,
    enforce_rules_raffle,
    parse_packages,
    raffle_service_kwargs,
    validate_payload,
)


raffles_bp = Blueprint("raffles", __name__, url_prefix="/api/raffles")

LIFECYCLE_ACTIONS = {
    "activate": raffle_service.activate_raffle,
    "pause": raffle_service.pause_raffle,
    "complete": raffle_service.complete_raffle,
    "cancel": raffle_service.cancel_raffle,
}


def _domain_error(e: RaffleError):
    return jsonify(e.to_dict()), http_status(e)


def _buyer(payload: dict) -> dict:
    fields = {k: payload[k] for k in BUYER_POLICY.writable_fields if k in payload}
    patch = validate_payload(model=Order, payload=fields, policy=BUYER_POLICY, partial=True)
    return buyer_from_patch(patch)


def _reservation_settings() -> dict:
    cfg = current_app.config
    return {
        "max_tickets": cfg["MAX_TICKETS_PER_ORDER"],
        "default_ttl_minutes": cfg["RESERVATION_TTL_MINUTES"],
    }


def _raffle_view(raffle: Raffle) -> dict:
    job = generation_service.latest_job_for_raffle(raffle.id)
    return {
        "raffle": raffle.to_dict(),
        "packages": [p.to_dict() for p in raffle.packages],
        "generation": generation_service.get_progress(job) if job else None,
    }


# =============================================================================
# SETUP & LIFECYCLE
# =============================================================================

@raffles_bp.post("")
def create_raffle_route():
    """
    Create a draft raffle.

    Request body:
    {
        "title": "Spring raffle",
        "total_tickets": 1000,
        "ticket_price_cents": 100,
        "number_pad_width": 4,          (optional, automatic when omitted)
        "number_prefix": "R-",         (optional)
        "draw_date": "2026-05-01T18:00:00Z",  (optional)
        "packages": {"5": 400}         (optional)
    }

    Returns:
        201: Raffle created (small raffles are already generated)
        400: Invalid input or numbering
    """
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return jsonify({"error": "Invalid JSON payload"}), 400
    packages_raw = payload.pop("packages", None)

    try:
        patch = validate_payload(model=Raffle, payload=payload, policy=RAFFLE_CREATE_POLICY, partial=False)
        enforce_rules_raffle(patch)
        packages = parse_packages(packages_raw)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        raffle = raffle_service.create_raffle(
            packages=packages,
            batch_size=current_app.config["GENERATION_BATCH_SIZE"],
            **raffle_service_kwargs(patch),
        )
    except RaffleError as e:
        return _domain_error(e)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create raffle")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(_raffle_view(raffle)), 201


@raffles_bp.get("/<int:raffle_id>")
def get_raffle_route(raffle_id: int):
    try:
        raffle = inventory_service.get_raffle(raffle_id)
    except RaffleError as e:
        return _domain_error(e)
    return jsonify(_raffle_view(raffle)), 200


@raffles_bp.patch("/<int:raffle_id>")
def update_raffle_route(raffle_id: int):
    """
    Edit raffle settings.

    Returns:
        200: Updated
        422: STALE_CONFIG_CHANGE (field locked after sales / publication)
    """
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=Raffle, payload=payload, policy=RAFFLE_UPDATE_POLICY, partial=True)
        enforce_rules_raffle(patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        raffle = raffle_service.update_raffle(
            raffle_id,
            batch_size=current_app.config["GENERATION_BATCH_SIZE"],
            **raffle_service_kwargs(patch),
        )
    except RaffleError as e:
        return _domain_error(e)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to update raffle")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(_raffle_view(raffle)), 200


@raffles_bp.post("/<int:raffle_id>/<action>")
def lifecycle_route(raffle_id: int, action: str):
    """Lifecycle transitions: activate, pause, complete, cancel."""
    transition = LIFECYCLE_ACTIONS.get(action)
    if transition is None:
        return jsonify({"error": f"Unknown action: {action}"}), 404
    try:
        raffle = transition(raffle_id)
    except RaffleError as e:
        return _domain_error(e)
    return jsonify({"raffle": raffle.to_dict()}), 200


@raffles_bp.put("/<int:raffle_id>/packages/<int:quantity>")
def set_package_route(raffle_id: int, quantity: int):
    payload = request.get_json(silent=True) or {}
    try:
        price_cents = coerce_int("price_cents", payload.get("price_cents"))
        package = pricing_service.set_package_price(raffle_id, quantity, price_cents)
    except RaffleError as e:
        return _domain_error(e)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"package": package.to_dict()}), 200


@raffles_bp.delete("/<int:raffle_id>/packages/<int:quantity>")
def remove_package_route(raffle_id: int, quantity: int):
    try:
        pricing_service.remove_package(raffle_id, quantity)
    except RaffleError as e:
        return _domain_error(e)
    return jsonify({"removed": quantity}), 200


@raffles_bp.get("/<int:raffle_id>/price")
def price_route(raffle_id: int):
    """Order total for ?quantity=N (package price or unit price)."""
    try:
        quantity = coerce_int("quantity", request.args.get("quantity", ""))
        total = pricing_service.price(raffle_id, quantity)
    except RaffleError as e:
        return _domain_error(e)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"quantity": quantity, "total_cents": total}), 200


# =============================================================================
# INVENTORY
# =============================================================================

@raffles_bp.get("/<int:raffle_id>/availability")
def availability_route(raffle_id: int):
    try:
        counts = inventory_service.count_by_status(raffle_id)
    except RaffleError as e:
        return _domain_error(e)
    return jsonify(counts), 200


@raffles_bp.get("/<int:raffle_id>/random-tickets")
def random_tickets_route(raffle_id: int):
    """
    Suggest ?quantity=N random available tickets.

    Read only: reserve them with POST /reserve-numbers.
    """
    try:
        quantity = coerce_int("quantity", request.args.get("quantity", "1"))
        if quantity > current_app.config["MAX_TICKETS_PER_ORDER"]:
            raise ValidationError("quantity is too large")
        raffle = inventory_service.get_raffle(raffle_id)
        indices = inventory_service.pick_random_available(raffle_id, quantity)
    except RaffleError as e:
        return _domain_error(e)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    config = NumberingConfig.for_raffle(raffle)
    return jsonify({
        "tickets": [
            {"index": i, "display_number": format_number(i, config)}
            for i in indices
        ],
    }), 200


@raffles_bp.post("/<int:raffle_id>/block")
def block_route(raffle_id: int):
    """Take [start_index, end_index] off sale, or put it back with "unblock": true."""
    payload = request.get_json(silent=True) or {}
    try:
        start = coerce_int("start_index", payload.get("start_index"))
        end = coerce_int("end_index", payload.get("end_index", start))
        if payload.get("unblock"):
            inventory_service.unblock_tickets(raffle_id, start, end)
        else:
            inventory_service.block_tickets(raffle_id, start, end)
    except RaffleError as e:
        return _domain_error(e)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(inventory_service.count_by_status(raffle_id)), 200


@raffles_bp.get("/<int:raffle_id>/tickets/export")
def export_tickets_route(raffle_id: int):
    """
    Stream tickets as NDJSON in index order.

    Query: ?status=sold,reserved (default: all statuses)
    """
    try:
        raw = request.args.get("status")
        statuses = [TicketStatus(s.strip()) for s in raw.split(",") if s.strip()] if raw else None
        inventory_service.get_raffle(raffle_id)
    except RaffleError as e:
        return _domain_error(e)
    except ValueError:
        return jsonify({"error": "status must be a comma separated list of ticket statuses"}), 400

    page_size = current_app.config["EXPORT_PAGE_SIZE"]

    def generate():
        for page in inventory_service.iter_ticket_pages(raffle_id, statuses, page_size=page_size):
            yield "".join(json.dumps(row._asdict()) + "\n" for row in page)

    return Response(stream_with_context(generate()), mimetype="application/x-ndjson")


# =============================================================================
# RESERVATIONS
# =============================================================================

@raffles_bp.post("/<int:raffle_id>/reserve")
def reserve_route(raffle_id: int):
    """
    Reserve a quantity of tickets.

    Request body:
    {
        "count": 3,
        "reference_code": "CHK-9F2A",
        "buyer_name": "...", "buyer_email": "...", "buyer_phone": "...", "buyer_city": "...",
        "ttl_minutes": 30  (optional)
    }

    Returns:
        201: Order (reserved)
        409: INSUFFICIENT_INVENTORY / RANGE_CONFLICT (retryable)
    """
    payload = request.get_json(silent=True) or {}
    try:
        count = coerce_int("count", payload.get("count"))
        ttl = coerce_int("ttl_minutes", payload["ttl_minutes"]) if payload.get("ttl_minutes") is not None else None
        buyer = _buyer(payload)
        order = reservation_service.reserve(
            raffle_id,
            count,
            payload.get("reference_code") or "",
            ttl_minutes=ttl,
            buyer=buyer,
            **_reservation_settings(),
        )
    except RaffleError as e:
        return _domain_error(e)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to reserve tickets")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"order": order.to_dict()}), 201


@raffles_bp.post("/<int:raffle_id>/reserve-numbers")
def reserve_numbers_route(raffle_id: int):
    """
    Reserve chosen tickets by display number (strings) or index (integers).

    Returns:
        201: Order (reserved)
        409: RANGE_CONFLICT naming the numbers already taken
    """
    payload = request.get_json(silent=True) or {}
    numbers = payload.get("numbers")
    if not isinstance(numbers, list) or not numbers:
        return jsonify({"error": "numbers must be a non-empty list"}), 400

    try:
        ttl = coerce_int("ttl_minutes", payload["ttl_minutes"]) if payload.get("ttl_minutes") is not None else None
        order = reservation_service.reserve_numbers(
            raffle_id,
            numbers,
            payload.get("reference_code") or "",
            ttl_minutes=ttl,
            buyer=_buyer(payload),
            **_reservation_settings(),
        )
    except RaffleError as e:
        return _domain_error(e)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to reserve numbers")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"order": order.to_dict()}), 201


@raffles_bp.get("/<int:raffle_id>/orders/<reference_code>")
def get_order_by_reference_route(raffle_id: int, reference_code: str):
    try:
        order = reservation_service.get_order_by_reference(raffle_id, reference_code)
    except RaffleError as e:
        return _domain_error(e)
    return jsonify({"order": order.to_dict()}), 200


@raffles_bp.post("/<int:raffle_id>/orders/confirm")
def confirm_reference_route(raffle_id: int):
    """
    Inbound payment confirmation: {"reference_code": "...", "override": false}.

    Safe to deliver more than once.
    """
    payload = request.get_json(silent=True) or {}
    reference_code = (payload.get("reference_code") or "").strip()
    if not reference_code:
        return jsonify({"error": "reference_code required"}), 400

    try:
        order = reservation_service.confirm_reference(
            raffle_id, reference_code, override=bool(payload.get("override")),
        )
    except RaffleError as e:
        return _domain_error(e)
    except Exception:
        current_app.logger.exception("Failed to confirm payment")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"order": order.to_dict()}), 200


# =============================================================================
# DRAW & ARCHIVE
# =============================================================================

@raffles_bp.post("/<int:raffle_id>/draw")
def draw_route(raffle_id: int):
    """
    Draw and record one winner: {"prize_name": "...", "complete": true}.

    Returns:
        201: Recorded draw
        409: NO_SOLD_TICKETS
    """
    payload = request.get_json(silent=True) or {}
    try:
        result = draw_service.draw_winner(raffle_id)
        draw = draw_service.record_draw(
            raffle_id,
            result,
            prize_name=payload.get("prize_name"),
            complete_raffle=bool(payload.get("complete")),
        )
    except RaffleError as e:
        return _domain_error(e)
    except Exception:
        current_app.logger.exception("Failed to draw winner")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"draw": draw.to_dict()}), 201


@raffles_bp.get("/<int:raffle_id>/draws")
def list_draws_route(raffle_id: int):
    return jsonify({"draws": [d.to_dict() for d in draw_service.list_draws(raffle_id)]}), 200


@raffles_bp.post("/<int:raffle_id>/archive")
def archive_route(raffle_id: int):
    try:
        result = archive_service.archive_raffle(
            raffle_id, retention_days=current_app.config["ARCHIVE_RETENTION_DAYS"],
        )
    except RaffleError as e:
        return _domain_error(e)
    summary = archive_service.get_summary(raffle_id)
    return jsonify({"result": result, "summary": summary.to_dict() if summary else None}), 200
