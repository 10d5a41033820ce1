# Overview: Flask API routes for orders; proof of payment, operator confirmation, cancel and release.

# backend/raffle_engine/routes/orders.py
"""
Order API Routes

DESIGN:
- Proof of payment is an opaque reference (URL/key); files live elsewhere
- Operator confirmation may override an expired reservation
- Cancel releases every ticket of the order; sold orders need "force"
- Release gives back part of a reserved order
"""

from flask import Blueprint, current_app, jsonify, request

from ..errors import RaffleError, http_status
from ..services import reservation_service
from ..validation import coerce_int


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _domain_error(e: RaffleError):
    return jsonify(e.to_dict()), http_status(e)


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = reservation_service.get_order(order_id)
    except RaffleError as e:
        return _domain_error(e)
    return jsonify({"order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/proof")
def attach_proof_route(order_id: int):
    """
    Attach payment proof: {"proof_ref": "s3://bucket/key"}.

    Returns:
        200: Order with proof (idempotent)
        409: RESERVATION_EXPIRED / INVALID_TRANSITION
    """
    payload = request.get_json(silent=True) or {}
    proof_ref = payload.get("proof_ref")
    if not isinstance(proof_ref, str) or not proof_ref.strip():
        return jsonify({"error": "proof_ref required"}), 400
    if len(proof_ref) > 512:
        return jsonify({"error": "proof_ref exceeds max length 512"}), 400

    try:
        order = reservation_service.attach_proof(order_id, proof_ref)
    except RaffleError as e:
        return _domain_error(e)
    return jsonify({"order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/confirm")
def confirm_order_route(order_id: int):
    """Operator confirmation: {"override": true} also accepts an expired reservation."""
    payload = request.get_json(silent=True) or {}
    try:
        order = reservation_service.confirm_sold(order_id, override=bool(payload.get("override")))
    except RaffleError as e:
        return _domain_error(e)
    except Exception:
        current_app.logger.exception("Failed to confirm order")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/cancel")
def cancel_order_route(order_id: int):
    """Cancel: {"reason": "buyer request", "force": false}."""
    payload = request.get_json(silent=True) or {}
    reason = (payload.get("reason") or reservation_service.CANCEL_REASON_CANCELED).strip()[:32]
    try:
        order = reservation_service.cancel(order_id, reason, force=bool(payload.get("force")))
    except RaffleError as e:
        return _domain_error(e)
    return jsonify({"order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/release")
def release_tickets_route(order_id: int):
    """Give back some tickets of a reserved order: {"indices": [3, 4]}."""
    payload = request.get_json(silent=True) or {}
    raw = payload.get("indices")
    if not isinstance(raw, list) or not raw:
        return jsonify({"error": "indices must be a non-empty list"}), 400
    try:
        indices = [coerce_int("indices", i) for i in raw]
        order = reservation_service.release_tickets(order_id, indices)
    except RaffleError as e:
        return _domain_error(e)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"order": order.to_dict()}), 200
