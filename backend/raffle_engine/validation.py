from __future__ import annotations
from datetime import datetime
from .time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta


# Maximum ticket/package price: 999,999,999 cents
MAX_PRICE_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


RAFFLE_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "title",
        "total_tickets",
        "ticket_price_cents",
        "number_pad_width",
        "number_pad_char",
        "number_prefix",
        "number_suffix",
        "number_start",
        "number_step",
        "reservation_ttl_minutes",
        "draw_date",
    },
    required_on_create={"title", "total_tickets"},
)

RAFFLE_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields=RAFFLE_CREATE_POLICY.writable_fields,
)

BUYER_POLICY = ModelValidationPolicy(
    writable_fields={"buyer_name", "buyer_email", "buyer_phone", "buyer_city"},
)

# API field -> raffle_service keyword
RAFFLE_FIELD_ARGS = {
    "number_pad_width": "pad_width",
    "number_pad_char": "pad_char",
    "number_prefix": "prefix",
    "number_suffix": "suffix",
    "number_start": "start",
    "number_step": "step",
}


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(key: str, value: Any) -> int:
    """Strict integer: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # Strings / Text; pad characters may be a space, so only trim longer values
    if isinstance(coltype, (String, Text)):
        text = str(value)
        return text if col.key == "number_pad_char" else text.strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_raffle(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Numbering bijection rules live in numbering_service.
    """
    price = patch.get("ticket_price_cents")
    if price is not None:
        if price < 0:
            raise ValidationError("ticket_price_cents must be >= 0")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"ticket_price_cents cannot exceed {MAX_PRICE_CENTS}")

    ttl = patch.get("reservation_ttl_minutes")
    if ttl is not None and ttl <= 0:
        raise ValidationError("reservation_ttl_minutes must be > 0")


def raffle_service_kwargs(patch: dict) -> dict:
    """Rename validated raffle columns to raffle_service keywords."""
    return {RAFFLE_FIELD_ARGS.get(k, k): v for k, v in patch.items()}


def buyer_from_patch(patch: dict) -> dict:
    return {k[len("buyer_"):]: v for k, v in patch.items() if v is not None}


def parse_packages(raw) -> dict[int, int]:
    """{"5": 400, ...} or [{"quantity": 5, "price_cents": 400}, ...] -> {5: 400}."""
    if raw is None:
        return {}
    items = raw.items() if isinstance(raw, dict) else [
        (entry.get("quantity"), entry.get("price_cents")) for entry in raw if isinstance(entry, dict)
    ]
    packages = {}
    for quantity, price in items:
        quantity = coerce_int("quantity", quantity)
        price = coerce_int("price_cents", price)
        if quantity <= 0:
            raise ValidationError("quantity must be > 0")
        if price < 0 or price > MAX_PRICE_CENTS:
            raise ValidationError(f"price_cents must be between 0 and {MAX_PRICE_CENTS}")
        packages[quantity] = price
    return packages
