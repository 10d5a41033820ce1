# Overview: Service-layer operations for raffle setup and lifecycle; numbering validation and locked fields.

"""
Raffle Lifecycle

STATE MACHINE:
    draft  -> active | canceled
    active -> paused | completed | canceled
    paused -> active | completed | canceled
    completed, canceled: final

A raffle can only be activated once its generation job has completed.

LOCKED FIELDS:
Once any ticket of the raffle has been reserved or sold, total_tickets, the
numbering configuration and the unit price can no longer change (buyers hold
display numbers and prices computed from them). After publication the draw
date may only be postponed.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..errors import InvalidTransitionError, JobFailedError, StaleConfigChangeError
from ..extensions import db
from ..models import (
    GenerationJob,
    InventoryBlock,
    JobStatus,
    Order,
    PackagePrice,
    Raffle,
    RaffleStatus,
    TicketRange,
)
from ..models.raffles import MAX_TOTAL_TICKETS
from ..time_utils import coerce_datetime, utcnow
from .generation_service import DEFAULT_BATCH_SIZE, create_job, generate_inline, latest_job_for_raffle
from .inventory_service import get_raffle
from .numbering_service import NumberingConfig, auto_pad_width, validate_config


TRANSITIONS = {
    RaffleStatus.DRAFT: {RaffleStatus.ACTIVE, RaffleStatus.CANCELED},
    RaffleStatus.ACTIVE: {RaffleStatus.PAUSED, RaffleStatus.COMPLETED, RaffleStatus.CANCELED},
    RaffleStatus.PAUSED: {RaffleStatus.ACTIVE, RaffleStatus.COMPLETED, RaffleStatus.CANCELED},
    RaffleStatus.COMPLETED: set(),
    RaffleStatus.CANCELED: set(),
}

NUMBERING_FIELDS = {
    "pad_width": "number_pad_width",
    "pad_char": "number_pad_char",
    "prefix": "number_prefix",
    "suffix": "number_suffix",
    "start": "number_start",
    "step": "number_step",
}
LOCKED_FIELDS = {"total_tickets", "ticket_price_cents", *NUMBERING_FIELDS}
EDITABLE_FIELDS = LOCKED_FIELDS | {"title", "reservation_ttl_minutes", "draw_date"}


def _validate_total(total_tickets: int) -> int:
    total_tickets = int(total_tickets)
    if total_tickets < 1 or total_tickets > MAX_TOTAL_TICKETS:
        raise ValueError(f"total_tickets must be between 1 and {MAX_TOTAL_TICKETS}")
    return total_tickets


def _validate_ttl(ttl_minutes) -> int | None:
    if ttl_minutes is None:
        return None
    ttl_minutes = int(ttl_minutes)
    if ttl_minutes <= 0:
        raise ValueError("reservation_ttl_minutes must be positive")
    return ttl_minutes


def has_tickets_taken(raffle_id: int) -> bool:
    """True once any ticket of the raffle was reserved or sold."""
    return db.session.query(Order.id).filter(Order.raffle_id == raffle_id).first() is not None


def _start_generation(raffle: Raffle, batch_size: int) -> GenerationJob:
    job = create_job(raffle, batch_size=batch_size)
    db.session.commit()
    if job.total_batches == 1:
        generate_inline(job)
    return job


def create_raffle(
    title: str,
    total_tickets: int,
    *,
    ticket_price_cents: int = 0,
    pad_width: int | None = None,
    pad_char: str = "0",
    prefix: str = "",
    suffix: str = "",
    start: int = 1,
    step: int = 1,
    reservation_ttl_minutes: int | None = None,
    draw_date=None,
    packages: dict | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> Raffle:
    """
    Create a draft raffle and queue generation of its tickets.

    pad_width=None picks the automatic width. A raffle that fits in one
    generation batch is generated before this returns; larger ones are left
    to the generation worker.
    """
    if not title or not title.strip():
        raise ValueError("title is required")
    total_tickets = _validate_total(total_tickets)
    if int(ticket_price_cents) < 0:
        raise ValueError("ticket_price_cents must not be negative")

    if pad_width is None:
        pad_width = auto_pad_width(total_tickets, start, step)
    config = NumberingConfig(
        pad_width=int(pad_width),
        pad_char=pad_char or "0",
        prefix=prefix or "",
        suffix=suffix or "",
        start=int(start),
        step=int(step),
    )
    validate_config(config, total_tickets)

    raffle = Raffle(
        title=title.strip(),
        status=RaffleStatus.DRAFT,
        total_tickets=total_tickets,
        ticket_price_cents=int(ticket_price_cents),
        number_pad_width=config.pad_width,
        number_pad_char=config.pad_char,
        number_prefix=config.prefix or None,
        number_suffix=config.suffix or None,
        number_start=config.start,
        number_step=config.step,
        reservation_ttl_minutes=_validate_ttl(reservation_ttl_minutes),
        draw_date=coerce_datetime(draw_date),
    )
    db.session.add(raffle)
    db.session.flush()

    for quantity, price_cents in (packages or {}).items():
        quantity, price_cents = int(quantity), int(price_cents)
        if quantity <= 0 or price_cents < 0:
            raise ValueError("packages need a positive quantity and a non-negative price")
        db.session.add(PackagePrice(raffle_id=raffle.id, quantity=quantity, price_cents=price_cents))

    job = _start_generation(raffle, batch_size)
    current_app.logger.info(
        "Created raffle %s with %d tickets (%d generation batches)",
        raffle.id, total_tickets, job.total_batches,
    )
    return raffle


def _regenerate(raffle: Raffle, batch_size: int) -> GenerationJob:
    """Throw away generated inventory and start over for a new total."""
    db.session.query(TicketRange).filter(TicketRange.raffle_id == raffle.id).delete(synchronize_session=False)
    db.session.query(InventoryBlock).filter(InventoryBlock.raffle_id == raffle.id).delete(synchronize_session=False)
    db.session.query(GenerationJob).filter(GenerationJob.raffle_id == raffle.id).delete(synchronize_session=False)
    return _start_generation(raffle, batch_size)


def update_raffle(raffle_id: int, *, batch_size: int = DEFAULT_BATCH_SIZE, **changes) -> Raffle:
    """
    Edit raffle settings.

    Raises StaleConfigChangeError for locked fields once tickets are taken,
    for total_tickets after publication, and for moving a published draw date
    earlier.
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown raffle fields: {sorted(unknown)}")

    raffle = get_raffle(raffle_id)
    if raffle.status in (RaffleStatus.COMPLETED, RaffleStatus.CANCELED):
        raise InvalidTransitionError(f"Raffle is {raffle.status.value} and can no longer be edited")

    current_numbering = {key: getattr(raffle, column) for key, column in NUMBERING_FIELDS.items()}
    current = {
        "total_tickets": raffle.total_tickets,
        "ticket_price_cents": raffle.ticket_price_cents,
        **current_numbering,
    }
    locked_changes = {
        key for key in LOCKED_FIELDS & set(changes)
        if changes[key] != current[key] and not (key in ("prefix", "suffix") and not changes[key] and not current[key])
    }
    if locked_changes and has_tickets_taken(raffle_id):
        field = sorted(locked_changes)[0]
        raise StaleConfigChangeError(field, f"{field} cannot change after tickets have been reserved or sold")

    total_changed = "total_tickets" in locked_changes
    if total_changed and raffle.is_published:
        raise StaleConfigChangeError("total_tickets", "total_tickets cannot change after publishing")

    if "title" in changes:
        if not changes["title"] or not str(changes["title"]).strip():
            raise ValueError("title is required")
        raffle.title = str(changes["title"]).strip()

    if "reservation_ttl_minutes" in changes:
        raffle.reservation_ttl_minutes = _validate_ttl(changes["reservation_ttl_minutes"])

    if "draw_date" in changes:
        new_date = coerce_datetime(changes["draw_date"])
        if raffle.is_published and raffle.draw_date is not None and (new_date is None or new_date < raffle.draw_date):
            raise StaleConfigChangeError("draw_date", "The draw date can only be postponed after publishing")
        raffle.draw_date = new_date

    if "ticket_price_cents" in changes:
        if int(changes["ticket_price_cents"]) < 0:
            raise ValueError("ticket_price_cents must not be negative")
        raffle.ticket_price_cents = int(changes["ticket_price_cents"])

    total = _validate_total(changes.get("total_tickets", raffle.total_tickets))
    if total_changed or locked_changes & set(NUMBERING_FIELDS):
        numbering = {**current_numbering, **{k: v for k, v in changes.items() if k in NUMBERING_FIELDS}}
        if numbering["pad_width"] is None:
            numbering["pad_width"] = auto_pad_width(total, int(numbering["start"]), int(numbering["step"]))
        config = NumberingConfig(
            pad_width=int(numbering["pad_width"]),
            pad_char=numbering["pad_char"] or "0",
            prefix=numbering["prefix"] or "",
            suffix=numbering["suffix"] or "",
            start=int(numbering["start"]),
            step=int(numbering["step"]),
        )
        validate_config(config, total)
        raffle.number_pad_width = config.pad_width
        raffle.number_pad_char = config.pad_char
        raffle.number_prefix = config.prefix or None
        raffle.number_suffix = config.suffix or None
        raffle.number_start = config.start
        raffle.number_step = config.step

    if total_changed:
        raffle.total_tickets = total
        _regenerate(raffle, batch_size)
    else:
        db.session.commit()
    return raffle


# =============================================================================
# LIFECYCLE
# =============================================================================

def _transition(raffle_id: int, target: RaffleStatus, *, now: datetime | None = None) -> Raffle:
    raffle = get_raffle(raffle_id)
    if raffle.status == target:
        return raffle
    if target not in TRANSITIONS[raffle.status]:
        raise InvalidTransitionError(f"Raffle cannot go from {raffle.status.value} to {target.value}")

    if target == RaffleStatus.ACTIVE:
        job = latest_job_for_raffle(raffle_id)
        if job is not None and job.status == JobStatus.FAILED:
            raise JobFailedError(job.id, f"Ticket generation failed: {job.error_message}")
        if job is None or job.status != JobStatus.COMPLETED:
            generated = job.generated_count if job else 0
            raise InvalidTransitionError(
                f"Tickets are still being generated ({generated}/{raffle.total_tickets})"
            )

    previous = raffle.status
    raffle.status = target
    if target == RaffleStatus.COMPLETED and raffle.draw_date is None:
        raffle.draw_date = now or utcnow()
    db.session.commit()
    current_app.logger.info("Raffle %s: %s -> %s", raffle_id, previous.value, target.value)
    return raffle


def activate_raffle(raffle_id: int) -> Raffle:
    return _transition(raffle_id, RaffleStatus.ACTIVE)


def pause_raffle(raffle_id: int) -> Raffle:
    return _transition(raffle_id, RaffleStatus.PAUSED)


def complete_raffle(raffle_id: int, *, now: datetime | None = None) -> Raffle:
    return _transition(raffle_id, RaffleStatus.COMPLETED, now=now)


def cancel_raffle(raffle_id: int) -> Raffle:
    return _transition(raffle_id, RaffleStatus.CANCELED)
