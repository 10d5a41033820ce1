# Overview: Service-layer operations for raffle ticket inventory; range allocation, status transitions and export.

"""
Raffle Inventory Invariants (authoritative)

Index space:
- A raffle's tickets are the indices [0, total_tickets).
- Only indices covered by an InventoryBlock (written by the generation job)
  exist for allocation.

Range model:
- Inventory is never stored one row per ticket.
- TicketRange rows hold the non-available indices (reserved, sold, canceled).
- AVAILABLE = generated indices minus stored ranges.
- Stored ranges of one raffle never overlap, so the four statuses partition
  the generated space.

Mutation rules:
- Every mutation runs under lock_raffle(): the transaction is a writer and the
  raffle row is bumped (version_id), so concurrent writers on one raffle
  serialize or fail with StaleDataError. Other raffles are unaffected.
- mark_range() is optimistic: it fails with RangeConflictError unless every
  index of the target is in the expected prior status.
"""

from __future__ import annotations

import heapq
import secrets
from collections import namedtuple
from contextlib import closing
from datetime import datetime
from typing import Iterable, Iterator

from sqlalchemy import func, select

from ..errors import InsufficientInventoryError, NotFoundError, RangeConflictError
from ..extensions import db
from ..models import InventoryBlock, Order, Raffle, TicketRange, TicketStatus
from ..time_utils import utcnow
from .concurrency import begin_write, lock_for_update
from .numbering_service import NumberingConfig, format_number

RANGE_SCAN_PAGE = 1000
DEFAULT_EXPORT_PAGE_SIZE = 1000

# Matches any owner in mark_range(expected_order_id=...)
ANY_ORDER = object()

TicketRow = namedtuple(
    "TicketRow",
    [
        "index",
        "display_number",
        "status",
        "order_id",
        "reference_code",
        "buyer_name",
        "buyer_email",
        "buyer_phone",
        "buyer_city",
    ],
)


def get_raffle(raffle_id: int) -> Raffle:
    raffle = db.session.get(Raffle, raffle_id)
    if raffle is None:
        raise NotFoundError("Raffle", raffle_id)
    return raffle


def lock_raffle(raffle_id: int) -> Raffle:
    """
    Start an inventory write on one raffle.

    Must be called before any other statement of the transaction.
    """
    begin_write()
    raffle = lock_for_update(db.session.query(Raffle).populate_existing().filter_by(id=raffle_id)).first()
    if raffle is None:
        raise NotFoundError("Raffle", raffle_id)
    return raffle


def touch_inventory(raffle: Raffle, now: datetime | None = None) -> None:
    """Record an inventory change; the UPDATE bumps version_id for optimistic checks."""
    raffle.inventory_updated_at = now or utcnow()


# =============================================================================
# READ SIDE
# =============================================================================

def generated_segments(raffle_id: int) -> list[tuple[int, int]]:
    """
    Merged [start, end] spans of generated inventory, ascending.

    Bounded by the number of generation batches, not the number of tickets.
    """
    rows = (
        db.session.query(InventoryBlock.start_index, InventoryBlock.end_index)
        .filter(InventoryBlock.raffle_id == raffle_id)
        .order_by(InventoryBlock.start_index.asc())
        .all()
    )
    segments: list[tuple[int, int]] = []
    for start, end in rows:
        if segments and start <= segments[-1][1] + 1:
            prev_start, prev_end = segments[-1]
            segments[-1] = (prev_start, max(prev_end, end))
        else:
            segments.append((start, end))
    return segments


def generated_count(raffle_id: int) -> int:
    return sum(end - start + 1 for start, end in generated_segments(raffle_id))


def _iter_occupied(raffle_id: int, from_index: int = 0) -> Iterator[tuple[int, int]]:
    """Stored (non-available) spans in index order, streamed from the database."""
    stmt = (
        select(TicketRange.start_index, TicketRange.end_index)
        .where(TicketRange.raffle_id == raffle_id, TicketRange.end_index >= from_index)
        .order_by(TicketRange.start_index.asc())
        .execution_options(yield_per=RANGE_SCAN_PAGE)
    )
    result = db.session.execute(stmt)
    try:
        for row in result:
            yield row.start_index, row.end_index
    finally:
        result.close()


def iter_available_gaps(raffle_id: int, from_index: int = 0) -> Iterator[tuple[int, int]]:
    """
    Yield available [start, end] spans in index order.

    Walks generated segments against the sorted stored ranges; memory use is
    independent of the number of tickets.
    """
    segments = generated_segments(raffle_id)
    occupied = _iter_occupied(raffle_id, from_index)
    try:
        pending = next(occupied, None)
        for seg_start, seg_end in segments:
            if seg_end < from_index:
                continue
            cursor = max(seg_start, from_index)
            while pending is not None and pending[0] <= seg_end:
                occ_start, occ_end = pending
                if occ_end < cursor:
                    pending = next(occupied, None)
                    continue
                if occ_start > cursor:
                    yield cursor, occ_start - 1
                cursor = max(cursor, occ_end + 1)
                if occ_end > seg_end:
                    # Range continues into the next segment; keep it pending
                    break
                pending = next(occupied, None)
            if cursor <= seg_end:
                yield cursor, seg_end
    finally:
        occupied.close()


def count_by_status(raffle_id: int) -> dict:
    """
    Ticket counts per status. available + reserved + sold + canceled equals
    the generated count; not_generated covers the rest of total_tickets.
    """
    raffle = get_raffle(raffle_id)
    rows = (
        db.session.query(
            TicketRange.status,
            func.coalesce(func.sum(TicketRange.end_index - TicketRange.start_index + 1), 0),
        )
        .filter(TicketRange.raffle_id == raffle_id)
        .group_by(TicketRange.status)
        .all()
    )
    counts = {status.value: 0 for status in TicketStatus}
    for status, total in rows:
        counts[TicketStatus(status).value] = int(total or 0)

    generated = generated_count(raffle_id)
    stored = counts["reserved"] + counts["sold"] + counts["canceled"]
    counts["available"] = generated - stored
    counts["generated"] = generated
    counts["not_generated"] = raffle.total_tickets - generated
    counts["total"] = raffle.total_tickets
    return counts


def count_available(raffle_id: int) -> int:
    with closing(iter_available_gaps(raffle_id)) as gaps:
        return sum(end - start + 1 for start, end in gaps)


def find_available(raffle_id: int, count: int) -> list[tuple[int, int]]:
    """
    Choose `count` available indices as a list of [start, end] spans.

    Prefers the lowest single gap that fits the whole request (display
    friendly). Otherwise takes the lowest gaps in order (near-contiguous).
    Raises InsufficientInventoryError when fewer than `count` are available.
    Callers must hold lock_raffle() for the result to stay valid.
    """
    if count <= 0:
        raise ValueError("count must be positive")

    fragments: list[tuple[int, int]] = []
    collected = 0
    available = 0

    with closing(iter_available_gaps(raffle_id)) as gaps:
        for start, end in gaps:
            size = end - start + 1
            if size >= count:
                return [(start, start + count - 1)]
            available += size
            if collected < count:
                take = min(size, count - collected)
                fragments.append((start, start + take - 1))
                collected += take

    if collected < count:
        raise InsufficientInventoryError(requested=count, available=available)
    return fragments


def is_generated(raffle_id: int, start: int, end: int) -> bool:
    for seg_start, seg_end in generated_segments(raffle_id):
        if seg_start <= start and end <= seg_end:
            return True
    return False


# =============================================================================
# WRITE SIDE
# =============================================================================

def _overlapping(raffle_id: int, start: int, end: int) -> list[TicketRange]:
    return (
        db.session.query(TicketRange)
        .filter(
            TicketRange.raffle_id == raffle_id,
            TicketRange.start_index <= end,
            TicketRange.end_index >= start,
        )
        .order_by(TicketRange.start_index.asc())
        .all()
    )


def _conflict(start: int, end: int, message: str) -> RangeConflictError:
    return RangeConflictError(message, indices=list(range(start, min(end, start + 99) + 1)))


def _merge_neighbours(rng: TicketRange) -> TicketRange:
    """Absorb adjacent ranges with the same status and owner."""
    neighbours = (
        db.session.query(TicketRange)
        .filter(
            TicketRange.raffle_id == rng.raffle_id,
            TicketRange.status == rng.status,
            TicketRange.id != rng.id,
            db.or_(
                TicketRange.end_index == rng.start_index - 1,
                TicketRange.start_index == rng.end_index + 1,
            ),
        )
        .all()
    )
    for other in neighbours:
        if other.order_id != rng.order_id:
            continue
        rng.start_index = min(rng.start_index, other.start_index)
        rng.end_index = max(rng.end_index, other.end_index)
        db.session.delete(other)
    return rng


def mark_range(
    raffle: Raffle,
    start: int,
    end: int,
    new_status: TicketStatus,
    *,
    expected_status: TicketStatus,
    order_id: int | None = None,
    expected_order_id=ANY_ORDER,
) -> TicketRange | None:
    """
    Transition [start, end] from expected_status to new_status.

    Ranges that only partially overlap the target are split; the parts
    outside the target keep their status and owner. new_status=AVAILABLE
    releases the indices (returns None). Raises RangeConflictError if any
    index is not currently in expected_status (or not owned by
    expected_order_id when given).

    Caller must hold lock_raffle(raffle.id) and commit.
    """
    if start > end:
        raise ValueError("start must not exceed end")
    if start < 0 or end >= raffle.total_tickets:
        raise ValueError("range outside the raffle's tickets")
    if new_status == expected_status:
        raise ValueError("new_status must differ from expected_status")

    overlapping = _overlapping(raffle.id, start, end)

    if expected_status == TicketStatus.AVAILABLE:
        if overlapping:
            taken = overlapping[0]
            raise _conflict(
                max(start, taken.start_index),
                min(end, taken.end_index),
                "Some of the requested tickets are no longer available",
            )
        if not is_generated(raffle.id, start, end):
            raise _conflict(start, end, "Tickets have not been generated yet")
    else:
        cursor = start
        for rng in overlapping:
            owner_ok = expected_order_id is ANY_ORDER or rng.order_id == expected_order_id
            if rng.status != expected_status or not owner_ok:
                raise _conflict(
                    max(start, rng.start_index),
                    min(end, rng.end_index),
                    f"Tickets are not {expected_status.value}",
                )
            if rng.start_index > cursor:
                raise _conflict(cursor, rng.start_index - 1, f"Tickets are not {expected_status.value}")
            cursor = rng.end_index + 1
        if cursor <= end:
            raise _conflict(cursor, end, f"Tickets are not {expected_status.value}")

        # Split: keep the parts outside [start, end] with their old state
        for rng in overlapping:
            if rng.start_index < start:
                db.session.add(TicketRange(
                    raffle_id=raffle.id,
                    order_id=rng.order_id,
                    start_index=rng.start_index,
                    end_index=start - 1,
                    status=rng.status,
                ))
            if rng.end_index > end:
                db.session.add(TicketRange(
                    raffle_id=raffle.id,
                    order_id=rng.order_id,
                    start_index=end + 1,
                    end_index=rng.end_index,
                    status=rng.status,
                ))
            db.session.delete(rng)
        db.session.flush()

    if new_status == TicketStatus.AVAILABLE:
        return None

    rng = TicketRange(
        raffle_id=raffle.id,
        order_id=order_id,
        start_index=start,
        end_index=end,
        status=new_status,
    )
    db.session.add(rng)
    db.session.flush()
    rng = _merge_neighbours(rng)
    db.session.flush()
    return rng


def block_tickets(raffle_id: int, start: int, end: int) -> TicketRange:
    """Take available tickets off sale (operator block, status canceled)."""
    raffle = lock_raffle(raffle_id)
    rng = mark_range(
        raffle, start, end, TicketStatus.CANCELED,
        expected_status=TicketStatus.AVAILABLE,
    )
    touch_inventory(raffle)
    db.session.commit()
    return rng


def unblock_tickets(raffle_id: int, start: int, end: int) -> None:
    """Put operator-blocked tickets back on sale."""
    raffle = lock_raffle(raffle_id)
    mark_range(
        raffle, start, end, TicketStatus.AVAILABLE,
        expected_status=TicketStatus.CANCELED,
        expected_order_id=None,
    )
    touch_inventory(raffle)
    db.session.commit()


# =============================================================================
# RANDOM PICKS
# =============================================================================

def _sample_ranks(population: int, k: int) -> list[int]:
    """Uniform k-subset of range(population) (Floyd's algorithm, secrets-backed)."""
    chosen: set[int] = set()
    for j in range(population - k, population):
        t = secrets.randbelow(j + 1)
        chosen.add(j if t in chosen else t)
    return sorted(chosen)


def pick_random_available(raffle_id: int, quantity: int) -> list[int]:
    """
    Pick `quantity` distinct available indices uniformly at random.

    Reads only; callers reserve the result with reserve_numbers(), which
    fails with RangeConflictError if a pick was taken in the meantime.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    available = count_available(raffle_id)
    if quantity > available:
        raise InsufficientInventoryError(requested=quantity, available=available)

    ranks = _sample_ranks(available, quantity)
    picked: list[int] = []
    position = 0
    rank_iter = iter(ranks)
    rank = next(rank_iter, None)
    with closing(iter_available_gaps(raffle_id)) as gaps:
        for start, end in gaps:
            size = end - start + 1
            while rank is not None and rank < position + size:
                picked.append(start + rank - position)
                rank = next(rank_iter, None)
            if rank is None:
                break
            position += size
    return picked


def indices_to_spans(indices: Iterable[int]) -> list[tuple[int, int]]:
    """Collapse indices into sorted [start, end] spans."""
    spans: list[tuple[int, int]] = []
    for index in sorted(set(indices)):
        if spans and index == spans[-1][1] + 1:
            spans[-1] = (spans[-1][0], index)
        else:
            spans.append((index, index))
    return spans


# =============================================================================
# EXPORT
# =============================================================================

def _iter_stored_spans(raffle_id: int, statuses: set[TicketStatus]):
    """Stored ranges with their order, keyset-paginated by start_index."""
    last_start = -1
    while True:
        page = (
            db.session.query(TicketRange, Order)
            .outerjoin(Order, Order.id == TicketRange.order_id)
            .filter(
                TicketRange.raffle_id == raffle_id,
                TicketRange.status.in_(list(statuses)),
                TicketRange.start_index > last_start,
            )
            .order_by(TicketRange.start_index.asc())
            .limit(RANGE_SCAN_PAGE)
            .all()
        )
        if not page:
            return
        for rng, order in page:
            yield rng.start_index, rng.end_index, rng.status, order
        last_start = page[-1][0].start_index


def _iter_available_spans(raffle_id: int):
    for start, end in iter_available_gaps(raffle_id):
        yield start, end, TicketStatus.AVAILABLE, None


def iter_ticket_pages(
    raffle_id: int,
    statuses: Iterable[TicketStatus] | None = None,
    *,
    page_size: int = DEFAULT_EXPORT_PAGE_SIZE,
) -> Iterator[list[TicketRow]]:
    """
    Lazily enumerate tickets with the given statuses in index order.

    Ranges are expanded to one TicketRow per ticket only as pages are
    consumed; at most page_size rows are held at a time.
    """
    if page_size <= 0:
        raise ValueError("page_size must be positive")
    wanted = set(statuses) if statuses else set(TicketStatus)

    raffle = get_raffle(raffle_id)
    config = NumberingConfig.for_raffle(raffle)

    sources = []
    stored = wanted - {TicketStatus.AVAILABLE}
    if stored:
        sources.append(_iter_stored_spans(raffle_id, stored))
    if TicketStatus.AVAILABLE in wanted:
        sources.append(_iter_available_spans(raffle_id))

    page: list[TicketRow] = []
    for start, end, status, order in heapq.merge(*sources, key=lambda span: span[0]):
        for index in range(start, end + 1):
            page.append(TicketRow(
                index=index,
                display_number=format_number(index, config),
                status=status.value,
                order_id=order.id if order else None,
                reference_code=order.reference_code if order else None,
                buyer_name=order.buyer_name if order else None,
                buyer_email=order.buyer_email if order else None,
                buyer_phone=order.buyer_phone if order else None,
                buyer_city=order.buyer_city if order else None,
            ))
            if len(page) >= page_size:
                yield page
                page = []
    if page:
        yield page


def iter_tickets(raffle_id: int, statuses: Iterable[TicketStatus] | None = None, *, page_size: int = DEFAULT_EXPORT_PAGE_SIZE) -> Iterator[TicketRow]:
    for page in iter_ticket_pages(raffle_id, statuses, page_size=page_size):
        yield from page


def unavailable_indices(raffle_id: int, indices: Iterable[int]) -> list[int]:
    """Requested indices that are not available (taken, blocked or not generated)."""
    wanted = sorted(set(indices))
    if not wanted:
        return []

    taken: set[int] = set()
    for start, end in indices_to_spans(wanted):
        # Every index of a span was requested
        for rng in _overlapping(raffle_id, start, end):
            taken.update(range(max(start, rng.start_index), min(end, rng.end_index) + 1))

    segments = generated_segments(raffle_id)
    for index in wanted:
        if index not in taken and not any(s <= index <= e for s, e in segments):
            taken.add(index)
    return sorted(taken)
