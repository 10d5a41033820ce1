from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .enums import JobStatus, TicketStatus, enum_column


class InventoryBlock(db.Model):
    """
    One generated batch of a raffle's ticket space: [start_index, end_index].

    The union of a raffle's blocks is the set of indices that exist for
    allocation. Exactly one row per (raffle, batch) makes reapplying a batch
    a no-op.
    """
    __tablename__ = "inventory_blocks"
    __table_args__ = (
        db.UniqueConstraint("raffle_id", "batch_index", name="uq_inventory_blocks_raffle_batch"),
        db.Index("ix_inventory_blocks_raffle_start", "raffle_id", "start_index"),
        db.CheckConstraint("end_index >= start_index", name="ck_inventory_blocks_bounds"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    raffle_id = db.Column(db.Integer, db.ForeignKey("raffles.id"), nullable=False, index=True)
    job_id = db.Column(db.Integer, db.ForeignKey("generation_jobs.id"), nullable=True, index=True)
    batch_index = db.Column(db.Integer, nullable=False)
    start_index = db.Column(db.Integer, nullable=False)
    end_index = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def size(self) -> int:
        return self.end_index - self.start_index + 1


class TicketRange(db.Model):
    """
    Contiguous closed interval of ticket indices sharing one status and owner.

    Only non-available ranges are stored (reserved, sold, canceled/blocked).
    Ranges of one raffle never overlap. A range with order_id NULL and status
    CANCELED is an operator block.
    """
    __tablename__ = "ticket_ranges"
    __table_args__ = (
        db.Index("ix_ticket_ranges_raffle_start", "raffle_id", "start_index"),
        db.Index("ix_ticket_ranges_raffle_status_start", "raffle_id", "status", "start_index"),
        db.CheckConstraint("end_index >= start_index", name="ck_ticket_ranges_bounds"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    raffle_id = db.Column(db.Integer, db.ForeignKey("raffles.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    start_index = db.Column(db.Integer, nullable=False)
    end_index = db.Column(db.Integer, nullable=False)
    status = db.Column(enum_column(TicketStatus), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<TicketRange raffle={self.raffle_id} [{self.start_index}, {self.end_index}] {self.status} order={self.order_id}>"

    @property
    def size(self) -> int:
        return self.end_index - self.start_index + 1

    def to_dict(self) -> dict:
        return {
            "start_index": self.start_index,
            "end_index": self.end_index,
            "status": self.status.value,
            "order_id": self.order_id,
        }


class GenerationJob(db.Model):
    """
    Checkpoint record for materializing a raffle's inventory blocks.

    STATE MACHINE:
        pending -> running -> completed
                           -> failed   (manual restart puts it back to pending)

    current_batch is the next batch to apply; generated_count never exceeds
    the end of the last applied batch.
    """
    __tablename__ = "generation_jobs"
    __table_args__ = (
        db.Index("ix_generation_jobs_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    raffle_id = db.Column(db.Integer, db.ForeignKey("raffles.id"), nullable=False, index=True)

    total_tickets = db.Column(db.Integer, nullable=False)
    batch_size = db.Column(db.Integer, nullable=False)
    total_batches = db.Column(db.Integer, nullable=False)
    current_batch = db.Column(db.Integer, nullable=False, default=0)
    generated_count = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(enum_column(JobStatus), nullable=False, default=JobStatus.PENDING, index=True)
    stale_resets = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.Text, nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    # Last claim or checkpoint; a running job silent for too long is presumed dead
    heartbeat_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    raffle = db.relationship("Raffle", backref=db.backref("generation_jobs", lazy=True))

    def __repr__(self) -> str:
        return f"<GenerationJob id={self.id} raffle={self.raffle_id} {self.status} {self.generated_count}/{self.total_tickets}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "raffle_id": self.raffle_id,
            "total_tickets": self.total_tickets,
            "batch_size": self.batch_size,
            "total_batches": self.total_batches,
            "current_batch": self.current_batch,
            "generated_count": self.generated_count,
            "status": self.status.value,
            "stale_resets": self.stale_resets,
            "error_message": self.error_message,
            "started_at": to_utc_z(self.started_at),
            "heartbeat_at": to_utc_z(self.heartbeat_at),
            "completed_at": to_utc_z(self.completed_at),
            "created_at": to_utc_z(self.created_at),
        }
