# Overview: Service-layer operations for ticket generation jobs; resumable, checkpointed batch worker.

"""
Ticket Generation Worker

WHY: A raffle may hold up to 10,000,000 tickets. Its inventory metadata is
materialized in fixed-size batches by short, repeatable worker runs (cron),
so no single invocation runs unboundedly and a dead worker never leaves a
permanent lock.

STATE MACHINE:
    pending -> running -> completed
                       -> pending (end of a bounded run, or stale reset)
                       -> failed  (restart_job() puts it back to pending)

ONE WORKER RUN:
1. reset_stale_jobs(): running jobs without a heartbeat for stale_minutes go
   back to pending. After max_stale_resets the job fails instead, so a job
   that keeps killing workers needs an operator.
2. Claim pending jobs, oldest first, with a conditional UPDATE so one job
   has one worker.
3. Apply up to max_batches_per_run batches per job from current_batch; an
   unfinished job goes back to pending for the next run.
4. apply_batch() commits the InventoryBlock FIRST; the checkpoint
   (current_batch, generated_count) is committed after it. A crash in between
   understates progress, so the batch is redone, and redoing it is a no-op.
5. A batch error, or any unexpected error while processing a job, fails the
   job (error recorded, GENERATION_FAILED event) and the worker moves on to
   the next job.
6. generated_count >= total_tickets completes the job.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import InvalidTransitionError, NotFoundError
from ..extensions import db
from ..models import EventType, GenerationJob, InventoryBlock, JobStatus, Raffle
from ..time_utils import utcnow
from .concurrency import run_with_retry
from .event_service import append_event


DEFAULT_BATCH_SIZE = 50_000
DEFAULT_MAX_BATCHES_PER_RUN = 20
DEFAULT_MAX_JOBS_PER_RUN = 5
DEFAULT_STALE_MINUTES = 10
DEFAULT_MAX_STALE_RESETS = 3


def total_batches_for(total_tickets: int, batch_size: int) -> int:
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    return math.ceil(total_tickets / batch_size)


def create_job(raffle: Raffle, *, batch_size: int = DEFAULT_BATCH_SIZE) -> GenerationJob:
    """Stage a pending job for the raffle's full ticket space (caller commits)."""
    job = GenerationJob(
        raffle_id=raffle.id,
        total_tickets=raffle.total_tickets,
        batch_size=batch_size,
        total_batches=total_batches_for(raffle.total_tickets, batch_size),
        current_batch=0,
        generated_count=0,
        status=JobStatus.PENDING,
        stale_resets=0,
    )
    db.session.add(job)
    db.session.flush()
    return job


def get_job(job_id: int) -> GenerationJob:
    job = db.session.get(GenerationJob, job_id)
    if job is None:
        raise NotFoundError("Generation job", job_id)
    return job


def latest_job_for_raffle(raffle_id: int) -> GenerationJob | None:
    return (
        db.session.query(GenerationJob)
        .filter_by(raffle_id=raffle_id)
        .order_by(GenerationJob.id.desc())
        .first()
    )


def batch_bounds(job: GenerationJob, batch_index: int) -> tuple[int, int]:
    """Closed index range [start, end] covered by one batch."""
    if batch_index < 0 or batch_index >= job.total_batches:
        raise ValueError(f"batch {batch_index} outside job {job.id}")
    start = batch_index * job.batch_size
    end = min((batch_index + 1) * job.batch_size, job.total_tickets) - 1
    return start, end


def apply_batch(job: GenerationJob, batch_index: int) -> bool:
    """
    Materialize one batch as an InventoryBlock and commit it.

    Returns False when the batch was already applied (by an earlier run or a
    concurrent worker); the block is never written twice.
    """
    start, end = batch_bounds(job, batch_index)
    raffle_id = job.raffle_id
    job_id = job.id

    exists = (
        db.session.query(InventoryBlock.id)
        .filter_by(raffle_id=raffle_id, batch_index=batch_index)
        .first()
    )
    if exists:
        return False

    db.session.add(InventoryBlock(
        raffle_id=raffle_id,
        job_id=job_id,
        batch_index=batch_index,
        start_index=start,
        end_index=end,
    ))
    try:
        db.session.commit()
    except IntegrityError:
        # Lost the race to another worker applying the same batch
        db.session.rollback()
        return False
    return True


def checkpoint(job: GenerationJob, batch_index: int, *, now: datetime | None = None) -> None:
    """
    Durably record that batches up to batch_index are applied.

    Both counters only move forward, so replaying a checkpoint is harmless.
    The comparison runs in the UPDATE itself: a higher checkpoint committed
    by another worker is never overwritten by this worker's older view.
    """
    _, end = batch_bounds(job, batch_index)
    next_batch = batch_index + 1
    db.session.query(GenerationJob).filter(GenerationJob.id == job.id).update(
        {
            GenerationJob.current_batch: case(
                (GenerationJob.current_batch < next_batch, next_batch),
                else_=GenerationJob.current_batch,
            ),
            GenerationJob.generated_count: case(
                (GenerationJob.generated_count < end + 1, end + 1),
                else_=GenerationJob.generated_count,
            ),
            GenerationJob.heartbeat_at: now or utcnow(),
        },
        synchronize_session=False,
    )
    db.session.commit()
    # Reload the counters as stored
    db.session.refresh(job)


def _fail_job(job: GenerationJob, message: str, *, now: datetime) -> None:
    job.status = JobStatus.FAILED
    job.error_message = message
    job.completed_at = now
    append_event(
        event_type=EventType.GENERATION_FAILED,
        entity_type="generation_job",
        entity_id=job.id,
        raffle_id=job.raffle_id,
        payload={"error": message, "generated_count": job.generated_count},
        occurred_at=now,
    )
    db.session.commit()
    current_app.logger.error("Generation job %s failed: %s", job.id, message)


def _abort_job(job_id: int, exc: Exception, *, now: datetime) -> None:
    """Record an unexpected processing error on the job; the worker run continues."""
    try:
        job = get_job(job_id)
        if job.status == JobStatus.RUNNING:
            _fail_job(job, f"Aborted: {type(exc).__name__}: {exc}", now=now)
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Could not record failure of generation job %s", job_id)


def _complete_job(job: GenerationJob, *, now: datetime) -> None:
    job.status = JobStatus.COMPLETED
    job.completed_at = now
    append_event(
        event_type=EventType.GENERATION_COMPLETED,
        entity_type="generation_job",
        entity_id=job.id,
        raffle_id=job.raffle_id,
        payload={"total_tickets": job.total_tickets},
        occurred_at=now,
    )
    db.session.commit()
    current_app.logger.info(
        "Generation job %s completed: %d tickets for raffle %s",
        job.id, job.generated_count, job.raffle_id,
    )


def reset_stale_jobs(
    *,
    now: datetime | None = None,
    stale_minutes: int = DEFAULT_STALE_MINUTES,
    max_stale_resets: int = DEFAULT_MAX_STALE_RESETS,
) -> dict:
    """
    Crash recovery: requeue running jobs whose worker went silent.

    Returns {"reset": [job ids], "failed": [job ids]}.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=stale_minutes)
    last_seen = func.coalesce(GenerationJob.heartbeat_at, GenerationJob.started_at)

    stale = (
        db.session.query(GenerationJob)
        .filter(GenerationJob.status == JobStatus.RUNNING, last_seen < cutoff)
        .all()
    )

    reset, failed = [], []
    for job in stale:
        job.stale_resets += 1
        if job.stale_resets > max_stale_resets:
            _fail_job(
                job,
                f"Worker stalled {job.stale_resets} times at batch {job.current_batch}; restart manually",
                now=now,
            )
            failed.append(job.id)
            continue
        job.status = JobStatus.PENDING
        job.started_at = None
        job.heartbeat_at = None
        reset.append(job.id)

    db.session.commit()
    if reset:
        current_app.logger.warning("Reset %d stale generation jobs: %s", len(reset), reset)
    return {"reset": reset, "failed": failed}


def claim_jobs(*, limit: int = DEFAULT_MAX_JOBS_PER_RUN, now: datetime | None = None) -> list[GenerationJob]:
    """
    Claim pending jobs, oldest first.

    Each claim is a conditional pending -> running UPDATE, so of two workers
    racing for one job exactly one gets it. Running jobs belong to a live
    worker and are only requeued by reset_stale_jobs().
    """
    now = now or utcnow()
    candidates = [
        job_id for (job_id,) in (
            db.session.query(GenerationJob.id)
            .filter(GenerationJob.status == JobStatus.PENDING)
            .order_by(GenerationJob.created_at.asc(), GenerationJob.id.asc())
            .limit(limit)
            .all()
        )
    ]

    claimed_ids = []
    for job_id in candidates:
        won = (
            db.session.query(GenerationJob)
            .filter(GenerationJob.id == job_id, GenerationJob.status == JobStatus.PENDING)
            .update(
                {
                    GenerationJob.status: JobStatus.RUNNING,
                    GenerationJob.started_at: func.coalesce(GenerationJob.started_at, now),
                    GenerationJob.heartbeat_at: now,
                },
                synchronize_session=False,
            )
        )
        if won:
            claimed_ids.append(job_id)
    db.session.commit()

    jobs = [db.session.get(GenerationJob, job_id) for job_id in claimed_ids]
    for job in jobs:
        db.session.refresh(job)
    return jobs


def release_job(job: GenerationJob, *, now: datetime | None = None) -> None:
    """Hand an unfinished job back to the queue; the next run resumes at its checkpoint."""
    job.status = JobStatus.PENDING
    job.heartbeat_at = now or utcnow()
    db.session.commit()


def process_job(
    job: GenerationJob,
    *,
    max_batches: int = DEFAULT_MAX_BATCHES_PER_RUN,
    now: datetime | None = None,
) -> dict:
    """
    Apply up to max_batches batches of one claimed job.

    Batch errors fail the job; they are recorded, not raised.
    """
    now = now or utcnow()
    processed = 0
    inserted = 0

    while processed < max_batches and job.current_batch < job.total_batches:
        batch_index = job.current_batch
        try:
            if run_with_retry(lambda: apply_batch(job, batch_index)):
                inserted += 1
            checkpoint(job, batch_index, now=now)
        except (SQLAlchemyError, ValueError) as exc:
            db.session.rollback()
            _fail_job(job, f"Batch {batch_index + 1} failed: {exc}", now=now)
            return _job_result(job, processed, inserted, failed=True)
        processed += 1

    if job.generated_count >= job.total_tickets and job.status != JobStatus.COMPLETED:
        _complete_job(job, now=now)
    elif job.status == JobStatus.RUNNING:
        release_job(job, now=now)
        current_app.logger.info(
            "Generation job %s progress saved: %d/%d, will continue next run",
            job.id, job.generated_count, job.total_tickets,
        )
    return _job_result(job, processed, inserted, failed=False)


def _job_result(job: GenerationJob, processed: int, inserted: int, *, failed: bool) -> dict:
    return {
        "job_id": job.id,
        "raffle_id": job.raffle_id,
        "batches_processed": processed,
        "batches_inserted": inserted,
        "generated_count": job.generated_count,
        "total_tickets": job.total_tickets,
        "completed": job.status == JobStatus.COMPLETED,
        "failed": failed,
    }


def run_generation_worker(
    *,
    max_jobs: int = DEFAULT_MAX_JOBS_PER_RUN,
    max_batches_per_run: int = DEFAULT_MAX_BATCHES_PER_RUN,
    stale_minutes: int = DEFAULT_STALE_MINUTES,
    max_stale_resets: int = DEFAULT_MAX_STALE_RESETS,
    now: datetime | None = None,
) -> dict:
    """One bounded worker invocation. Safe to run from several workers at once."""
    now = now or utcnow()
    recovery = reset_stale_jobs(now=now, stale_minutes=stale_minutes, max_stale_resets=max_stale_resets)

    jobs = claim_jobs(limit=max_jobs, now=now)
    if not jobs:
        current_app.logger.info("No pending generation jobs")

    results = []
    for job in jobs:
        job_id, raffle_id = job.id, job.raffle_id
        try:
            results.append(process_job(job, max_batches=max_batches_per_run, now=now))
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception("Generation job %s aborted", job_id)
            _abort_job(job_id, exc, now=now)
            results.append({"job_id": job_id, "raffle_id": raffle_id, "failed": True, "completed": False})

    return {"stale": recovery, "results": results}


def generate_inline(job: GenerationJob, *, now: datetime | None = None) -> dict:
    """Generate a small job synchronously (all batches in this call)."""
    now = now or utcnow()
    if job.status == JobStatus.PENDING:
        job.status = JobStatus.RUNNING
        job.started_at = now
        job.heartbeat_at = now
        db.session.commit()
    return process_job(job, max_batches=job.total_batches, now=now)


def restart_job(job_id: int) -> GenerationJob:
    """Manual recovery of a failed job; progress already checkpointed is kept."""
    job = get_job(job_id)
    if job.status != JobStatus.FAILED:
        raise InvalidTransitionError(f"Only failed jobs can be restarted (job is {job.status.value})")
    job.status = JobStatus.PENDING
    job.error_message = None
    job.stale_resets = 0
    job.started_at = None
    job.heartbeat_at = None
    job.completed_at = None
    db.session.commit()
    current_app.logger.info("Generation job %s restarted at batch %d", job.id, job.current_batch)
    return job


def get_progress(job: GenerationJob) -> dict:
    percent = 100.0 if job.total_tickets == 0 else round(job.generated_count * 100.0 / job.total_tickets, 1)
    return {
        **job.to_dict(),
        "percent": percent,
        "remaining": max(job.total_tickets - job.generated_count, 0),
    }
