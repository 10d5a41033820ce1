# Overview: Flask CLI command groups for workers, inspection, and maintenance.

# backend/raffle_engine/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Workers (cron every minute or so; every run is bounded and safe to repeat):
# - python -m flask jobs process [--max-jobs 5] [--max-batches 20]
#   Reset stale generation jobs, then generate the next batches of pending jobs.
# - python -m flask orders expire-stale [--raffle-id 1] [--limit 500]
#   Release reservations past their TTL that have no payment proof.
# - python -m flask raffles archive [--retention-days 90] [--limit 10]
#   Summarize and delete order detail of completed raffles past retention.
# - python -m flask raffles auto-draw [--limit 10]
#   Draw a winner for active raffles past their draw date and complete them.
#
# Inspection/repair:
# - python -m flask jobs status [--raffle-id 1]
#   Show generation progress of recent jobs.
# - python -m flask jobs restart 12
#   Put a failed generation job back to pending (keeps its checkpoint).
# - python -m flask orders backfill-totals [--limit 500]
#   Price reserved/sold orders that were stored without a total.
# - python -m flask raffles draw 3 [--prize "First prize"] [--complete]
#   Draw and record a winner among sold tickets.
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import RaffleError
from .extensions import db
from .models import GenerationJob
from .services import archive_service, draw_service, generation_service, pricing_service, reservation_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


# =============================================================================
# GENERATION JOBS
# =============================================================================

@click.group('jobs')
def jobs_group():
    """Ticket generation worker commands."""


@jobs_group.command('process')
@click.option('--max-jobs', type=int, default=None, help='Jobs claimed per run (GENERATION_MAX_JOBS_PER_RUN)')
@click.option('--max-batches', type=int, default=None, help='Batches per job per run (GENERATION_MAX_BATCHES_PER_RUN)')
@with_appcontext
def process_jobs(max_jobs, max_batches):
    """Run one bounded pass of the generation worker."""
    cfg = current_app.config
    summary = generation_service.run_generation_worker(
        max_jobs=max_jobs or cfg["GENERATION_MAX_JOBS_PER_RUN"],
        max_batches_per_run=max_batches or cfg["GENERATION_MAX_BATCHES_PER_RUN"],
        stale_minutes=cfg["GENERATION_STALE_MINUTES"],
        max_stale_resets=cfg["GENERATION_MAX_STALE_RESETS"],
    )

    stale = summary["stale"]
    if stale["reset"]:
        click.echo(f"WARN Reset stale jobs: {stale['reset']}")
    if stale["failed"]:
        click.echo(f"FAIL Jobs stalled too often (restart manually): {stale['failed']}")

    if not summary["results"]:
        click.echo("No pending generation jobs.")
    for result in summary["results"]:
        if result.get("failed"):
            click.echo(f"FAIL Job {result['job_id']} failed (see `jobs status`)")
        elif result["completed"]:
            click.echo(f"PASS Job {result['job_id']} completed: {result['generated_count']} tickets")
        else:
            click.echo(
                f"...  Job {result['job_id']}: {result['generated_count']}/{result['total_tickets']} "
                f"({result['batches_processed']} batches this run)"
            )


@jobs_group.command('status')
@click.option('--raffle-id', type=int, default=None)
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def jobs_status(raffle_id, limit):
    """List recent generation jobs with progress."""
    q = db.session.query(GenerationJob)
    if raffle_id is not None:
        q = q.filter(GenerationJob.raffle_id == raffle_id)
    jobs = q.order_by(GenerationJob.id.desc()).limit(limit).all()

    if not jobs:
        click.echo("No generation jobs found.")
        return

    click.echo(f"{'ID':<6} {'Raffle':<8} {'Status':<10} {'Progress':<24} Error")
    click.echo("-" * 70)
    for job in jobs:
        progress = generation_service.get_progress(job)
        counts = f"{job.generated_count}/{job.total_tickets} ({progress['percent']}%)"
        click.echo(f"{job.id:<6} {job.raffle_id:<8} {job.status.value:<10} {counts:<24} {job.error_message or ''}")


@jobs_group.command('restart')
@click.argument('job_id', type=int)
@with_appcontext
def restart_job(job_id):
    """Put a failed job back to pending; it resumes at its checkpoint."""
    try:
        job = generation_service.restart_job(job_id)
    except RaffleError as exc:
        click.echo(f"FAIL {exc.message}")
        raise SystemExit(1)
    click.echo(f"PASS Job {job.id} restarted at batch {job.current_batch}/{job.total_batches}")


# =============================================================================
# ORDERS
# =============================================================================

@click.group('orders')
def orders_group():
    """Reservation maintenance commands."""


@orders_group.command('expire-stale')
@click.option('--raffle-id', type=int, default=None, help='Only sweep one raffle')
@click.option('--limit', type=int, default=500, show_default=True)
@with_appcontext
def expire_stale(raffle_id, limit):
    """Release reservations whose TTL passed without payment proof."""
    expired = reservation_service.expire_stale(raffle_id, limit=limit)
    click.echo(f"Expired {len(expired)} reservations.")


@orders_group.command('backfill-totals')
@click.option('--limit', type=int, default=500, show_default=True)
@with_appcontext
def backfill_totals(limit):
    """Price orders stored without a total (package price or unit price)."""
    updates = pricing_service.backfill_order_totals(limit=limit)
    for update in updates:
        click.echo(
            f"  order {update['order_id']} ({update['reference_code']}): "
            f"{update['ticket_count']} tickets -> {update['order_total_cents']}"
        )
    click.echo(f"PASS Backfilled {len(updates)} orders.")


# =============================================================================
# RAFFLES
# =============================================================================

@click.group('raffles')
def raffles_group():
    """Raffle draw and archival commands."""


@raffles_group.command('draw')
@click.argument('raffle_id', type=int)
@click.option('--prize', 'prize_name', default=None, help='Prize name recorded with the draw')
@click.option('--complete', is_flag=True, help='Mark the raffle completed after the draw')
@with_appcontext
def draw_winner(raffle_id, prize_name, complete):
    """Draw and record one winner."""
    try:
        result = draw_service.draw_winner(raffle_id)
        draw_service.record_draw(raffle_id, result, prize_name=prize_name, complete_raffle=complete)
    except RaffleError as exc:
        click.echo(f"FAIL {exc.message}")
        raise SystemExit(1)
    click.echo(
        f"PASS Winner: ticket {result.display_number} "
        f"({result.buyer_name or 'anonymous'}, order {result.order_id}) "
        f"out of {result.sold_count} sold"
    )


@raffles_group.command('auto-draw')
@click.option('--limit', type=int, default=None, help='Raffles per run (AUTO_DRAW_MAX_RAFFLES_PER_RUN)')
@with_appcontext
def auto_draw(limit):
    """Draw winners for active raffles whose draw date has passed."""
    summary = draw_service.auto_draw_due(limit=limit or current_app.config["AUTO_DRAW_MAX_RAFFLES_PER_RUN"])
    for outcome in summary["processed"]:
        if outcome["drawn"]:
            click.echo(
                f"PASS Raffle {outcome['raffle_id']}: ticket {outcome['ticket_number']} "
                f"({outcome['winner_name'] or 'anonymous'})"
            )
        else:
            click.echo(f"PASS Raffle {outcome['raffle_id']} completed ({outcome['reason']})")
    for failure in summary["failed"]:
        click.echo(f"FAIL Raffle {failure['raffle_id']}: {failure['error']}")
    click.echo(f"Processed {len(summary['processed'])} raffles, {len(summary['failed'])} failed.")


@raffles_group.command('archive')
@click.option('--retention-days', type=int, default=None, help='Days after the draw (ARCHIVE_RETENTION_DAYS)')
@click.option('--limit', type=int, default=None, help='Raffles per run (ARCHIVE_MAX_RAFFLES_PER_RUN)')
@with_appcontext
def archive_raffles(retention_days, limit):
    """Archive completed raffles past the retention window."""
    cfg = current_app.config
    summary = archive_service.archive_old_raffles(
        retention_days=retention_days or cfg["ARCHIVE_RETENTION_DAYS"],
        limit=limit or cfg["ARCHIVE_MAX_RAFFLES_PER_RUN"],
    )
    for result in summary["archived"]:
        click.echo(f"PASS Raffle {result['raffle_id']} archived ({result['orders_deleted']} orders removed)")
    for failure in summary["failed"]:
        click.echo(f"FAIL Raffle {failure['raffle_id']}: {failure['error']}")
    click.echo(f"Archived {len(summary['archived'])} raffles, {len(summary['failed'])} failed.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(jobs_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(raffles_group)
