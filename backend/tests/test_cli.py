# Overview: Pytest coverage for the worker and maintenance CLI commands.

from datetime import timedelta

import pytest

from raffle_engine.extensions import db
from raffle_engine.models import JobStatus, OrderStatus
from raffle_engine.services import generation_service, reservation_service
from raffle_engine.time_utils import utcnow


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


class TestJobCommands:
    def test_process_generates_pending_jobs(self, runner, make_raffle):
        raffle = make_raffle(100, activate=False, batch_size=30)

        result = runner.invoke(args=["jobs", "process", "--max-batches", "2"])
        assert result.exit_code == 0
        assert "60/100" in result.output

        result = runner.invoke(args=["jobs", "process"])
        assert "completed: 100 tickets" in result.output

        job = generation_service.latest_job_for_raffle(raffle.id)
        db.session.refresh(job)
        assert job.status == JobStatus.COMPLETED

    def test_process_with_nothing_to_do(self, runner, db_session):
        result = runner.invoke(args=["jobs", "process"])
        assert "No pending generation jobs." in result.output

    def test_status_lists_jobs(self, runner, make_raffle):
        make_raffle(10, activate=False)
        result = runner.invoke(args=["jobs", "status"])
        assert "completed" in result.output
        assert "10/10 (100.0%)" in result.output

    def test_restart_rejects_running_job(self, runner, make_raffle):
        raffle = make_raffle(10, activate=False)
        job = generation_service.latest_job_for_raffle(raffle.id)
        result = runner.invoke(args=["jobs", "restart", str(job.id)])
        assert result.exit_code == 1
        assert "Only failed jobs" in result.output


class TestOrderCommands:
    def test_expire_stale(self, runner, raffle):
        order = reservation_service.reserve(raffle.id, 2, "OLD", now=utcnow() - timedelta(hours=2))
        result = runner.invoke(args=["orders", "expire-stale"])
        assert "Expired 1 reservations." in result.output

        db.session.refresh(order)
        assert order.status == OrderStatus.CANCELED

    def test_backfill_totals(self, runner, raffle):
        order = reservation_service.reserve(raffle.id, 2, "NOTOTAL")
        order.order_total_cents = None
        db.session.commit()

        result = runner.invoke(args=["orders", "backfill-totals"])
        assert "NOTOTAL" in result.output
        assert "Backfilled 1 orders." in result.output


class TestRaffleCommands:
    def test_draw_without_sales_fails(self, runner, raffle):
        result = runner.invoke(args=["raffles", "draw", str(raffle.id)])
        assert result.exit_code == 1
        assert "no sold tickets" in result.output

    def test_draw_and_complete(self, runner, raffle):
        order = reservation_service.reserve(raffle.id, 1, "W", buyer={"name": "Ana"})
        reservation_service.confirm_sold(order.id)

        result = runner.invoke(args=["raffles", "draw", str(raffle.id), "--prize", "Bike", "--complete"])
        assert result.exit_code == 0
        assert "ticket 001" in result.output
        assert "Ana" in result.output

    def test_archive_with_nothing_eligible(self, runner, raffle):
        result = runner.invoke(args=["raffles", "archive"])
        assert "Archived 0 raffles, 0 failed." in result.output

    def test_auto_draw(self, runner, make_raffle):
        raffle = make_raffle(10, draw_date=utcnow() - timedelta(hours=1))
        order = reservation_service.reserve(raffle.id, 1, "AUTO", buyer={"name": "Luz"})
        reservation_service.confirm_sold(order.id)
        make_raffle(10, draw_date=utcnow() + timedelta(days=3))

        result = runner.invoke(args=["raffles", "auto-draw"])
        assert result.exit_code == 0
        assert f"PASS Raffle {raffle.id}: ticket 001 (Luz)" in result.output
        assert "Processed 1 raffles, 0 failed." in result.output
