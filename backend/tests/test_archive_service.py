# Overview: Pytest coverage for archival; eligibility, summary-before-delete ordering and idempotency.

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from raffle_engine.errors import ArchivePreconditionError, InvalidTransitionError
from raffle_engine.extensions import db
from raffle_engine.models import (
    ArchivedSummary,
    Customer,
    DomainEvent,
    EventType,
    Order,
    TicketRange,
    WinnerDraw,
)
from raffle_engine.services import archive_service, draw_service, raffle_service, reservation_service


DRAW_DATE = datetime(2026, 1, 10, 18, 0, 0)
RETENTION = 90
AFTER_RETENTION = DRAW_DATE + timedelta(days=RETENTION + 1)


def _sell(raffle_id, count, reference_code, buyer=None):
    order = reservation_service.reserve(raffle_id, count, reference_code, buyer=buyer)
    return reservation_service.confirm_sold(order.id)


@pytest.fixture
def finished_raffle(make_raffle):
    """Completed raffle with sales, an open reservation and a recorded winner."""
    raffle = make_raffle(100, ticket_price_cents=1000, draw_date=DRAW_DATE, packages={3: 2500})
    _sell(raffle.id, 3, "A1", buyer={"name": "Ana", "email": "ana@example.com", "city": "Quito"})
    _sell(raffle.id, 1, "A2", buyer={"name": "Ana", "email": "ANA@example.com", "city": "Quito"})
    _sell(raffle.id, 2, "B1", buyer={"name": "Beto", "phone": "555 0101", "city": "Cuenca"})
    reservation_service.reserve(raffle.id, 4, "PENDING")

    result = draw_service.draw_winner(raffle.id)
    draw_service.record_draw(raffle.id, result, prize_name="Bike", now=DRAW_DATE)
    raffle_service.complete_raffle(raffle.id)
    return raffle


class TestEligibility:
    def test_within_retention_window(self, finished_raffle):
        now = DRAW_DATE + timedelta(days=RETENTION - 1)
        assert not archive_service.is_eligible(finished_raffle, now=now, retention_days=RETENTION)
        with pytest.raises(ArchivePreconditionError):
            archive_service.archive_raffle(finished_raffle.id, now=now, retention_days=RETENTION)

    def test_after_retention_window(self, finished_raffle):
        assert archive_service.is_eligible(finished_raffle, now=AFTER_RETENTION, retention_days=RETENTION)

    def test_active_raffle_not_eligible(self, make_raffle):
        raffle = make_raffle(10, draw_date=DRAW_DATE)
        with pytest.raises(ArchivePreconditionError) as exc_info:
            archive_service.check_eligibility(raffle, now=AFTER_RETENTION, retention_days=RETENTION)
        assert "completed" in exc_info.value.message


class TestBuildSummary:
    def test_summary_content(self, finished_raffle):
        summary = archive_service.build_summary(finished_raffle)

        assert summary["tickets_sold"] == 6
        assert summary["tickets_reserved"] == 4
        # Package of 3 (2500) + 1 unit (1000) + 2 units (2000)
        assert summary["total_revenue_cents"] == 5500
        assert summary["unique_buyers"] == 2
        assert summary["buyer_cities"] == {"Cuenca": 1, "Quito": 2}
        assert summary["winners"][0]["prize_name"] == "Bike"
        assert summary["draw_executed_at"] == DRAW_DATE


class TestArchiveRaffle:
    def test_summary_written_and_detail_deleted(self, finished_raffle):
        raffle_id = finished_raffle.id
        result = archive_service.archive_raffle(raffle_id, now=AFTER_RETENTION, retention_days=RETENTION)

        assert result["archived"] is True
        assert result["summary_created"] is True
        assert result["orders_deleted"] == 4

        summary = archive_service.get_summary(raffle_id)
        assert summary.tickets_sold == 6
        assert summary.total_revenue_cents == 5500

        assert db.session.query(Order).filter_by(raffle_id=raffle_id).count() == 0
        assert db.session.query(TicketRange).filter_by(raffle_id=raffle_id).count() == 0
        assert finished_raffle.archived_at == AFTER_RETENTION

    def test_ledger_draws_and_events_survive(self, finished_raffle):
        archive_service.archive_raffle(finished_raffle.id, now=AFTER_RETENTION, retention_days=RETENTION)

        ana = db.session.query(Customer).filter_by(buyer_key="ana@example.com").one()
        assert ana.total_orders == 2
        assert ana.total_tickets == 4
        assert db.session.query(WinnerDraw).filter_by(raffle_id=finished_raffle.id).count() == 1

        types = {e.event_type for e in db.session.query(DomainEvent).filter_by(raffle_id=finished_raffle.id)}
        assert EventType.ORDER_SOLD.value in types
        assert EventType.RAFFLE_ARCHIVED.value in types

    def test_second_run_is_noop(self, finished_raffle):
        archive_service.archive_raffle(finished_raffle.id, now=AFTER_RETENTION, retention_days=RETENTION)
        again = archive_service.archive_raffle(finished_raffle.id, now=AFTER_RETENTION, retention_days=RETENTION)

        assert again["archived"] is False
        assert db.session.query(ArchivedSummary).count() == 1
        archived_events = db.session.query(DomainEvent).filter_by(event_type=EventType.RAFFLE_ARCHIVED.value)
        assert archived_events.count() == 1

    def test_resume_after_crash_keeps_first_summary(self, finished_raffle):
        # Crash after step 1: summary committed, detail still present
        summary = ArchivedSummary(
            raffle_id=finished_raffle.id,
            archived_at=AFTER_RETENTION,
            **archive_service.build_summary(finished_raffle),
        )
        db.session.add(summary)
        db.session.commit()

        # Detail changes after the crash must not leak into the summary
        extra = reservation_service.get_order_by_reference(finished_raffle.id, "A1")
        extra.order_total_cents = 999_999
        db.session.commit()

        result = archive_service.archive_raffle(finished_raffle.id, now=AFTER_RETENTION, retention_days=RETENTION)
        assert result["summary_created"] is False
        assert archive_service.get_summary(finished_raffle.id).total_revenue_cents == 5500
        assert db.session.query(Order).filter_by(raffle_id=finished_raffle.id).count() == 0

    def test_archived_raffle_cannot_draw(self, finished_raffle):
        archive_service.archive_raffle(finished_raffle.id, now=AFTER_RETENTION, retention_days=RETENTION)
        with pytest.raises(InvalidTransitionError):
            draw_service.draw_winner(finished_raffle.id)


class TestArchiveOldRaffles:
    def test_bounded_batch(self, make_raffle):
        ids = []
        for day in range(3):
            raffle = make_raffle(10, draw_date=DRAW_DATE + timedelta(days=day))
            raffle_service.complete_raffle(raffle.id)
            ids.append(raffle.id)
        recent = make_raffle(10, draw_date=AFTER_RETENTION)
        raffle_service.complete_raffle(recent.id)

        first = archive_service.archive_old_raffles(
            retention_days=RETENTION, limit=2, now=AFTER_RETENTION + timedelta(days=5),
        )
        assert [r["raffle_id"] for r in first["archived"]] == ids[:2]

        second = archive_service.archive_old_raffles(
            retention_days=RETENTION, limit=2, now=AFTER_RETENTION + timedelta(days=5),
        )
        assert [r["raffle_id"] for r in second["archived"]] == ids[2:]
        assert second["failed"] == []

        third = archive_service.archive_old_raffles(
            retention_days=RETENTION, limit=2, now=AFTER_RETENTION + timedelta(days=5),
        )
        assert third == {"archived": [], "failed": []}

    def test_failure_is_emitted_and_run_continues(self, finished_raffle, make_raffle, monkeypatch):
        other = make_raffle(10, draw_date=DRAW_DATE + timedelta(days=1))
        raffle_service.complete_raffle(other.id)
        failing_id = finished_raffle.id
        real_build_summary = archive_service.build_summary

        def broken_build_summary(raffle):
            if raffle.id == failing_id:
                raise OperationalError("SELECT ...", {}, Exception("disk I/O error"))
            return real_build_summary(raffle)

        monkeypatch.setattr(archive_service, "build_summary", broken_build_summary)

        result = archive_service.archive_old_raffles(retention_days=RETENTION, now=AFTER_RETENTION + timedelta(days=1))

        assert [r["raffle_id"] for r in result["archived"]] == [other.id]
        assert [f["raffle_id"] for f in result["failed"]] == [failing_id]
        assert "disk I/O error" in result["failed"][0]["error"]

        failures = db.session.query(DomainEvent).filter_by(event_type=EventType.ARCHIVE_FAILED.value).all()
        assert [e.raffle_id for e in failures] == [failing_id]
        assert failures[0].to_dict()["payload"]["error_type"] == "OperationalError"

        # Nothing of the failed raffle was touched
        assert archive_service.get_summary(failing_id) is None
        assert db.session.query(Order).filter_by(raffle_id=failing_id).count() == 4
