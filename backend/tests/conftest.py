"""
Pytest fixtures for raffle engine backend tests.

Provides test database setup, raffle factories, and test client.
"""

import pytest
from raffle_engine import create_app
from raffle_engine.extensions import db
from raffle_engine.services import raffle_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_raffle(db_session):
    """
    Factory for generated raffles.

    Raffles that fit in one batch are generated on creation; activate=True
    puts them on sale.
    """
    def _make(total_tickets=100, *, activate=True, title="Test Raffle", **kwargs):
        raffle = raffle_service.create_raffle(title, total_tickets, **kwargs)
        if activate:
            raffle_service.activate_raffle(raffle.id)
        return raffle

    return _make


@pytest.fixture(scope='function')
def raffle(make_raffle):
    """Active raffle: 100 tickets at 500 cents, numbered 001..100."""
    return make_raffle(100, ticket_price_cents=500)
