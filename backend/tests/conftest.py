"""
Pytest fixtures for pellet ledger tests.

Provides test database setup, party fixtures and a stocked product ledger.
"""

import pytest
from pellet_ledger import create_app
from pellet_ledger.extensions import db
from pellet_ledger.services import party_service
from pellet_ledger.services import stock_ledger_service as ledger


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
def runner(app):
    """CLI runner bound to the test app."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def customer(db_session):
    """Client with no credit."""
    return party_service.create_client(
        name="Juan Perez",
        company="Forrajes del Sur SA",
        cuit="30-71234567-8",
        contact="Juan",
        email="Compras@ForrajesSur.com.ar",
    )


@pytest.fixture(scope='function')
def other_customer(db_session):
    return party_service.create_client(
        name="Maria Gomez",
        company="Tambo La Esperanza",
        cuit="30-70000001-2",
        contact="Maria",
    )


@pytest.fixture(scope='function')
def supplier(db_session):
    return party_service.create_supplier(
        business_name="Agro Rollos SRL",
        cuit="30-69999999-1",
        contact="Pedro",
    )


@pytest.fixture(scope='function')
def granel_500(db_session):
    """PRODUCT ledger with 500 of Granel."""
    return ledger.apply_movement(ledger.LEDGER_PRODUCT, "Granel", ledger.KIND_INBOUND, 500, reference="Opening stock")


@pytest.fixture(scope='function')
def bags_stock(db_session):
    """PRODUCT ledger with 1000 of Bolsa 25kg."""
    return ledger.apply_movement(ledger.LEDGER_PRODUCT, "Bolsa 25kg", ledger.KIND_INBOUND, 1000, reference="Opening stock")
