"""
Pytest configuration and fixtures for the fleet cash ledger
"""

import os
import pytest

# Set test environment before importing app
os.environ.update({
    'FLASK_ENV': 'testing',
    'TESTING': 'true',
    'DATABASE_URL': 'sqlite:///:memory:',
    'LEDGER_TIMEZONE': 'Africa/Abidjan',
})

from app import create_app, db


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'LEDGER_TIMEZONE': 'Africa/Abidjan',
    'LEDGER_CURRENCY': 'XOF',
    'LEDGER_CURRENCY_DECIMALS': 0,
    'LEDGER_RECONCILIATION_EPSILON': 0,
    'LEDGER_DIAGNOSTIC_WINDOW_DAYS': 30,
    'LEDGER_MUTATION_RETRIES': 3,
    'LEDGER_QUERY_TIMEOUT_MS': 10000,
    'LEDGER_CLOSE_JOB_AT': '00:15',
}


@pytest.fixture(scope='function')
def app():
    """Create application for testing"""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def runner(app):
    """Create test CLI runner"""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def db_session(app):
    """Create database session for testing"""
    yield db.session
    db.session.rollback()
