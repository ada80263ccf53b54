"""
Unit tests for money, timezone, configuration and logging helpers
"""

import json
import logging
import pytest
import sys
from datetime import date, datetime, time
from decimal import Decimal

import pytz

from app import create_app
from timezone_utils import normalize_day, period_bounds, previous_day
from utils.config_validator import validate_ledger_config, check_production_readiness
from utils.logging_config import JSONFormatter, setup_logging
from utils.money import to_minor_units, from_minor_units, format_amount, percentage
from tests.conftest import TEST_CONFIG


class TestMoney:

    def test_whole_currency(self):
        assert to_minor_units(62000, decimals=0) == 62000
        assert to_minor_units('15000', decimals=0) == 15000

    def test_currency_with_cents(self):
        assert to_minor_units('12.34', decimals=2) == 1234
        assert to_minor_units(Decimal('0.5'), decimals=2) == 50
        assert from_minor_units(1234, decimals=2) == Decimal('12.34')

    def test_floats_are_refused(self):
        with pytest.raises(TypeError):
            to_minor_units(10.5, decimals=2)
        with pytest.raises(TypeError):
            to_minor_units(True)

    def test_too_many_decimals(self):
        with pytest.raises(ValueError):
            to_minor_units('12.345', decimals=2)
        with pytest.raises(ValueError):
            to_minor_units('12.5', decimals=0)

    def test_garbage(self):
        with pytest.raises(ValueError):
            to_minor_units('douze')
        with pytest.raises(ValueError):
            to_minor_units('NaN')

    def test_format_amount(self):
        assert format_amount(62000, decimals=0, currency='XOF') == '62,000 XOF'
        assert format_amount(123456, decimals=2, currency='EUR') == '1,234.56 EUR'

    def test_format_amount_uses_app_config(self, app):
        assert format_amount(5000) == '5,000 XOF'

    def test_percentage(self):
        assert percentage(1, 3) == 33
        assert percentage(2, 3) == 67
        assert percentage(-5, 10) == -50
        assert percentage(10, 0) == 0


class TestTimezone:

    def test_normalize_day(self, app):
        assert normalize_day(date(2024, 5, 1)) == date(2024, 5, 1)
        assert normalize_day(datetime(2024, 5, 1, 23, 59)) == date(2024, 5, 1)
        assert normalize_day('2024-05-01') == date(2024, 5, 1)

    def test_aware_datetime_uses_ledger_zone(self, app):
        app.config['LEDGER_TIMEZONE'] = 'Africa/Lagos'
        late_utc = pytz.utc.localize(datetime(2024, 5, 1, 23, 30))

        assert normalize_day(late_utc) == date(2024, 5, 2)

    def test_period_bounds_cover_whole_days(self, app):
        start, end = period_bounds(date(2024, 5, 1), date(2024, 5, 2))

        assert start == datetime(2024, 5, 1, 0, 0)
        assert end == datetime.combine(date(2024, 5, 2), time.max)

    def test_period_bounds_reject_reversed_period(self, app):
        with pytest.raises(ValueError):
            period_bounds(date(2024, 5, 2), date(2024, 5, 1))

    def test_previous_day(self, app):
        assert previous_day(date(2024, 3, 1)) == date(2024, 2, 29)


class TestConfigValidator:

    def test_defaults_are_valid(self):
        is_valid, issues = validate_ledger_config(TEST_CONFIG)

        assert is_valid
        assert issues == []

    @pytest.mark.parametrize('key, value', [
        ('LEDGER_TIMEZONE', 'Mars/Olympus'),
        ('LEDGER_CURRENCY', 'francs'),
        ('LEDGER_RECONCILIATION_EPSILON', -1),
        ('LEDGER_CURRENCY_DECIMALS', 6),
        ('LEDGER_MUTATION_RETRIES', 0),
        ('LEDGER_CLOSE_JOB_AT', '25:00'),
    ])
    def test_invalid_values(self, key, value):
        is_valid, issues = validate_ledger_config(dict(TEST_CONFIG, **{key: value}))

        assert not is_valid
        assert any(key in issue for issue in issues)

    def test_create_app_refuses_invalid_config(self):
        with pytest.raises(RuntimeError):
            create_app(dict(TEST_CONFIG, LEDGER_TIMEZONE='Nowhere/Land'))

    def test_production_readiness_on_sqlite(self):
        result = check_production_readiness(TEST_CONFIG)

        assert result['production_ready'] is False
        assert result['database_backend'] == 'sqlite'
        assert result['recommendations']

    def test_production_readiness_on_postgresql(self):
        config = dict(TEST_CONFIG, SQLALCHEMY_DATABASE_URI='postgresql+psycopg2://ledger@db/ledger')

        assert check_production_readiness(config)['production_ready'] is True


class TestLogging:

    def test_json_formatter_carries_extra_fields(self):
        record = logging.LogRecord('services.reconciliation', logging.WARNING, __file__, 10,
                                   'Ledger %s drifted', (7,), None)
        record.ledger_id = 7
        record.delta = 2000

        data = json.loads(JSONFormatter().format(record))

        assert data['message'] == 'Ledger 7 drifted'
        assert data['level'] == 'WARNING'
        assert data['application'] == 'fleet_cash_ledger'
        assert data['extra'] == {'ledger_id': 7, 'delta': 2000}

    def test_json_formatter_includes_exception(self):
        try:
            raise ValueError('bad amount')
        except ValueError:
            record = logging.LogRecord('services', logging.ERROR, __file__, 20, 'failed', (), sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert data['exception']['type'] == 'ValueError'
        assert data['location']['line'] == 20

    def test_setup_logging_installs_one_handler(self, monkeypatch):
        monkeypatch.setenv('USE_JSON_LOGGING', 'true')

        setup_logging()
        loggers = setup_logging()

        ours = [h for h in logging.getLogger().handlers if getattr(h, '_fleet_ledger_handler', False)]
        assert len(ours) == 1
        assert isinstance(ours[0].formatter, JSONFormatter)
        assert set(loggers) == {'services', 'models', 'utils', 'audit', 'scheduler'}
