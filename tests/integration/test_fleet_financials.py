"""
Integration tests for fleet-wide financials and consolidated transactions
"""

import pytest
from datetime import date, datetime

from models import DriverRef, DriverSource, EntryType, PaymentMethod
from services.aggregation_engine import AggregationEngine, charge_class
from services.errors import ValidationError
from services.ledger_service import LedgerService
from tests.factories import UserFactory, DriverProfileFactory, TripFactory, ExpenseFactory

DAY = date(2024, 5, 1)


@pytest.fixture
def fleet(app, db_session):
    """
    Three drivers: one known to both stores, one primary-only, one specialized-only.
    Plus a trip nobody claims.
    """
    linked_user = UserFactory(email='linked@fleet.test')
    linked_profile = DriverProfileFactory(email='linked@fleet.test')
    lone_user = UserFactory()
    lone_profile = DriverProfileFactory()

    TripFactory(driver_id=linked_user.id, driver_source=DriverSource.PRIMARY, billed_amount=20000,
                transaction_timestamp=datetime(2024, 5, 1, 8, 0))
    TripFactory(driver_id=linked_profile.id, driver_source=DriverSource.SPECIALIZED, billed_amount=10000,
                effective_payment_method=PaymentMethod.MOBILE_MONEY,
                transaction_timestamp=datetime(2024, 5, 1, 10, 0))
    TripFactory(driver_id=lone_user.id, driver_source=DriverSource.PRIMARY, billed_amount=5000,
                planned_payment_method=PaymentMethod.CREDIT, effective_payment_method=PaymentMethod.CREDIT,
                transaction_timestamp=datetime(2024, 5, 1, 14, 0))
    TripFactory(driver_id=None, driver_source=None, billed_amount=3000,
                transaction_timestamp=datetime(2024, 5, 1, 16, 0))
    # Paid the next day: outside the period
    TripFactory(driver_id=lone_user.id, driver_source=DriverSource.PRIMARY, billed_amount=99000,
                scheduled_start=datetime(2024, 5, 1, 23, 0),
                transaction_timestamp=datetime(2024, 5, 2, 7, 0))

    ExpenseFactory(reference='DEP-1', category='Carburant', amount=4000,
                   driver_id=linked_user.id, driver_source=DriverSource.PRIMARY)
    ExpenseFactory(reference='DEP-1', category='Carburant', amount=4000,
                   driver_id=linked_profile.id, driver_source=DriverSource.SPECIALIZED)
    ExpenseFactory(reference='DEP-2', category='Entretien vidange', amount=6000,
                   driver_id=lone_user.id, driver_source=DriverSource.PRIMARY,
                   date=datetime(2024, 5, 1, 18, 0))
    ExpenseFactory(reference='DEP-3', category='Péage', amount=2000,
                   driver_id=lone_profile.id, driver_source=DriverSource.SPECIALIZED)

    service = LedgerService()
    ledger = service.get_or_create_daily_ledger(DriverRef.primary(linked_user.id), DAY, 10000)
    service.append_entry(ledger.id, EntryType.RECETTE, 20000, 'Course')

    return {
        'linked': (linked_user, linked_profile),
        'lone_user': lone_user,
        'lone_profile': lone_profile,
    }


class TestFleetFinancials:

    def test_drivers_are_deduplicated(self, fleet):
        snapshot = AggregationEngine().compute_fleet_financials(DAY, DAY)

        linked_user, linked_profile = fleet['linked']
        keys = {s.driver.key for s in snapshot.drivers}
        assert keys == {
            (linked_user.id, linked_profile.id),
            (fleet['lone_user'].id, None),
            (None, fleet['lone_profile'].id),
        }

    def test_per_driver_figures(self, fleet):
        snapshot = AggregationEngine().compute_fleet_financials(DAY, DAY)

        by_key = {s.driver.key: s for s in snapshot.drivers}
        linked_user, linked_profile = fleet['linked']
        linked = by_key[(linked_user.id, linked_profile.id)]
        assert linked.opening_amount == 10000
        assert linked.cash_collected == 20000
        assert linked.trips_completed == 2
        assert linked.expenses_total == 4000
        assert linked.cash_balance == 26000

        lone_profile = by_key[(None, fleet['lone_profile'].id)]
        assert lone_profile.cash_balance == -2000
        assert lone_profile.is_urgent
        assert lone_profile.diagnostic is None

    def test_revenue_by_method(self, fleet):
        snapshot = AggregationEngine().compute_fleet_financials(DAY, DAY)

        assert snapshot.revenue_total == 38000
        assert snapshot.revenue_trip_count == 4
        assert snapshot.revenue_by_method['cash'] == {'amount': 23000, 'tripCount': 2, 'percent': 61}
        assert snapshot.revenue_by_method['mobile_money']['percent'] == 26
        assert snapshot.revenue_by_method['credit']['amount'] == 5000
        assert snapshot.revenue_by_method['card']['amount'] == 0
        assert snapshot.payment_method_changes == 1

    def test_expense_breakdowns(self, fleet):
        snapshot = AggregationEngine().compute_fleet_financials(DAY, DAY)

        assert snapshot.expenses_total == 12000
        assert snapshot.expense_count == 3
        assert [row['category'] for row in snapshot.expenses_by_category] == [
            'Entretien vidange', 'Carburant', 'Péage']
        assert snapshot.expenses_by_category[0]['percent'] == 50
        assert snapshot.charges_by_class == {'maintenance': 6000, 'fuel': 4000, 'other': 2000}

    def test_margin_and_treasury(self, fleet):
        snapshot = AggregationEngine().compute_fleet_financials(DAY, DAY)

        assert snapshot.net_margin == 26000
        assert snapshot.margin_percent == 68
        assert snapshot.active_treasury == 30000
        assert snapshot.ledger_totals['recette'] == 20000
        assert snapshot.ledger_totals['ledgerCount'] == 1

    def test_to_dict(self, fleet):
        data = AggregationEngine().compute_fleet_financials(DAY, DAY).to_dict()

        assert data['driverTotals']['driverCount'] == 3
        assert data['driverTotals']['urgentCount'] == 2
        assert data['revenue']['total'] == 38000
        assert data['netMargin'] == 26000
        assert data['expenses']['byClass']['fuel'] == 4000

    def test_empty_period(self, app, db_session):
        snapshot = AggregationEngine().compute_fleet_financials(DAY, DAY)

        assert snapshot.drivers == ()
        assert snapshot.revenue_total == 0
        assert snapshot.margin_percent == 0


class TestConsolidatedTransactions:

    def test_all_rows_newest_first(self, fleet):
        rows = AggregationEngine().consolidated_transactions(DAY, DAY)

        assert len(rows) == 7
        assert rows[0]['reference'] == 'DEP-2'
        dates = [row['date'] for row in rows]
        assert dates == sorted(dates, reverse=True)

    def test_revenue_only(self, fleet):
        rows = AggregationEngine().consolidated_transactions(DAY, DAY, kind='revenue')

        assert {row['type'] for row in rows} == {'revenue'}
        assert sum(row['amount'] for row in rows) == 38000

    def test_expense_category_filter(self, fleet):
        rows = AggregationEngine().consolidated_transactions(DAY, DAY, kind='expense', category='Carburant')

        assert len(rows) == 1
        assert rows[0]['amount'] == 4000

    def test_unknown_kind(self, fleet):
        with pytest.raises(ValidationError):
            AggregationEngine().consolidated_transactions(DAY, DAY, kind='transfers')


@pytest.mark.parametrize('category, expected', [
    ('Entretien', 'maintenance'),
    ('Réparation moteur', 'maintenance'),
    ('CARBURANT', 'fuel'),
    ('Gasoil', 'fuel'),
    ('Péage', 'other'),
    ('', 'other'),
])
def test_charge_class(category, expected):
    assert charge_class(category) == expected
