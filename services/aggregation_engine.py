"""
Aggregation Engine

Period-scoped cash position of a canonical driver, and the fleet-wide
roll-up built from it.

Authoritative figures only count trips whose payment was recorded inside
the period. The trailing-window diagnostic pass is reported in its own
structure and never feeds cashBalance or tripsCompleted.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
from flask import current_app
from models import DriverRef, EntryType, PaymentMethod
from timezone_utils import period_bounds
from utils.money import percentage
from .financial_sources import TripStore, ExpenseStore, TripPaymentEvent, ExpenseRecord
from .identity_resolver import CanonicalDriver, IdentityResolver
from .ledger_store import LedgerStore
from .errors import ValidationError

logger = logging.getLogger(__name__)

STATUS_URGENT = 'urgent'
STATUS_POSITIVE = 'positive'

# Category keywords, lower case, matched as substrings
MAINTENANCE_KEYWORDS = ('maintenance', 'entretien', 'reparation', 'réparation', 'vidange', 'pneu', 'garage')
FUEL_KEYWORDS = ('carburant', 'fuel', 'essence', 'gasoil', 'diesel')


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def dedupe_trips(events: Iterable[TripPaymentEvent]) -> List[TripPaymentEvent]:
    """First occurrence of each trip id, original order kept"""
    seen = set()
    unique = []
    for event in events:
        if event.trip_id in seen:
            continue
        seen.add(event.trip_id)
        unique.append(event)
    return unique


def dedupe_expenses(records: Iterable[ExpenseRecord]) -> List[ExpenseRecord]:
    """First occurrence of each expense reference, original order kept"""
    seen = set()
    unique = []
    for record in records:
        if record.dedupe_key in seen:
            continue
        seen.add(record.dedupe_key)
        unique.append(record)
    return unique


def charge_class(category: str) -> str:
    name = (category or '').lower()
    if any(keyword in name for keyword in MAINTENANCE_KEYWORDS):
        return 'maintenance'
    if any(keyword in name for keyword in FUEL_KEYWORDS):
        return 'fuel'
    return 'other'


@dataclass(frozen=True)
class DiagnosticWindow:
    """
    Trips found by widening the search past the requested period.

    Out-of-period by construction: for operator visibility only.
    """
    window_start: datetime
    window_end: datetime
    trips: Tuple[TripPaymentEvent, ...]
    out_of_period: bool = True

    @property
    def trip_count(self) -> int:
        return len(self.trips)

    @property
    def settled_count(self) -> int:
        return sum(1 for trip in self.trips if trip.is_settled)

    @property
    def cash_seen(self) -> int:
        return sum(trip.collected_amount for trip in self.trips
                   if trip.effective_method == PaymentMethod.CASH)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'outOfPeriod': self.out_of_period,
            'windowStart': _iso(self.window_start),
            'windowEnd': _iso(self.window_end),
            'tripCount': self.trip_count,
            'settledCount': self.settled_count,
            'cashSeen': self.cash_seen,
            'trips': [trip.to_dict() for trip in self.trips],
        }


@dataclass(frozen=True)
class DriverFinancialSnapshot:
    driver: CanonicalDriver
    period_start: datetime
    period_end: datetime
    opening_amount: int
    opening_was_recorded: bool
    cash_collected: int
    trips_completed: int
    expenses_total: int
    cash_balance: int
    status: str
    payment_method_changes: int = 0
    billed_fallback_trips: int = 0
    queried_refs: Tuple[DriverRef, ...] = ()
    ledger_ids: Tuple[int, ...] = ()
    trips: Tuple[TripPaymentEvent, ...] = field(default=(), repr=False)
    expenses: Tuple[ExpenseRecord, ...] = field(default=(), repr=False)
    diagnostic: Optional[DiagnosticWindow] = None

    @property
    def is_urgent(self) -> bool:
        return self.status == STATUS_URGENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            'driver': self.driver.to_dict(),
            'periodStart': _iso(self.period_start),
            'periodEnd': _iso(self.period_end),
            'openingAmount': self.opening_amount,
            'openingWasRecorded': self.opening_was_recorded,
            'cashCollected': self.cash_collected,
            'tripsCompleted': self.trips_completed,
            'expensesTotal': self.expenses_total,
            'cashBalance': self.cash_balance,
            'status': self.status,
            'paymentMethodChanges': self.payment_method_changes,
            'billedFallbackTrips': self.billed_fallback_trips,
            'queriedIds': [ref.to_dict() for ref in self.queried_refs],
            'ledgerIds': list(self.ledger_ids),
            'diagnostic': self.diagnostic.to_dict() if self.diagnostic else None,
        }


@dataclass(frozen=True)
class FleetFinancialSnapshot:
    period_start: datetime
    period_end: datetime
    drivers: Tuple[DriverFinancialSnapshot, ...]
    revenue_total: int
    revenue_trip_count: int
    revenue_by_method: Dict[str, Dict[str, int]]
    expenses_total: int
    expense_count: int
    expenses_by_category: List[Dict[str, Any]]
    charges_by_class: Dict[str, int]
    net_margin: int
    margin_percent: int
    active_treasury: int
    payment_method_changes: int
    ledger_totals: Dict[str, int]

    @property
    def urgent_drivers(self) -> List[DriverFinancialSnapshot]:
        return [snapshot for snapshot in self.drivers if snapshot.is_urgent]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'periodStart': _iso(self.period_start),
            'periodEnd': _iso(self.period_end),
            'drivers': [snapshot.to_dict() for snapshot in self.drivers],
            'driverTotals': {
                'driverCount': len(self.drivers),
                'urgentCount': len(self.urgent_drivers),
                'openingAmount': sum(s.opening_amount for s in self.drivers),
                'cashCollected': sum(s.cash_collected for s in self.drivers),
                'tripsCompleted': sum(s.trips_completed for s in self.drivers),
                'expensesTotal': sum(s.expenses_total for s in self.drivers),
                'cashBalance': sum(s.cash_balance for s in self.drivers),
            },
            'revenue': {
                'total': self.revenue_total,
                'tripCount': self.revenue_trip_count,
                'byMethod': self.revenue_by_method,
            },
            'expenses': {
                'total': self.expenses_total,
                'count': self.expense_count,
                'byCategory': self.expenses_by_category,
                'byClass': self.charges_by_class,
            },
            'netMargin': self.net_margin,
            'marginPercent': self.margin_percent,
            'activeTreasury': self.active_treasury,
            'paymentMethodChanges': self.payment_method_changes,
            'ledgers': self.ledger_totals,
        }


class AggregationEngine:
    """Service class for driver and fleet financial snapshots"""

    def __init__(self, resolver: Optional[IdentityResolver] = None,
                 ledger_store: Optional[LedgerStore] = None,
                 trip_store: Optional[TripStore] = None,
                 expense_store: Optional[ExpenseStore] = None):
        self.resolver = resolver or IdentityResolver()
        self.ledger_store = ledger_store or LedgerStore()
        self.trip_store = trip_store or TripStore()
        self.expense_store = expense_store or ExpenseStore()

    def compute_driver_financials(self, canonical: CanonicalDriver, period_start, period_end,
                                  include_diagnostic: bool = True) -> DriverFinancialSnapshot:
        """
        Cash position of one driver over [period_start, period_end].

        Plain dates cover whole local calendar days. Ledger, trip and expense
        data are gathered for every id of the canonical driver; trips are
        counted once per trip id and expenses once per reference.

        Raises:
            ValidationError: period end before its start
            CollaboratorUnavailable: a trip or expense query failed;
                no partial snapshot is returned
            SQLAlchemyError: the ledger read still failed after its
                connection retries
        """
        start, end = self._bounds(period_start, period_end)
        refs = canonical.refs

        ledgers = self.ledger_store.list(driver_refs=refs, start_day=start.date(), end_day=end.date())
        opening_amount = sum(ledger.opening_amount for ledger in ledgers)

        trips = dedupe_trips(self.trip_store.completed_paid_between(refs, start, end))
        # Settled in period, whatever the scheduled start was
        trips = [trip for trip in trips if trip.is_settled and start <= trip.transaction_timestamp <= end]
        cash_trips = [trip for trip in trips if trip.effective_method == PaymentMethod.CASH]
        cash_collected = sum(trip.collected_amount for trip in cash_trips)

        expenses = dedupe_expenses(self.expense_store.for_driver_between(refs, start, end))
        expenses_total = sum(record.amount for record in expenses)

        cash_balance = opening_amount + cash_collected - expenses_total

        diagnostic = None
        if include_diagnostic and not trips:
            diagnostic = self._diagnostic_window(refs, end)

        snapshot = DriverFinancialSnapshot(
            driver=canonical,
            period_start=start,
            period_end=end,
            opening_amount=opening_amount,
            opening_was_recorded=bool(ledgers),
            cash_collected=cash_collected,
            trips_completed=len(trips),
            expenses_total=expenses_total,
            cash_balance=cash_balance,
            status=STATUS_URGENT if cash_balance < 0 else STATUS_POSITIVE,
            payment_method_changes=sum(1 for trip in trips if trip.method_changed),
            billed_fallback_trips=sum(1 for trip in cash_trips if trip.uses_billed_fallback),
            queried_refs=tuple(refs),
            ledger_ids=tuple(ledger.id for ledger in ledgers),
            trips=tuple(trips),
            expenses=tuple(expenses),
            diagnostic=diagnostic,
        )
        logger.debug(f"Financials for {canonical.display_name} ({start.date()}..{end.date()}): "
                     f"balance {cash_balance}, {len(trips)} trip(s)")
        return snapshot

    def compute_driver_financials_for(self, reference, period_start, period_end) -> DriverFinancialSnapshot:
        """Resolve a raw driver reference, then compute its snapshot"""
        return self.compute_driver_financials(self.resolver.resolve(reference), period_start, period_end)

    def compute_fleet_financials(self, period_start, period_end) -> FleetFinancialSnapshot:
        """
        Fleet-wide figures over [period_start, period_end].

        Per-driver snapshots cover the deduplicated union of drivers from
        both identity stores. Revenue and expense breakdowns cover every
        completed trip and expense of the period, attributed or not.
        Drivers are computed one after the other on the request's session;
        they share no state and could be fanned out.
        """
        start, end = self._bounds(period_start, period_end)

        drivers = tuple(
            self.compute_driver_financials(canonical, start, end, include_diagnostic=False)
            for canonical in self.resolver.resolve_all()
        )

        trips = dedupe_trips(self.trip_store.all_completed_paid_between(start, end))
        revenue_total = sum(trip.collected_amount for trip in trips)
        revenue_by_method = {}
        for method in PaymentMethod:
            method_trips = [trip for trip in trips if trip.effective_method == method]
            amount = sum(trip.collected_amount for trip in method_trips)
            revenue_by_method[method.value] = {
                'amount': amount,
                'tripCount': len(method_trips),
                'percent': percentage(amount, revenue_total),
            }

        expenses = dedupe_expenses(self.expense_store.all_between(start, end))
        expenses_total = sum(record.amount for record in expenses)
        by_category = {}
        charges_by_class = {'maintenance': 0, 'fuel': 0, 'other': 0}
        for record in expenses:
            by_category[record.category] = by_category.get(record.category, 0) + record.amount
            charges_by_class[charge_class(record.category)] += record.amount
        expenses_by_category = sorted(
            ({'category': category, 'amount': amount, 'percent': percentage(amount, expenses_total)}
             for category, amount in by_category.items()),
            key=lambda row: (-row['amount'], row['category'])
        )

        ledgers = self.ledger_store.list(start_day=start.date(), end_day=end.date())
        ledger_totals = {
            'ledgerCount': len(ledgers),
            'openingAmount': sum(ledger.opening_amount for ledger in ledgers),
            'runningBalance': sum(ledger.running_balance for ledger in ledgers),
        }
        for entry_type in EntryType:
            ledger_totals[entry_type.value] = sum(ledger.total_for(entry_type) for ledger in ledgers)

        net_margin = revenue_total - expenses_total
        fleet = FleetFinancialSnapshot(
            period_start=start,
            period_end=end,
            drivers=drivers,
            revenue_total=revenue_total,
            revenue_trip_count=len(trips),
            revenue_by_method=revenue_by_method,
            expenses_total=expenses_total,
            expense_count=len(expenses),
            expenses_by_category=expenses_by_category,
            charges_by_class=charges_by_class,
            net_margin=net_margin,
            margin_percent=percentage(net_margin, revenue_total),
            active_treasury=ledger_totals['runningBalance'],
            payment_method_changes=sum(1 for trip in trips if trip.method_changed),
            ledger_totals=ledger_totals,
        )
        logger.info(f"Fleet financials {start.date()}..{end.date()}: revenue {revenue_total}, "
                    f"expenses {expenses_total}, {len(drivers)} driver(s), {len(fleet.urgent_drivers)} urgent")
        return fleet

    def consolidated_transactions(self, period_start, period_end, kind: str = 'all',
                                  category: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Revenue and expense rows of a period, newest first.

        Args:
            kind: 'all', 'revenue' or 'expense'
            category: only keep expenses of this category ('all' or None keeps every one)
        """
        if kind not in ('all', 'revenue', 'expense'):
            raise ValidationError(f"kind must be 'all', 'revenue' or 'expense', got {kind!r}", field='kind')
        start, end = self._bounds(period_start, period_end)
        rows = []

        if kind in ('all', 'revenue'):
            for trip in dedupe_trips(self.trip_store.all_completed_paid_between(start, end)):
                rows.append({
                    'reference': trip.reference,
                    'date': trip.transaction_timestamp,
                    'type': 'revenue',
                    'category': 'trip',
                    'description': f"Trip payment {trip.reference}",
                    'amount': trip.collected_amount,
                    'paymentMethod': trip.effective_method.value,
                    'driver': self._driver_label(trip.driver_id, trip.driver_source),
                })

        if kind in ('all', 'expense'):
            for record in dedupe_expenses(self.expense_store.all_between(start, end)):
                if category and category != 'all' and record.category != category:
                    continue
                rows.append({
                    'reference': record.reference or record.dedupe_key,
                    'date': record.date,
                    'type': 'expense',
                    'category': record.category,
                    'description': record.description or 'Unspecified expense',
                    'amount': record.amount,
                    'paymentMethod': PaymentMethod.CASH.value,
                    'driver': record.driver_ref.to_dict() if record.driver_ref else None,
                })

        rows.sort(key=lambda row: row['date'], reverse=True)
        for row in rows:
            row['date'] = _iso(row['date'])
        return rows

    # ------------------------------------------------------------------

    @staticmethod
    def _bounds(period_start, period_end) -> Tuple[datetime, datetime]:
        try:
            return period_bounds(period_start, period_end)
        except ValueError as e:
            raise ValidationError(str(e), field='period_end')

    def _diagnostic_window(self, refs: List[DriverRef], period_end: datetime) -> Optional[DiagnosticWindow]:
        days = current_app.config.get('LEDGER_DIAGNOSTIC_WINDOW_DAYS', 30)
        if not days or days <= 0:
            return None
        window_start = period_end - timedelta(days=days)
        trips = dedupe_trips(self.trip_store.completed_started_between(refs, window_start, period_end))
        if trips:
            logger.warning(f"No in-period trips for {', '.join(str(r) for r in refs)}; "
                           f"{len(trips)} completed trip(s) found in the trailing {days} day(s)")
        return DiagnosticWindow(window_start=window_start, window_end=period_end, trips=tuple(trips))

    @staticmethod
    def _driver_label(driver_id, driver_source):
        if driver_id is None:
            return None
        return {'id': driver_id, 'source': driver_source.value if driver_source else None}
