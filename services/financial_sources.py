"""
Financial Sources

Adapters over the trip and expense stores owned by the booking and expense
subsystems. Rows are normalized into TripPaymentEvent / ExpenseRecord
before any aggregation logic sees them, and every query runs under the
collaborator guard so a failure is never read as "no data".
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Set
import logging
from sqlalchemy import and_, func, or_, select
from models import db, Trip, Expense, TripStatus, PaymentMethod, DriverRef, DriverSource
from .transaction_helper import TransactionHelper

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TripPayment:
    """Settlement sub-record of a trip"""
    amount_collected: Optional[int]
    effective_payment_method: PaymentMethod
    transaction_timestamp: Optional[datetime]
    payment_reference: Optional[str] = None


@dataclass(frozen=True)
class TripPaymentEvent:
    trip_id: int
    reference: str
    driver_id: Optional[int]
    driver_source: Optional[DriverSource]
    scheduled_start: Optional[datetime]
    billed_amount: int
    planned_payment_method: PaymentMethod
    payment: Optional[TripPayment]

    @property
    def is_settled(self) -> bool:
        return self.payment is not None and self.payment.transaction_timestamp is not None

    @property
    def effective_method(self) -> PaymentMethod:
        if self.payment is None:
            return self.planned_payment_method
        return self.payment.effective_payment_method

    @property
    def method_changed(self) -> bool:
        return self.payment is not None and self.payment.effective_payment_method != self.planned_payment_method

    @property
    def uses_billed_fallback(self) -> bool:
        """Legacy record that never stored what was actually collected"""
        return self.payment is None or not self.payment.amount_collected

    @property
    def collected_amount(self) -> int:
        """
        Amount settled for the trip.

        Billed-amount fallback: when no collection was recorded (absent or
        zero) the billed amount stands in for it.
        """
        if self.uses_billed_fallback:
            return self.billed_amount or 0
        return self.payment.amount_collected

    @property
    def transaction_timestamp(self) -> Optional[datetime]:
        return self.payment.transaction_timestamp if self.payment is not None else None

    def to_dict(self):
        return {
            'tripId': self.trip_id,
            'reference': self.reference,
            'billedAmount': self.billed_amount,
            'amountCollected': self.collected_amount,
            'plannedPaymentMethod': self.planned_payment_method.value,
            'effectivePaymentMethod': self.effective_method.value,
            'methodChanged': self.method_changed,
            'billedFallback': self.uses_billed_fallback,
            'scheduledStart': self.scheduled_start.isoformat() if self.scheduled_start else None,
            'transactionTimestamp': self.transaction_timestamp.isoformat() if self.transaction_timestamp else None,
        }

    @classmethod
    def from_trip(cls, trip: Trip) -> 'TripPaymentEvent':
        payment = None
        if (trip.transaction_timestamp is not None or trip.amount_collected is not None
                or trip.effective_payment_method is not None):
            payment = TripPayment(
                amount_collected=trip.amount_collected,
                # Older rows only carry the method planned at booking
                effective_payment_method=trip.effective_payment_method or trip.planned_payment_method,
                transaction_timestamp=trip.transaction_timestamp,
                payment_reference=trip.payment_reference,
            )
        return cls(
            trip_id=trip.id,
            reference=trip.reference,
            driver_id=trip.driver_id,
            driver_source=trip.driver_source,
            scheduled_start=trip.scheduled_start,
            billed_amount=trip.billed_amount or 0,
            planned_payment_method=trip.planned_payment_method,
            payment=payment,
        )


@dataclass(frozen=True)
class ExpenseRecord:
    expense_id: int
    reference: Optional[str]
    category: str
    amount: int
    date: datetime
    driver_ref: Optional[DriverRef]
    description: Optional[str] = None

    @property
    def dedupe_key(self) -> str:
        # The same expense may be filed once per identity id under one reference
        if self.reference:
            return self.reference
        return f"expense:{self.expense_id}"

    def to_dict(self):
        return {
            'expenseId': self.expense_id,
            'reference': self.reference,
            'category': self.category,
            'amount': self.amount,
            'date': self.date.isoformat() if self.date else None,
            'driver': self.driver_ref.to_dict() if self.driver_ref else None,
            'description': self.description,
        }

    @classmethod
    def from_expense(cls, expense: Expense) -> 'ExpenseRecord':
        driver_ref = None
        if expense.driver_source is not None:
            driver_ref = DriverRef(expense.driver_id, expense.driver_source)
        return cls(
            expense_id=expense.id,
            reference=(expense.reference or '').strip() or None,
            category=(expense.category or 'other').strip(),
            amount=expense.amount or 0,
            date=expense.date,
            driver_ref=driver_ref,
            description=expense.description,
        )


def _shared_ids(driver_refs: List[DriverRef]) -> Set[int]:
    """Ids the driver holds under the same number in both identity stores"""
    primary = {ref.id for ref in driver_refs if ref.source == DriverSource.PRIMARY}
    specialized = {ref.id for ref in driver_refs if ref.source == DriverSource.SPECIALIZED}
    return primary & specialized


def _matches_ref(id_column, source_column, ref: DriverRef, shared_ids: Set[int]):
    # Rows written before the source was tracked carry a bare id, which
    # only identifies the driver when both of its ids share that number
    clause = and_(id_column == ref.id, source_column == ref.source)
    if ref.id in shared_ids:
        return or_(clause, and_(id_column == ref.id, source_column.is_(None)))
    return clause


def _warn_unattributed(model, date_column, driver_refs: List[DriverRef], shared_ids: Set[int],
                       start: datetime, end: datetime) -> None:
    ambiguous = {ref.id for ref in driver_refs} - shared_ids
    if not ambiguous:
        return
    stmt = select(func.count()).select_from(model).where(
        model.driver_id.in_(ambiguous),
        model.driver_source.is_(None),
        date_column >= start,
        date_column <= end,
    )
    count = db.session.execute(stmt).scalar_one()
    if count:
        logger.warning(f"{count} {model.__tablename__} row(s) without a driver source under id(s) "
                       f"{sorted(ambiguous)} left out: the id is ambiguous across identity stores")


class TripStore:
    """Completed trips and their settlement data"""

    name = 'trip_store'

    @TransactionHelper.guard_collaborator(name)
    def completed_paid_between(self, driver_refs: Iterable[DriverRef],
                               start: datetime, end: datetime) -> List[TripPaymentEvent]:
        """
        Completed trips of the given driver ids whose payment was recorded in [start, end].

        Queried once per id; a trip filed under both ids appears twice and
        is left for the caller to deduplicate.
        """
        driver_refs = list(driver_refs)
        shared_ids = _shared_ids(driver_refs)
        events = []
        for ref in driver_refs:
            stmt = select(Trip).where(
                _matches_ref(Trip.driver_id, Trip.driver_source, ref, shared_ids),
                Trip.status == TripStatus.COMPLETED,
                Trip.transaction_timestamp.is_not(None),
                Trip.transaction_timestamp >= start,
                Trip.transaction_timestamp <= end,
            ).order_by(Trip.transaction_timestamp, Trip.id)
            events.extend(TripPaymentEvent.from_trip(trip) for trip in db.session.execute(stmt).scalars())
        _warn_unattributed(Trip, Trip.transaction_timestamp, driver_refs, shared_ids, start, end)
        return events

    @TransactionHelper.guard_collaborator(name)
    def completed_started_between(self, driver_refs: Iterable[DriverRef],
                                  start: datetime, end: datetime) -> List[TripPaymentEvent]:
        """Completed trips by scheduled start, settled or not"""
        driver_refs = list(driver_refs)
        shared_ids = _shared_ids(driver_refs)
        events = []
        for ref in driver_refs:
            stmt = select(Trip).where(
                _matches_ref(Trip.driver_id, Trip.driver_source, ref, shared_ids),
                Trip.status == TripStatus.COMPLETED,
                Trip.scheduled_start >= start,
                Trip.scheduled_start <= end,
            ).order_by(Trip.scheduled_start, Trip.id)
            events.extend(TripPaymentEvent.from_trip(trip) for trip in db.session.execute(stmt).scalars())
        return events

    @TransactionHelper.guard_collaborator(name)
    def all_completed_paid_between(self, start: datetime, end: datetime) -> List[TripPaymentEvent]:
        stmt = select(Trip).where(
            Trip.status == TripStatus.COMPLETED,
            Trip.transaction_timestamp.is_not(None),
            Trip.transaction_timestamp >= start,
            Trip.transaction_timestamp <= end,
        ).order_by(Trip.transaction_timestamp, Trip.id)
        return [TripPaymentEvent.from_trip(trip) for trip in db.session.execute(stmt).scalars()]


class ExpenseStore:
    """Recorded driver expenses"""

    name = 'expense_store'

    @TransactionHelper.guard_collaborator(name)
    def for_driver_between(self, driver_refs: Iterable[DriverRef],
                           start: datetime, end: datetime) -> List[ExpenseRecord]:
        driver_refs = list(driver_refs)
        shared_ids = _shared_ids(driver_refs)
        records = []
        for ref in driver_refs:
            stmt = select(Expense).where(
                _matches_ref(Expense.driver_id, Expense.driver_source, ref, shared_ids),
                Expense.date >= start,
                Expense.date <= end,
            ).order_by(Expense.date, Expense.id)
            records.extend(ExpenseRecord.from_expense(expense) for expense in db.session.execute(stmt).scalars())
        _warn_unattributed(Expense, Expense.date, driver_refs, shared_ids, start, end)
        return records

    @TransactionHelper.guard_collaborator(name)
    def all_between(self, start: datetime, end: datetime) -> List[ExpenseRecord]:
        stmt = select(Expense).where(Expense.date >= start, Expense.date <= end).order_by(Expense.date, Expense.id)
        return [ExpenseRecord.from_expense(expense) for expense in db.session.execute(stmt).scalars()]
