"""
Ledger Service

Driver daily cash ledger operations: idempotent day-ledger creation,
append-only entry recording, closing and the one-time opening correction.
Every mutation runs as a single transaction on a freshly read, version
checked ledger, and leaves an audit row behind.
"""

from calendar import monthrange
from datetime import date
from typing import Optional, Dict, Any, List, Union
import logging
from models import DailyLedger, DriverRef, EntryType, LedgerEntry, LedgerStatus
from timezone_utils import normalize_day, get_local_time_naive, to_local_naive
from .transaction_helper import TransactionHelper
from .audit_service import AuditService
from .ledger_store import LedgerStore
from .driver_directory import DriverDirectory
from .errors import (ValidationError, DuplicateLedger, LedgerClosed, AlreadyClosed,
                     DriverNotFound)

logger = logging.getLogger(__name__)

ENTITY_TYPE = 'daily_ledger'


def _require_amount(value, field: str, allow_zero: bool) -> int:
    # bool is an int subclass but never a meaningful amount
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer amount in minor units, got {value!r}", field=field)
    if value < 0 or (value == 0 and not allow_zero):
        bound = "zero or more" if allow_zero else "greater than zero"
        raise ValidationError(f"{field} must be {bound}, got {value}", field=field)
    return value


def _require_entry_type(value: Union[EntryType, str]) -> EntryType:
    if isinstance(value, EntryType):
        return value
    try:
        return EntryType(str(value).strip().lower())
    except ValueError:
        allowed = ', '.join(t.value for t in EntryType)
        raise ValidationError(f"Unknown entry type {value!r}; expected one of {allowed}", field='type')


class LedgerService:
    """Service class for driver daily cash ledgers"""

    def __init__(self, store: Optional[LedgerStore] = None,
                 directory: Optional[DriverDirectory] = None):
        self.store = store or LedgerStore()
        self.directory = directory or DriverDirectory()
        self.audit_service = AuditService()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def get_or_create_daily_ledger(self, driver_ref: DriverRef, day=None, opening_amount: int = 0,
                                   created_by: Optional[int] = None) -> DailyLedger:
        """
        Return the ledger of a driver for a calendar day, creating it on first use.

        An existing ledger is returned unchanged; opening_amount only matters
        for the call that creates it. When a concurrent call wins the
        creation race the winner's ledger is re-read and returned.

        Args:
            driver_ref: Driver the ledger belongs to
            day: Date or datetime, normalized to the local calendar day (today when None)
            opening_amount: Cash floated at shift start, minor units
            created_by: ID of the user opening the ledger
        """
        day = normalize_day(day)
        opening_amount = _require_amount(opening_amount, 'opening_amount', allow_zero=True)

        try:
            return self._get_or_insert(driver_ref, day, opening_amount, created_by)
        except DuplicateLedger:
            ledger = self.store.find(driver_ref, day)
            if ledger is None:
                raise
            return ledger

    @TransactionHelper.with_transaction
    def _get_or_insert(self, driver_ref: DriverRef, day: date, opening_amount: int,
                       created_by: Optional[int]) -> DailyLedger:
        existing = self.store.find(driver_ref, day)
        if existing is not None:
            return existing

        if not self.directory.exists(driver_ref):
            raise DriverNotFound(f"Driver {driver_ref} does not exist", driver=str(driver_ref))

        ledger = self.store.insert(driver_ref, day, opening_amount, created_by)
        self.audit_service.log_action(
            action='open_daily_ledger',
            entity_type=ENTITY_TYPE,
            entity_id=ledger.id,
            details={'driver': str(driver_ref), 'day': day.isoformat(), 'opening_amount': opening_amount},
            user_id=created_by
        )
        logger.info(f"Opened ledger {ledger.id} for {driver_ref} on {day.isoformat()} with {opening_amount}")
        return ledger

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append_entry(self, ledger_id: int, entry_type: Union[EntryType, str], amount: int,
                     description: str, linked_trip_id: Optional[int] = None,
                     linked_expense_id: Optional[int] = None, created_by: Optional[int] = None,
                     idempotency_key: Optional[str] = None, timestamp=None) -> DailyLedger:
        """
        Append a cash movement and move the running balance by its sign.

        recette and remboursement add to the balance, depense and commission
        subtract. Entry and balance commit together or not at all.

        Args:
            ledger_id: Ledger to append to
            entry_type: recette, depense, commission or remboursement
            amount: Strictly positive amount in minor units
            description: Human readable reason
            linked_trip_id: Trip the movement settles, if any
            linked_expense_id: Expense the movement records, if any
            created_by: ID of the user recording the movement
            idempotency_key: Callback key (e.g. 'trip:42'); a second entry
                with the same key leaves the ledger unchanged

        Raises:
            ValidationError: bad type, amount or description
            LedgerClosed: the ledger is closed
        """
        entry_type = _require_entry_type(entry_type)
        amount = _require_amount(amount, 'amount', allow_zero=False)
        if not description or not str(description).strip():
            raise ValidationError("description is required", field='description')

        fields = {
            'entry_type': entry_type,
            'amount': amount,
            'description': str(description).strip(),
            'linked_trip_id': linked_trip_id,
            'linked_expense_id': linked_expense_id,
            'idempotency_key': idempotency_key,
            'timestamp': to_local_naive(timestamp) if timestamp else get_local_time_naive(),
            'created_by': created_by,
        }
        return self._append(ledger_id, fields)

    @TransactionHelper.with_optimistic_retry
    def _append(self, ledger_id: int, fields: Dict[str, Any]) -> DailyLedger:
        ledger = self.store.get_for_update(ledger_id)
        if ledger.is_closed:
            raise LedgerClosed(
                f"Ledger {ledger_id} for {ledger.day.isoformat()} is closed; no entries can be added",
                ledger_id=ledger_id
            )

        if ledger.find_entry_by_key(fields['idempotency_key']) is not None:
            logger.info(f"Entry '{fields['idempotency_key']}' already applied to ledger {ledger_id}; skipping")
            return ledger

        # Built per attempt: a retry starts from a rolled back session
        entry = ledger.record_entry(LedgerEntry(**fields))
        self.audit_service.log_action(
            action='append_ledger_entry',
            entity_type=ENTITY_TYPE,
            entity_id=ledger.id,
            details={
                'type': entry.entry_type.value,
                'amount': entry.amount,
                'linked_trip_id': entry.linked_trip_id,
                'linked_expense_id': entry.linked_expense_id,
                'running_balance': ledger.running_balance,
            },
            user_id=entry.created_by
        )
        logger.info(f"Ledger {ledger_id}: {entry.entry_type.value} {entry.amount} -> balance {ledger.running_balance}")
        return ledger

    @TransactionHelper.with_optimistic_retry
    def close(self, ledger_id: int, notes: Optional[str] = None,
              closed_by: Optional[int] = None) -> DailyLedger:
        """
        Close a ledger; its entry list is frozen from then on.

        Raises:
            AlreadyClosed: the ledger was closed before
        """
        ledger = self.store.get_for_update(ledger_id)
        if ledger.is_closed:
            raise AlreadyClosed(f"Ledger {ledger_id} is already closed", ledger_id=ledger_id)

        ledger.mark_closed(notes, closed_by)
        self.audit_service.log_action(
            action='close_daily_ledger',
            entity_type=ENTITY_TYPE,
            entity_id=ledger.id,
            details={'running_balance': ledger.running_balance, 'notes': notes},
            user_id=closed_by
        )
        logger.info(f"Closed ledger {ledger_id} ({ledger.driver_ref}, {ledger.day.isoformat()}) at balance {ledger.running_balance}")
        return ledger

    def update_opening_amount(self, ledger_id: int, new_amount: int,
                              updated_by: Optional[int] = None) -> DailyLedger:
        """
        Correct the opening amount of an active ledger.

        The running balance is shifted by (new - old) instead of being
        recomputed, so entries already applied keep their effect.

        Raises:
            ValidationError: negative or non-integer amount
            LedgerClosed: the ledger is closed
        """
        new_amount = _require_amount(new_amount, 'opening_amount', allow_zero=True)
        return self._correct_opening(ledger_id, new_amount, updated_by)

    @TransactionHelper.with_optimistic_retry
    def _correct_opening(self, ledger_id: int, new_amount: int,
                         updated_by: Optional[int]) -> DailyLedger:
        ledger = self.store.get_for_update(ledger_id)
        if ledger.is_closed:
            raise LedgerClosed(f"Ledger {ledger_id} is closed; its opening amount is frozen", ledger_id=ledger_id)

        old_amount = ledger.opening_amount
        delta = ledger.correct_opening(new_amount)
        self.audit_service.log_action(
            action='correct_opening_amount',
            entity_type=ENTITY_TYPE,
            entity_id=ledger.id,
            details={'old_amount': old_amount, 'new_amount': new_amount, 'delta': delta},
            user_id=updated_by
        )
        logger.info(f"Ledger {ledger_id}: opening {old_amount} -> {new_amount} (delta {delta})")
        return ledger

    def close_stale_ledgers(self, before_day=None, closed_by: Optional[int] = None) -> List[int]:
        """
        Close every ledger still active on a day before `before_day` (today by default).

        Safe to skip or re-run: ledgers closed in the meantime are ignored.

        Returns:
            IDs of the ledgers this call closed
        """
        before_day = normalize_day(before_day)
        closed = []
        for ledger_id in [ledger.id for ledger in self.store.active_before(before_day)]:
            try:
                self.close(ledger_id, notes='Closed automatically at end of day', closed_by=closed_by)
                closed.append(ledger_id)
            except AlreadyClosed:
                logger.debug(f"Ledger {ledger_id} was closed by someone else first")
        if closed:
            logger.info(f"Closed {len(closed)} stale ledger(s) dated before {before_day.isoformat()}")
        return closed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_ledger(self, ledger_id: int) -> DailyLedger:
        return self.store.get(ledger_id)

    def find_ledger(self, driver_ref: DriverRef, day) -> Optional[DailyLedger]:
        return self.store.find(driver_ref, normalize_day(day))

    def list_ledgers(self, driver_ref: Optional[DriverRef] = None, start=None, end=None,
                     status: Optional[Union[LedgerStatus, str]] = None) -> List[DailyLedger]:
        if isinstance(status, str):
            try:
                status = LedgerStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown ledger status {status!r}", field='status')
        return self.store.list(
            driver_refs=[driver_ref] if driver_ref else None,
            start_day=normalize_day(start) if start else None,
            end_day=normalize_day(end) if end else None,
            status=status,
        )

    def monthly_summary(self, driver_ref: DriverRef, month: int, year: int) -> Dict[str, Any]:
        """
        Month roll-up of one driver's ledgers plus the day-by-day detail.
        """
        if not 1 <= month <= 12:
            raise ValidationError(f"month must be between 1 and 12, got {month}", field='month')
        first_day = date(year, month, 1)
        last_day = date(year, month, monthrange(year, month)[1])
        ledgers = self.store.list(driver_refs=[driver_ref], start_day=first_day, end_day=last_day)

        return {
            'driver': driver_ref.to_dict(),
            'period': {'month': month, 'year': year},
            'summary': {
                'day_count': len(ledgers),
                'total_opening_amount': sum(l.opening_amount for l in ledgers),
                'total_running_balance': sum(l.running_balance for l in ledgers),
                'total_recettes': sum(l.total_for(EntryType.RECETTE) for l in ledgers),
                'total_depenses': sum(l.total_for(EntryType.DEPENSE) for l in ledgers),
                'total_commissions': sum(l.total_for(EntryType.COMMISSION) for l in ledgers),
                'total_remboursements': sum(l.total_for(EntryType.REMBOURSEMENT) for l in ledgers),
            },
            'ledgers': [l.to_dict(include_entries=False) for l in ledgers],
        }

    def ledger_statistics(self, start=None, end=None,
                          driver_ref: Optional[DriverRef] = None) -> Dict[str, Any]:
        """
        Fleet-wide ledger figures for a date range, with a by-status breakdown.
        """
        ledgers = self.list_ledgers(driver_ref=driver_ref, start=start, end=end)
        count = len(ledgers)
        total_opening = sum(l.opening_amount for l in ledgers)
        total_balance = sum(l.running_balance for l in ledgers)

        by_status = {}
        for ledger in ledgers:
            bucket = by_status.setdefault(ledger.status.value, {
                'count': 0, 'total_opening_amount': 0, 'total_running_balance': 0
            })
            bucket['count'] += 1
            bucket['total_opening_amount'] += ledger.opening_amount
            bucket['total_running_balance'] += ledger.running_balance

        return {
            'global': {
                'ledger_count': count,
                'total_opening_amount': total_opening,
                'total_running_balance': total_balance,
                # Integer division keeps averages in minor units
                'average_opening_amount': total_opening // count if count else 0,
                'average_running_balance': total_balance // count if count else 0,
                'unique_drivers': len({l.driver_ref for l in ledgers}),
            },
            'by_status': by_status,
        }
