"""
Ledger Store

Persistence of daily ledgers: one row per (driver, day) under a uniqueness
constraint, entries embedded as an ordered child collection. No business
rules live here.
"""

from datetime import date
from typing import Iterable, List, Optional
import logging
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from models import db, DailyLedger, DriverRef, LedgerStatus
from .errors import DuplicateLedger, LedgerNotFound
from .transaction_helper import TransactionHelper

logger = logging.getLogger(__name__)


def _driver_filter(driver_refs: Iterable[DriverRef]):
    clauses = [
        and_(DailyLedger.driver_id == ref.id, DailyLedger.driver_source == ref.source)
        for ref in driver_refs
    ]
    if not clauses:
        return None
    return or_(*clauses)


class LedgerStore:
    """Read/write access to DailyLedger rows"""

    @TransactionHelper.with_connection_retry()
    def get(self, ledger_id: int) -> DailyLedger:
        ledger = db.session.get(DailyLedger, ledger_id)
        if ledger is None:
            raise LedgerNotFound(f"Daily ledger {ledger_id} not found", ledger_id=ledger_id)
        return ledger

    def get_for_update(self, ledger_id: int) -> DailyLedger:
        """Fresh read of a ledger, row-locked where the backend supports it"""
        stmt = (
            select(DailyLedger)
            .where(DailyLedger.id == ledger_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        ledger = db.session.execute(stmt).scalar_one_or_none()
        if ledger is None:
            raise LedgerNotFound(f"Daily ledger {ledger_id} not found", ledger_id=ledger_id)
        return ledger

    def find(self, driver_ref: DriverRef, day: date) -> Optional[DailyLedger]:
        stmt = select(DailyLedger).where(
            DailyLedger.driver_id == driver_ref.id,
            DailyLedger.driver_source == driver_ref.source,
            DailyLedger.day == day,
        )
        return db.session.execute(stmt).scalar_one_or_none()

    def insert(self, driver_ref: DriverRef, day: date, opening_amount: int,
               created_by: Optional[int] = None) -> DailyLedger:
        """
        Insert a new active ledger and flush it.

        Raises DuplicateLedger when another writer created the same
        (driver, day) first; the session is rolled back in that case.
        """
        ledger = DailyLedger(
            driver_id=driver_ref.id,
            driver_source=driver_ref.source,
            day=day,
            opening_amount=opening_amount,
            running_balance=opening_amount,
            status=LedgerStatus.ACTIVE,
            created_by=created_by,
        )
        db.session.add(ledger)
        try:
            db.session.flush()
        except IntegrityError as e:
            db.session.rollback()
            logger.info(f"Ledger for {driver_ref} on {day.isoformat()} was created concurrently")
            raise DuplicateLedger(
                f"A ledger already exists for driver {driver_ref} on {day.isoformat()}",
                driver=str(driver_ref), day=day.isoformat()
            ) from e
        return ledger

    @TransactionHelper.with_connection_retry()
    def list(self, driver_refs: Optional[Iterable[DriverRef]] = None,
             start_day: Optional[date] = None, end_day: Optional[date] = None,
             status: Optional[LedgerStatus] = None) -> List[DailyLedger]:
        stmt = select(DailyLedger)
        if driver_refs is not None:
            clause = _driver_filter(driver_refs)
            if clause is None:
                return []
            stmt = stmt.where(clause)
        if start_day is not None:
            stmt = stmt.where(DailyLedger.day >= start_day)
        if end_day is not None:
            stmt = stmt.where(DailyLedger.day <= end_day)
        if status is not None:
            stmt = stmt.where(DailyLedger.status == status)
        stmt = stmt.order_by(DailyLedger.day.asc(), DailyLedger.id.asc())
        return list(db.session.execute(stmt).scalars())

    @TransactionHelper.with_connection_retry()
    def active_before(self, day: date) -> List[DailyLedger]:
        stmt = (
            select(DailyLedger)
            .where(DailyLedger.status == LedgerStatus.ACTIVE, DailyLedger.day < day)
            .order_by(DailyLedger.day.asc(), DailyLedger.id.asc())
        )
        return list(db.session.execute(stmt).scalars())
