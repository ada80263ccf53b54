"""
Reconciliation Checker

The entry log of a ledger is authoritative; running_balance is a cache of
it. Reconciling recomputes the balance from the log and overwrites the
cache when the two disagree by more than the configured epsilon.
"""

from dataclasses import dataclass, asdict
from typing import List, Optional, Union
import logging
from flask import current_app
from models import DailyLedger
from timezone_utils import normalize_day
from .transaction_helper import TransactionHelper
from .audit_service import AuditService
from .ledger_store import LedgerStore
from .errors import ReconciliationDrift

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    ledger_id: int
    reconciled: bool
    delta: int
    stored: int
    expected: int

    def to_dict(self):
        return asdict(self)


class ReconciliationChecker:
    """Detects and repairs drift between a ledger's balance and its entries"""

    def __init__(self, store: Optional[LedgerStore] = None):
        self.store = store or LedgerStore()
        self.audit_service = AuditService()

    def reconcile(self, ledger: Union[DailyLedger, int], raise_on_drift: bool = False,
                  user_id: Optional[int] = None) -> ReconciliationResult:
        """
        Recompute a ledger's balance from its entry log and repair drift.

        reconciled is True only when this call corrected the stored balance,
        so a second call on the same ledger reports False. Closed ledgers are
        reconciled too; only the cached balance changes, never the entries.

        Args:
            ledger: Ledger or ledger id
            raise_on_drift: raise ReconciliationDrift after committing a correction
            user_id: ID of the user requesting the check, None for jobs

        Raises:
            LedgerNotFound: unknown ledger id
            ReconciliationDrift: drift was corrected and raise_on_drift is set
        """
        ledger_id = ledger.id if isinstance(ledger, DailyLedger) else ledger
        result = self._reconcile(ledger_id, user_id)
        if result.reconciled and raise_on_drift:
            raise ReconciliationDrift(
                f"Ledger {ledger_id} balance drifted by {result.delta}; corrected to {result.expected}",
                ledger_id=ledger_id, stored=result.stored, expected=result.expected
            )
        return result

    @TransactionHelper.with_optimistic_retry
    def _reconcile(self, ledger_id: int, user_id: Optional[int]) -> ReconciliationResult:
        ledger = self.store.get_for_update(ledger_id)
        stored = ledger.running_balance
        expected = ledger.computed_balance()
        delta = expected - stored
        epsilon = current_app.config.get('LEDGER_RECONCILIATION_EPSILON', 0)

        if abs(delta) <= epsilon:
            return ReconciliationResult(ledger_id, False, delta, stored, expected)

        ledger.overwrite_balance(expected)
        self.audit_service.log_action(
            action='reconcile_ledger',
            entity_type='daily_ledger',
            entity_id=ledger.id,
            details={'stored': stored, 'expected': expected, 'delta': delta},
            user_id=user_id
        )
        logger.warning(f"Ledger {ledger_id} ({ledger.driver_ref}, {ledger.day.isoformat()}) "
                       f"drifted: stored {stored}, expected {expected}; corrected")
        return ReconciliationResult(ledger_id, True, delta, stored, expected)

    def reconcile_period(self, start=None, end=None,
                         user_id: Optional[int] = None) -> List[ReconciliationResult]:
        """
        Reconcile every ledger dated within [start, end] (whole days).

        Returns one result per ledger, in day order.
        """
        start_day = normalize_day(start) if start else None
        end_day = normalize_day(end) if end else None
        ledger_ids = [l.id for l in self.store.list(start_day=start_day, end_day=end_day)]

        results = [self._reconcile(ledger_id, user_id) for ledger_id in ledger_ids]
        corrected = [r for r in results if r.reconciled]
        if corrected:
            logger.warning(f"Reconciliation corrected {len(corrected)} of {len(results)} ledger(s)")
        else:
            logger.info(f"Reconciliation checked {len(results)} ledger(s); no drift")
        return results
