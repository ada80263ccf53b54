"""
Ledger Engine Errors

Every error the cash ledger engine raises derives from LedgerError and can
be turned into a plain dict for the controller layer.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for cash ledger engine errors"""

    code = 'ledger_error'
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        data = {'error': self.code, 'message': self.message, 'retryable': self.retryable}
        if self.context:
            data['context'] = {key: str(value) for key, value in self.context.items()}
        return data


class ValidationError(LedgerError):
    code = 'validation_error'

    def __init__(self, message: str, field: Optional[str] = None, **context: Any):
        super().__init__(message, **context)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data['field'] = self.field
        return data


class LedgerNotFound(LedgerError):
    code = 'ledger_not_found'


class DuplicateLedger(LedgerError):
    """Lost a creation race; the ledger exists and should be re-read"""
    code = 'duplicate_ledger'


class LedgerClosed(LedgerError):
    code = 'ledger_closed'


class AlreadyClosed(LedgerError):
    code = 'already_closed'


class DriverNotFound(LedgerError):
    code = 'driver_not_found'


class ReconciliationDrift(LedgerError):
    """Stored balance disagreed with the entry log and has been corrected"""
    code = 'reconciliation_drift'

    def __init__(self, message: str, ledger_id: int, stored: int, expected: int):
        super().__init__(message, ledger_id=ledger_id, stored=stored, expected=expected)
        self.ledger_id = ledger_id
        self.stored = stored
        self.expected = expected

    @property
    def delta(self) -> int:
        return self.expected - self.stored


class CollaboratorUnavailable(LedgerError):
    """A trip, expense or driver store query failed or timed out"""
    code = 'collaborator_unavailable'
    retryable = True

    def __init__(self, message: str, collaborator: str, **context: Any):
        super().__init__(message, collaborator=collaborator, **context)
        self.collaborator = collaborator


class ConcurrentModification(LedgerError):
    """Optimistic retries on a ledger were exhausted"""
    code = 'concurrent_modification'
    retryable = True
