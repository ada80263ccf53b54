"""
Cash Ledger Service Layer

Business logic of the driver daily cash ledger and the financial
reconciliation engine. Services are transport-agnostic: they take and
return plain values and model objects, and raise LedgerError subclasses.

Services Architecture:
- **LedgerService**: Day-ledger creation, entry recording, closing, opening correction
- **ReconciliationChecker**: Balance recomputation from the entry log, drift repair
- **IdentityResolver**: One canonical driver across the primary and specialized stores
- **AggregationEngine**: Per-driver and fleet-wide period financials
- **AuditService**: Audit rows written inside the mutating transaction
- **TransactionHelper**: Commit/rollback, optimistic retry, collaborator guard
"""

from .ledger_service import LedgerService
from .reconciliation import ReconciliationChecker, ReconciliationResult
from .identity_resolver import IdentityResolver, CanonicalDriver
from .aggregation_engine import AggregationEngine, DriverFinancialSnapshot, FleetFinancialSnapshot
from .audit_service import AuditService
from .transaction_helper import TransactionHelper

__all__ = [
    'LedgerService',
    'ReconciliationChecker',
    'ReconciliationResult',
    'IdentityResolver',
    'CanonicalDriver',
    'AggregationEngine',
    'DriverFinancialSnapshot',
    'FleetFinancialSnapshot',
    'AuditService',
    'TransactionHelper'
]
