"""
Audit Service

Centralized audit trail for ledger mutations. Audit rows are added to the
caller's session so they commit or roll back together with the change they
describe.
"""

from typing import Optional, Dict, Any, List
import logging
import json
from models import db, AuditLog

logger = logging.getLogger(__name__)

class AuditService:
    """Service class for centralized audit logging"""

    @staticmethod
    def log_action(action: str,
                  entity_type: Optional[str] = None,
                  entity_id: Optional[int] = None,
                  details: Optional[Dict[str, Any]] = None,
                  user_id: Optional[int] = None) -> AuditLog:
        """
        Record an audit event in the current transaction.

        Args:
            action: Action performed (e.g., 'append_ledger_entry', 'close_ledger')
            entity_type: Type of entity affected (e.g., 'daily_ledger')
            entity_id: ID of the affected entity
            details: Additional details about the action
            user_id: ID of user performing the action, None for system jobs

        Returns:
            The pending AuditLog row
        """
        audit = AuditLog()
        audit.user_id = user_id
        audit.action = action
        audit.entity_type = entity_type
        audit.entity_id = entity_id
        audit.new_values = json.dumps(details, default=str) if details else None

        # Let outer transaction handle the commit
        db.session.add(audit)
        logger.debug(f"Audit logged: {action} on {entity_type}:{entity_id} by {user_id or 'system'}")
        return audit

    @staticmethod
    def get_entity_history(entity_type: str, entity_id: int, limit: int = 50) -> List[AuditLog]:
        """
        Get audit history for a specific entity, oldest first.

        Args:
            entity_type: Type of entity (e.g., 'daily_ledger')
            entity_id: ID of entity
            limit: Maximum number of records to return
        """
        return AuditLog.query.filter_by(entity_type=entity_type, entity_id=entity_id) \
                           .order_by(AuditLog.created_at.asc(), AuditLog.id.asc()) \
                           .limit(limit).all()
