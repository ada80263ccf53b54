"""
Transaction Helper Service

Database safety for ledger mutations:
- Commit on success, rollback on any error
- Retry on dropped connections
- Optimistic retry when another writer bumped a ledger's version first
- Statement timeouts for collaborator queries
"""

from functools import wraps
from typing import Callable
import logging
import time
from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, DisconnectionError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from app import db
from .errors import LedgerError, ConcurrentModification, CollaboratorUnavailable

logger = logging.getLogger(__name__)

class TransactionHelper:
    """Helper class for managing database transactions safely"""

    @staticmethod
    def with_transaction(func: Callable) -> Callable:
        """
        Decorator that wraps a function in a database transaction.
        Commits when the function returns, rolls back and re-raises when it fails.
        Connection drops are retried; domain errors never are.

        Usage:
            @TransactionHelper.with_transaction
            def close_ledger(self, ledger_id, notes):
                # Your database operations here
                pass
        """
        @wraps(func)
        def wrapper(*args, **kwargs):
            max_retries = 3
            for attempt in range(max_retries):
                try:
                    result = func(*args, **kwargs)
                    db.session.commit()
                    return result
                except (DisconnectionError, OperationalError) as e:
                    db.session.rollback()
                    logger.error(f"Transaction error (attempt {attempt + 1}/{max_retries}): {str(e)}")
                    if attempt < max_retries - 1:
                        time.sleep(0.5)
                        continue
                    logger.error(f"Transaction failed after {max_retries} attempts: {str(e)}")
                    raise
                except Exception:
                    db.session.rollback()
                    raise
            return None
        return wrapper

    @staticmethod
    def with_optimistic_retry(func: Callable) -> Callable:
        """
        Decorator for ledger mutations guarded by the ledger's version column.

        The wrapped function must load the ledger itself, so that a retry
        after a StaleDataError starts again from a fresh read. When the
        configured number of attempts is exhausted ConcurrentModification
        is raised.
        """
        @wraps(func)
        def wrapper(*args, **kwargs):
            max_retries = current_app.config.get('LEDGER_MUTATION_RETRIES', 3)
            for attempt in range(max_retries):
                try:
                    result = func(*args, **kwargs)
                    db.session.commit()
                    return result
                except StaleDataError as e:
                    db.session.rollback()
                    # Drop cached rows so the next attempt sees the winner's write
                    db.session.expire_all()
                    logger.warning(f"Version conflict in {func.__name__} (attempt {attempt + 1}/{max_retries}): {str(e)}")
                    continue
                except Exception:
                    db.session.rollback()
                    raise
            raise ConcurrentModification(
                f"{func.__name__} kept conflicting with concurrent writers after {max_retries} attempts",
                operation=func.__name__
            )
        return wrapper

    @staticmethod
    def with_connection_retry(max_retries: int = 3, backoff: float = 0.5):
        """
        Decorator for read operations that need connection retry logic with exponential backoff.

        Args:
            max_retries: Maximum number of retry attempts
            backoff: Initial backoff delay in seconds
        """
        def decorator(func: Callable) -> Callable:
            @wraps(func)
            def wrapper(*args, **kwargs):
                for attempt in range(max_retries):
                    try:
                        return func(*args, **kwargs)
                    except (DisconnectionError, OperationalError) as e:
                        if attempt < max_retries - 1:
                            sleep_time = backoff * (2 ** attempt)  # Exponential backoff
                            logger.warning(f"Database connection error (attempt {attempt + 1}/{max_retries}): {str(e)}. Retrying in {sleep_time}s...")
                            time.sleep(sleep_time)
                            db.session.rollback()
                            continue
                        logger.error("Max retries reached for database connection")
                        raise
                    except LedgerError:
                        raise
                    except Exception as e:
                        # Non-connection errors don't get retried
                        logger.error(f"Non-retryable error in database operation: {str(e)}")
                        raise
                return None
            return wrapper
        return decorator

    @staticmethod
    def apply_statement_timeout() -> None:
        """
        Bound the next queries of the current transaction (PostgreSQL only).
        Other backends have no per-statement timeout and are left alone.
        """
        timeout_ms = int(current_app.config.get('LEDGER_QUERY_TIMEOUT_MS', 0) or 0)
        if timeout_ms <= 0:
            return
        if db.session.get_bind().dialect.name != 'postgresql':
            return
        db.session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))

    @staticmethod
    def guard_collaborator(collaborator: str):
        """
        Decorator for queries against stores owned by other subsystems.

        Applies the statement timeout and turns any database failure into a
        retryable CollaboratorUnavailable, so a failed lookup can never be
        read as "no data".
        """
        def decorator(func: Callable) -> Callable:
            @wraps(func)
            def wrapper(*args, **kwargs):
                try:
                    TransactionHelper.apply_statement_timeout()
                    return func(*args, **kwargs)
                except SQLAlchemyError as e:
                    logger.error(f"{collaborator} query {func.__name__} failed: {str(e)}")
                    raise CollaboratorUnavailable(
                        f"{collaborator} is unavailable, retry later", collaborator=collaborator
                    ) from e
            return wrapper
        return decorator
