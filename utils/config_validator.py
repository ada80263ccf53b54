"""
Configuration validation for the cash ledger engine
Ensures ledger settings are usable before the app starts serving
"""
import os
import re
import logging
from typing import Any, Dict, List, Mapping, Tuple

import pytz

logger = logging.getLogger(__name__)

_CLOCK_TIME = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')


def validate_ledger_config(config: Mapping[str, Any]) -> Tuple[bool, List[str]]:
    """
    Validate the LEDGER_* settings of an app config.

    Returns:
        tuple: (is_valid: bool, issues: List[str])
    """
    issues = []

    zone_name = config.get('LEDGER_TIMEZONE')
    try:
        pytz.timezone(zone_name)
    except (pytz.UnknownTimeZoneError, AttributeError):
        issues.append(f"LEDGER_TIMEZONE {zone_name!r} is not a known timezone")

    currency = config.get('LEDGER_CURRENCY') or ''
    if not re.match(r'^[A-Z]{3}$', currency):
        issues.append(f"LEDGER_CURRENCY {currency!r} must be a 3-letter ISO code")

    non_negative = {
        'LEDGER_CURRENCY_DECIMALS': 'Currency minor-unit exponent',
        'LEDGER_RECONCILIATION_EPSILON': 'Reconciliation epsilon',
        'LEDGER_DIAGNOSTIC_WINDOW_DAYS': 'Diagnostic window',
        'LEDGER_QUERY_TIMEOUT_MS': 'Collaborator query timeout',
    }
    for key, description in non_negative.items():
        value = config.get(key)
        if not isinstance(value, int) or value < 0:
            issues.append(f"{description} ({key}) must be a non-negative integer, got {value!r}")

    decimals = config.get('LEDGER_CURRENCY_DECIMALS')
    if isinstance(decimals, int) and decimals > 4:
        issues.append("LEDGER_CURRENCY_DECIMALS above 4 is not supported")

    retries = config.get('LEDGER_MUTATION_RETRIES')
    if not isinstance(retries, int) or retries < 1:
        issues.append(f"LEDGER_MUTATION_RETRIES must be at least 1, got {retries!r}")

    close_at = config.get('LEDGER_CLOSE_JOB_AT') or ''
    if not _CLOCK_TIME.match(close_at):
        issues.append(f"LEDGER_CLOSE_JOB_AT {close_at!r} must be HH:MM")

    for issue in issues:
        logger.warning(f"LEDGER_CONFIG: Issue - {issue}")

    return len(issues) == 0, issues

def check_production_readiness(config: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Summarize whether the ledger is safe to run against production data.

    Returns:
        dict: Status information including issues and recommendations
    """
    is_valid, issues = validate_ledger_config(config)
    database_url = config.get('SQLALCHEMY_DATABASE_URI', '')
    using_sqlite = database_url.startswith('sqlite')

    result = {
        'production_ready': is_valid and not using_sqlite,
        'database_backend': 'sqlite' if using_sqlite else 'postgresql',
        'issues': issues,
        'recommendations': []
    }

    if using_sqlite:
        # SQLite ignores SELECT ... FOR UPDATE, only optimistic versioning protects ledgers
        result['recommendations'].append("Use PostgreSQL so ledger mutations take row locks")

    if os.getenv('DEBUG', 'False').lower() in ('true', '1', 'yes'):
        result['recommendations'].append("Disable DEBUG mode for production deployment")

    if result['production_ready']:
        logger.info("LEDGER_CONFIG: Production readiness check PASSED")
    else:
        logger.warning(f"LEDGER_CONFIG: Production readiness check FAILED - Issues: {len(issues)}")

    return result
