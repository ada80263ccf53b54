import os
from datetime import datetime, date, time, timedelta
import pytz
from flask import current_app, has_app_context

DEFAULT_TIMEZONE = 'Africa/Abidjan'

def get_local_zone():
    """Timezone that defines a driver's calendar day"""
    name = None
    if has_app_context():
        name = current_app.config.get('LEDGER_TIMEZONE')
    return pytz.timezone(name or os.environ.get('LEDGER_TIMEZONE', DEFAULT_TIMEZONE))

def get_local_time_naive():
    """Get current local time as naive datetime for database storage"""
    return datetime.now(get_local_zone()).replace(tzinfo=None)

def to_local_naive(dt):
    """Convert an aware datetime to naive local time; naive values are assumed local already"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(get_local_zone()).replace(tzinfo=None)

def normalize_day(value):
    """Reduce a date or datetime to the local calendar day it falls on"""
    if value is None:
        return get_local_time_naive().date()
    if isinstance(value, datetime):
        return to_local_naive(value).date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return normalize_day(datetime.fromisoformat(value))
    raise TypeError(f"Cannot interpret {value!r} as a calendar day")

def start_of_day(value):
    return datetime.combine(normalize_day(value), time.min)

def end_of_day(value):
    return datetime.combine(normalize_day(value), time.max)

def period_bounds(period_start, period_end):
    """
    Inclusive naive-local bounds of a period.

    Plain dates cover the whole calendar day; datetimes are kept as given.
    """
    if isinstance(period_start, datetime):
        start = to_local_naive(period_start)
    else:
        start = start_of_day(period_start)
    if isinstance(period_end, datetime):
        end = to_local_naive(period_end)
    else:
        end = end_of_day(period_end)
    if end < start:
        raise ValueError(f"Period end {end.isoformat()} is before its start {start.isoformat()}")
    return start, end

def previous_day(value=None):
    return normalize_day(value) - timedelta(days=1)
