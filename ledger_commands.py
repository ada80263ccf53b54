"""
Ledger management commands

Operator commands for the daily cash ledgers, registered on the Flask CLI:

Usage:
    flask ledger init-db
    flask ledger open 12 --opening 50000
    flask ledger append-entry 7 recette 15000 --description "Course"
    flask ledger close-stale [--before 2024-05-02]
    flask ledger reconcile --start 2024-05-01 --end 2024-05-31
    flask ledger driver-financials 12 --start 2024-05-01 --end 2024-05-01
    flask ledger fleet-financials --start 2024-05-01 --end 2024-05-31
    flask ledger run-scheduler
"""

import json
import logging
import time
import click
from flask.cli import AppGroup
from app import db
from timezone_utils import normalize_day
from services.errors import LedgerError
from utils.money import to_minor_units, format_amount

logger = logging.getLogger(__name__)

ledger_cli = AppGroup('ledger', help='Driver daily cash ledger commands')


def _day(ctx, param, value):
    if value is None:
        return None
    try:
        return normalize_day(value)
    except ValueError:
        raise click.BadParameter(f"{value!r} is not an ISO date (YYYY-MM-DD)")


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


@ledger_cli.command('init-db')
def init_db():
    """Create the ledger tables."""
    db.create_all()
    click.echo("Ledger tables created")


@ledger_cli.command('close-stale')
@click.option('--before', callback=_day, help='Close active ledgers dated before this day (default: today)')
def close_stale(before):
    """Close ledgers still active from previous days."""
    from services.ledger_service import LedgerService

    closed = LedgerService().close_stale_ledgers(before_day=before)
    click.echo(f"Closed {len(closed)} ledger(s)")
    for ledger_id in closed:
        click.echo(f"  - ledger {ledger_id}")


def _amount(value, param_hint):
    # Needs the app context for LEDGER_CURRENCY_DECIMALS
    try:
        return to_minor_units(value)
    except (TypeError, ValueError) as e:
        raise click.BadParameter(str(e), param_hint=param_hint)


@ledger_cli.command('open')
@click.argument('driver_id', type=int)
@click.option('--source', type=click.Choice(['primary', 'specialized']), default='primary',
              show_default=True, help='Identity store the id comes from')
@click.option('--day', callback=_day, help='Ledger day (default: today)')
@click.option('--opening', default='0', help='Cash floated at shift start, e.g. 50000')
def open_ledger(driver_id, source, day, opening):
    """Open (or show) a driver's ledger for a day."""
    from models import DriverRef, DriverSource
    from services.ledger_service import LedgerService

    try:
        ledger = LedgerService().get_or_create_daily_ledger(
            DriverRef(driver_id, DriverSource(source)), day, _amount(opening, '--opening'))
    except LedgerError as e:
        raise click.ClickException(e.message)
    click.echo(f"Ledger {ledger.id} ({ledger.day.isoformat()}): "
               f"opening {format_amount(ledger.opening_amount)}, balance {format_amount(ledger.running_balance)}")


@ledger_cli.command('append-entry')
@click.argument('ledger_id', type=int)
@click.argument('entry_type', type=click.Choice(['recette', 'depense', 'commission', 'remboursement']))
@click.argument('amount')
@click.option('--description', required=True)
@click.option('--trip-id', type=int, help='Trip the movement settles')
def append_entry(ledger_id, entry_type, amount, description, trip_id):
    """Record a cash movement on a ledger."""
    from services.ledger_service import LedgerService

    try:
        ledger = LedgerService().append_entry(ledger_id, entry_type, _amount(amount, 'amount'),
                                              description, linked_trip_id=trip_id)
    except LedgerError as e:
        raise click.ClickException(e.message)
    click.echo(f"Ledger {ledger.id}: balance {format_amount(ledger.running_balance)}")


@ledger_cli.command('reconcile')
@click.option('--start', callback=_day, required=True, help='First ledger day (YYYY-MM-DD)')
@click.option('--end', callback=_day, required=True, help='Last ledger day (YYYY-MM-DD)')
def reconcile(start, end):
    """Recompute ledger balances from their entries and repair drift."""
    from services.reconciliation import ReconciliationChecker

    if end < start:
        raise click.BadParameter("--end is before --start")
    results = ReconciliationChecker().reconcile_period(start, end)
    corrected = [result for result in results if result.reconciled]
    click.echo(f"Checked {len(results)} ledger(s), corrected {len(corrected)}")
    for result in corrected:
        click.echo(f"  - ledger {result.ledger_id}: {result.stored} -> {result.expected} (delta {result.delta})")


@ledger_cli.command('driver-financials')
@click.argument('reference')
@click.option('--source', type=click.Choice(['primary', 'specialized']),
              help='Identity store the id comes from (default: try both)')
@click.option('--start', callback=_day, required=True)
@click.option('--end', callback=_day, required=True)
def driver_financials(reference, source, start, end):
    """Print the cash position of one driver as JSON."""
    from models import DriverRef, DriverSource
    from services.aggregation_engine import AggregationEngine

    if source:
        reference = DriverRef(int(reference), DriverSource(source))
    try:
        snapshot = AggregationEngine().compute_driver_financials_for(reference, start, end)
    except LedgerError as e:
        raise click.ClickException(e.message)
    _echo_json(snapshot.to_dict())


@ledger_cli.command('fleet-financials')
@click.option('--start', callback=_day, required=True)
@click.option('--end', callback=_day, required=True)
def fleet_financials(start, end):
    """Print fleet-wide financial figures as JSON."""
    from services.aggregation_engine import AggregationEngine

    try:
        fleet = AggregationEngine().compute_fleet_financials(start, end)
    except LedgerError as e:
        raise click.ClickException(e.message)
    _echo_json(fleet.to_dict())


@ledger_cli.command('run-scheduler')
def run_scheduler():
    """Run the nightly close job in the foreground until interrupted."""
    from flask import current_app
    from utils.scheduling import init_ledger_scheduler

    scheduler = init_ledger_scheduler(current_app._get_current_object())
    click.echo("Ledger close scheduler running; press Ctrl+C to stop")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        scheduler.stop_scheduler()
