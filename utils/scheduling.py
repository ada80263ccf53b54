"""
Nightly ledger close job

Closes every ledger still active from a previous day, once a day at
LEDGER_CLOSE_JOB_AT (ledger timezone). The job is idempotent, so a missed
run is simply caught up by the next one.
"""

import logging
import threading
import schedule

logger = logging.getLogger('scheduler')


class LedgerCloseScheduler:
    """Runs the stale-ledger close job on a background thread"""

    def __init__(self, app, poll_interval=60):
        self.app = app
        self.poll_interval = poll_interval
        self.scheduler = schedule.Scheduler()
        self.running = False
        self.scheduler_thread = None
        self._stop_event = threading.Event()

    def start_scheduler(self):
        """Start the background task scheduler"""
        if self.running:
            logger.warning("Ledger close scheduler already running")
            return

        at = self.app.config.get('LEDGER_CLOSE_JOB_AT', '00:15')
        timezone = self.app.config.get('LEDGER_TIMEZONE')
        self.scheduler.every().day.at(at, timezone).do(self.run_close_job)

        self.running = True
        self._stop_event.clear()
        self.scheduler_thread = threading.Thread(target=self._run_scheduler, name='ledger-close', daemon=True)
        self.scheduler_thread.start()
        logger.info(f"Ledger close scheduler started; daily run at {at} {timezone}")

    def stop_scheduler(self):
        """Stop the background task scheduler"""
        if not self.running:
            return

        self.running = False
        self._stop_event.set()
        self.scheduler.clear()
        if self.scheduler_thread:
            self.scheduler_thread.join(timeout=30)
        logger.info("Ledger close scheduler stopped")

    def _run_scheduler(self):
        while self.running:
            try:
                self.scheduler.run_pending()
            except Exception as e:
                logger.error(f"Error in ledger close scheduler loop: {str(e)}")
            self._stop_event.wait(self.poll_interval)

    def run_close_job(self):
        """Close yesterday's (and older) active ledgers; returns the closed ids"""
        from services.ledger_service import LedgerService

        with self.app.app_context():
            try:
                closed = LedgerService().close_stale_ledgers()
                logger.info(f"Nightly close job closed {len(closed)} ledger(s)")
                return closed
            except Exception as e:
                logger.error(f"Nightly close job failed: {str(e)}")
                return []


def init_ledger_scheduler(app):
    """Start the nightly close job for an app; call from the process that should own it"""
    scheduler = LedgerCloseScheduler(app)
    scheduler.start_scheduler()
    return scheduler
