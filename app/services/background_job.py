"""
Background email check job.

Runs the scan cycle on a cron schedule (APScheduler) with:
- a non-reentrant guard: a tick or manual trigger while a run is in flight
  does nothing (tick) or is rejected (trigger)
- retries: up to 3 attempts, 5s * 2**attempt between them
- persisted bookkeeping: JobState on every transition, one JobExecution
  row per finished run
- a circuit breaker: 5 consecutive failed runs remove the schedule
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from app.exceptions import JobAlreadyRunningError, MailProviderError, NotAuthenticatedError
from app.models.job import JobExecution, JobStatus
from app.services.invoice_store import InvoiceStore
from app.services.notification_service import DiscordNotifier
from app.services.sync_service import SyncResult, SyncService
from app.utils import as_utc, utcnow

logger = logging.getLogger(__name__)

JOB_NAME = "email_check"
SCHEDULER_JOB_ID = "email_check_cron"

MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 5
MAX_CONSECUTIVE_ERRORS = 5

# Used for next_scheduled_run when the scheduler is not running
FALLBACK_INTERVAL = timedelta(minutes=5)


class BackgroundJobRunner:
    """Schedules and runs the email check job."""

    def __init__(
        self,
        sync_service: SyncService,
        store: InvoiceStore,
        cron_schedule: str = "*/5 * * * *",
        scheduler: Optional[BackgroundScheduler] = None,
        notifier: Optional[DiscordNotifier] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        self.sync_service = sync_service
        self.store = store
        self.cron_schedule = cron_schedule
        self.notifier = notifier
        self._scheduler = scheduler
        self._sleep = sleep
        self._clock = clock

        self._job = None
        self._run_lock = threading.Lock()
        # Set when the circuit breaker removed the schedule
        self._circuit_open = False

    # ============ SCHEDULER ============

    def start(self) -> None:
        """Start the cron schedule. No-op if already scheduled."""
        if self._job is not None:
            logger.info("Background job is already scheduled")
            return

        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(timezone="UTC")

        logger.info("Starting background job with schedule: %s", self.cron_schedule)
        self._job = self._scheduler.add_job(
            self.run_scheduled,
            trigger=CronTrigger.from_crontab(self.cron_schedule, timezone="UTC"),
            id=SCHEDULER_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info("Background email check job started")

    def stop(self) -> None:
        """Remove the cron schedule. A run in flight finishes normally."""
        if self._job is None:
            return
        try:
            self._scheduler.remove_job(SCHEDULER_JOB_ID)
        except JobLookupError:
            pass
        self._job = None
        logger.info("Background job stopped")

    def shutdown(self) -> None:
        """Stop scheduling and shut the scheduler thread down."""
        self.stop()
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    @property
    def is_scheduled(self) -> bool:
        return self._job is not None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def next_run_time(self) -> Optional[datetime]:
        if self._job is None:
            return None
        return as_utc(getattr(self._job, "next_run_time", None))

    # ============ ENTRY POINTS ============

    def run_scheduled(self) -> Optional[JobExecution]:
        """Scheduler tick. Skipped when a run is already in flight."""
        if not self._run_lock.acquire(blocking=False):
            logger.info("Job already running, skipping this execution")
            return None
        try:
            return self._run_with_retry()
        finally:
            self._run_lock.release()

    def trigger(self) -> JobExecution:
        """
        Manual run, bypassing the timer.

        Raises:
            JobAlreadyRunningError: If a run is already in flight
        """
        if not self._run_lock.acquire(blocking=False):
            raise JobAlreadyRunningError()
        try:
            logger.info("Background job triggered manually")
            return self._run_with_retry()
        finally:
            self._run_lock.release()

    # ============ RUN ============

    def _run_with_retry(self) -> JobExecution:
        started_at = self._clock()
        self.store.update_job_state(
            JOB_NAME,
            last_status=JobStatus.RUNNING,
            last_run_timestamp=started_at,
            last_error=None
        )

        error: Optional[Exception] = None
        for attempt in range(MAX_ATTEMPTS):
            try:
                result = self._run_once()
            except NotAuthenticatedError as e:
                # Retrying cannot fix a missing login
                logger.error("Background job cannot authenticate: %s", e)
                error = e
                break
            except Exception as e:
                logger.exception("Error in background job (attempt %d/%d)", attempt + 1, MAX_ATTEMPTS)
                error = e
                if attempt < MAX_ATTEMPTS - 1:
                    delay = RETRY_DELAY_SECONDS * 2 ** attempt
                    logger.info("Retrying in %ss...", delay)
                    self._sleep(delay)
            else:
                return self._record_success(started_at, result)

        return self._record_failure(started_at, error)

    def _run_once(self) -> SyncResult:
        logger.info("Background job: Checking emails...")
        result = self.sync_service.run_scan(auto_extract=True)
        if not result.success:
            raise MailProviderError(result.error or "Sync failed")
        return result

    def _record_success(self, started_at: datetime, result: SyncResult) -> JobExecution:
        completed_at = self._clock()
        duration_ms = int((completed_at - started_at).total_seconds() * 1000)

        if self._circuit_open:
            # A successful manual run re-arms the schedule
            self._circuit_open = False
            self.start()

        logger.info(
            "Background job completed: %d new emails, %d invoices extracted",
            result.new_emails_count, result.new_invoices_count
        )

        self.store.update_job_state(
            JOB_NAME,
            last_status=JobStatus.SUCCESS,
            last_run_timestamp=completed_at,
            last_run_duration_ms=duration_ms,
            last_error=None,
            new_invoices_count=result.new_invoices_count,
            total_invoices_count=result.total_emails_count,
            consecutive_errors=0,
            next_scheduled_run=self.next_run_time() or completed_at + FALLBACK_INTERVAL
        )
        return self.store.add_job_execution(
            job_name=JOB_NAME,
            started_at=started_at,
            completed_at=completed_at,
            status=JobStatus.SUCCESS,
            new_invoices_count=result.new_invoices_count,
            total_invoices_count=result.total_emails_count,
            duration_ms=duration_ms
        )

    def _record_failure(self, started_at: datetime, error: Exception) -> JobExecution:
        completed_at = self._clock()
        duration_ms = int((completed_at - started_at).total_seconds() * 1000)
        error_message = str(error) or type(error).__name__

        consecutive_errors = self.store.get_job_state(JOB_NAME).consecutive_errors + 1
        logger.error("Background job failed: %s (%d consecutive)", error_message, consecutive_errors)

        self.store.update_job_state(
            JOB_NAME,
            last_status=JobStatus.ERROR,
            last_run_timestamp=completed_at,
            last_run_duration_ms=duration_ms,
            last_error=error_message,
            consecutive_errors=consecutive_errors,
            next_scheduled_run=self.next_run_time()
        )
        execution = self.store.add_job_execution(
            job_name=JOB_NAME,
            started_at=started_at,
            completed_at=completed_at,
            status=JobStatus.ERROR,
            error=error_message,
            duration_ms=duration_ms
        )

        if self.notifier is not None:
            self.notifier.notify_error("Background email check failed", error_message)

        if consecutive_errors >= MAX_CONSECUTIVE_ERRORS and self.is_scheduled:
            logger.error("Too many consecutive errors (%d), stopping background job", consecutive_errors)
            self._circuit_open = True
            self.stop()
            self.store.update_job_state(JOB_NAME, next_scheduled_run=None)

        return execution
