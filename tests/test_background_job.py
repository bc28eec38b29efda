"""
Tests for the background email check job: retries, bookkeeping, the
non-reentrant guard and the circuit breaker.
"""

from unittest.mock import MagicMock

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from app.exceptions import JobAlreadyRunningError, MailProviderError
from app.services.background_job import (
    BackgroundJobRunner,
    JOB_NAME,
    MAX_CONSECUTIVE_ERRORS,
    SCHEDULER_JOB_ID,
)


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.running = True
    scheduler.add_job.return_value = MagicMock(next_run_time=None)
    return scheduler


@pytest.fixture
def runner(container, scheduler, notifier, sleeps):
    return BackgroundJobRunner(
        sync_service=container.sync_service,
        store=container.invoice_store,
        cron_schedule="*/5 * * * *",
        scheduler=scheduler,
        notifier=notifier,
        sleep=sleeps.append
    )


def test_successful_run_records_state_and_history(runner, container, mail_provider, signed_in_tokens):
    mail_provider.add_message("m1")

    execution = runner.trigger()

    assert execution.status == "success"
    assert execution.total_invoices_count == 1
    state = container.invoice_store.get_job_state(JOB_NAME)
    assert state.last_status == "success"
    assert state.last_error is None
    assert state.consecutive_errors == 0
    assert state.total_invoices_count == 1
    assert state.next_scheduled_run is not None
    assert len(container.invoice_store.get_job_history(JOB_NAME)) == 1


def test_failed_run_retries_then_records_once(runner, container, mail_provider, notifier, sleeps, signed_in_tokens):
    mail_provider.listing_error = MailProviderError("Gmail API unavailable")

    execution = runner.trigger()

    assert mail_provider.calls.count("list_messages") == 3
    assert sleeps == [5, 10]
    assert execution.status == "error"
    assert execution.error == "Gmail API unavailable"

    history = container.invoice_store.get_job_history(JOB_NAME)
    assert len(history) == 1
    state = container.invoice_store.get_job_state(JOB_NAME)
    assert state.last_status == "error"
    assert state.last_error == "Gmail API unavailable"
    assert state.consecutive_errors == 1
    notifier.notify_error.assert_called_once()


def test_retry_recovers_within_one_run(runner, container, mail_provider, sleeps, signed_in_tokens):
    original = mail_provider.list_messages
    attempts = []

    def flaky(access_token, folder_name):
        attempts.append(1)
        if len(attempts) == 1:
            raise MailProviderError("temporary")
        return original(access_token, folder_name)

    mail_provider.list_messages = flaky

    execution = runner.trigger()

    assert execution.status == "success"
    assert sleeps == [5]
    assert container.invoice_store.get_job_state(JOB_NAME).consecutive_errors == 0


def test_missing_tokens_are_not_retried(runner, container, mail_provider, sleeps):
    execution = runner.trigger()

    assert execution.status == "error"
    assert sleeps == []
    assert mail_provider.calls == []
    assert container.invoice_store.get_job_state(JOB_NAME).consecutive_errors == 1


def test_success_resets_consecutive_errors(runner, container, signed_in_tokens):
    container.invoice_store.update_job_state(JOB_NAME, consecutive_errors=3)

    runner.trigger()

    assert container.invoice_store.get_job_state(JOB_NAME).consecutive_errors == 0


def test_trigger_while_running_is_rejected(runner, container):
    runner._run_lock.acquire()
    try:
        assert runner.is_running
        with pytest.raises(JobAlreadyRunningError):
            runner.trigger()
    finally:
        runner._run_lock.release()

    assert container.invoice_store.get_job_history(JOB_NAME) == []


def test_scheduled_tick_while_running_is_skipped(runner, mail_provider):
    runner._run_lock.acquire()
    try:
        assert runner.run_scheduled() is None
    finally:
        runner._run_lock.release()

    assert mail_provider.calls == []


def test_start_registers_cron_job_once(runner, scheduler):
    runner.start()
    runner.start()

    scheduler.add_job.assert_called_once()
    kwargs = scheduler.add_job.call_args.kwargs
    assert kwargs["id"] == SCHEDULER_JOB_ID
    assert kwargs["max_instances"] == 1
    assert runner.is_scheduled


def test_stop_removes_job(runner, scheduler):
    runner.start()
    runner.stop()

    scheduler.remove_job.assert_called_once_with(SCHEDULER_JOB_ID)
    assert not runner.is_scheduled


def test_circuit_breaker_stops_schedule(runner, container, scheduler, mail_provider, signed_in_tokens):
    runner.start()
    container.invoice_store.update_job_state(JOB_NAME, consecutive_errors=MAX_CONSECUTIVE_ERRORS - 1)
    mail_provider.listing_error = MailProviderError("down")

    runner.run_scheduled()

    assert not runner.is_scheduled
    scheduler.remove_job.assert_called_once_with(SCHEDULER_JOB_ID)
    state = container.invoice_store.get_job_state(JOB_NAME)
    assert state.consecutive_errors == MAX_CONSECUTIVE_ERRORS
    assert state.next_scheduled_run is None


def test_consecutive_scheduled_failures_remove_the_job(container, mail_provider, notifier, sleeps, signed_in_tokens):
    scheduler = BackgroundScheduler(timezone="UTC")
    runner = BackgroundJobRunner(
        sync_service=container.sync_service,
        store=container.invoice_store,
        cron_schedule="0 0 1 1 *",
        scheduler=scheduler,
        notifier=notifier,
        sleep=sleeps.append
    )
    mail_provider.listing_error = MailProviderError("down")
    runner.start()

    try:
        for run in range(1, MAX_CONSECUTIVE_ERRORS + 1):
            assert runner.is_scheduled
            execution = runner.run_scheduled()
            assert execution.status == "error"
            assert container.invoice_store.get_job_state(JOB_NAME).consecutive_errors == run

        assert not runner.is_scheduled
        assert scheduler.get_jobs() == []
        assert runner.next_run_time() is None
        assert mail_provider.calls.count("list_messages") == 3 * MAX_CONSECUTIVE_ERRORS
        assert notifier.notify_error.call_count == MAX_CONSECUTIVE_ERRORS
        assert container.invoice_store.get_job_state(JOB_NAME).next_scheduled_run is None
    finally:
        runner.shutdown()

    assert not scheduler.running


def test_successful_trigger_rearms_after_circuit_breaker(runner, container, scheduler, mail_provider, signed_in_tokens):
    runner.start()
    container.invoice_store.update_job_state(JOB_NAME, consecutive_errors=MAX_CONSECUTIVE_ERRORS - 1)
    mail_provider.listing_error = MailProviderError("down")
    runner.run_scheduled()
    assert not runner.is_scheduled

    mail_provider.listing_error = None
    runner.trigger()

    assert runner.is_scheduled
    assert scheduler.add_job.call_count == 2


def test_failures_below_threshold_keep_schedule(runner, mail_provider, signed_in_tokens):
    runner.start()
    mail_provider.listing_error = MailProviderError("down")

    runner.run_scheduled()

    assert runner.is_scheduled
