"""
Tests for the scan cycle: new-email detection, auto extraction and failure
isolation.
"""

import threading
from unittest.mock import patch

import pytest
import requests

from app.exceptions import ExtractionError, MailProviderError, NotAuthenticatedError
from app.services.notification_service import DiscordNotifier
from tests.conftest import PDF_BASE64


@pytest.fixture
def sync_service(container):
    return container.sync_service


def test_first_scan_reports_no_new_emails(sync_service, mail_provider, extractor, signed_in_tokens):
    mail_provider.add_message("m1")
    mail_provider.add_message("m2")

    result = sync_service.run_scan(auto_extract=True)

    assert result.success
    assert result.new_emails_count == 0
    assert result.total_emails_count == 2
    assert result.new_invoices_count == 0
    assert extractor.calls == []


def test_second_scan_extracts_new_messages(sync_service, container, mail_provider, extractor, notifier, signed_in_tokens):
    mail_provider.add_message("m1")
    sync_service.run_scan()
    mail_provider.add_message("m2", subject="Invoice 2024-001", pdfs=2, others=1)

    result = sync_service.run_scan()

    assert result.success
    assert result.new_emails_count == 1
    assert result.new_invoices_count == 2
    assert result.total_emails_count == 2
    assert extractor.calls == [PDF_BASE64, PDF_BASE64]
    assert container.invoice_store.has_invoice("m2", "m2-pdf-0")
    assert container.invoice_store.has_invoice("m2", "m2-pdf-1")
    assert notifier.notify_new_invoice.call_count == 2


def test_removed_message_is_forgotten(sync_service, mail_provider, signed_in_tokens):
    mail_provider.add_message("m1")
    mail_provider.add_message("m2")
    sync_service.run_scan()
    mail_provider.messages = [m for m in mail_provider.messages if m.id != "m1"]

    assert sync_service.run_scan().new_emails_count == 0
    mail_provider.add_message("m1")

    result = sync_service.run_scan()

    assert result.new_emails_count == 1


def test_cached_attachments_are_not_extracted_again(sync_service, container, mail_provider, extractor, signed_in_tokens):
    sync_service.run_scan()
    mail_provider.add_message("m1", pdfs=2)
    container.invoice_store.save_invoice("m1", "m1-pdf-0", {"invoice_number": "cached"})

    result = sync_service.run_scan()

    assert result.new_invoices_count == 1
    assert len(extractor.calls) == 1
    assert container.invoice_store.get_invoice("m1", "m1-pdf-0").invoice_number == "cached"


def test_auto_extract_off_only_detects(sync_service, container, mail_provider, extractor, signed_in_tokens):
    sync_service.run_scan()
    mail_provider.add_message("m1")

    result = sync_service.sync_emails("access-1", auto_extract=False)

    assert result.new_emails_count == 1
    assert result.new_invoices_count == 0
    assert extractor.calls == []
    assert container.invoice_store.count_invoices() == 0


def test_manual_sync_leaves_new_messages_for_background_scan(sync_service, container, mail_provider, extractor, signed_in_tokens):
    sync_service.run_scan()
    mail_provider.add_message("m-new")

    manual = sync_service.sync_emails("access-1", auto_extract=False)
    scheduled = sync_service.run_scan()

    assert manual.new_emails_count == 1
    assert scheduled.new_emails_count == 1
    assert scheduled.new_invoices_count == 1
    assert extractor.calls == [PDF_BASE64]
    assert container.invoice_store.has_invoice("m-new", "m-new-pdf-0")
    assert sync_service.run_scan().new_emails_count == 0


def test_scan_does_not_wait_for_failing_webhook(sync_service, mail_provider, signed_in_tokens):
    release = threading.Event()
    sync_service.notifier = DiscordNotifier("https://discord.test/webhook", sleep=lambda _seconds: release.wait(5))
    sync_service.run_scan()
    mail_provider.add_message("m1")

    try:
        with patch("app.services.notification_service.requests.post") as post:
            post.side_effect = requests.ConnectionError("refused")
            result = sync_service.run_scan()

            # Delivery is still retrying in the background
            assert result.new_invoices_count == 1
            assert post.call_count < 3
            release.set()
            sync_service.notifier.shutdown(wait=True)
        assert post.call_count == 3
    finally:
        release.set()
        sync_service.notifier.shutdown()


def test_per_message_failures_do_not_fail_scan(sync_service, container, mail_provider, extractor, signed_in_tokens):
    sync_service.run_scan()
    mail_provider.add_message("m1")
    mail_provider.add_message("m2")
    mail_provider.failing_messages.add("m1")

    result = sync_service.run_scan()

    assert result.success
    assert result.new_emails_count == 2
    assert result.new_invoices_count == 1
    assert container.invoice_store.has_invoice("m2", "m2-pdf-0")


def test_extraction_failure_is_skipped(sync_service, container, mail_provider, extractor, notifier, signed_in_tokens):
    sync_service.run_scan()
    mail_provider.add_message("m1")
    extractor.error = ExtractionError("Model returned invalid JSON")

    result = sync_service.run_scan()

    assert result.success
    assert result.new_invoices_count == 0
    assert container.invoice_store.count_invoices() == 0
    notifier.notify_new_invoice.assert_not_called()


def test_scan_records_last_sync_timestamp(sync_service, signed_in_tokens):
    assert sync_service.get_last_sync_timestamp() is None

    result = sync_service.run_scan()

    assert sync_service.get_last_sync_timestamp() == result.timestamp


def test_listing_failure_is_unsuccessful_and_keeps_timestamp(sync_service, mail_provider, signed_in_tokens):
    first = sync_service.run_scan()
    mail_provider.listing_error = MailProviderError("Label not found")

    result = sync_service.run_scan()

    assert not result.success
    assert result.error == "Label not found"
    assert sync_service.get_last_sync_timestamp() == first.timestamp


def test_missing_folder_is_unsuccessful(container, mail_provider, signed_in_tokens):
    mail_provider.folders = [f for f in mail_provider.folders if f.name != "Faktury"]

    result = container.sync_service.run_scan()

    assert not result.success
    assert "not found" in result.error


def test_run_scan_without_tokens_raises(sync_service, mail_provider):
    with pytest.raises(NotAuthenticatedError):
        sync_service.run_scan()
    assert mail_provider.calls == []

