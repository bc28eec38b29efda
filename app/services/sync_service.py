"""
Mailbox scan cycle.

One pass over the invoice folder:
1. Obtain a valid access token
2. List messages in the target folder
3. Diff against the ids seen by the previous extracting pass ("new" messages)
4. Remember the current listing, but only when extracting
5. Extract PDF invoices of new messages that are not cached yet
6. Record the scan time as the last sync timestamp

The known-id set lives in memory only. The first pass after process start
reports no new messages, so a restart does not look like a flood of mail.
A manual sync without extraction only reports what is new; it leaves the
set alone so the next background scan still extracts those messages.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Set

from app.exceptions import NotAuthenticatedError
from app.services.invoice_extractor import InvoiceExtractor
from app.services.invoice_store import InvoiceStore
from app.services.mail_provider import EmailMessage, MailProvider, PDF_CONTENT_TYPE
from app.services.notification_service import DiscordNotifier
from app.services.token_manager import TokenManager
from app.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one scan cycle."""
    success: bool
    new_emails_count: int
    new_invoices_count: int
    total_emails_count: int
    timestamp: datetime
    error: Optional[str] = None


class SyncService:
    """Runs scan cycles against one mail folder."""

    def __init__(
        self,
        token_manager: TokenManager,
        mail_provider: MailProvider,
        extractor: InvoiceExtractor,
        store: InvoiceStore,
        folder_name: str = "faktury",
        notifier: Optional[DiscordNotifier] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.token_manager = token_manager
        self.mail_provider = mail_provider
        self.extractor = extractor
        self.store = store
        self.folder_name = folder_name
        self.notifier = notifier
        self._clock = clock

        self._known_email_ids: Set[str] = set()
        self._initialized = False
        self._lock = threading.Lock()

    def run_scan(self, auto_extract: bool = True) -> SyncResult:
        """
        Full scan cycle that fetches its own access token.

        Raises:
            NotAuthenticatedError: If no valid access token can be obtained
        """
        access_token = self.token_manager.get_valid_access_token()
        if not access_token:
            raise NotAuthenticatedError()
        return self.sync_emails(access_token, auto_extract=auto_extract)

    def sync_emails(self, access_token: str, auto_extract: bool = False) -> SyncResult:
        """
        Scan the folder with an already-valid access token.

        Only a failed listing makes the result unsuccessful; per-message and
        per-attachment extraction failures are logged and skipped.
        """
        started_at = self._clock()

        try:
            emails = self.mail_provider.list_messages(access_token, self.folder_name)
        except Exception as e:
            logger.exception("Error syncing emails")
            return SyncResult(
                success=False,
                new_emails_count=0,
                new_invoices_count=0,
                total_emails_count=0,
                timestamp=started_at,
                error=str(e) or type(e).__name__
            )

        new_emails = self._diff_known_emails(emails, remember=auto_extract)

        new_invoices = 0
        if auto_extract:
            for email in new_emails:
                try:
                    new_invoices += self._extract_email(access_token, email)
                except Exception:
                    logger.exception("Error processing message %s", email.id)

        self.store.set_last_sync_timestamp(started_at)

        logger.info(
            "Sync complete: %d emails, %d new, %d invoices extracted",
            len(emails), len(new_emails), new_invoices
        )
        return SyncResult(
            success=True,
            new_emails_count=len(new_emails),
            new_invoices_count=new_invoices,
            total_emails_count=len(emails),
            timestamp=started_at
        )

    def _diff_known_emails(self, emails: list, remember: bool) -> list:
        with self._lock:
            if not self._initialized:
                # On first run, don't treat all as new
                self._known_email_ids = {e.id for e in emails}
                self._initialized = True
                return []

            new_emails = [e for e in emails if e.id not in self._known_email_ids]
            if remember:
                self._known_email_ids = {e.id for e in emails}
        return new_emails

    def _extract_email(self, access_token: str, email: EmailMessage) -> int:
        """Extract every uncached PDF of one message. Returns the number saved."""
        attachments = self.mail_provider.list_attachments(access_token, email.id)

        saved = 0
        for attachment in attachments:
            if attachment.content_type != PDF_CONTENT_TYPE:
                continue
            if self.store.has_invoice(email.id, attachment.id):
                continue

            try:
                content = self.mail_provider.get_attachment_content(access_token, email.id, attachment.id)
                fields = self.extractor.extract(content)
                self.store.save_invoice(email.id, attachment.id, fields.model_dump())
            except Exception:
                logger.exception("Error extracting attachment %s of message %s", attachment.name, email.id)
                continue

            saved += 1
            logger.info("Extracted invoice from %s (%s)", attachment.name, email.subject)
            if self.notifier is not None:
                self.notifier.notify_new_invoice(email.id, attachment.id, fields, email.subject)

        return saved

    def get_last_sync_timestamp(self) -> Optional[datetime]:
        return self.store.get_last_sync_timestamp()
