"""
Shared fixtures.

Every test runs against a fresh in-memory SQLite database and in-process fakes
for the OAuth provider, the mail API and the model, wired through the same
build_container() the application uses.
"""

import base64
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.container import build_container
from app.exceptions import MailProviderError
from app.services.invoice_extractor import InvoiceFields
from app.services.mail_provider import (
    EmailAttachment,
    EmailMessage,
    MailFolder,
    MailProvider,
    PDF_CONTENT_TYPE,
    find_folder,
)
from app.services.notification_service import DiscordNotifier
from app.services.oauth_providers import OAuthProvider, OAuthTokens
from app.utils import utcnow

PDF_BYTES = b"%PDF-1.4 test invoice"
PDF_BASE64 = base64.b64encode(PDF_BYTES).decode("ascii")


class FakeOAuthProvider(OAuthProvider):
    def __init__(self):
        self.exchange_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.refresh_result: Optional[OAuthTokens] = None
        self.exchanged_codes: List[str] = []
        self.refreshed_tokens: List[str] = []

    def get_authorization_url(self) -> str:
        return "https://auth.example.com/authorize?client_id=test"

    def exchange_code(self, code: str) -> OAuthTokens:
        self.exchanged_codes.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return OAuthTokens(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=utcnow() + timedelta(hours=1),
            account_id="user@example.com"
        )

    def refresh(self, refresh_token: str) -> OAuthTokens:
        self.refreshed_tokens.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        if self.refresh_result is not None:
            return self.refresh_result
        return OAuthTokens(
            access_token="access-refreshed",
            refresh_token=None,
            expires_at=utcnow() + timedelta(hours=1)
        )


class FakeMailProvider(MailProvider):
    """Mailbox held in dicts; records every call."""

    def __init__(self, folder_name: str = "Faktury"):
        self.folders = [
            MailFolder(id="INBOX", name="INBOX", total_count=10),
            MailFolder(id="Label_1", name=folder_name, total_count=0),
        ]
        self.messages: List[EmailMessage] = []
        self.attachments: Dict[str, List[EmailAttachment]] = {}
        self.contents: Dict[Tuple[str, str], str] = {}
        self.listing_error: Optional[Exception] = None
        self.failing_messages: set = set()
        self.calls: List[str] = []

    def add_message(self, message_id: str, subject: str = "Invoice", pdfs: int = 1, others: int = 0):
        received_at = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=len(self.messages))
        self.messages.insert(0, EmailMessage(
            id=message_id,
            subject=subject,
            sender="billing@supplier.example",
            received_at=received_at,
            has_attachments=bool(pdfs or others)
        ))
        attachments = []
        for i in range(pdfs):
            attachment_id = f"{message_id}-pdf-{i}"
            attachments.append(EmailAttachment(attachment_id, f"invoice-{i}.pdf", PDF_CONTENT_TYPE, len(PDF_BYTES)))
            self.contents[(message_id, attachment_id)] = PDF_BASE64
        for i in range(others):
            attachments.append(EmailAttachment(f"{message_id}-img-{i}", f"logo-{i}.png", "image/png", 10))
        self.attachments[message_id] = attachments

    def list_folders(self, access_token: str) -> List[MailFolder]:
        self.calls.append("list_folders")
        return list(self.folders)

    def list_messages(self, access_token: str, folder_name: str) -> List[EmailMessage]:
        self.calls.append("list_messages")
        if self.listing_error is not None:
            raise self.listing_error
        if find_folder(self.folders, folder_name) is None:
            raise MailProviderError(f'Folder "{folder_name}" not found')
        return list(self.messages)

    def list_attachments(self, access_token: str, message_id: str) -> List[EmailAttachment]:
        self.calls.append("list_attachments")
        if message_id in self.failing_messages:
            raise MailProviderError(f"Failed to fetch message {message_id}")
        return list(self.attachments.get(message_id, []))

    def get_attachment_content(self, access_token: str, message_id: str, attachment_id: str) -> str:
        self.calls.append("get_attachment_content")
        try:
            return self.contents[(message_id, attachment_id)]
        except KeyError:
            raise MailProviderError(f"Attachment {attachment_id} not found")


class FakeExtractor:
    def __init__(self):
        self.fields = InvoiceFields(
            invoice_number="2024-001",
            issue_date="2024-01-15",
            due_date="2024-01-29",
            supplier_name="ACME s.r.o.",
            total_amount=1210.0,
            amount_without_tax=1000.0,
            tax_amount=210.0,
            currency="CZK"
        )
        self.error: Optional[Exception] = None
        self.calls: List[str] = []

    def extract(self, pdf_base64: str) -> InvoiceFields:
        self.calls.append(pdf_base64)
        if self.error is not None:
            raise self.error
        return self.fields


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        mail_provider="gmail",
        mail_folder="faktury",
        google_client_id="test-client",
        google_client_secret="test-secret",
        gemini_api_key="test-key",
        session_secret="test-session-secret",
        background_job_enabled=False,
        log_level="WARNING"
    )


@pytest.fixture
def oauth_provider():
    return FakeOAuthProvider()


@pytest.fixture
def mail_provider():
    return FakeMailProvider()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def notifier():
    return MagicMock(spec=DiscordNotifier)


@pytest.fixture
def sleeps():
    """Delays requested by the job runner, instead of sleeping."""
    return []


@pytest.fixture
def container(settings, oauth_provider, mail_provider, extractor, notifier, sleeps):
    services = build_container(
        settings,
        oauth_provider=oauth_provider,
        mail_provider=mail_provider,
        extractor=extractor,
        notifier=notifier,
        job_runner_kwargs={"sleep": sleeps.append}
    )
    yield services
    services.shutdown()


@pytest.fixture
def client(container):
    from main import create_app

    app = create_app(container=container)
    return TestClient(app)


@pytest.fixture
def authed_client(client):
    """Client that went through the OAuth callback."""
    response = client.get("/api/v1/auth/callback", params={"code": "good-code"})
    assert response.status_code == 200
    return client


@pytest.fixture
def signed_in_tokens(container):
    """Valid tokens in the store, without a browser session."""
    container.token_manager.save_tokens("user@example.com", "access-1", "refresh-1", 3600)
    return container.token_store.get()

