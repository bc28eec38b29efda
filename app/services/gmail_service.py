import base64
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import List, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.exceptions import MailProviderError
from app.services.mail_provider import (
    EmailAttachment,
    EmailMessage,
    MailFolder,
    MailProvider,
    MAX_MESSAGES,
    PDF_CONTENT_TYPE,
    find_folder,
)

logger = logging.getLogger(__name__)


def to_standard_base64(data: str) -> str:
    """Convert Gmail's unpadded base64url payload to padded standard base64."""
    padded = data + "=" * (-len(data) % 4)
    return base64.b64encode(base64.urlsafe_b64decode(padded)).decode("ascii")


def _parse_received_at(msg: dict) -> Optional[datetime]:
    """Prefer Gmail's internalDate (epoch ms), fall back to the Date header."""
    internal_date = msg.get("internalDate")
    if internal_date:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)

    date_header = _header(msg, "Date")
    if date_header:
        try:
            return parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            return None
    return None


def _header(msg: dict, name: str) -> Optional[str]:
    for h in msg.get("payload", {}).get("headers", []):
        if h["name"] == name:
            return h["value"]
    return None


def _iter_parts(payload: dict):
    """Yield the payload and every nested part, depth first."""
    yield payload
    for part in payload.get("parts", []):
        yield from _iter_parts(part)


def has_attachments(msg: dict) -> bool:
    return any(
        part.get("filename") and part.get("body", {}).get("attachmentId")
        for part in _iter_parts(msg.get("payload", {}))
    )


def pdf_attachments(msg: dict) -> List[EmailAttachment]:
    """Collect PDF attachment parts of a full Gmail message."""
    attachments = []
    for part in _iter_parts(msg.get("payload", {})):
        body = part.get("body", {})
        if not (part.get("filename") and body.get("attachmentId")):
            continue

        mime_type = part.get("mimeType") or "application/octet-stream"
        # Only include PDF attachments
        if mime_type != PDF_CONTENT_TYPE:
            continue

        attachments.append(EmailAttachment(
            id=body["attachmentId"],
            name=part["filename"],
            content_type=mime_type,
            size=body.get("size", 0)
        ))
    return attachments


class GmailService(MailProvider):
    """Gmail API client. Labels play the role of folders."""

    def _get_service(self, access_token: str):
        """Build a Gmail API service authorized with a bare access token."""
        credentials = Credentials(token=access_token)
        return build("gmail", "v1", credentials=credentials, cache_discovery=False)

    def _list_labels(self, service) -> List[MailFolder]:
        """Label ids and names. labels.list carries no message counts."""
        try:
            labels = service.users().labels().list(userId="me").execute().get("labels", [])
        except HttpError as e:
            raise MailProviderError(f"Failed to list labels: {e}") from e
        return [MailFolder(id=label["id"], name=label["name"]) for label in labels]

    def list_folders(self, access_token: str) -> List[MailFolder]:
        service = self._get_service(access_token)
        folders = self._list_labels(service)

        for folder in folders:
            try:
                label = service.users().labels().get(userId="me", id=folder.id).execute()
            except HttpError:
                logger.warning("Could not read message count of label %s", folder.name)
                continue
            folder.total_count = label.get("messagesTotal")
        return folders

    def list_messages(self, access_token: str, folder_name: str) -> List[EmailMessage]:
        service = self._get_service(access_token)
        folders = self._list_labels(service)
        label = find_folder(folders, folder_name)
        if label is None:
            available = ", ".join(f.name for f in folders)
            raise MailProviderError(f'Label "{folder_name}" not found. Available labels: {available}')

        try:
            results = service.users().messages().list(
                userId="me",
                labelIds=[label.id],
                maxResults=MAX_MESSAGES
            ).execute()
        except HttpError as e:
            raise MailProviderError(f"Failed to list messages: {e}") from e

        messages = []
        for ref in results.get("messages", []):
            try:
                msg = service.users().messages().get(
                    userId="me",
                    id=ref["id"],
                    format="full"
                ).execute()
            except HttpError:
                logger.exception("Error fetching message %s", ref["id"])
                continue

            messages.append(EmailMessage(
                id=msg["id"],
                subject=_header(msg, "Subject") or "No Subject",
                sender=_header(msg, "From") or "Unknown",
                received_at=_parse_received_at(msg),
                has_attachments=has_attachments(msg)
            ))

        # Newest first; messages without a date sink to the end
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        messages.sort(key=lambda m: m.received_at or oldest, reverse=True)
        return messages

    def list_attachments(self, access_token: str, message_id: str) -> List[EmailAttachment]:
        service = self._get_service(access_token)
        try:
            msg = service.users().messages().get(userId="me", id=message_id).execute()
        except HttpError as e:
            raise MailProviderError(f"Failed to fetch message {message_id}: {e}") from e
        return pdf_attachments(msg)

    def get_attachment_content(self, access_token: str, message_id: str, attachment_id: str) -> str:
        service = self._get_service(access_token)
        try:
            attachment = service.users().messages().attachments().get(
                userId="me",
                messageId=message_id,
                id=attachment_id
            ).execute()
        except HttpError as e:
            raise MailProviderError(f"Failed to fetch attachment {attachment_id}: {e}") from e

        return to_standard_base64(attachment.get("data", ""))
