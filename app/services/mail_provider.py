"""Abstract base class for mail API clients."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"

# Messages returned per folder listing
MAX_MESSAGES = 50


@dataclass
class MailFolder:
    """A mail folder (Graph) or label (Gmail)."""

    id: str
    name: str
    total_count: Optional[int] = None


@dataclass
class EmailMessage:
    """Email message metadata."""

    id: str
    subject: str
    sender: str
    received_at: Optional[datetime]
    has_attachments: bool


@dataclass
class EmailAttachment:
    """Attachment metadata (never the content)."""

    id: str
    name: str
    content_type: str
    size: int


class MailProvider(ABC):
    """Abstract interface for reading a mailbox with a bearer token."""

    @abstractmethod
    def list_folders(self, access_token: str) -> List[MailFolder]:
        """List all folders in the mailbox.

        Raises:
            MailProviderError: If the mail API call fails
        """

    @abstractmethod
    def list_messages(self, access_token: str, folder_name: str) -> List[EmailMessage]:
        """List the newest messages in a folder, newest first.

        Args:
            access_token: OAuth bearer token
            folder_name: Folder display name, matched case-insensitively

        Raises:
            MailProviderError: If the folder does not exist or the call fails
        """

    @abstractmethod
    def list_attachments(self, access_token: str, message_id: str) -> List[EmailAttachment]:
        """List the PDF attachments of a message.

        Raises:
            MailProviderError: If the mail API call fails
        """

    @abstractmethod
    def get_attachment_content(self, access_token: str, message_id: str, attachment_id: str) -> str:
        """Fetch attachment bytes as a standard base64 string.

        Raises:
            MailProviderError: If the mail API call fails
        """

    def list_attachments_batch(
        self,
        access_token: str,
        message_ids: List[str]
    ) -> Dict[str, List[EmailAttachment]]:
        """
        List PDF attachments for several messages at once.

        A message whose lookup fails maps to an empty list instead of
        failing the whole batch.
        """
        results: Dict[str, List[EmailAttachment]] = {}
        for message_id in message_ids:
            try:
                results[message_id] = self.list_attachments(access_token, message_id)
            except Exception:
                logger.exception("Error fetching attachments for message %s", message_id)
                results[message_id] = []
        return results


def find_folder(folders: List[MailFolder], folder_name: str) -> Optional[MailFolder]:
    """Case-insensitive lookup by display name."""
    wanted = folder_name.lower()
    for folder in folders:
        if folder.name.lower() == wanted:
            return folder
    return None
