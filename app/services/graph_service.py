"""Microsoft Graph mail client using plain REST calls."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

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

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"


def _parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # Graph returns e.g. 2024-01-31T12:00:00Z
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GraphService(MailProvider):
    """Outlook mailbox access through Microsoft Graph."""

    def __init__(self, base_url: str = GRAPH_BASE_URL, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()

    def _get(self, access_token: str, path: str, params: Optional[Dict[str, Any]] = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.get(
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise MailProviderError(f"Graph request to {path} failed: {e}") from e
        return response.json()

    def list_folders(self, access_token: str) -> List[MailFolder]:
        data = self._get(access_token, "/me/mailFolders", params={"$top": 100})
        return [
            MailFolder(id=f["id"], name=f["displayName"], total_count=f.get("totalItemCount"))
            for f in data.get("value", [])
        ]

    def list_messages(self, access_token: str, folder_name: str) -> List[EmailMessage]:
        folders = self.list_folders(access_token)
        target = find_folder(folders, folder_name)
        if target is None:
            available = ", ".join(f.name for f in folders)
            raise MailProviderError(f'Folder "{folder_name}" not found. Available folders: {available}')

        data = self._get(
            access_token,
            f"/me/mailFolders/{target.id}/messages",
            params={
                "$select": "id,subject,from,receivedDateTime,hasAttachments",
                "$orderby": "receivedDateTime DESC",
                "$top": MAX_MESSAGES,
            }
        )

        return [
            EmailMessage(
                id=msg["id"],
                subject=msg.get("subject") or "No Subject",
                sender=((msg.get("from") or {}).get("emailAddress") or {}).get("address") or "Unknown",
                received_at=_parse_graph_datetime(msg.get("receivedDateTime")),
                has_attachments=bool(msg.get("hasAttachments"))
            )
            for msg in data.get("value", [])
        ]

    def list_attachments(self, access_token: str, message_id: str) -> List[EmailAttachment]:
        data = self._get(
            access_token,
            f"/me/messages/{message_id}/attachments",
            params={"$select": "id,name,contentType,size"}
        )
        return [
            EmailAttachment(
                id=att["id"],
                name=att.get("name", ""),
                content_type=att["contentType"],
                size=att.get("size", 0)
            )
            for att in data.get("value", [])
            if att.get("contentType") == PDF_CONTENT_TYPE
        ]

    def get_attachment_content(self, access_token: str, message_id: str, attachment_id: str) -> str:
        data = self._get(access_token, f"/me/messages/{message_id}/attachments/{attachment_id}")
        content = data.get("contentBytes")
        if content is None:
            raise MailProviderError(f"Attachment {attachment_id} has no content")
        return content
