"""
Mailbox and invoice endpoints.

Browse the invoice folder, stream PDF attachments and extract invoice data.
Every route needs a signed-in session with a valid access token.
"""

import base64
import binascii
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from app.api.cache import long_cache, medium_cache, no_cache, short_cache
from app.api.deps import get_services, require_access_token, require_session
from app.container import ServiceContainer
from app.services.invoice_extractor import InvoiceFields

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/emails", tags=["Emails"])

MAX_BATCH_SIZE = 50


# ============ Schemas ============

class FolderResponse(BaseModel):
    id: str
    name: str
    total_count: Optional[int] = None


class EmailResponse(BaseModel):
    id: str
    subject: str
    sender: str
    received_at: Optional[datetime]
    has_attachments: bool


class AttachmentResponse(BaseModel):
    id: str
    name: str
    content_type: str
    size: int


class BatchAttachmentsRequest(BaseModel):
    """Message ids to look up, between 1 and 50."""
    message_ids: list[str] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE)


class ExtractionResponse(BaseModel):
    message_id: str
    attachment_id: str
    cached: bool
    invoice: InvoiceFields


class SyncResponse(BaseModel):
    success: bool
    new_emails_count: int
    new_invoices_count: int
    total_emails_count: int
    timestamp: datetime


class SyncStatusResponse(BaseModel):
    last_sync_timestamp: Optional[datetime]
    is_job_running: bool
    is_scheduled: bool
    schedule: str
    invoices_count: int


# ============ FOLDERS & MESSAGES ============

@router.get("/folders", response_model=list[FolderResponse], dependencies=[Depends(short_cache)])
def list_folders(
    access_token: str = Depends(require_access_token),
    services: ServiceContainer = Depends(get_services)
):
    """List all mail folders (labels on Gmail)."""
    try:
        return services.mail_provider.list_folders(access_token)
    except Exception:
        logger.exception("Error listing folders")
        raise HTTPException(status_code=500, detail="Failed to list folders")


@router.get("/faktury", response_model=list[EmailResponse], dependencies=[Depends(short_cache)])
def list_invoice_emails(
    access_token: str = Depends(require_access_token),
    services: ServiceContainer = Depends(get_services)
):
    """Messages of the configured invoice folder, newest first."""
    try:
        return services.mail_provider.list_messages(access_token, services.settings.mail_folder)
    except Exception:
        logger.exception("Error fetching invoice folder emails")
        raise HTTPException(status_code=500, detail="Failed to fetch emails")


# ============ SYNC ============

@router.get("/sync/status", response_model=SyncStatusResponse, dependencies=[Depends(no_cache)])
def sync_status(
    _user: str = Depends(require_session),
    services: ServiceContainer = Depends(get_services)
):
    """Last scan time, background job status and the number of cached invoices."""
    job_runner = services.job_runner
    return SyncStatusResponse(
        last_sync_timestamp=services.sync_service.get_last_sync_timestamp(),
        is_job_running=job_runner.is_running,
        is_scheduled=job_runner.is_scheduled,
        schedule=job_runner.cron_schedule,
        invoices_count=services.invoice_store.count_invoices()
    )


@router.post("/sync", response_model=SyncResponse, dependencies=[Depends(no_cache)])
def sync_emails(
    access_token: str = Depends(require_access_token),
    services: ServiceContainer = Depends(get_services)
):
    """Scan the invoice folder for new emails without extracting invoices."""
    result = services.sync_service.sync_emails(access_token, auto_extract=False)
    if not result.success:
        raise HTTPException(status_code=500, detail="Failed to sync emails")
    return result


# ============ ATTACHMENTS ============

@router.post(
    "/attachments/batch",
    response_model=dict[str, list[AttachmentResponse]],
    dependencies=[Depends(medium_cache)]
)
def batch_attachments(
    body: BatchAttachmentsRequest,
    access_token: str = Depends(require_access_token),
    services: ServiceContainer = Depends(get_services)
):
    """
    PDF attachments for several messages in one call.

    A message whose lookup fails maps to an empty list.
    """
    return services.mail_provider.list_attachments_batch(access_token, body.message_ids)


@router.get(
    "/{message_id}/attachments",
    response_model=list[AttachmentResponse],
    dependencies=[Depends(medium_cache)]
)
def list_attachments(
    message_id: str,
    access_token: str = Depends(require_access_token),
    services: ServiceContainer = Depends(get_services)
):
    """PDF attachments of one message."""
    try:
        return services.mail_provider.list_attachments(access_token, message_id)
    except Exception:
        logger.exception("Error fetching attachments for %s", message_id)
        raise HTTPException(status_code=500, detail="Failed to fetch attachments")


@router.get("/{message_id}/attachments/{attachment_id}")
def get_attachment(
    message_id: str,
    attachment_id: str,
    access_token: str = Depends(require_access_token),
    services: ServiceContainer = Depends(get_services)
):
    """Raw PDF bytes, displayed inline by the browser."""
    try:
        content = services.mail_provider.get_attachment_content(access_token, message_id, attachment_id)
        pdf_bytes = base64.b64decode(content)
    except (binascii.Error, ValueError):
        logger.exception("Attachment %s is not valid base64", attachment_id)
        raise HTTPException(status_code=500, detail="Failed to fetch attachment content")
    except Exception:
        logger.exception("Error fetching attachment content")
        raise HTTPException(status_code=500, detail="Failed to fetch attachment content")

    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={
            "Content-Disposition": "inline",
            "Cache-Control": "private, max-age=3600, stale-while-revalidate=300",
        }
    )


# ============ INVOICE DATA ============

@router.get(
    "/{message_id}/attachments/{attachment_id}/data",
    response_model=ExtractionResponse,
    dependencies=[Depends(long_cache)]
)
def get_invoice_data(
    message_id: str,
    attachment_id: str,
    _user: str = Depends(require_session),
    services: ServiceContainer = Depends(get_services)
):
    """Cached extraction for an attachment, without calling the model."""
    invoice = services.invoice_store.get_invoice(message_id, attachment_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="No extracted data for this attachment")

    return ExtractionResponse(
        message_id=message_id,
        attachment_id=attachment_id,
        cached=True,
        invoice=InvoiceFields.model_validate(invoice.to_fields_dict())
    )


@router.post(
    "/{message_id}/attachments/{attachment_id}/extract",
    response_model=ExtractionResponse,
    dependencies=[Depends(no_cache)]
)
def extract_invoice(
    message_id: str,
    attachment_id: str,
    regenerate: bool = False,
    access_token: str = Depends(require_access_token),
    services: ServiceContainer = Depends(get_services)
):
    """
    Extract invoice data from a PDF attachment.

    **Query Parameters:**
    - `regenerate`: Ignore the cached result and call the model again.
      The new result overwrites the cache either way.
    """
    store = services.invoice_store

    if not regenerate:
        cached = store.get_invoice(message_id, attachment_id)
        if cached is not None:
            return ExtractionResponse(
                message_id=message_id,
                attachment_id=attachment_id,
                cached=True,
                invoice=InvoiceFields.model_validate(cached.to_fields_dict())
            )

    try:
        content = services.mail_provider.get_attachment_content(access_token, message_id, attachment_id)
        fields = services.extractor.extract(content)
    except Exception:
        logger.exception("Error extracting invoice data for %s/%s", message_id, attachment_id)
        raise HTTPException(status_code=500, detail="Failed to extract invoice data")

    store.save_invoice(message_id, attachment_id, fields.model_dump())
    return ExtractionResponse(
        message_id=message_id,
        attachment_id=attachment_id,
        cached=False,
        invoice=fields
    )
