"""
Invoice store - persistence layer for everything except credentials.

This module provides CRUD operations with upsert logic:
- save_invoice: Insert or overwrite the cached extraction for one attachment
- Sync metadata: last sync timestamp
- Job bookkeeping: live job state and append-only execution history
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.models.invoice import Invoice, INVOICE_FIELDS
from app.models.job import JobState, JobExecution, JobStatus
from app.models.sync_state import SyncState, LAST_SYNC_TIMESTAMP_KEY
from app.utils import as_utc

logger = logging.getLogger(__name__)

_JOB_STATE_FIELDS = {
    "last_run_timestamp",
    "last_run_duration_ms",
    "last_status",
    "last_error",
    "new_invoices_count",
    "total_invoices_count",
    "consecutive_errors",
    "next_scheduled_run",
}


class InvoiceStore:
    """Invoice cache, sync metadata and job bookkeeping backed by SQLAlchemy."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ============ INVOICE OPERATIONS ============

    def get_invoice(self, message_id: str, attachment_id: str) -> Optional[Invoice]:
        """Return the cached extraction for an attachment, if any."""
        with self._session_factory() as db:
            return db.query(Invoice).filter(
                Invoice.message_id == message_id,
                Invoice.attachment_id == attachment_id
            ).first()

    def has_invoice(self, message_id: str, attachment_id: str) -> bool:
        return self.get_invoice(message_id, attachment_id) is not None

    def save_invoice(
        self,
        message_id: str,
        attachment_id: str,
        fields: Dict[str, Any]
    ) -> Invoice:
        """
        Insert or overwrite the extraction for one attachment.

        Every field column is replaced; a field missing from ``fields`` is
        stored as NULL. created_at survives the overwrite.

        Args:
            message_id: Mail provider message ID
            attachment_id: Mail provider attachment ID
            fields: Extracted invoice fields keyed by column name

        Returns:
            Invoice: The stored record
        """
        values = {field: fields.get(field) for field in INVOICE_FIELDS}

        with self._session_factory() as db:
            existing = db.query(Invoice).filter(
                Invoice.message_id == message_id,
                Invoice.attachment_id == attachment_id
            ).first()

            if existing:
                for field, value in values.items():
                    setattr(existing, field, value)
                existing.updated_at = func.now()
                db.commit()
                db.refresh(existing)
                return existing

            invoice = Invoice(message_id=message_id, attachment_id=attachment_id, **values)
            db.add(invoice)

            try:
                db.commit()
                db.refresh(invoice)
                return invoice
            except IntegrityError:
                # Race condition - another request created it
                db.rollback()

        logger.info("Concurrent insert for %s/%s, overwriting", message_id, attachment_id)
        return self.save_invoice(message_id, attachment_id, fields)

    def count_invoices(self) -> int:
        with self._session_factory() as db:
            return db.query(func.count(Invoice.id)).scalar()

    # ============ SYNC METADATA ============

    def set_last_sync_timestamp(self, timestamp: datetime) -> None:
        with self._session_factory() as db:
            row = db.query(SyncState).filter(SyncState.key == LAST_SYNC_TIMESTAMP_KEY).first()
            if row is None:
                row = SyncState(key=LAST_SYNC_TIMESTAMP_KEY)
                db.add(row)
            row.value = as_utc(timestamp).isoformat()
            db.commit()

    def get_last_sync_timestamp(self) -> Optional[datetime]:
        with self._session_factory() as db:
            row = db.query(SyncState).filter(SyncState.key == LAST_SYNC_TIMESTAMP_KEY).first()
            if row is None or not row.value:
                return None
            return as_utc(datetime.fromisoformat(row.value))

    # ============ JOB STATE ============

    def get_job_state(self, job_name: str) -> JobState:
        """Return the live state of a job, creating an idle row on first use."""
        with self._session_factory() as db:
            state = self._get_or_create_job_state(db, job_name)
            db.commit()
            return self._normalize_job_state(state)

    def update_job_state(self, job_name: str, **changes: Any) -> JobState:
        """
        Apply a partial update to a job's live state.

        Raises:
            ValueError: If a change names an unknown column
        """
        unknown = set(changes) - _JOB_STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown job state fields: {', '.join(sorted(unknown))}")

        with self._session_factory() as db:
            state = self._get_or_create_job_state(db, job_name)
            for field, value in changes.items():
                if isinstance(value, JobStatus):
                    value = value.value
                setattr(state, field, value)
            db.commit()
            db.refresh(state)
            return self._normalize_job_state(state)

    def _get_or_create_job_state(self, db, job_name: str) -> JobState:
        state = db.query(JobState).filter(JobState.job_name == job_name).first()
        if state is None:
            state = JobState(
                job_name=job_name,
                last_status=JobStatus.IDLE.value,
                new_invoices_count=0,
                total_invoices_count=0,
                consecutive_errors=0
            )
            db.add(state)
            db.flush()
        return state

    @staticmethod
    def _normalize_job_state(state: JobState) -> JobState:
        state.last_run_timestamp = as_utc(state.last_run_timestamp)
        state.next_scheduled_run = as_utc(state.next_scheduled_run)
        return state

    # ============ JOB HISTORY ============

    def add_job_execution(
        self,
        job_name: str,
        started_at: datetime,
        completed_at: datetime,
        status: str,
        error: Optional[str] = None,
        new_invoices_count: int = 0,
        total_invoices_count: int = 0,
        duration_ms: Optional[int] = None
    ) -> JobExecution:
        """Append one row to the execution history."""
        execution = JobExecution(
            job_name=job_name,
            started_at=started_at,
            completed_at=completed_at,
            status=status.value if isinstance(status, JobStatus) else status,
            error=error,
            new_invoices_count=new_invoices_count,
            total_invoices_count=total_invoices_count,
            duration_ms=duration_ms
        )
        with self._session_factory() as db:
            db.add(execution)
            db.commit()
            db.refresh(execution)
            return execution

    def get_job_history(self, job_name: str, limit: int = 10) -> List[JobExecution]:
        """Most recent executions first."""
        with self._session_factory() as db:
            rows = db.query(JobExecution).filter(
                JobExecution.job_name == job_name
            ).order_by(
                JobExecution.started_at.desc(),
                JobExecution.id.desc()
            ).limit(limit).all()

        for row in rows:
            row.started_at = as_utc(row.started_at)
            row.completed_at = as_utc(row.completed_at)
        return rows
