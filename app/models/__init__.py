"""
SQLAlchemy models for the invoice harvester.

This package contains:
- AuthToken: The single user's OAuth credentials (token store)
- Invoice: Cached extraction result per (message, attachment)
- SyncState: Key-value sync metadata (last sync timestamp)
- JobState / JobExecution: Live status and run history of the background job
"""

from app.models.auth_token import AuthToken
from app.models.invoice import Invoice
from app.models.sync_state import SyncState
from app.models.job import JobState, JobExecution, JobStatus

__all__ = ["AuthToken", "Invoice", "SyncState", "JobState", "JobExecution", "JobStatus"]
