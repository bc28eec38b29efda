"""
Background job bookkeeping.

JobState is the live status of a job (one row per job name); JobExecution is
the append-only history, one row per finished run.
"""

import enum

from sqlalchemy import Column, Integer, String, Text, DateTime, Index
from app.database import Base


class JobStatus(str, enum.Enum):
    """Status of a background job."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class JobState(Base):
    """Live status of the background job."""
    __tablename__ = "job_state"

    id = Column(Integer, primary_key=True)
    job_name = Column(String(64), unique=True, nullable=False, index=True)

    last_run_timestamp = Column(DateTime(timezone=True))
    last_run_duration_ms = Column(Integer)
    last_status = Column(String(20), nullable=False, default=JobStatus.IDLE.value)
    last_error = Column(Text)

    new_invoices_count = Column(Integer, nullable=False, default=0)
    total_invoices_count = Column(Integer, nullable=False, default=0)
    consecutive_errors = Column(Integer, nullable=False, default=0)

    next_scheduled_run = Column(DateTime(timezone=True))

    def __repr__(self):
        return f"<JobState(job={self.job_name}, status={self.last_status}, errors={self.consecutive_errors})>"


class JobExecution(Base):
    """One finished run of a background job."""
    __tablename__ = "job_executions"

    id = Column(Integer, primary_key=True)
    job_name = Column(String(64), nullable=False)

    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    status = Column(String(20), nullable=False)
    error = Column(Text)

    new_invoices_count = Column(Integer, nullable=False, default=0)
    total_invoices_count = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer)

    __table_args__ = (
        Index("ix_job_executions_job_started", "job_name", "started_at"),
    )

    def __repr__(self):
        return f"<JobExecution(id={self.id}, job={self.job_name}, status={self.status})>"
