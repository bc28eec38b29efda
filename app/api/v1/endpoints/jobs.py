"""
Background job endpoints.

Diagnostic views for the signed-in user: they show the real error messages
of failed runs.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict

from app.api.cache import no_cache
from app.api.deps import get_services, require_session
from app.container import ServiceContainer
from app.services.background_job import JOB_NAME

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/emails/job", tags=["Background Job"], dependencies=[Depends(no_cache)])


class JobStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_name: str
    last_run_timestamp: Optional[datetime]
    last_run_duration_ms: Optional[int]
    last_status: str
    last_error: Optional[str]
    new_invoices_count: int
    total_invoices_count: int
    consecutive_errors: int
    next_scheduled_run: Optional[datetime]
    is_running: bool = False
    is_scheduled: bool = False


class JobExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_name: str
    started_at: datetime
    completed_at: Optional[datetime]
    status: str
    error: Optional[str]
    new_invoices_count: int
    total_invoices_count: int
    duration_ms: Optional[int]


@router.get("/state", response_model=JobStateResponse)
def get_job_state(
    _user: str = Depends(require_session),
    services: ServiceContainer = Depends(get_services)
):
    """Live state of the email check job."""
    state = services.invoice_store.get_job_state(JOB_NAME)
    response = JobStateResponse.model_validate(state)
    response.is_running = services.job_runner.is_running
    response.is_scheduled = services.job_runner.is_scheduled
    return response


@router.post("/trigger", response_model=JobExecutionResponse)
def trigger_job(
    _user: str = Depends(require_session),
    services: ServiceContainer = Depends(get_services)
):
    """
    Run the email check now.

    **Returns:**
    - 200: The finished run (its status may be "error")
    - 409: A run is already in progress
    """
    return services.job_runner.trigger()


@router.get("/history", response_model=list[JobExecutionResponse])
def get_job_history(
    limit: int = Query(10, ge=1, le=100, description="Max results"),
    _user: str = Depends(require_session),
    services: ServiceContainer = Depends(get_services)
):
    """Most recent runs first."""
    return services.invoice_store.get_job_history(JOB_NAME, limit=limit)
