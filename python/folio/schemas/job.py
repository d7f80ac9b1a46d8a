"""Background job Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel


class JobOut(BaseModel):
    """Response schema for a job poll."""

    id: str
    type: str
    state: str
    error: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None


class JobAcceptedOut(BaseModel):
    """Response for an operation that was scheduled as a job."""

    job_id: str
