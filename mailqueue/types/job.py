"""
Job-related type definitions.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mailqueue.constants import JobStatus


class CreateJobRequest(BaseModel):
    """Input for submitting a newsletter job."""

    subject: str = Field(..., min_length=1, max_length=998)
    html_content: str = Field(..., min_length=1)
    text_content: str | None = None
    list_ids: list[UUID] = Field(..., min_length=1)
    max_retries: int | None = Field(default=None, ge=1, le=10)
    scheduled_at: datetime | None = None
    created_by: str | None = None

    @field_validator("list_ids")
    @classmethod
    def dedupe_list_ids(cls, value: list[UUID]) -> list[UUID]:
        return list(dict.fromkeys(value))


class CreateJobResponse(BaseModel):
    """Identifier and status of a newly created job."""

    id: UUID
    status: JobStatus
    created_at: datetime


class JobRecord(BaseModel):
    """Read model of a newsletter job."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subject: str
    list_ids: list[str]
    status: JobStatus
    total_recipients: int
    sent_count: int
    failed_count: int
    retry_count: int
    max_retries: int
    error_message: str | None
    scheduled_at: datetime | None
    created_by: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


class ProcessJobResult(BaseModel):
    """
    Result of one processing attempt.

    success is True when the job reached COMPLETED, even if some recipients
    failed; failed carries the per-recipient failures. skipped marks a job
    that was no longer pending when the claim was attempted; it is not an
    attempt and is not counted against the job or the worker.
    """

    success: bool
    job_id: UUID
    sent: int = 0
    failed: int = 0
    total: int = 0
    error: str | None = None
    skipped: bool = False


class QueueStats(BaseModel):
    """Job counts per status and email totals across completed jobs."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    error: int = 0
    cancelled: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
