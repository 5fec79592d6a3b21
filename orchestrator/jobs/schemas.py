"""
Pydantic schemas for enqueue input and introspection output.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orchestrator.core.clock import coerce_utc
from orchestrator.jobs.types import JobQueue, JobStatus, JobType


class JobCreate(BaseModel):
    """Schema for creating a new job."""

    job_type: JobType = Field(..., description="Catalog job type")
    queue: JobQueue | None = Field(
        default=None, description="Queue family (defaults to the job type's family)"
    )
    priority: int | None = Field(
        default=None,
        description="Within-queue priority, higher first (defaults to the family's urgency)",
    )
    payload: dict[str, Any] = Field(default_factory=dict, description="Job parameters")
    not_before: datetime | None = Field(
        default=None, description="Earliest time the job may be claimed"
    )
    max_attempts: int | None = Field(
        default=None, ge=1, description="Attempts before terminal failure"
    )

    @field_validator("not_before")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return coerce_utc(value)

    @property
    def resolved_queue(self) -> JobQueue:
        return self.queue or self.job_type.default_queue

    @property
    def resolved_priority(self) -> int:
        if self.priority is not None:
            return self.priority
        return self.resolved_queue.urgency


class JobDetail(BaseModel):
    """Per-job detail for inspection and manual retry."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    job_type: str
    queue: JobQueue
    priority: int
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    scheduled_at: datetime
    locked_at: datetime | None = None
    locked_by: str | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator(
        "scheduled_at",
        "locked_at",
        "completed_at",
        "failed_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return coerce_utc(value)


class QueueStats(BaseModel):
    """Backlog snapshot for one queue family."""

    queue: JobQueue
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    oldest_pending_age_s: float | None = Field(
        default=None,
        description="Seconds the oldest ready PENDING job has been waiting",
    )
    limit: int | None = Field(default=None, description="Governor ceiling")

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed
