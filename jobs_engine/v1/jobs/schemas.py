"""
Job Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

QUEUE_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$"


class JobOptions(BaseModel):
    """Execution hints supplied at submission."""

    model_config = ConfigDict(populate_by_name=True)

    priority: int = Field(
        default=0, ge=-1000, le=1000, description="Higher is served first"
    )
    max_retries: int | None = Field(
        default=None, ge=0, le=100, alias="maxRetries", description="Retry budget"
    )
    delay: int = Field(
        default=0, ge=0, description="Milliseconds before the job becomes eligible"
    )
    timeout: int | None = Field(
        default=None, ge=1000, description="Execution deadline in milliseconds"
    )
    retry_delay: int | None = Field(
        default=None, ge=0, alias="retryDelay", description="Base backoff in ms"
    )


class JobCreate(BaseModel):
    """Schema for creating a new job."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(..., min_length=1, max_length=255, description="Job type")
    queue: str = Field(
        default="default", pattern=QUEUE_NAME_PATTERN, description="Queue name"
    )
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload")
    options: JobOptions = Field(default_factory=JobOptions)
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)

    @field_validator("type")
    @classmethod
    def type_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("type must not be blank")
        return value.strip()


class JobSubmitResponse(BaseModel):
    """Schema for job submission response."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: UUID = Field(serialization_alias="jobId")
    queue: str
    status: str


class JobResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    result: Any = None
    duration_ms: int
    created_at: datetime


class JobFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    error_type: str
    error_message: str
    error_stack: str | None = None
    attempt_number: int
    will_retry: bool
    retry_at: datetime | None = None
    failed_at: datetime


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    broker_id: str
    queue_name: str
    job_type: str
    priority: int
    status: str
    payload: dict[str, Any]
    options: dict[str, Any]
    scheduled_for: datetime
    attempts: int
    max_retries: int
    retry_delay: int

    worker_id: str | None = None
    process_id: int | None = None
    lease_expires_at: datetime | None = None

    progress: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None

    meta: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")
    tags: list[str] = Field(default_factory=list)
    schedule_id: UUID | None = None
    retried_as: UUID | None = None
    created_at: datetime
    updated_at: datetime


class JobDetail(BaseModel):
    """A job together with its result and failure history."""

    job: JobResponse
    result: JobResultResponse | None = None
    failures: list[JobFailureResponse] = Field(default_factory=list)


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobRetryRequest(BaseModel):
    """Bulk manual retry of failed jobs by type or by queue."""

    job_type: str | None = Field(default=None, alias="type")
    queue: str | None = None
    limit: int = Field(default=100, ge=1, le=1000)

    model_config = ConfigDict(populate_by_name=True)


class JobRetryResponse(BaseModel):
    """Jobs re-created from failed ones (original id -> new id)."""

    retried: dict[str, str]
    count: int


class QueueStats(BaseModel):
    queue_name: str
    by_status: dict[str, int]
    depth: int


class JobTypeStats(BaseModel):
    job_type: str
    total_jobs: int
    completed: int
    failed: int
    avg_duration_ms: float | None = None


class RecentFailure(BaseModel):
    job_id: UUID
    job_type: str
    queue_name: str
    error_type: str
    error_message: str
    attempt_number: int
    will_retry: bool
    failed_at: datetime


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    window_hours: int | None = None
    total_jobs: int
    by_status: dict[str, int]
    queues: list[QueueStats]
    job_types: list[JobTypeStats]
    queue_depth: int  # waiting + active
    avg_duration_ms: float | None = None
    recent_failures: list[RecentFailure]
