"""
Schedule Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from jobs_engine.v1.jobs.schemas import QUEUE_NAME_PATTERN, JobOptions


class ScheduleCreate(BaseModel):
    """Schema for creating a recurring schedule."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    job_type: str = Field(..., min_length=1, max_length=255, alias="type")
    queue: str = Field(default="default", pattern=QUEUE_NAME_PATTERN)
    payload: dict[str, Any] = Field(default_factory=dict)
    options: JobOptions = Field(default_factory=JobOptions)
    cron_expression: str = Field(..., min_length=1, alias="cron")
    timezone: str = "UTC"
    enabled: bool = True
    max_runs: int | None = Field(default=None, ge=1, alias="maxRuns")
    end_date: datetime | None = Field(default=None, alias="endDate")
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)

    @field_validator("name", "job_type")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class ScheduleResponse(BaseModel):
    """Schema for schedule API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None = None
    job_type: str
    queue_name: str
    payload: dict[str, Any]
    options: dict[str, Any]
    cron_expression: str
    timezone: str
    enabled: bool
    max_runs: int | None = None
    end_date: datetime | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_job_id: UUID | None = None
    total_runs: int
    successful_runs: int
    failed_runs: int
    meta: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
