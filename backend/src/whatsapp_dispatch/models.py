from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

JobStatus = Literal["pending", "sent", "failed"]


class DispatchResponse(BaseModel):
    picked: int
    sent: int
    failed: int
    retried: int


class JobEnqueueRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=64)
    to: str = Field(min_length=1, max_length=64)
    template_key: str = Field(min_length=1, max_length=128)
    payload: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int | None = Field(default=None, ge=1, le=20)
    dedupe_key: str | None = Field(default=None, min_length=1, max_length=256)
    run_at: datetime | None = None

    @field_validator("tenant_id", "to", "template_key")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("field cannot be blank")
        return normalized

    @field_validator("dedupe_key")
    @classmethod
    def _normalize_dedupe_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class JobEnqueueResponse(BaseModel):
    accepted: bool
    deduped: bool
    job_id: str | None = None


class StatusResponse(BaseModel):
    ok: bool
    env: str
    now: datetime | None = None
    reason: str | None = None
    last_cron_run_at: datetime | None = None
    last_cron_error: str | None = None
    last_cron_duration_ms: int | None = None


class DispatchRunItem(BaseModel):
    run_id: str
    ran_at: datetime
    source: str
    picked: int
    sent: int
    failed: int
    retried: int
    schedules_picked: int
    jobs_created_from_schedules: int
    duration_ms: int | None = None
    error: str | None = None


class MonitorJobItem(BaseModel):
    job_id: str
    updated_at: datetime
    status: JobStatus
    attempts: int
    template_key: str
    to_masked: str
    last_error: str | None = None


class TemplateRetryItem(BaseModel):
    template_key: str
    total_attempts: int
    count_jobs: int


class MonitorResponse(BaseModel):
    generated_at: datetime
    last_cron_run: DispatchRunItem | None = None
    runs: list[DispatchRunItem]
    problem_jobs: list[MonitorJobItem]
    recent_failures: list[MonitorJobItem]
    top_retries: list[TemplateRetryItem]
