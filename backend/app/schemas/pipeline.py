# backend/app/schemas/pipeline.py
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from ..models.analysis_job import JobStatus

MAX_SESSION_ID_LEN = 255
MAX_ANALYSIS_TYPE_LEN = 64


def _strip_or_none(v):
    if v is None:
        return None
    if isinstance(v, str):
        stripped = v.strip()
        return stripped or None
    return v


class PipelineRunRequest(BaseModel):
    session_id: str | None = Field(default=None, max_length=MAX_SESSION_ID_LEN)
    force_refresh: bool = False

    @field_validator("session_id", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        return _strip_or_none(v)


class PhaseRunRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=MAX_SESSION_ID_LEN)
    force_refresh: bool = False


class PhaseDataIn(BaseModel):
    payload: dict[str, Any]


class AggregateOut(BaseModel):
    session_id: str
    subject: str
    upto_phase: int
    payload: dict[str, Any]


class FetchResultOut(BaseModel):
    name: str
    success: bool
    payload: dict[str, Any] | None = None
    error: str | None = None
    elapsed_ms: int = 0
    cached: bool = False


class PhaseOutcomeOut(BaseModel):
    number: int
    label: str
    priority: Literal["critical", "important", "optional"]
    results: list[FetchResultOut]
    errors: list[str]
    completed: bool
    job_id: str | None = None
    job_status: str | None = None


class PhaseRunOut(BaseModel):
    session_id: str
    subject: str
    phase: PhaseOutcomeOut
    payload: dict[str, Any]
    warnings: list[str]


class PipelineResultOut(BaseModel):
    subject: str
    session_id: str
    context: dict[str, Any]
    phases: list[PhaseOutcomeOut]
    warnings: list[str]
    partial: bool
    job_id: str | None = None
    data_quality: float
    elapsed_ms: int


class JobCreateRequest(BaseModel):
    subject: str = Field(min_length=1, max_length=32)
    request: dict[str, Any] = Field(default_factory=dict)


class JobCreatedOut(BaseModel):
    job_id: str
    status: JobStatus
    error: str | None = None


class JobStatusOut(BaseModel):
    job_id: str
    subject: str
    status: JobStatus
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class JobTraceEventOut(BaseModel):
    created_at: datetime
    phase: str
    step: str | None = None
    label: str
    detail: str | None = None
    meta: dict | None = None


class WorkerTriggerIn(BaseModel):
    job_id: str
    subject: str
    request: dict[str, Any] = Field(default_factory=dict)


class CacheInvalidateRequest(BaseModel):
    subject: str = Field(min_length=1, max_length=32)
    analysis_type: str | None = Field(default=None, max_length=MAX_ANALYSIS_TYPE_LEN)

    @field_validator("analysis_type", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        return _strip_or_none(v)


class CacheInvalidateOut(BaseModel):
    subject: str
    analysis_type: str | None = None
    deleted: int


class CacheStatsOut(BaseModel):
    total_entries: int
    total_subjects: int
    analysis_types: list[str]
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
    average_quality: float | None = None
