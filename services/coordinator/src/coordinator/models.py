from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictBool, field_validator
from pydantic.alias_generators import to_camel

RUN_PENDING = "pending"
RUN_PROCESSING = "processing"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
TERMINAL_STATUSES = frozenset({RUN_COMPLETED, RUN_FAILED})

RunStatus = Literal["pending", "processing", "completed", "failed"]
ExperienceLevel = Literal[
    "Internship",
    "Entry level",
    "Associate",
    "Mid-Senior level",
    "Director",
    "Executive",
]
WorkType = Literal["On-site", "Remote", "Hybrid"]
JobType = Literal["Full-time", "Part-time", "Contract", "Temporary", "Volunteer", "Internship"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StrictCamelModel(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


class Filters(StrictCamelModel):
    keywords: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    experience_level: list[ExperienceLevel] = Field(..., min_length=1)
    remote: list[WorkType] = Field(..., min_length=1)
    job_type: list[JobType] = Field(..., min_length=1)
    easy_apply: StrictBool
    min_score: float = Field(default=50, ge=0, le=100)

    @field_validator("experience_level", "remote", "job_type")
    @classmethod
    def collapse_duplicates(cls, value: list[str]) -> list[str]:
        return _dedupe(value)

    def to_dispatch_filters(self) -> dict[str, str | bool | int | float]:
        min_score: int | float = self.min_score
        if float(min_score).is_integer():
            min_score = int(min_score)
        return {
            "keywords": self.keywords,
            "location": self.location,
            "experienceLevel": ",".join(self.experience_level),
            "remote": ",".join(self.remote),
            "jobType": ",".join(self.job_type),
            "easyApply": self.easy_apply,
            "minScore": min_score,
        }


class CreateRunRequest(StrictCamelModel):
    filters: Filters


class CreateRunResponse(CamelModel):
    run_id: str


class CallbackJob(StrictCamelModel):
    title: str = Field(..., min_length=1)
    company: str
    location: str | None = None
    score: float = Field(..., allow_inf_nan=False)
    description: str = ""
    apply_link: str = ""
    cover_letter: str = ""
    mail_draft: str = ""


class CallbackPayload(StrictCamelModel):
    run_id: str = Field(..., min_length=1)
    jobs: list[CallbackJob]
    # Some workflow templates echo the secret in the body; the header is authoritative.
    secret: str | None = None


class CallbackResult(CamelModel):
    success: bool
    jobs_inserted: int | None = None


class JobRecord(CamelModel):
    id: str
    title: str
    company: str
    location: str
    score: float
    description: str
    apply_link: str
    cover_letter: str
    mail_draft: str
    created_at: str


class RunRecord(CamelModel):
    id: str
    user_id: str
    status: RunStatus
    created_at: str
    completed_at: str | None = None


class RunSummary(CamelModel):
    id: str
    status: RunStatus
    created_at: str
    completed_at: str | None = None
    job_count: int


class RunListResponse(CamelModel):
    runs: list[RunSummary]


class RunDetail(CamelModel):
    id: str
    status: RunStatus
    created_at: str
    completed_at: str | None = None
    jobs: list[JobRecord]


class RunEvent(CamelModel):
    event_id: int
    run_id: str
    occurred_at: str
    request_id: str | None = None
    from_status: RunStatus | None = None
    to_status: RunStatus
    message: str | None = None


class RunEventListResponse(CamelModel):
    events: list[RunEvent]


class SignupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=256)


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)


class SessionResponse(CamelModel):
    user_id: str
    token: str
    expires_at: str


class Principal(BaseModel):
    user_id: str
    email: str
    session_id: str


class ResumeStatus(CamelModel):
    exists: bool


class ResumeUploadResponse(CamelModel):
    uploaded: bool
    size: int


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]
