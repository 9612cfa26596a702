from __future__ import annotations
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from ..core.models import JobStatus, Outcome, TestCase, Verdict


# --------- client ---------

class TestCaseIn(BaseModel):
    __test__ = False

    id: str = Field(min_length=1)
    input: str = ""
    expected_output: str = ""

    def to_model(self) -> TestCase:
        return TestCase(id=self.id, input=self.input, expected_output=self.expected_output)


class SubmitReq(BaseModel):
    language: str = Field(min_length=1)
    source_code: str = Field(min_length=1)
    test_cases: List[TestCaseIn] = Field(min_length=1)
    time_limit_ms: Optional[int] = None
    memory_limit_mb: Optional[int] = None

    @field_validator("source_code")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("source_code must not be blank")
        return v

    @field_validator("test_cases")
    @classmethod
    def _unique_ids(cls, v: List[TestCaseIn]) -> List[TestCaseIn]:
        ids = [tc.id for tc in v]
        if len(set(ids)) != len(ids):
            raise ValueError("test case ids must be unique")
        return v


class SubmitRes(BaseModel):
    job_id: str


class VerdictOut(BaseModel):
    test_case_id: str
    outcome: Outcome
    actual_output: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0
    peak_memory_mb: Optional[float] = None
    stderr: str = ""


class JobStatusRes(BaseModel):
    job_id: str
    status: JobStatus
    language: str
    time_limit_ms: int
    memory_limit_mb: int
    attempts: int
    error: Optional[str] = None
    compiler_output: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    test_cases: int
    verdicts: List[VerdictOut]


class WorkerOut(BaseModel):
    id: str
    address: str
    capacity: int
    available_slots: int
    languages: List[str]
    active_jobs: List[str]
    last_heartbeat_age_s: float


class LanguageOut(BaseModel):
    language: str
    aliases: List[str]
    compiles: bool
    source_file: str


# --------- worker protocol ---------

class RegisterReq(BaseModel):
    worker_id: Optional[str] = None
    address: str = Field(min_length=1)
    capacity: int = Field(ge=1)
    languages: Optional[List[str]] = None


class RegisterRes(BaseModel):
    worker_id: str
    heartbeat_interval_s: float


class HeartbeatReq(BaseModel):
    active_jobs: Optional[List[str]] = None


class PollReq(BaseModel):
    max_jobs: int = Field(default=1, ge=0)


class JobSpecOut(BaseModel):
    job_id: str
    language: str
    source_code: str
    test_cases: List[TestCaseIn]
    time_limit_ms: int
    memory_limit_mb: int
    attempt: int


class PollRes(BaseModel):
    jobs: List[JobSpecOut]


class StatusReq(BaseModel):
    status: JobStatus
    compiler_output: Optional[str] = None

    @field_validator("status")
    @classmethod
    def _worker_status(cls, v: JobStatus) -> JobStatus:
        if v not in (JobStatus.COMPILING, JobStatus.RUNNING):
            raise ValueError("workers may only report compiling or running")
        return v


class VerdictIn(VerdictOut):
    @field_validator("outcome")
    @classmethod
    def _recordable(cls, v: Outcome) -> Outcome:
        if v is Outcome.INTERNAL_ERROR:
            raise ValueError("internal_error is retried, not recorded")
        return v

    def to_model(self) -> Verdict:
        return Verdict(**self.model_dump())


class VerdictsReq(BaseModel):
    verdicts: List[VerdictIn] = Field(min_length=1)
    compiler_output: Optional[str] = None


class VerdictsRes(BaseModel):
    recorded: int
    completed: bool


class FailReq(BaseModel):
    reason: str = Field(default="worker_failure", min_length=1)


class StatusRes(BaseModel):
    status: str


class OkRes(BaseModel):
    ok: bool = True
