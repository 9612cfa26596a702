from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    COMPILING = "compiling"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# pending -> assigned -> compiling -> running -> completed; failed only via retry exhaustion
ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.ASSIGNED}),
    JobStatus.ASSIGNED: frozenset(
        {JobStatus.COMPILING, JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.PENDING, JobStatus.FAILED}
    ),
    JobStatus.COMPILING: frozenset(
        {JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.PENDING, JobStatus.FAILED}
    ),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.PENDING, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    WRONG_ANSWER = "wrong_answer"
    COMPILE_ERROR = "compile_error"
    RUNTIME_ERROR = "runtime_error"
    TIME_LIMIT_EXCEEDED = "time_limit_exceeded"
    MEMORY_LIMIT_EXCEEDED = "memory_limit_exceeded"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class Limits:
    time_limit_ms: int
    memory_limit_mb: int

    @property
    def timeout_seconds(self) -> float:
        return self.time_limit_ms / 1000.0

    @property
    def memory_bytes(self) -> int:
        return self.memory_limit_mb * 1024 * 1024


@dataclass(frozen=True)
class TestCase:
    id: str
    input: str
    expected_output: str

    __test__ = False  # keep pytest from collecting this dataclass

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "input": self.input, "expected_output": self.expected_output}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestCase":
        return cls(
            id=str(data["id"]),
            input=str(data.get("input", "")),
            expected_output=str(data.get("expected_output", "")),
        )


@dataclass(frozen=True)
class Verdict:
    test_case_id: str
    outcome: Outcome
    actual_output: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0
    peak_memory_mb: Optional[float] = None
    stderr: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_case_id": self.test_case_id,
            "outcome": self.outcome.value,
            "actual_output": self.actual_output,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "peak_memory_mb": self.peak_memory_mb,
            "stderr": self.stderr,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Verdict":
        return cls(
            test_case_id=str(data["test_case_id"]),
            outcome=Outcome(data["outcome"]),
            actual_output=data.get("actual_output") or "",
            exit_code=data.get("exit_code"),
            duration_ms=int(data.get("duration_ms") or 0),
            peak_memory_mb=data.get("peak_memory_mb"),
            stderr=data.get("stderr") or "",
        )

    @classmethod
    def compile_error(cls, test_case_id: str, compiler_output: str, exit_code: Optional[int] = None) -> "Verdict":
        return cls(
            test_case_id=test_case_id,
            outcome=Outcome.COMPILE_ERROR,
            exit_code=exit_code,
            stderr=compiler_output,
        )


@dataclass
class JobSpec:
    """Everything a worker needs to execute one job attempt."""

    job_id: str
    language: str
    source_code: str
    test_cases: List[TestCase]
    limits: Limits
    attempt: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "language": self.language,
            "source_code": self.source_code,
            "test_cases": [tc.to_dict() for tc in self.test_cases],
            "time_limit_ms": self.limits.time_limit_ms,
            "memory_limit_mb": self.limits.memory_limit_mb,
            "attempt": self.attempt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobSpec":
        return cls(
            job_id=str(data["job_id"]),
            language=str(data["language"]),
            source_code=str(data["source_code"]),
            test_cases=[TestCase.from_dict(tc) for tc in data["test_cases"]],
            limits=Limits(
                time_limit_ms=int(data["time_limit_ms"]),
                memory_limit_mb=int(data["memory_limit_mb"]),
            ),
            attempt=int(data.get("attempt", 1)),
        )
