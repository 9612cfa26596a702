from __future__ import annotations

from ..core.models import Outcome
from ..executor.base import ExecResult


def classify(result: ExecResult, expected_output: str) -> Outcome:
    """Map one test-case run to an outcome; the first matching rule wins.

    A failed compile never gets here: every case of the job becomes
    `Verdict.compile_error` without running. Output comparison is exact on
    bytes, trailing newline included.
    """
    if result.error is not None:
        return Outcome.INTERNAL_ERROR
    if result.oom_killed:
        return Outcome.MEMORY_LIMIT_EXCEEDED
    if result.timed_out:
        return Outcome.TIME_LIMIT_EXCEEDED
    if result.exit_code not in (0, None) or result.signal is not None:
        return Outcome.RUNTIME_ERROR
    if result.stdout != expected_output.encode("utf-8"):
        return Outcome.WRONG_ANSWER
    return Outcome.ACCEPTED
