from __future__ import annotations


class CodeRunnerError(Exception):
    """Base error; `status_code` and `code` drive the HTTP mapping in the API."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)


class UnknownLanguageError(CodeRunnerError, ValueError):
    status_code = 400
    code = "unknown_language"


class UnknownTestCaseError(CodeRunnerError, ValueError):
    status_code = 400
    code = "unknown_test_case"


class InvalidSubmissionError(CodeRunnerError, ValueError):
    status_code = 422
    code = "invalid_submission"


class JobNotFoundError(CodeRunnerError, LookupError):
    status_code = 404
    code = "job_not_found"


class WorkerNotFoundError(CodeRunnerError, LookupError):
    status_code = 404
    code = "worker_not_found"


class JobNotAssignedError(CodeRunnerError):
    status_code = 409
    code = "job_not_assigned"


class InvalidTransitionError(CodeRunnerError):
    status_code = 409
    code = "invalid_transition"


class StoreConflictError(CodeRunnerError):
    status_code = 503
    code = "store_conflict"
