from __future__ import annotations


class AuditWatchError(Exception):
    """Base class for every error raised by auditwatch."""


class MissingJobIdError(AuditWatchError):
    pass


class MissingClientIdError(AuditWatchError):
    pass


class SubmissionError(AuditWatchError):
    pass


class StreamTransportError(AuditWatchError):
    pass


class ReportNotYetAvailable(AuditWatchError):
    """The server has not produced the report yet (HTTP 404). Retryable."""


class ReportFetchFailed(AuditWatchError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReportRetriesExhausted(ReportFetchFailed):
    def __init__(self, job_id: str, attempts: int) -> None:
        super().__init__(f"Report for {job_id} still unavailable after {attempts} attempts")
        self.job_id = job_id
        self.attempts = attempts


class ReportFetchInFlight(AuditWatchError):
    """Rejection returned when a fetch for the same job is already outstanding."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Report fetch already in flight for {job_id}")
        self.job_id = job_id
