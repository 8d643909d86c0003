from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from auditwatch.models.session import SessionStatus


class StreamEventType(StrEnum):
    PROGRESS = "progress"
    COMPLETE = "complete"
    UNRECOGNIZED = "unrecognized"


@dataclass(slots=True)
class SSEMessage:
    """One dispatched text/event-stream message."""

    event: str = "message"
    data: str = ""
    id: str | None = None
    retry_ms: int | None = None


@dataclass(slots=True)
class ProgressEvent:
    stage: str
    percentage: float | None = None
    message: str | None = None
    crawled_count: int | None = None
    analyzed_count: int | None = None
    total_count: int | None = None
    event_id: str | None = None
    kind: StreamEventType = field(default=StreamEventType.PROGRESS, init=False)

    def dedupe_key(self) -> tuple[Any, ...]:
        return (
            self.stage,
            self.percentage,
            self.message,
            self.crawled_count,
            self.analyzed_count,
            self.total_count,
        )

    @property
    def reports_finished(self) -> bool:
        return self.percentage is not None and self.percentage >= 100


@dataclass(slots=True)
class CompleteEvent:
    """Terminal signal: either a job id to fetch, or the report inline."""

    job_id: str | None = None
    report: dict[str, Any] | None = None
    event_id: str | None = None
    kind: StreamEventType = field(default=StreamEventType.COMPLETE, init=False)


@dataclass(slots=True)
class UnrecognizedEvent:
    event: str
    raw: str
    reason: str
    event_id: str | None = None
    kind: StreamEventType = field(default=StreamEventType.UNRECOGNIZED, init=False)


StreamEvent = ProgressEvent | CompleteEvent | UnrecognizedEvent


@dataclass(slots=True, frozen=True)
class MappedProgress:
    status: SessionStatus
    progress: int
    label: str


@dataclass(slots=True)
class FetchFinalTrigger:
    job_id: str | None = None
    report: dict[str, Any] | None = None
    source: str = "stream"
