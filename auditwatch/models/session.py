from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class SessionStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    ERROR = "ERROR"


TERMINAL_STATUSES = frozenset({SessionStatus.DONE, SessionStatus.ERROR})

_ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset(
        {SessionStatus.PENDING, SessionStatus.RUNNING, SessionStatus.DONE, SessionStatus.ERROR}
    ),
    SessionStatus.RUNNING: frozenset(
        {SessionStatus.RUNNING, SessionStatus.DONE, SessionStatus.ERROR}
    ),
    SessionStatus.DONE: frozenset(),
    SessionStatus.ERROR: frozenset(),
}


def can_transition(current: SessionStatus, proposed: SessionStatus) -> bool:
    return proposed in _ALLOWED_TRANSITIONS[current]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionRecord(BaseModel):
    """The client's durable view of one analysis job."""

    job_id: str
    target_url: str = ""
    client_id: str = ""
    status: SessionStatus = SessionStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    result: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_result(self) -> bool:
        return self.result is not None

    @classmethod
    def pending(cls, job_id: str, *, target_url: str = "", client_id: str = "") -> SessionRecord:
        return cls(job_id=job_id, target_url=target_url, client_id=client_id)
