"""Decode raw stream messages into one canonical event variant.

The backend has shipped several payload shapes over time. Every known shape
is normalized here so nothing downstream inspects raw dicts.
"""
from __future__ import annotations

import json
import math
from typing import Any

from auditwatch.models.events import (
    CompleteEvent,
    ProgressEvent,
    SSEMessage,
    StreamEvent,
    UnrecognizedEvent,
)

_JOB_ID_KEYS = ("websiteId", "jobId", "website_id", "job_id")
_REPORT_WRAPPER_KEYS = ("report", "result", "resultJson")
_REPORT_MARKER_KEYS = frozenset(
    {"urlReports", "averageScore", "totalAnalyzedUrls", "overallLevel", "results", "statistics"}
)


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _as_int(value: Any) -> int | None:
    number = _as_float(value)
    return None if number is None else int(number)


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def progress_from_dict(data: dict[str, Any], *, event_id: str | None = None) -> ProgressEvent | None:
    stage = _as_text(_first(data, "stage", "status", "phase"))
    if stage is None:
        return None
    return ProgressEvent(
        stage=stage,
        percentage=_as_float(_first(data, "percentage", "progress", "percent")),
        message=_as_text(data.get("message")),
        crawled_count=_as_int(_first(data, "crawledCount", "crawled_count")),
        analyzed_count=_as_int(_first(data, "analyzedCount", "analyzed_count")),
        total_count=_as_int(_first(data, "totalCount", "total_count")),
        event_id=event_id,
    )


def _looks_like_report(data: dict[str, Any]) -> bool:
    return bool(_REPORT_MARKER_KEYS.intersection(data))


def complete_from_dict(data: dict[str, Any], *, event_id: str | None = None) -> CompleteEvent | None:
    for key in _REPORT_WRAPPER_KEYS:
        wrapped = data.get(key)
        if isinstance(wrapped, dict) and wrapped:
            return CompleteEvent(
                job_id=_as_text(_first(data, *_JOB_ID_KEYS)),
                report=wrapped,
                event_id=event_id,
            )
    if _looks_like_report(data):
        return CompleteEvent(job_id=_as_text(_first(data, *_JOB_ID_KEYS)), report=data, event_id=event_id)

    job_id = _as_text(_first(data, *_JOB_ID_KEYS))
    if job_id is None:
        return None
    return CompleteEvent(job_id=job_id, event_id=event_id)


def decode_message(message: SSEMessage) -> StreamEvent:
    """Decode one SSE message. Never raises."""
    event_name = (message.event or "message").strip().lower()

    try:
        payload = json.loads(message.data)
    except (ValueError, RecursionError):
        # Some servers send a bare job id as the complete payload.
        if event_name == "complete" and message.data.strip() and " " not in message.data.strip():
            return CompleteEvent(job_id=message.data.strip(), event_id=message.id)
        return UnrecognizedEvent(
            event=event_name, raw=message.data, reason="malformed json", event_id=message.id
        )

    if not isinstance(payload, dict):
        return UnrecognizedEvent(
            event=event_name, raw=message.data, reason="payload is not an object", event_id=message.id
        )

    if event_name == "progress":
        decoded = progress_from_dict(payload, event_id=message.id)
    elif event_name == "complete":
        decoded = complete_from_dict(payload, event_id=message.id)
    elif event_name == "message":
        # Untyped messages: classify by shape.
        decoded = complete_from_dict(payload, event_id=message.id) if _looks_like_report(payload) else None
        if decoded is None:
            decoded = progress_from_dict(payload, event_id=message.id)
    else:
        return UnrecognizedEvent(
            event=event_name, raw=message.data, reason="unknown event type", event_id=message.id
        )

    if decoded is None:
        return UnrecognizedEvent(
            event=event_name, raw=message.data, reason="missing required fields", event_id=message.id
        )
    return decoded
