"""Stage → (status, progress, label) policy.

Each server stage owns a fixed progress band so per-stage percentages never
contradict each other while the bar still moves continuously:

    collection   10..50   (crawled/total ratio, else 20)
    evaluation   40..99   (server percentage, else analyzed/total, else 40)
    completed    100
    error        100
"""
from __future__ import annotations

import math
from enum import StrEnum

from auditwatch.models.events import MappedProgress
from auditwatch.models.session import SessionStatus


class Stage(StrEnum):
    COLLECTION = "collection"
    EVALUATION = "evaluation"
    COMPLETED = "completed"
    ERROR = "error"
    UNKNOWN = "unknown"


STAGE_ALIASES: dict[str, Stage] = {
    "CRAWLING": Stage.COLLECTION,
    "COLLECTING": Stage.COLLECTION,
    "COLLECTION": Stage.COLLECTION,
    "ANALYZING": Stage.EVALUATION,
    "ANALYSING": Stage.EVALUATION,
    "EVALUATING": Stage.EVALUATION,
    "EVALUATION": Stage.EVALUATION,
    "COMPLETED": Stage.COMPLETED,
    "COMPLETE": Stage.COMPLETED,
    "DONE": Stage.COMPLETED,
    "ERROR": Stage.ERROR,
    "FAILED": Stage.ERROR,
}

STAGE_LABELS: dict[Stage, str] = {
    Stage.COLLECTION: "Collecting URLs…",
    Stage.EVALUATION: "Running AI analysis…",
    Stage.COMPLETED: "Analysis complete",
    Stage.ERROR: "Error",
}

STATUS_LABELS: dict[SessionStatus, str] = {
    SessionStatus.PENDING: "Waiting",
    SessionStatus.RUNNING: "In progress…",
    SessionStatus.DONE: STAGE_LABELS[Stage.COMPLETED],
    SessionStatus.ERROR: STAGE_LABELS[Stage.ERROR],
}

COLLECTION_BAND = (10, 50)
COLLECTION_FLOOR = 20
EVALUATION_BAND = (40, 99)
UNKNOWN_FLOOR = 10


def classify_stage(raw_stage: str | None) -> Stage:
    if not raw_stage:
        return Stage.UNKNOWN
    return STAGE_ALIASES.get(raw_stage.strip().upper(), Stage.UNKNOWN)


def _clamp(value: float, low: int, high: int) -> int:
    if not math.isfinite(value):
        return low
    return int(max(low, min(high, round(value))))


def _ratio(done: int | None, total: int | None) -> float | None:
    if done is None or not total or total <= 0:
        return None
    return max(0.0, min(1.0, done / total))


def _band_from_ratio(ratio: float, band: tuple[int, int]) -> int:
    low, high = band
    return _clamp(low + (high - low) * ratio, low, high)


def map_stage(
    raw_stage: str | None,
    raw_percentage: float | None = None,
    raw_message: str | None = None,
    *,
    crawled_count: int | None = None,
    analyzed_count: int | None = None,
    total_count: int | None = None,
    previous_progress: int = 0,
) -> MappedProgress:
    """Map a raw server stage report to a canonical progress triple.

    Pure and deterministic: identical inputs always give identical output,
    and unknown input never raises.
    """
    stage = classify_stage(raw_stage)
    message = raw_message.strip() if raw_message and raw_message.strip() else None

    if stage is Stage.COLLECTION:
        ratio = _ratio(crawled_count, total_count)
        progress = COLLECTION_FLOOR if ratio is None else _band_from_ratio(ratio, COLLECTION_BAND)
        label = message or STAGE_LABELS[stage]
        if crawled_count is not None and total_count:
            label = f"{label} ({crawled_count}/{total_count})"
        return MappedProgress(SessionStatus.RUNNING, progress, label)

    if stage is Stage.EVALUATION:
        if raw_percentage is not None:
            progress = _clamp(raw_percentage, *EVALUATION_BAND)
        else:
            ratio = _ratio(analyzed_count, total_count)
            progress = EVALUATION_BAND[0] if ratio is None else _band_from_ratio(ratio, EVALUATION_BAND)
        return MappedProgress(SessionStatus.RUNNING, progress, f"{message or STAGE_LABELS[stage]} ({progress}%)")

    if stage is Stage.COMPLETED:
        return MappedProgress(SessionStatus.DONE, 100, message or STAGE_LABELS[stage])

    if stage is Stage.ERROR:
        return MappedProgress(SessionStatus.ERROR, 100, message or STAGE_LABELS[stage])

    progress = max(UNKNOWN_FLOOR, min(100, int(previous_progress)))
    return MappedProgress(SessionStatus.RUNNING, progress, raw_message or raw_stage or "In progress…")


def status_label(status: SessionStatus) -> str:
    return STATUS_LABELS[status]
