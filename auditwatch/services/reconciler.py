"""Merge the stored record, the live stream and the final report fetch into
one authoritative session view.

Every mutation goes through ``_apply``/``_complete``, which enforce the
status DAG and progress monotonicity before persisting. The reconciler is the
only writer of its job's record.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from contextlib import suppress
from dataclasses import dataclass, replace
from typing import Any

from loguru import logger

from auditwatch.config import settings
from auditwatch.errors import (
    AuditWatchError,
    MissingClientIdError,
    MissingJobIdError,
    ReportFetchFailed,
    ReportFetchInFlight,
)
from auditwatch.models.events import FetchFinalTrigger, ProgressEvent
from auditwatch.models.session import SessionRecord, SessionStatus, can_transition
from auditwatch.services import logger as log_service
from auditwatch.services.event_stream import EventStreamManager
from auditwatch.services.report_fetcher import TerminalReportFetcher
from auditwatch.services.session_store import SessionRecordStore
from auditwatch.services.stage_mapper import STAGE_LABELS, Stage, map_stage, status_label

MISSING_JOB_ID = "Missing job identifier"
MISSING_CLIENT_ID = "Missing client identifier"
REPORT_UNAVAILABLE = "Could not load the final report yet. The analysis may still be running."
LOADING_REPORT = "Loading final report…"

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class SessionView:
    """Everything the presentation layer needs to render one job."""

    record: SessionRecord | None = None
    status_label: str = "Initializing…"
    live_connected: bool = False
    syncing: bool = False
    error: str | None = None
    error_retryable: bool = True
    failure: AuditWatchError | None = None

    @property
    def loading(self) -> bool:
        return self.record is None and self.error is None

    @property
    def result(self) -> dict[str, Any] | None:
        return self.record.result if self.record else None


ViewCallback = Callable[[SessionView], None]


class ProgressReconciler:
    def __init__(
        self,
        job_id: str,
        *,
        client_id: str,
        target_url: str = "",
        store: SessionRecordStore | None = None,
        streams: EventStreamManager | None = None,
        fetcher: TerminalReportFetcher | None = None,
        fallback_poll_interval: float | None = None,
        recovery_poll_interval: float | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.job_id = (job_id or "").strip()
        self.client_id = (client_id or "").strip()
        self.target_url = target_url
        self._store = store or SessionRecordStore()
        self._streams = streams or EventStreamManager()
        self._fetcher = fetcher or TerminalReportFetcher()
        self.fallback_poll_interval = (
            fallback_poll_interval
            if fallback_poll_interval is not None
            else settings.fallback_poll_interval_seconds
        )
        self.recovery_poll_interval = (
            recovery_poll_interval
            if recovery_poll_interval is not None
            else settings.recovery_poll_interval_seconds
        )
        self._sleep = sleep

        self._view = SessionView()
        self._subscribers: list[ViewCallback] = []
        self._tasks: set[asyncio.Task] = set()
        self._poll_task: asyncio.Task | None = None
        self._stream_client_id: str | None = None
        self._settled = asyncio.Event()
        self._closed = False

    # --- Presentation API ---

    @property
    def view(self) -> SessionView:
        return self._view

    @property
    def record(self) -> SessionRecord | None:
        return self._view.record

    def subscribe(self, callback: ViewCallback) -> Callable[[], None]:
        self._subscribers.append(callback)
        callback(self._view)

        def unsubscribe() -> None:
            with suppress(ValueError):
                self._subscribers.remove(callback)

        return unsubscribe

    async def wait_until_settled(self, timeout: float | None = None) -> SessionView:
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self._view

    async def __aenter__(self) -> ProgressReconciler:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # --- Lifecycle ---

    async def activate(self) -> SessionView:
        if not self.job_id:
            logger.error("Cannot track a session without a job id")
            self._fail_input(MissingJobIdError(MISSING_JOB_ID))
            return self._view

        record = self._store.load(self.job_id)
        if record is None:
            record = SessionRecord.pending(self.job_id, target_url=self.target_url, client_id=self.client_id)
            self._store.save(record)
            logger.info(f"Created pending session for job {self.job_id}")
            label = status_label(SessionStatus.PENDING)
        else:
            logger.info(f"Restored session {self.job_id}: {record.status} at {record.progress}%")
            label = status_label(record.status)
        self._publish(record=record, status_label=label)

        if record.status is SessionStatus.DONE:
            if record.has_result:
                self._settled.set()
            else:
                logger.warning(f"Session {self.job_id} is DONE without a result, fetching report")
                self.request_final_report(source="reload")
                self._start_poll(self.fallback_poll_interval or self.recovery_poll_interval)
            return self._view

        if record.status is SessionStatus.ERROR:
            self._publish(error=label, error_retryable=False)
            self._settled.set()
            return self._view

        stream_client = record.client_id or self.client_id
        if not stream_client:
            logger.error(f"Session {self.job_id} has no client id, live updates unavailable")
            self._fail_input(MissingClientIdError(MISSING_CLIENT_ID))
            return self._view

        self._stream_client_id = stream_client
        if self._streams.activate(stream_client, self):
            self._publish(syncing=True)
        self._start_poll(self.fallback_poll_interval)
        return self._view

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._poll_task is not None:
            self._poll_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                with suppress(asyncio.CancelledError):
                    await task
        if self._stream_client_id:
            await self._streams.close(self._stream_client_id)
        self._publish(live_connected=False, syncing=False)

    # --- Stream listener ---

    def is_terminal(self) -> bool:
        record = self._view.record
        return bool(record and record.is_terminal)

    def on_progress(self, event: ProgressEvent) -> None:
        record = self._view.record
        if record is None:
            return
        mapped = map_stage(
            event.stage,
            event.percentage,
            event.message,
            crawled_count=event.crawled_count,
            analyzed_count=event.analyzed_count,
            total_count=event.total_count,
            previous_progress=record.progress,
        )

        if mapped.status is SessionStatus.DONE:
            # DONE is only reached together with the report.
            self._publish(status_label=f"{mapped.label}. {LOADING_REPORT}", syncing=True)
            return

        if not self._apply(mapped.status, mapped.progress, source="stream", label=mapped.label):
            return

        if mapped.status is SessionStatus.ERROR:
            log_service.log_event(
                event_type="job_failed",
                message=mapped.label,
                job_id=self.job_id,
            )
            self._publish(error=mapped.label, error_retryable=False, syncing=False)
            self._settle()
            self._close_stream_later()

    def on_fetch_final(self, trigger: FetchFinalTrigger) -> bool:
        if trigger.job_id and trigger.job_id != self.job_id:
            logger.info(f"Ignoring terminal signal for another job ({trigger.job_id})")
            return False
        if trigger.report is not None:
            self._complete(trigger.report, source="stream")
            return True
        self.request_final_report(source=trigger.source)
        return True

    def on_connection_change(self, connected: bool) -> None:
        self._publish(live_connected=connected, syncing=not connected and not self.is_terminal())

    def on_stream_gave_up(self) -> None:
        logger.warning(f"Live updates for {self.job_id} unavailable, falling back to report fetch")
        self.request_final_report(source="stream-fallback")
        # Nothing else retries once the stream is gone.
        self._start_poll(self.fallback_poll_interval or self.recovery_poll_interval)

    # --- Final report ---

    def request_final_report(self, *, source: str = "manual") -> asyncio.Task | None:
        record = self._view.record
        if record is None or self._closed:
            return None
        if record.status is SessionStatus.DONE and record.has_result:
            return None
        return self._spawn(self._fetch_final(source), name=f"report-fetch-{self.job_id}")

    async def _fetch_final(self, source: str) -> None:
        self._publish(syncing=True)
        try:
            report = await self._fetcher.fetch_report(self.job_id)
        except ReportFetchInFlight:
            logger.debug(f"Report fetch for {self.job_id} already running, dropping {source} request")
            return
        except ReportFetchFailed as e:
            logger.error(f"Final report for {self.job_id} unavailable ({source}): {e}")
            self._publish(error=REPORT_UNAVAILABLE, error_retryable=True, failure=e, syncing=False)
            if self._stream_client_id:
                self._streams.rearm(self._stream_client_id)
            return
        self._complete(report, source=f"report:{source}")

    def _start_poll(self, interval: float) -> None:
        if interval <= 0 or self._closed:
            return
        if self._poll_task is not None and not self._poll_task.done():
            return
        logger.info(f"Polling report for {self.job_id} every {interval:.1f}s")
        self._poll_task = asyncio.create_task(self._poll_loop(interval), name=f"report-poll-{self.job_id}")

    async def _poll_loop(self, interval: float) -> None:
        while not self.is_terminal() and not self._closed:
            await self._sleep(interval)
            if self.is_terminal() or self._closed:
                break
            if self._stream_client_id and self._streams.is_connected(self._stream_client_id):
                continue
            if self._fetcher.is_in_flight(self.job_id):
                continue
            await self._fetch_final("poll")

    # --- Mutation ---

    def _apply(self, status: SessionStatus, progress: int, *, source: str, label: str) -> bool:
        record = self._view.record
        if record is None:
            return False

        rejected: str | None = None
        if record.is_terminal:
            rejected = f"record is {record.status}"
        elif not can_transition(record.status, status):
            rejected = f"illegal transition {record.status} -> {status}"
        elif status is SessionStatus.RUNNING and progress < record.progress:
            rejected = f"progress regression {record.progress} -> {progress}"

        if rejected:
            log_service.log_session_transition(self.job_id, source, status, progress, rejected=rejected)
            return False

        if status in (SessionStatus.DONE, SessionStatus.ERROR):
            progress = 100
        updated = record.model_copy(update={"status": status, "progress": progress})
        self._commit(updated, source=source, status_label=label)
        return True

    def _complete(self, report: dict[str, Any], *, source: str) -> None:
        record = self._view.record
        if record is None:
            return
        if record.status is SessionStatus.ERROR or (record.status is SessionStatus.DONE and record.has_result):
            log_service.log_session_transition(
                self.job_id, source, SessionStatus.DONE, 100, rejected=f"record is {record.status}"
            )
            return

        updated = record.model_copy(
            update={"status": SessionStatus.DONE, "progress": 100, "result": report}
        )
        self._commit(
            updated,
            source=source,
            status_label=STAGE_LABELS[Stage.COMPLETED],
            error=None,
            failure=None,
            syncing=False,
        )
        log_service.log_event(event_type="job_completed", message="Final report loaded", job_id=self.job_id)
        self._settle()
        self._close_stream_later()

    def _commit(self, record: SessionRecord, *, source: str, **view_changes: Any) -> None:
        self._store.save(record)
        log_service.log_session_transition(self.job_id, source, record.status, record.progress)
        self._publish(record=record, **view_changes)

    def _publish(self, **changes: Any) -> None:
        self._view = replace(self._view, **changes)
        for callback in list(self._subscribers):
            callback(self._view)

    def _fail_input(self, exc: AuditWatchError) -> None:
        self._publish(error=str(exc), error_retryable=False, failure=exc, syncing=False)
        self._settle()

    def _settle(self) -> None:
        self._settled.set()
        poll = self._poll_task
        if poll is not None and poll is not asyncio.current_task():
            poll.cancel()

    def _close_stream_later(self) -> None:
        if self._stream_client_id:
            self._spawn(self._streams.close(self._stream_client_id), name=f"close-stream-{self.job_id}")

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
