"""Push-stream lifecycle: one live connection per client id.

State machine per client::

    IDLE → CONNECTING → OPEN → RECEIVING ⇄ RECONNECTING → CLOSED

Reconnects back off exponentially (initial delay × factor, capped) and give up
after a bounded number of consecutive failures. Duplicate deliveries are
suppressed by SSE event id and by comparing each progress event against the
previous one.
"""
from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, suppress
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from loguru import logger

from auditwatch.config import settings
from auditwatch.errors import StreamTransportError
from auditwatch.models.events import (
    CompleteEvent,
    FetchFinalTrigger,
    ProgressEvent,
    SSEMessage,
    UnrecognizedEvent,
)
from auditwatch.services import streaming
from auditwatch.services.stage_mapper import Stage, classify_stage
from auditwatch.tools import webaudit_api

OpenStream = Callable[[str, str | None], AbstractAsyncContextManager[AsyncIterator[SSEMessage]]]
Sleep = Callable[[float], Awaitable[Any]]


class StreamState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECEIVING = "receiving"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


LIVE_STATES = frozenset(
    {StreamState.CONNECTING, StreamState.OPEN, StreamState.RECEIVING, StreamState.RECONNECTING}
)


class StreamListener(Protocol):
    def is_terminal(self) -> bool: ...

    def on_progress(self, event: ProgressEvent) -> None: ...

    def on_fetch_final(self, trigger: FetchFinalTrigger) -> bool: ...

    def on_connection_change(self, connected: bool) -> None: ...

    def on_stream_gave_up(self) -> None: ...


@dataclass
class _Connection:
    client_id: str
    listener: StreamListener
    state: StreamState = StreamState.IDLE
    task: asyncio.Task | None = None
    connected: bool = False
    closing: bool = False
    failures: int = 0
    last_event_id: str | None = None
    server_retry_seconds: float | None = None
    seen_ids: deque[str] = field(default_factory=deque)
    last_progress_key: tuple[Any, ...] | None = None
    final_triggered: bool = False


def _default_open_stream(client_id: str, last_event_id: str | None) -> AbstractAsyncContextManager:
    return webaudit_api.open_event_stream(client_id, last_event_id)


class EventStreamManager:
    def __init__(
        self,
        open_stream: OpenStream | None = None,
        *,
        initial_delay: float | None = None,
        backoff_factor: float | None = None,
        max_delay: float | None = None,
        max_attempts: int | None = None,
        seen_ids_limit: int | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._open_stream = open_stream or _default_open_stream
        self.initial_delay = (
            initial_delay if initial_delay is not None else settings.stream_reconnect_initial_delay_seconds
        )
        self.backoff_factor = (
            backoff_factor if backoff_factor is not None else settings.stream_reconnect_backoff_factor
        )
        self.max_delay = max_delay if max_delay is not None else settings.stream_reconnect_max_delay_seconds
        self.max_attempts = max_attempts if max_attempts is not None else settings.stream_reconnect_max_attempts
        self.seen_ids_limit = seen_ids_limit if seen_ids_limit is not None else settings.stream_seen_event_ids
        self._sleep = sleep
        self._connections: dict[str, _Connection] = {}

    # --- Public API ---

    def state(self, client_id: str) -> StreamState:
        conn = self._connections.get(client_id)
        return conn.state if conn else StreamState.IDLE

    def is_connected(self, client_id: str) -> bool:
        conn = self._connections.get(client_id)
        return bool(conn and conn.connected)

    def activate(self, client_id: str, listener: StreamListener) -> bool:
        """Start streaming for ``client_id``. Returns False when nothing was started."""
        if not client_id or not client_id.strip():
            logger.warning("Refusing to open event stream without a client id")
            return False
        if listener.is_terminal():
            logger.debug(f"Session for client {client_id} is terminal, not connecting")
            return False

        existing = self._connections.get(client_id)
        if existing and existing.state in LIVE_STATES:
            logger.debug(f"Event stream for {client_id} already {existing.state}, activate is a no-op")
            return False

        conn = _Connection(client_id=client_id, listener=listener, state=StreamState.CONNECTING)
        self._connections[client_id] = conn
        conn.task = asyncio.create_task(self._run(conn), name=f"event-stream-{client_id}")
        conn.task.add_done_callback(self._log_task_failure)
        return True

    def rearm(self, client_id: str) -> None:
        """Accept terminal signals again after a failed final fetch."""
        conn = self._connections.get(client_id)
        if conn is not None:
            conn.final_triggered = False
            conn.last_progress_key = None

    async def close(self, client_id: str) -> None:
        conn = self._connections.pop(client_id, None)
        if conn is None:
            return
        conn.closing = True
        task = conn.task
        if task is None or task.done():
            conn.state = StreamState.CLOSED
            return
        if task is asyncio.current_task():
            # Closing from inside a listener callback: the loop exits on its own.
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info(f"Event stream for {client_id} closed")

    async def close_all(self) -> None:
        for client_id in list(self._connections):
            await self.close(client_id)

    # --- Internals ---

    def reconnect_delay(self, failures: int, server_retry: float | None = None) -> float:
        base = server_retry if server_retry is not None else self.initial_delay
        delay = base * (self.backoff_factor ** max(failures - 1, 0))
        return min(self.max_delay, delay)

    @staticmethod
    def _log_task_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Event stream task {task.get_name()} crashed")

    def _set_connected(self, conn: _Connection, connected: bool) -> None:
        if conn.connected == connected:
            return
        conn.connected = connected
        conn.listener.on_connection_change(connected)

    def _should_stop(self, conn: _Connection) -> bool:
        return conn.closing or conn.listener.is_terminal()

    async def _run(self, conn: _Connection) -> None:
        try:
            while not self._should_stop(conn):
                conn.state = StreamState.CONNECTING
                try:
                    async with self._open_stream(conn.client_id, conn.last_event_id) as messages:
                        conn.state = StreamState.OPEN
                        self._set_connected(conn, True)
                        logger.info(f"Event stream connected for client {conn.client_id}")
                        async for message in messages:
                            conn.state = StreamState.RECEIVING
                            # Only a connection that delivers counts as recovered.
                            conn.failures = 0
                            try:
                                self._dispatch(conn, message)
                            except Exception:
                                logger.opt(exception=True).error(
                                    f"Failed to handle '{message.event}' event for {conn.client_id}, discarding it"
                                )
                            if self._should_stop(conn):
                                break
                    reason = "stream ended by server"
                except StreamTransportError as e:
                    reason = str(e)

                self._set_connected(conn, False)
                if self._should_stop(conn):
                    break

                conn.failures += 1
                if self.max_attempts and conn.failures >= self.max_attempts:
                    logger.error(
                        f"Event stream for {conn.client_id} failed {conn.failures} times in a row, giving up"
                    )
                    conn.listener.on_stream_gave_up()
                    break

                conn.state = StreamState.RECONNECTING
                delay = self.reconnect_delay(conn.failures, conn.server_retry_seconds)
                logger.warning(
                    f"Event stream for {conn.client_id} dropped ({reason}), reconnecting in {delay:.1f}s"
                )
                await self._sleep(delay)
        finally:
            conn.state = StreamState.CLOSED
            if conn.connected:
                conn.connected = False
                conn.listener.on_connection_change(False)

    def _is_duplicate_id(self, conn: _Connection, event_id: str | None) -> bool:
        if event_id is None:
            return False
        if event_id in conn.seen_ids:
            return True
        conn.seen_ids.append(event_id)
        while len(conn.seen_ids) > self.seen_ids_limit:
            conn.seen_ids.popleft()
        conn.last_event_id = event_id
        return False

    def _dispatch(self, conn: _Connection, message: SSEMessage) -> None:
        if message.retry_ms is not None:
            conn.server_retry_seconds = message.retry_ms / 1000
        if self._is_duplicate_id(conn, message.id):
            logger.debug(f"Dropping duplicate event id {message.id} for {conn.client_id}")
            return

        event = streaming.decode_message(message)

        if isinstance(event, UnrecognizedEvent):
            logger.warning(
                f"Discarding unrecognized '{event.event}' event for {conn.client_id}: "
                f"{event.reason} ({event.raw[:120]!r})"
            )
            return

        if conn.final_triggered:
            logger.debug(f"Ignoring {event.kind.value} event after terminal signal for {conn.client_id}")
            return

        if isinstance(event, CompleteEvent):
            self._trigger_final(
                conn, FetchFinalTrigger(job_id=event.job_id, report=event.report, source="complete")
            )
            return

        if isinstance(event, ProgressEvent):
            key = event.dedupe_key()
            if key == conn.last_progress_key:
                logger.debug(f"Dropping repeated progress event for {conn.client_id}")
                return
            conn.last_progress_key = key
            conn.listener.on_progress(event)
            if event.reports_finished or classify_stage(event.stage) is Stage.COMPLETED:
                self._trigger_final(conn, FetchFinalTrigger(source="progress"))

    def _trigger_final(self, conn: _Connection, trigger: FetchFinalTrigger) -> None:
        if conn.listener.is_terminal():
            return
        if conn.listener.on_fetch_final(trigger):
            conn.final_triggered = True
