from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from auditwatch.models.events import FetchFinalTrigger, ProgressEvent, SSEMessage
from auditwatch.services.event_stream import EventStreamManager, StreamState
from stream_fakes import FakeEventStream, complete, no_sleep, progress, settle


@dataclass
class RecordingListener:
    terminal: bool = False
    accept_final: bool = True
    progress_events: list[ProgressEvent] = field(default_factory=list)
    triggers: list[FetchFinalTrigger] = field(default_factory=list)
    connection_changes: list[bool] = field(default_factory=list)
    gave_up: int = 0

    def is_terminal(self) -> bool:
        return self.terminal

    def on_progress(self, event: ProgressEvent) -> None:
        self.progress_events.append(event)

    def on_fetch_final(self, trigger: FetchFinalTrigger) -> bool:
        self.triggers.append(trigger)
        return self.accept_final

    def on_connection_change(self, connected: bool) -> None:
        self.connection_changes.append(connected)

    def on_stream_gave_up(self) -> None:
        self.gave_up += 1


def _manager(stream: FakeEventStream, **kwargs) -> EventStreamManager:
    kwargs.setdefault("sleep", no_sleep)
    kwargs.setdefault("max_attempts", 5)
    return EventStreamManager(stream, **kwargs)


@pytest.mark.asyncio
async def test_activate_is_idempotent_per_client():
    stream = FakeEventStream()
    manager = _manager(stream)
    listener = RecordingListener()

    assert manager.activate("client-1", listener) is True
    assert manager.activate("client-1", listener) is False
    await settle(lambda: manager.is_connected("client-1"))

    assert stream.opened == 1
    assert manager.state("client-1") is StreamState.OPEN
    await manager.close("client-1")
    assert stream.live == 0


@pytest.mark.asyncio
async def test_does_not_connect_for_terminal_session_or_missing_client():
    stream = FakeEventStream()
    manager = _manager(stream)

    assert manager.activate("client-1", RecordingListener(terminal=True)) is False
    assert manager.activate("", RecordingListener()) is False
    assert manager.state("client-1") is StreamState.IDLE
    assert stream.opened == 0


@pytest.mark.asyncio
async def test_malformed_message_does_not_tear_down_connection():
    stream = FakeEventStream([[SSEMessage(event="progress", data="{oops"), progress("ANALYZING", 61)]])
    manager = _manager(stream)
    listener = RecordingListener()

    manager.activate("client-1", listener)
    await settle(lambda: listener.progress_events)

    assert [e.percentage for e in listener.progress_events] == [61.0]
    assert manager.is_connected("client-1")
    assert manager.state("client-1") is StreamState.RECEIVING
    await manager.close("client-1")


@pytest.mark.asyncio
async def test_non_finite_counts_do_not_tear_down_connection():
    stream = FakeEventStream(
        [[progress("CRAWLING", crawledCount=float("inf"), totalCount=10), progress("ANALYZING", 60)]]
    )
    manager = _manager(stream)
    listener = RecordingListener()

    manager.activate("client-1", listener)
    await settle(lambda: len(listener.progress_events) == 2)

    assert listener.progress_events[0].crawled_count is None
    assert listener.progress_events[1].percentage == 60.0
    assert manager.is_connected("client-1")
    assert stream.opened == 1
    await manager.close("client-1")


@pytest.mark.asyncio
async def test_listener_failure_discards_only_that_message():
    stream = FakeEventStream([[progress("ANALYZING", 50), progress("ANALYZING", 60)]])
    manager = _manager(stream)
    listener = RecordingListener()
    received: list[ProgressEvent] = []

    def fail_once(event: ProgressEvent) -> None:
        received.append(event)
        if len(received) == 1:
            raise RuntimeError("listener bug")

    listener.on_progress = fail_once
    manager.activate("client-1", listener)
    await settle(lambda: len(received) == 2)

    assert received[1].percentage == 60.0
    assert manager.is_connected("client-1")
    assert stream.opened == 1
    await manager.close("client-1")


@pytest.mark.asyncio
async def test_duplicates_are_suppressed_by_id_and_by_content():
    stream = FakeEventStream(
        [
            [
                progress("CRAWLING", event_id="1", crawledCount=1, totalCount=4),
                progress("CRAWLING", event_id="1", crawledCount=1, totalCount=4),
                progress("CRAWLING", crawledCount=2, totalCount=4),
                progress("CRAWLING", crawledCount=2, totalCount=4),
                progress("CRAWLING", event_id="2", crawledCount=3, totalCount=4),
            ]
        ]
    )
    manager = _manager(stream)
    listener = RecordingListener()

    manager.activate("client-1", listener)
    await settle(lambda: len(listener.progress_events) == 3)

    assert [e.crawled_count for e in listener.progress_events] == [1, 2, 3]
    await manager.close("client-1")


@pytest.mark.asyncio
async def test_single_fetch_final_trigger_then_events_ignored():
    stream = FakeEventStream(
        [
            [
                progress("ANALYZING", 100),
                complete({"websiteId": "job-1"}),
                progress("ANALYZING", 100, message="again"),
            ]
        ]
    )
    manager = _manager(stream)
    listener = RecordingListener()

    manager.activate("client-1", listener)
    await settle(lambda: manager.state("client-1") is StreamState.RECEIVING)
    await settle(turns=20)

    assert len(listener.triggers) == 1
    assert listener.triggers[0].source == "progress"
    assert len(listener.progress_events) == 1
    await manager.close("client-1")


@pytest.mark.asyncio
async def test_rejected_trigger_keeps_listening():
    stream = FakeEventStream([[complete({"websiteId": "other-job"}), complete({"websiteId": "job-1"})]])
    manager = _manager(stream)
    listener = RecordingListener(accept_final=False)

    manager.activate("client-1", listener)
    await settle(lambda: len(listener.triggers) == 2)

    assert [t.job_id for t in listener.triggers] == ["other-job", "job-1"]
    await manager.close("client-1")


@pytest.mark.asyncio
async def test_rearm_accepts_a_new_terminal_signal():
    stream = FakeEventStream([[complete({"websiteId": "job-1"})]])
    manager = _manager(stream)
    listener = RecordingListener()
    manager.activate("client-1", listener)
    await settle(lambda: len(listener.triggers) == 1)

    manager.rearm("client-1")
    await manager.close("client-1")

    assert manager.state("client-1") is StreamState.IDLE


@pytest.mark.asyncio
async def test_reconnects_with_backoff_and_resends_last_event_id(transport_error):
    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    stream = FakeEventStream([[progress("CRAWLING", event_id="5")], transport_error, transport_error], end_after_messages=True)
    manager = _manager(stream, sleep=record_sleep, initial_delay=1.0, backoff_factor=2.0, max_delay=3.0)
    listener = RecordingListener()

    manager.activate("client-1", listener)
    await settle(lambda: manager.is_connected("client-1") and stream.opened == 2)

    # ended by server (1), refused (2), refused (3)
    assert delays == [1.0, 2.0, 3.0]
    assert stream.last_event_ids == [None, "5", "5", "5"]
    assert listener.connection_changes == [True, False, True]
    await manager.close("client-1")
    assert listener.connection_changes[-1] is False


@pytest.mark.asyncio
async def test_gives_up_after_consecutive_failures(transport_error):
    stream = FakeEventStream([transport_error] * 10)
    manager = _manager(stream, max_attempts=3)
    listener = RecordingListener()

    manager.activate("client-1", listener)
    await settle(lambda: manager.state("client-1") is StreamState.CLOSED)

    assert listener.gave_up == 1
    assert len(stream.last_event_ids) == 3


@pytest.mark.asyncio
async def test_connections_that_end_without_messages_count_as_failures():
    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    stream = FakeEventStream([[] for _ in range(50)], end_after_messages=True)
    manager = _manager(stream, sleep=record_sleep, initial_delay=1.0, backoff_factor=2.0, max_delay=100.0)
    listener = RecordingListener()

    manager.activate("client-1", listener)
    await settle(lambda: manager.state("client-1") is StreamState.CLOSED)

    assert listener.gave_up == 1
    assert stream.opened == 5
    assert delays == [1.0, 2.0, 4.0, 8.0]


@pytest.mark.asyncio
async def test_close_all_stops_every_connection():
    stream = FakeEventStream()
    manager = _manager(stream)

    manager.activate("client-1", RecordingListener())
    manager.activate("client-2", RecordingListener())
    await settle(lambda: stream.opened == 2)

    await manager.close_all()

    assert stream.live == 0
    assert manager.state("client-1") is StreamState.IDLE
    assert manager.state("client-2") is StreamState.IDLE


@pytest.mark.asyncio
async def test_terminal_event_closes_instead_of_reconnecting(transport_error):
    listener = RecordingListener()
    stream = FakeEventStream([[progress("ERROR", message="crawler failed")], transport_error], end_after_messages=True)
    manager = _manager(stream)

    def terminal_on_error(event: ProgressEvent) -> None:
        listener.progress_events.append(event)
        listener.terminal = True

    listener.on_progress = terminal_on_error
    manager.activate("client-1", listener)
    await settle(lambda: manager.state("client-1") is StreamState.CLOSED)

    assert len(stream.last_event_ids) == 1
    assert stream.live == 0


def test_reconnect_delay_grows_and_caps():
    manager = EventStreamManager(initial_delay=0.8, backoff_factor=1.6, max_delay=10.0)

    delays = [manager.reconnect_delay(n) for n in range(1, 10)]

    assert delays[0] == pytest.approx(0.8)
    assert delays[1] == pytest.approx(1.28)
    assert delays == sorted(delays)
    assert delays[-1] == 10.0
    assert manager.reconnect_delay(1, server_retry=3.0) == pytest.approx(3.0)
