from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator

from auditwatch.models.events import SSEMessage


def _split_field(line: str) -> tuple[str, str]:
    name, sep, value = line.partition(":")
    if not sep:
        return line, ""
    if value.startswith(" "):
        value = value[1:]
    return name, value


async def iter_sse_messages(lines: AsyncIterable[str]) -> AsyncIterator[SSEMessage]:
    """Parse text/event-stream lines into dispatched messages.

    A blank line dispatches the buffered message. Comment lines (leading ":")
    are keep-alives and ignored. Messages with no data lines, and a
    trailing message not terminated by a blank line, are dropped.
    """
    event = ""
    data_lines: list[str] = []
    event_id: str | None = None
    retry_ms: int | None = None

    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                yield SSEMessage(
                    event=event or "message",
                    data="\n".join(data_lines),
                    id=event_id,
                    retry_ms=retry_ms,
                )
            event, data_lines, event_id, retry_ms = "", [], None, None
            continue
        if line.startswith(":"):
            continue

        name, value = _split_field(line)
        if name == "event":
            event = value
        elif name == "data":
            data_lines.append(value)
        elif name == "id":
            if "\0" not in value:
                event_id = value or None
        elif name == "retry":
            if value.isdigit():
                retry_ms = int(value)
