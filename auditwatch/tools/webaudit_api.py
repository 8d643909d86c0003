"""HTTP boundary to the analysis backend: submission, report fetch, event stream."""
from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import quote

import httpx

from auditwatch.config import settings
from auditwatch.errors import (
    ReportFetchFailed,
    ReportNotYetAvailable,
    StreamTransportError,
    SubmissionError,
)
from auditwatch.models.events import SSEMessage
from auditwatch.models.schemas import CrawlStartRequest, CrawlStartResponse
from auditwatch.services.env_safety import sanitize_tls_environment
from auditwatch.tools.sse import iter_sse_messages


def crawl_url() -> str:
    return f"{settings.api_root}/api/websites/crawl"


def report_url(job_id: str) -> str:
    return f"{settings.api_root}/api/reports/{quote(job_id, safe='')}"


def stream_url(client_id: str) -> str:
    return f"{settings.api_root}/api/sse/connect/{quote(client_id, safe='')}"


def _new_client(**kwargs: Any) -> httpx.AsyncClient:
    sanitize_tls_environment()
    return httpx.AsyncClient(**kwargs)


async def submit_crawl(
    main_url: str,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> CrawlStartResponse:
    """Start a crawl + analysis job for ``main_url``."""
    if not main_url or not main_url.strip():
        raise SubmissionError("A URL is required to start an analysis.")

    body = CrawlStartRequest(main_url=main_url.strip()).model_dump(by_alias=True)

    async def _do_request(client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(crawl_url(), json=body)

    try:
        if http_client is None:
            async with _new_client(timeout=settings.http_timeout_seconds) as client:
                response = await _do_request(client)
        else:
            response = await _do_request(http_client)
    except httpx.HTTPError as e:
        raise SubmissionError(f"Could not reach the analysis server: {e}") from e

    if response.is_error:
        raise SubmissionError(f"Crawl request rejected ({response.status_code}): {response.text[:200]}")

    try:
        parsed = CrawlStartResponse.model_validate(response.json())
    except ValueError as e:
        raise SubmissionError("Crawl response was not valid JSON.") from e

    if not parsed.website_id:
        raise SubmissionError(parsed.message or "The server did not return a job id.")
    return parsed


async def fetch_report(
    job_id: str,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Fetch the final report once. 404 means it is not produced yet."""

    async def _do_request(client: httpx.AsyncClient) -> httpx.Response:
        return await client.get(report_url(job_id))

    try:
        if http_client is None:
            async with _new_client(timeout=settings.http_timeout_seconds) as client:
                response = await _do_request(client)
        else:
            response = await _do_request(http_client)
    except httpx.HTTPError as e:
        raise ReportFetchFailed(f"Report request failed: {e}") from e

    if response.status_code == 404:
        raise ReportNotYetAvailable(f"Report for {job_id} is not available yet")
    if response.is_error:
        raise ReportFetchFailed(
            f"Report request returned {response.status_code}",
            status_code=response.status_code,
        )

    try:
        payload = response.json()
    except ValueError as e:
        raise ReportFetchFailed("Report body was not valid JSON", status_code=response.status_code) from e
    if not isinstance(payload, dict):
        raise ReportFetchFailed("Report body was not a JSON object", status_code=response.status_code)
    return payload


@asynccontextmanager
async def open_event_stream(
    client_id: str,
    last_event_id: str | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncIterator[AsyncIterator[SSEMessage]]:
    """Open the push stream for ``client_id``.

    The connection is released when the context exits, including on
    cancellation.
    """
    headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
    if last_event_id:
        headers["Last-Event-ID"] = last_event_id

    timeout = httpx.Timeout(settings.http_timeout_seconds, read=None)
    owns_client = http_client is None
    client = _new_client(timeout=timeout) if owns_client else http_client
    try:
        try:
            async with client.stream("GET", stream_url(client_id), headers=headers) as response:
                if response.status_code != 200:
                    raise StreamTransportError(f"Event stream returned {response.status_code}")
                yield iter_sse_messages(response.aiter_lines())
        except httpx.HTTPError as e:
            raise StreamTransportError(f"Event stream failed: {e}") from e
    finally:
        if owns_client:
            await client.aclose()
