from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from auditwatch.config import settings
from auditwatch.errors import ReportFetchInFlight, ReportNotYetAvailable, ReportRetriesExhausted
from auditwatch.tools import webaudit_api

FetchOnce = Callable[[str], Awaitable[dict[str, Any]]]
Sleep = Callable[[float], Awaitable[Any]]


class TerminalReportFetcher:
    """Retrying fetch of the final report with one in-flight slot per job.

    ``fetch_report`` retries only while the server answers "not yet
    available", with a fixed delay and a hard attempt ceiling. Any other
    failure propagates on the first occurrence. A call for a job whose slot
    is occupied is rejected with ``ReportFetchInFlight`` without touching
    the network.
    """

    def __init__(
        self,
        fetch_once: FetchOnce | None = None,
        *,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._fetch_once = fetch_once or webaudit_api.fetch_report
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.report_fetch_max_attempts)
        self.retry_delay = max(
            0.0, retry_delay if retry_delay is not None else settings.report_fetch_retry_delay_seconds
        )
        self._sleep = sleep
        self._in_flight: set[str] = set()

    def is_in_flight(self, job_id: str) -> bool:
        return job_id in self._in_flight

    async def fetch_report(self, job_id: str) -> dict[str, Any]:
        if job_id in self._in_flight:
            raise ReportFetchInFlight(job_id)
        self._in_flight.add(job_id)
        try:
            return await self._fetch_with_retry(job_id)
        finally:
            self._in_flight.discard(job_id)

    async def _fetch_with_retry(self, job_id: str) -> dict[str, Any]:
        for attempt in range(1, self.max_attempts + 1):
            logger.debug(f"Requesting report for {job_id} (attempt {attempt}/{self.max_attempts})")
            try:
                report = await self._fetch_once(job_id)
            except ReportNotYetAvailable:
                if attempt >= self.max_attempts:
                    break
                logger.info(f"Report for {job_id} not ready, retrying in {self.retry_delay}s")
                await self._sleep(self.retry_delay)
                continue
            logger.info(f"Final report for {job_id} loaded after {attempt} attempt(s)")
            return report

        logger.warning(f"Giving up on report for {job_id} after {self.max_attempts} attempts")
        raise ReportRetriesExhausted(job_id, self.max_attempts)
