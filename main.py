"""auditwatch - follow a website UX analysis job from the terminal.

Submit a URL, or resume a job by id, and print progress until the final
report arrives. Session state survives restarts in the local store.
"""

import argparse
import asyncio
import sys

from auditwatch.config import settings
from auditwatch.errors import SubmissionError
from auditwatch.models.schemas import ReportSummary
from auditwatch.services.client_identity import load_or_create_client_id
from auditwatch.services.event_stream import EventStreamManager
from auditwatch.services.reconciler import ProgressReconciler, SessionView
from auditwatch.services.report_fetcher import TerminalReportFetcher
from auditwatch.services.session_store import SessionRecordStore
from auditwatch.tools import webaudit_api


def print_view(view: SessionView, last: dict) -> None:
    """Print a line whenever something visible changed."""
    record = view.record
    key = (
        record.status if record else None,
        record.progress if record else None,
        view.status_label,
        view.live_connected,
        view.error,
    )
    if key == last.get("key"):
        return
    last["key"] = key

    if record is None:
        if view.error:
            print(f"[!] {view.error}")
        return

    link = "live" if view.live_connected else ("syncing" if view.syncing else "offline")
    print(f"[{record.progress:3d}%] {record.status:<7} {view.status_label}  ({link})")
    if view.error:
        marker = "~" if view.error_retryable else "!"
        print(f"[{marker}] {view.error}")


def print_summary(view: SessionView) -> None:
    if view.result is None:
        return
    summary = ReportSummary.from_report(view.result)
    print(f"\n{'=' * 50}")
    print("REPORT SUMMARY:")
    print(f"{'=' * 50}")
    print(f"   Website:         {summary.website_url or view.record.target_url or '-'}")
    score = f"{summary.average_score:.1f}" if summary.average_score is not None else "-"
    print(f"   Average score:   {score}")
    print(f"   Overall level:   {summary.overall_level or '-'}")
    print(f"   Severity:        {summary.severity_level or '-'}")
    print(f"   Analyzed URLs:   {summary.total_analyzed_urls if summary.total_analyzed_urls is not None else '-'}")
    for item in summary.recommendations[:5]:
        print(f"   - {item}")


def list_sessions(store: SessionRecordStore) -> None:
    records = store.load_all()
    if not records:
        print("No stored sessions.")
        return
    for record in sorted(records.values(), key=lambda r: r.created_at):
        result = "report" if record.has_result else "-"
        print(
            f"{record.job_id}  {record.status:<7} {record.progress:3d}%  "
            f"{record.created_at:%Y-%m-%d %H:%M}  {result}  {record.target_url}"
        )


async def watch(job_id: str, target_url: str, client_id: str, timeout: float | None) -> int:
    store = SessionRecordStore()
    streams = EventStreamManager()
    last: dict = {}

    try:
        async with ProgressReconciler(
            job_id,
            client_id=client_id,
            target_url=target_url,
            store=store,
            streams=streams,
            fetcher=TerminalReportFetcher(),
        ) as reconciler:
            reconciler.subscribe(lambda view: print_view(view, last))
            await reconciler.activate()
            try:
                view = await reconciler.wait_until_settled(timeout)
            except asyncio.TimeoutError:
                print(f"\n[~] Still running after {timeout}s; resume later with --job-id {job_id}")
                return 2
    finally:
        await streams.close_all()

    print_summary(view)
    return 0 if view.record is not None and view.result is not None else 1


async def run(args: argparse.Namespace) -> int:
    store = SessionRecordStore()
    if args.list:
        list_sessions(store)
        return 0

    job_id = args.job_id
    target_url = args.url or ""
    if not job_id and not target_url:
        print("[!] Either --url or --job-id is required.")
        return 1

    client_id = load_or_create_client_id(settings.client_id_path)
    if not job_id:
        try:
            started = await webaudit_api.submit_crawl(target_url)
        except SubmissionError as e:
            print(f"[!] {e}")
            return 1
        job_id = started.website_id
        target_url = started.main_url or target_url
        print(f"[*] {started.message or 'Crawl started.'} Job id: {job_id}")

    return await watch(job_id, target_url, client_id, args.timeout)


def main():
    parser = argparse.ArgumentParser(description="Follow a website UX analysis job")
    parser.add_argument("--url", "-u", help="Website URL to analyze")
    parser.add_argument("--job-id", "-j", help="Resume an existing job")
    parser.add_argument("--list", "-l", action="store_true", help="List stored sessions")
    parser.add_argument("--timeout", "-t", type=float, default=None, help="Stop watching after N seconds")

    args = parser.parse_args()

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
