"""
Historical rates pipeline.

Replays archived snapshots of a lender's rates page through the provider's
parser, oldest first, and optionally builds (and merges) the lender's
history file from the unique catalogs found.

Per snapshot:
    fetch main page -> fetch aligned additional pages (best effort)
    -> validate structure -> parse -> hash -> dedup -> record | skip

A structure validation failure ends the run: later snapshots share the new
markup and would fail or misparse. Any other per-snapshot failure is
recorded and the run moves on.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ratehistory.builder import (
    BuildReport,
    HistoricalScrapeResult,
    HistoryBuilder,
    MergeError,
    preview_history,
)
from ratehistory.config import Settings
from ratehistory.hashing import compute_rates_hash
from ratehistory.health import write_status
from ratehistory.providers import HistoricalLenderProvider
from ratehistory.store import CurrentRatesStore, HistoryStore
from ratehistory.wayback import (
    RateLimiter,
    RetryPolicy,
    WaybackClient,
    WaybackSnapshot,
    date_to_wayback_format,
    find_closest_snapshot,
    merge_snapshot_lists,
    session,
    timestamp_to_iso,
)

logger = logging.getLogger(__name__)

# Additional pages are matched to a main snapshot within this window.
ALIGN_MAX_DAYS = 30


@dataclass
class ProgressEvent:
    kind: str                  # query | snapshot | fetched | skipped | error | stopped | done ...
    message: str
    lender_id: str
    snapshot: Optional[str] = None
    level: int = logging.INFO


@dataclass
class HistoricalScrapeOptions:
    from_date: Optional[str] = None        # YYYY-MM-DD
    to_date: Optional[str] = None          # YYYY-MM-DD
    max_snapshots: Optional[int] = None
    dry_run: bool = False
    on_error: Optional[Callable[[WaybackSnapshot, Exception], None]] = None


@dataclass
class HistoricalScrapeReport:
    lender_id: str
    url: str
    snapshots_found: int = 0
    snapshots_parsed: int = 0
    snapshots_failed: int = 0
    unique_hashes: int = 0
    results: List[HistoricalScrapeResult] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    snapshots: List[WaybackSnapshot] = field(default_factory=list)
    stopped_early: bool = False
    stop_reason: Optional[str] = None
    merge_error: Optional[str] = None

    def add_error(self, timestamp: str, error: str):
        self.snapshots_failed += 1
        self.errors.append({"timestamp": timestamp, "error": error})


def log_progress(event: ProgressEvent):
    """Default progress sink: the structured logger."""
    logger.log(
        event.level,
        event.message,
        extra={
            "lender": event.lender_id,
            "step": event.kind,
            **({"snapshot": event.snapshot} if event.snapshot else {}),
        },
    )


async def scrape_historical(
    provider: HistoricalLenderProvider,
    client: WaybackClient,
    options: Optional[HistoricalScrapeOptions] = None,
    on_progress: Optional[Callable[[ProgressEvent], None]] = None,
) -> HistoricalScrapeReport:
    """Harvest unique historical catalogs for one lender."""
    options = options or HistoricalScrapeOptions()
    emit_sink = on_progress or log_progress
    lender_id = provider.lender_id

    def emit(kind, message, snapshot=None, level=logging.INFO):
        emit_sink(ProgressEvent(kind, message, lender_id, snapshot, level))

    report = HistoricalScrapeReport(lender_id=lender_id, url=provider.url)

    query = {
        "status_filter": "200",
        "from_date": date_to_wayback_format(options.from_date) if options.from_date else None,
        "to_date": date_to_wayback_format(options.to_date) if options.to_date else None,
        "limit": options.max_snapshots,
    }

    # Index lists are independent; fetch them together. Every query settles
    # before the first failure is raised.
    primary_urls = [provider.url] + ([provider.legacy_url] if provider.legacy_url else [])
    additional_urls = list(provider.additional_urls or ())
    emit("query", f"querying archive index for {len(primary_urls) + len(additional_urls)} URL(s)")

    listings = await asyncio.gather(
        *(client.get_snapshots(u, **query) for u in primary_urls + additional_urls),
        return_exceptions=True,
    )
    for listing in listings:
        if isinstance(listing, BaseException):
            raise listing
    for u, found in zip(primary_urls + additional_urls, listings):
        emit("query", f"found {len(found)} snapshots for {u}")

    snapshots = merge_snapshot_lists(*listings[:len(primary_urls)])
    additional = dict(zip(additional_urls, listings[len(primary_urls):]))

    report.snapshots = snapshots
    report.snapshots_found = len(snapshots)
    emit("query", f"{len(snapshots)} unique snapshots (deduplicated by digest)")

    if options.dry_run:
        for s in snapshots:
            emit("list", f"{timestamp_to_iso(s.timestamp)} digest {s.digest[:8]}", s.timestamp)
        return report

    seen_hashes = set()

    for snapshot in snapshots:
        iso = snapshot.timestamp

        try:
            iso = timestamp_to_iso(snapshot.timestamp)
            emit("snapshot", f"processing snapshot from {iso}", snapshot.timestamp)

            html = await client.fetch_snapshot(snapshot)
            emit("fetched", f"fetched {len(html)} bytes from main URL", snapshot.timestamp)

            additional_htmls = await _fetch_additional(client, additional, snapshot, emit)

            validation = provider.validate_structure(html, additional_htmls)
            if validation is not None:
                if not validation.valid:
                    report.stopped_early = True
                    report.stop_reason = f"Structure validation failed at {iso}: {validation.error}"
                    emit("stopped", report.stop_reason, snapshot.timestamp, logging.WARNING)
                    break
                emit("validated", "structure validation passed", snapshot.timestamp)

            rates = await provider.parse_html(html, additional_htmls)
            emit("parsed", f"parsed {len(rates)} rates", snapshot.timestamp)

            if not rates:
                report.add_error(iso, "No rates found in snapshot")
                emit("error", "no rates found, skipping", snapshot.timestamp, logging.WARNING)
                continue

            rates_hash = compute_rates_hash(rates)
            if rates_hash in seen_hashes:
                emit("skipped", "duplicate rates hash, skipping", snapshot.timestamp)
                continue
            seen_hashes.add(rates_hash)

            report.results.append(HistoricalScrapeResult(
                timestamp=iso,
                rates=rates,
                hash=rates_hash,
                wayback_timestamp=snapshot.timestamp,
            ))
            report.snapshots_parsed += 1
            emit("recorded", f"added result (hash {rates_hash[:8]})", snapshot.timestamp)

        except Exception as e:
            report.add_error(iso, str(e))
            emit("error", f"snapshot failed: {e}", snapshot.timestamp, logging.ERROR)
            if options.on_error is not None:
                options.on_error(snapshot, e)

    report.unique_hashes = len(seen_hashes)
    emit(
        "done",
        f"historical scrape complete: found={report.snapshots_found} parsed={report.snapshots_parsed} "
        f"failed={report.snapshots_failed} unique={report.unique_hashes}"
        + (f" stopped early: {report.stop_reason}" if report.stopped_early else ""),
    )
    return report


async def _fetch_additional(
    client: WaybackClient,
    additional: Dict[str, List[WaybackSnapshot]],
    snapshot: WaybackSnapshot,
    emit,
) -> Dict[str, str]:
    """Fetch the additional page snapshots closest to `snapshot`. Never raises."""
    htmls: Dict[str, str] = {}
    for url, candidates in additional.items():
        closest = find_closest_snapshot(candidates, snapshot.timestamp, ALIGN_MAX_DAYS)
        if closest is None:
            emit("additional", f"no matching snapshot for {url}", snapshot.timestamp, logging.WARNING)
            continue
        try:
            htmls[url] = await client.fetch_snapshot(closest)
            emit(
                "additional",
                f"fetched {len(htmls[url])} bytes from {url} (snapshot {timestamp_to_iso(closest.timestamp)})",
                snapshot.timestamp,
            )
        except Exception as e:
            emit("additional", f"failed to fetch additional URL {url}: {e}", snapshot.timestamp, logging.WARNING)
    return htmls


async def run(
    provider: HistoricalLenderProvider,
    settings: Settings,
    options: HistoricalScrapeOptions,
    build: bool = False,
    merge: bool = False,
):
    """
    Run the historical pipeline for one lender.

    Writes:
      <history_dir>/<lender>.json   when `build` is set and results exist
      health.json                   run summary

    A merge that would move the baseline backwards leaves the history file
    alone and is reported on `report.merge_error`.
    """
    log_extra = {"pipeline": "historical", "lender": provider.lender_id}

    retry = RetryPolicy(attempts=settings.retry_attempts, step=settings.retry_step_seconds)
    limiter = RateLimiter(rate_per_sec=settings.rate_per_sec, capacity=settings.burst)

    async with session(settings.user_agent) as http:
        client = WaybackClient(http, retry=retry, limiter=limiter)
        report = await scrape_historical(provider, client, options)

    for result in report.results:
        logger.info(f"{result.timestamp}: {len(result.rates)} rates (hash {result.hash[:8]})", extra=log_extra)
    for error in report.errors:
        logger.warning(f"{error['timestamp']}: {error['error']}", extra={**log_extra, "error_code": "SNAPSHOT_FAIL"})

    build_report: Optional[BuildReport] = None
    if build and not options.dry_run and report.results:
        history_store = HistoryStore(settings.history_dir)
        builder = HistoryBuilder(history_store, CurrentRatesStore(settings.data_dir))
        try:
            history, build_report = builder.build_from_results(
                provider.lender_id,
                report.results,
                merge_with_existing=merge,
                validate_against_current=True,
            )
        except MergeError as e:
            report.merge_error = str(e)
            logger.error(
                f"merge refused, existing history left untouched: {e}",
                extra={**log_extra, "step": "merge", "error_code": "MERGE_BACKWARDS"},
            )
        else:
            for line in preview_history(history):
                logger.info(line, extra={**log_extra, "step": "preview"})

            if build_report.hashes_match is False:
                logger.warning(
                    "final hash does not match current rates; history may have a gap",
                    extra={**log_extra, "error_code": "HASH_MISMATCH"},
                )
            history_store.save(history)
            logger.info(f"history saved to {history_store.path_for(provider.lender_id)}", extra=log_extra)

    write_status(
        settings.health_path,
        pipeline="historical",
        lender=provider.lender_id,
        found=report.snapshots_found,
        parsed=report.snapshots_parsed,
        failed=report.snapshots_failed,
        stopped_early=report.stopped_early,
        stop_reason=report.stop_reason,
        built=build_report is not None,
        hashes_match=build_report.hashes_match if build_report else None,
        merge_error=report.merge_error,
    )

    return report, build_report
