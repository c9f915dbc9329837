"""
Live rates pipeline.

Scrapes each lender's current page, records a changeset in its history when
the catalog hash moved and then refreshes its current rates file. A failing
lender is logged and counted; the batch carries on. Discontinued lenders are
not scraped.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ratehistory.builder import HistoryBuilder
from ratehistory.catalog import validate_catalog
from ratehistory.config import Settings
from ratehistory.hashing import compute_rates_hash
from ratehistory.health import summarize, write_status
from ratehistory.providers import LenderProvider
from ratehistory.store import CurrentRatesStore, HistoryStore
from ratehistory.timeutil import now_iso

logger = logging.getLogger(__name__)


class CatalogRejected(Exception):
    """Raised when a scraped catalog fails a blocking sanity check."""
    pass


@dataclass
class LiveScrapeOutcome:
    lender_id: str
    rates_count: int
    rates_hash: str
    changed: bool
    history: str           # created | appended | unchanged | anomaly | existing


async def scrape_lender(
    provider: LenderProvider,
    current_store: CurrentRatesStore,
    builder: HistoryBuilder,
    now: Optional[str] = None,
) -> LiveScrapeOutcome:
    """Scrape one lender and persist the result."""
    lender_id = provider.lender_id
    log_extra = {"lender": lender_id, "pipeline": "scrape"}
    now = now or now_iso()

    logger.info(f"scraping {provider.name}", extra={**log_extra, "url": provider.url, "step": "fetch"})
    rates = await provider.scrape()

    check = validate_catalog(lender_id, rates)
    for issue in check.issues:
        logger.warning(issue.message, extra={**log_extra, "error_code": issue.kind})
    if check.has_duplicate_ids:
        raise CatalogRejected(f"{lender_id}: catalog has duplicate rate ids")

    new_hash = compute_rates_hash(rates)
    existing = current_store.load(lender_id)

    if existing is None:
        changed = False
        last_updated = now
        logger.info("no existing rates file, creating one", extra=log_extra)
    elif existing["ratesHash"] != new_hash:
        changed = True
        last_updated = now
        logger.info(
            f"rates changed: {existing['ratesHash'][:12]} -> {new_hash[:12]}",
            extra=log_extra,
        )
    else:
        changed = False
        last_updated = existing["lastUpdatedAt"]
        logger.info(f"rates unchanged ({new_hash[:12]})", extra=log_extra)

    # History first: if the append fails the current file keeps the old hash,
    # so the next scrape still sees the change. A first rates file may follow
    # a harvested history, so it takes the append path too.
    if changed or existing is None:
        history = builder.append_live_changeset(lender_id, rates, new_hash, now)
    elif builder.ensure_history_exists(lender_id, rates, new_hash, now):
        history = "created"
    else:
        history = "existing"

    current_store.save({
        "lenderId": lender_id,
        "lastScrapedAt": now,
        "lastUpdatedAt": last_updated,
        "ratesHash": new_hash,
        "rates": rates,
    })

    return LiveScrapeOutcome(
        lender_id=lender_id,
        rates_count=len(rates),
        rates_hash=new_hash,
        changed=changed,
        history=history,
    )


async def run_all(
    providers: Dict[str, LenderProvider],
    settings: Settings,
    lender_ids: Optional[List[str]] = None,
) -> Dict[str, Optional[str]]:
    """
    Scrape the given lenders (all when `lender_ids` is empty) one after another.

    Returns lender id -> None on success or the error message on failure.
    """
    current_store = CurrentRatesStore(settings.data_dir)
    builder = HistoryBuilder(HistoryStore(settings.history_dir), current_store)

    selected = lender_ids or sorted(lid for lid, p in providers.items() if not p.discontinued)
    outcomes: Dict[str, Optional[str]] = {}

    for lender_id in selected:
        provider = providers.get(lender_id)
        if provider is None:
            outcomes[lender_id] = "unknown lender"
            logger.error("unknown lender", extra={"lender": lender_id, "error_code": "UNKNOWN_LENDER"})
            continue
        if provider.discontinued:
            outcomes[lender_id] = "discontinued lender"
            logger.error("lender is discontinued", extra={"lender": lender_id, "error_code": "DISCONTINUED"})
            continue

        try:
            outcome = await scrape_lender(provider, current_store, builder)
            outcomes[lender_id] = None
            logger.info(
                f"scraped {outcome.rates_count} rates (history: {outcome.history})",
                extra={"lender": lender_id, "step": "done"},
            )
        except Exception as e:
            outcomes[lender_id] = str(e)
            logger.exception(
                "scrape failed",
                extra={"lender": lender_id, "error_code": "SCRAPE_FAIL"},
            )

    ok = [k for k, v in outcomes.items() if v is None]
    failed = {k: v for k, v in outcomes.items() if v is not None}
    logger.info(
        f"scrape complete: {len(ok)}/{len(outcomes)} succeeded"
        + (f", failed: {', '.join(sorted(failed))}" if failed else ""),
        extra={"pipeline": "scrape", "step": "summary"},
    )
    write_status(settings.health_path, **summarize("scrape", outcomes))

    return outcomes

