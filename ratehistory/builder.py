"""
History construction.

Two writers feed a lender's history file:

  * the live scraper, which appends one changeset whenever the catalog hash
    moves (`append_live_changeset`), and
  * the historical harvester, which rebuilds a history from archived
    snapshots and can splice the existing file onto its tail
    (`build_from_results`).

When the two timelines meet, the splice point is found by hash (the
"connection point"); when they don't, a single bridging changeset closes
the gap.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ratehistory.changeset import (
    compute_diff_operations,
    count_operations,
    reconstruct_rates,
)
from ratehistory.hashing import compute_rates_hash
from ratehistory.store import CurrentRatesStore, HistoryStore
from ratehistory.timeutil import parse_iso

logger = logging.getLogger(__name__)


class MergeError(Exception):
    """Raised when two histories cannot be joined without going backwards in time."""
    pass


@dataclass
class HistoricalScrapeResult:
    timestamp: str            # ISO 8601, UTC
    rates: List[Dict[str, Any]]
    hash: str
    wayback_timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "waybackTimestamp": self.wayback_timestamp,
            "ratesCount": len(self.rates),
            "hash": self.hash,
        }


@dataclass
class BuildReport:
    lender_id: str
    baseline_timestamp: str
    baseline_rates_count: int
    changesets_count: int
    final_hash: str
    merge_strategy: str = "none"
    current_rates_hash: Optional[str] = None
    hashes_match: Optional[bool] = None


def new_history(lender_id: str, rates: List[Dict[str, Any]], rates_hash: str, timestamp: str) -> Dict[str, Any]:
    return {
        "lenderId": lender_id,
        "baseline": {
            "timestamp": timestamp,
            "ratesHash": rates_hash,
            "rates": list(rates),
        },
        "changesets": [],
    }


def tail_hash(history: Dict[str, Any]) -> str:
    """Hash the history claims to end at."""
    if history["changesets"]:
        return history["changesets"][-1]["afterHash"]
    return history["baseline"]["ratesHash"]


class HistoryBuilder:

    def __init__(self, history_store: HistoryStore, current_store: Optional[CurrentRatesStore] = None):
        self.history_store = history_store
        self.current_store = current_store

    # ───────────────────────── LIVE APPENDS ─────────────────────────

    def append_live_changeset(
        self,
        lender_id: str,
        new_rates: List[Dict[str, Any]],
        new_hash: str,
        timestamp: str,
    ) -> str:
        """
        Record one live scrape.

        Returns "created" (first baseline), "appended", "unchanged" (the
        history already ends at `new_hash`; nothing written) or "anomaly"
        (the hash moved but the diff is empty; logged, nothing written).
        """
        log_extra = {"lender": lender_id, "step": "append"}
        existing = self.history_store.load(lender_id)

        if existing is None:
            self.history_store.save(new_history(lender_id, new_rates, new_hash, timestamp))
            logger.info("created baseline", extra=log_extra)
            return "created"

        current_rates = reconstruct_rates(existing)
        if compute_rates_hash(current_rates) == new_hash:
            logger.info("history already at this hash", extra=log_extra)
            return "unchanged"

        operations = compute_diff_operations(current_rates, new_rates)
        if not operations:
            logger.warning(
                "hash changed but diff is empty; changeset not recorded",
                extra={**log_extra, "error_code": "EMPTY_DIFF"},
            )
            return "anomaly"

        existing["changesets"].append({
            "timestamp": timestamp,
            "afterHash": new_hash,
            "operations": operations,
        })
        self.history_store.save(existing)
        logger.info(
            f"appended changeset #{len(existing['changesets'])} ({len(operations)} operations)",
            extra=log_extra,
        )
        return "appended"

    def ensure_history_exists(
        self,
        lender_id: str,
        rates: List[Dict[str, Any]],
        rates_hash: str,
        timestamp: str,
    ) -> bool:
        """Create a baseline if the lender has no history yet. True if one was created."""
        if self.history_store.exists(lender_id):
            return False
        self.history_store.save(new_history(lender_id, rates, rates_hash, timestamp))
        logger.info("created baseline", extra={"lender": lender_id, "step": "ensure"})
        return True

    # ───────────────────────── HISTORICAL BUILDS ─────────────────────────

    def build_from_results(
        self,
        lender_id: str,
        results: Sequence[HistoricalScrapeResult],
        merge_with_existing: bool = False,
        validate_against_current: bool = False,
    ) -> Tuple[Dict[str, Any], BuildReport]:
        """
        Build a history file from harvested results (any order).

        The earliest result is the baseline; each later result whose hash
        differs from its predecessor becomes a changeset. With
        `merge_with_existing`, the stored history is spliced onto the tail.
        Nothing is saved here.
        """
        if not results:
            raise ValueError("Cannot build history from empty results")

        ordered = sorted(results, key=lambda r: parse_iso(r.timestamp))
        first = ordered[0]
        history = new_history(lender_id, first.rates, first.hash, first.timestamp)

        previous = first
        for current in ordered[1:]:
            if current.hash == previous.hash:
                continue

            operations = compute_diff_operations(previous.rates, current.rates)
            if operations:
                history["changesets"].append({
                    "timestamp": current.timestamp,
                    "afterHash": current.hash,
                    "operations": operations,
                })
            else:
                logger.warning(
                    "hash changed but diff is empty; result skipped",
                    extra={"lender": lender_id, "step": "build", "error_code": "EMPTY_DIFF"},
                )
            previous = current

        strategy = "none"
        if merge_with_existing:
            strategy = self._merge_existing(history, previous)

        report = BuildReport(
            lender_id=lender_id,
            baseline_timestamp=history["baseline"]["timestamp"],
            baseline_rates_count=len(history["baseline"]["rates"]),
            changesets_count=len(history["changesets"]),
            final_hash=tail_hash(history),
            merge_strategy=strategy,
        )

        if validate_against_current:
            current = self._load_current(lender_id)
            if current is not None:
                report.current_rates_hash = current["ratesHash"]
                report.hashes_match = report.final_hash == current["ratesHash"]

        return history, report

    def _load_current(self, lender_id: str) -> Optional[Dict[str, Any]]:
        if self.current_store is None:
            return None
        return self.current_store.load(lender_id)

    def _merge_existing(self, history: Dict[str, Any], tail: HistoricalScrapeResult) -> str:
        """Splice the stored history onto `history` in place. Returns the strategy used."""
        lender_id = history["lenderId"]
        log_extra = {"lender": lender_id, "step": "merge"}

        existing = self.history_store.load(lender_id)
        if existing is None:
            logger.info("no existing history to merge", extra=log_extra)
            return "none"

        current = self._load_current(lender_id)
        if current is not None and current["ratesHash"] == tail.hash:
            logger.info("harvested history already reaches current rates, merge skipped", extra=log_extra)
            return "skipped-current"

        if tail.hash == existing["baseline"]["ratesHash"]:
            history["changesets"].extend(existing["changesets"])
            logger.info(
                f"connected at existing baseline, appended {len(existing['changesets'])} changesets",
                extra=log_extra,
            )
            return "connected-baseline"

        for i, changeset in enumerate(existing["changesets"]):
            if changeset["afterHash"] == tail.hash:
                remainder = existing["changesets"][i + 1:]
                history["changesets"].extend(remainder)
                logger.info(
                    f"connected after existing changeset #{i + 1}, appended {len(remainder)} changesets",
                    extra=log_extra,
                )
                return "connected-changeset"

        # True gap: one synthetic changeset from our tail to the existing baseline.
        baseline = existing["baseline"]
        if parse_iso(baseline["timestamp"]) < parse_iso(tail.timestamp):
            raise MergeError(
                f"{lender_id}: existing baseline ({baseline['timestamp']}) is older than the "
                f"harvested tail ({tail.timestamp}) and no connection point exists"
            )

        bridge_ops = compute_diff_operations(tail.rates, baseline["rates"])
        if bridge_ops:
            history["changesets"].append({
                "timestamp": baseline["timestamp"],
                "afterHash": baseline["ratesHash"],
                "operations": bridge_ops,
            })
        else:
            logger.warning(
                "bridge diff is empty despite differing hashes",
                extra={**log_extra, "error_code": "EMPTY_DIFF"},
            )
        history["changesets"].extend(existing["changesets"])
        logger.info(
            f"bridged gap to existing baseline, appended {len(existing['changesets'])} changesets",
            extra=log_extra,
        )
        return "bridged"


def preview_history(history: Dict[str, Any]) -> List[str]:
    """Human-readable summary lines for a history file."""
    baseline = history["baseline"]
    lines = [
        f"History preview for {history['lenderId']}",
        f"Baseline: {baseline['timestamp']}",
        f"  Rates: {len(baseline['rates'])}",
        f"  Hash: {baseline['ratesHash'][:12]}...",
    ]

    if not history["changesets"]:
        lines.append("No changesets (rates unchanged since baseline)")
        return lines

    lines.append(f"Changesets ({len(history['changesets'])}):")
    for changeset in history["changesets"]:
        counts = count_operations(changeset)
        lines.append(f"  {changeset['timestamp']}:")
        lines.append(
            f"    Operations: {counts['add']} adds, {counts['remove']} removes, {counts['update']} updates"
        )
        lines.append(f"    After hash: {changeset['afterHash'][:12]}...")
    return lines
