"""
History integrity check.

For every lender with a history or current rates file, replay the history
and compare the reconstructed hash with the current rates file. Mismatches
are reported, never repaired.

Discontinued lenders keep their history but must not have a rates file.
"""

import logging
from dataclasses import dataclass
from typing import Collection, List, Optional

from ratehistory.changeset import reconstruct_rates
from ratehistory.config import Settings
from ratehistory.hashing import compute_rates_hash
from ratehistory.health import summarize, write_status
from ratehistory.store import CurrentRatesStore, HistoryFileError, HistoryStore

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    lender_id: str
    success: bool
    error: Optional[str] = None
    details: Optional[str] = None


def validate_lender(
    lender_id: str,
    history_store: HistoryStore,
    current_store: CurrentRatesStore,
    discontinued: bool = False,
) -> ValidationResult:
    try:
        history = history_store.load(lender_id)
        rates_file = current_store.load(lender_id)
    except HistoryFileError as e:
        return ValidationResult(lender_id, False, "Unreadable file", str(e))

    if discontinued:
        if current_store.exists(lender_id):
            return ValidationResult(
                lender_id,
                False,
                "Discontinued lender should not have a rates file",
                f"Found {current_store.path_for(lender_id)} but the lender is marked as discontinued.",
            )
        if history is None:
            return ValidationResult(lender_id, True, details="Discontinued lender with no history")
        return ValidationResult(
            lender_id,
            True,
            details=f"Discontinued lender with {len(history['changesets'])} changesets preserved",
        )

    if history is None:
        if rates_file is None:
            return ValidationResult(lender_id, True, details="No history or rates file (not yet scraped)")
        return ValidationResult(
            lender_id,
            False,
            "Rates file exists but no history file",
            "Run the scraper to create history alongside the rates file.",
        )

    if rates_file is None:
        return ValidationResult(
            lender_id, False, "History file exists but no rates file", "Active lenders must have a rates file."
        )

    reconstructed_hash = compute_rates_hash(reconstruct_rates(history))
    changesets = len(history["changesets"])

    if reconstructed_hash != rates_file["ratesHash"]:
        return ValidationResult(
            lender_id,
            False,
            "Reconstructed hash does not match rates file hash",
            f"expected {rates_file['ratesHash']}, got {reconstructed_hash} ({changesets} changesets)",
        )

    return ValidationResult(lender_id, True, details=f"Hash matches ({changesets} changesets)")


def run(
    settings: Settings,
    lender_ids: Optional[List[str]] = None,
    discontinued: Collection[str] = (),
) -> List[ValidationResult]:
    """Validate the given lenders, or every lender found in either store."""
    history_store = HistoryStore(settings.history_dir)
    current_store = CurrentRatesStore(settings.data_dir)

    if not lender_ids:
        lender_ids = sorted(set(history_store.lender_ids()) | set(current_store.lender_ids()))

    results = [
        validate_lender(lid, history_store, current_store, discontinued=lid in discontinued)
        for lid in lender_ids
    ]

    for r in results:
        if r.success:
            logger.info(r.details or "ok", extra={"lender": r.lender_id, "pipeline": "validate"})
        else:
            logger.error(
                f"{r.error}: {r.details}",
                extra={"lender": r.lender_id, "pipeline": "validate", "error_code": "INTEGRITY"},
            )

    passed = sum(r.success for r in results)
    logger.info(
        f"{passed}/{len(results)} lenders passed validation",
        extra={"pipeline": "validate", "step": "summary"},
    )
    write_status(
        settings.health_path,
        **summarize("validate", {r.lender_id: None if r.success else r.error for r in results}),
    )
    return results
