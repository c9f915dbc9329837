"""
Diff two catalogs into add/remove/update operations, and replay a history
file (baseline + changesets) back into a catalog.
"""

import logging
from typing import Any, Dict, List, Optional

from ratehistory.hashing import RATE_FIELDS, normalize_value
from ratehistory.timeutil import parse_iso

logger = logging.getLogger(__name__)


# Every tracked field except the business key.
DIFF_FIELDS = tuple(f for f in RATE_FIELDS if f != "id")


def deep_equal(a: Any, b: Any) -> bool:
    """
    Order-insensitive deep equality.

    Arrays compare as sorted copies, objects key by key; a missing value and
    None are the same thing, and so are 3 and 3.0.
    """
    return normalize_value(a) == normalize_value(b)


def compute_field_changes(old_rate: Dict[str, Any], new_rate: Dict[str, Any]) -> Dict[str, Any]:
    """Return `{"id": ..., <changed field>: <new value>, ...}`."""
    changes: Dict[str, Any] = {"id": new_rate["id"]}
    for field in DIFF_FIELDS:
        if not deep_equal(old_rate.get(field), new_rate.get(field)):
            changes[field] = new_rate.get(field)
    return changes


def compute_diff_operations(
    old_rates: List[Dict[str, Any]],
    new_rates: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Compute the operations that turn `old_rates` into `new_rates`.

    Adds and updates follow the order of `new_rates`; removes are appended
    afterwards in the order of `old_rates`. A rate whose tracked fields are
    all equal produces nothing.
    """
    old_by_id = {r["id"]: r for r in old_rates}
    new_by_id = {r["id"]: r for r in new_rates}
    operations: List[Dict[str, Any]] = []

    for rate_id, new_rate in new_by_id.items():
        old_rate = old_by_id.get(rate_id)
        if old_rate is None:
            operations.append({"op": "add", "rate": new_rate})
            continue

        changes = compute_field_changes(old_rate, new_rate)
        # id is always present
        if len(changes) > 1:
            operations.append({"op": "update", "id": rate_id, "changes": changes})

    for rate_id in old_by_id:
        if rate_id not in new_by_id:
            operations.append({"op": "remove", "id": rate_id})

    return operations


def apply_operations(rate_map: Dict[str, Dict[str, Any]], operations: List[Dict[str, Any]]):
    """Apply operations in place onto an id -> rate map."""
    for op in operations:
        kind = op["op"]
        if kind == "add":
            rate = op["rate"]
            rate_map[rate["id"]] = dict(rate)
        elif kind == "remove":
            rate_map.pop(op["id"], None)
        elif kind == "update":
            existing = rate_map.get(op["id"])
            if existing is None:
                logger.debug("update for unknown rate dropped", extra={"step": "replay"})
                continue
            rate_map[op["id"]] = {**existing, **op["changes"]}
        else:
            raise ValueError(f"unknown operation {kind!r}")


def reconstruct_rates(history: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Replay every changeset onto the baseline and return the resulting catalog.

    Removing an absent id is a no-op and an update for an absent id is dropped,
    so replay tolerates drift instead of failing. The input is not mutated.
    """
    return reconstruct_at(history, None)


def reconstruct_at(history: Dict[str, Any], timestamp: Optional[str]) -> List[Dict[str, Any]]:
    """
    Catalog as of `timestamp` (ISO 8601): the baseline plus every changeset
    stamped at or before it. `None` means "current". A timestamp earlier than
    the baseline gives an empty catalog.
    """
    baseline = history["baseline"]
    cutoff = parse_iso(timestamp) if timestamp is not None else None

    if cutoff is not None and parse_iso(baseline["timestamp"]) > cutoff:
        return []

    rate_map = {r["id"]: dict(r) for r in baseline["rates"]}
    for changeset in history.get("changesets", []):
        if cutoff is not None and parse_iso(changeset["timestamp"]) > cutoff:
            break
        apply_operations(rate_map, changeset["operations"])

    return list(rate_map.values())


def count_operations(changeset: Dict[str, Any]) -> Dict[str, int]:
    counts = {"add": 0, "remove": 0, "update": 0}
    for op in changeset["operations"]:
        counts[op["op"]] += 1
    return counts
