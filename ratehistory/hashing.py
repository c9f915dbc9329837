"""
Canonical rate records and catalog hashing.

The hash is a change detector, not a security primitive: two catalogs that
hold the same rates (in any order, with array fields in any order) hash
identically, and any semantic change to a tracked field changes the hash.
"""

import hashlib
import json
from typing import Any, Dict, Iterable, List


# Canonical key order. Every tracked field is always present in the
# normalized record, with None standing in for "missing".
RATE_FIELDS = (
    "id",
    "name",
    "lenderId",
    "type",
    "rate",
    "apr",
    "fixedTerm",
    "minLtv",
    "maxLtv",
    "minLoan",
    "buyerTypes",
    "berEligible",
    "newBusiness",
    "perks",
    "warning",
)

# Set-valued fields; sorted before serialization.
SET_FIELDS = frozenset({"buyerTypes", "berEligible", "perks"})


def normalize_value(value: Any) -> Any:
    """
    Normalize one field value for comparison and serialization.

    Integral floats collapse to int (3.0 -> 3) so a catalog read back from
    JSON written by another tool hashes the same. Lists are sorted.
    """
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [normalize_value(v) for v in value]
        return sorted(items, key=_sort_key)
    if isinstance(value, dict):
        return {k: normalize_value(v) for k, v in sorted(value.items())}
    return value


def _sort_key(value: Any) -> str:
    # Mixed-type arrays never occur in practice; JSON text gives a total order.
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def normalize_rate(rate: Dict[str, Any]) -> Dict[str, Any]:
    """Build the canonical record for one rate: fixed key order, explicit nulls."""
    return {field: normalize_value(rate.get(field)) for field in RATE_FIELDS}


def canonical_line(rate: Dict[str, Any]) -> str:
    return json.dumps(
        normalize_rate(rate),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def compute_rates_hash(rates: Iterable[Dict[str, Any]]) -> str:
    """
    Hash a catalog.

    Records are normalized, sorted by id, serialized as compact JSON and
    joined with newlines; the result is the lowercase SHA-256 hex digest of
    the UTF-8 bytes.
    """
    ordered: List[Dict[str, Any]] = sorted(rates, key=lambda r: str(r.get("id")))
    payload = "\n".join(canonical_line(r) for r in ordered)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
