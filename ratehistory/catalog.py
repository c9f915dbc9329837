"""Sanity checks on a freshly scraped catalog before it is persisted."""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List

BTL_BUYER_TYPES = frozenset({"btl", "switcher-btl"})
BTL_MAX_LTV = 70


@dataclass
class CatalogIssue:
    kind: str          # duplicate-id | mixed-buyer-types | btl-ltv-exceeded
    rate_id: str
    message: str


@dataclass
class CatalogValidation:
    lender_id: str
    total_rates: int
    issues: List[CatalogIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    @property
    def has_duplicate_ids(self) -> bool:
        return any(i.kind == "duplicate-id" for i in self.issues)


def validate_catalog(lender_id: str, rates: List[Dict[str, Any]]) -> CatalogValidation:
    result = CatalogValidation(lender_id=lender_id, total_rates=len(rates))

    for rate_id, count in Counter(r["id"] for r in rates).items():
        if count > 1:
            result.issues.append(CatalogIssue(
                "duplicate-id", rate_id, f'Duplicate ID found: "{rate_id}" appears {count} times'
            ))

    for rate in rates:
        buyer_types = set(rate.get("buyerTypes") or ())
        btl = buyer_types & BTL_BUYER_TYPES
        if btl and buyer_types - BTL_BUYER_TYPES:
            result.issues.append(CatalogIssue(
                "mixed-buyer-types",
                rate["id"],
                f'Rate "{rate["id"]}" mixes BTL and non-BTL buyer types: [{", ".join(sorted(buyer_types))}]',
            ))
        elif btl and rate.get("maxLtv", 0) > BTL_MAX_LTV:
            result.issues.append(CatalogIssue(
                "btl-ltv-exceeded",
                rate["id"],
                f'BTL rate "{rate["id"]}" has maxLtv {rate["maxLtv"]}%, but BTL maximum is {BTL_MAX_LTV}%',
            ))

    return result
