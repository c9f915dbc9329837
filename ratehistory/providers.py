"""
Lender provider interface and shared helpers for provider authors.

A provider knows how to scrape one lender's live rates page. Providers that
can also parse archived HTML subclass `HistoricalLenderProvider`, which is
what the historical harvester requires.
"""

import hashlib
import importlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from bs4 import BeautifulSoup


@dataclass
class StructureValidation:
    valid: bool
    error: Optional[str] = None


class LenderProvider(ABC):
    lender_id: str
    name: str
    url: str
    discontinued: bool = False     # retired: history kept, never scraped

    @abstractmethod
    async def scrape(self) -> List[dict]:
        """Fetch and parse the live rates page."""

    def supports_historical(self) -> bool:
        return False


class HistoricalLenderProvider(LenderProvider):
    """
    Provider that can parse HTML directly, for archived snapshots.

    legacy_url: an older address of the rates page, queried alongside `url`.
    additional_urls: extra pages whose snapshots are aligned to each main
        snapshot and passed to the parser keyed by URL.
    """

    legacy_url: Optional[str] = None
    additional_urls: Sequence[str] = ()

    def supports_historical(self) -> bool:
        return True

    @abstractmethod
    async def parse_html(self, html: str, additional_htmls: Mapping[str, str]) -> List[dict]:
        """Parse rates out of page HTML."""

    def validate_structure(
        self, html: str, additional_htmls: Mapping[str, str]
    ) -> Optional[StructureValidation]:
        """
        Check that the markup still matches what `parse_html` expects.
        None means the provider does no structure checks.
        """
        return None


def load_providers(target: str) -> Dict[str, LenderProvider]:
    """
    Import a provider registry from "package.module:ATTR".

    ATTR may be a mapping of lender id -> provider or a list of providers.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"expected 'module:ATTR', got {target!r}")

    registry = getattr(importlib.import_module(module_name), attr)
    if isinstance(registry, Mapping):
        return dict(registry)
    return {p.lender_id: p for p in registry}


# ─────────────────────────────────────────────────────────────
# Structure checks
# ─────────────────────────────────────────────────────────────

def structural_fingerprint(html: str, scope: Optional[str] = None) -> Optional[str]:
    """
    Hash of the tag/class sequence under `scope` (a CSS selector; the whole
    page when omitted). Changes when the DOM layout or class names shift,
    ignores text such as rate values. None when `scope` matches nothing.

    Pass the rates block's selector to ignore site chrome such as menus
    and cookie banners.
    """
    root = BeautifulSoup(html, "lxml")
    if scope is not None:
        root = root.select_one(scope)
        if root is None:
            return None

    signature = "|".join(
        f"{el.name}:{' '.join(el.get('class', []))}" for el in root.find_all(True)
    )
    return hashlib.sha1(signature.encode()).hexdigest()


def require_selectors(html: str, selectors: Sequence[str]) -> StructureValidation:
    """Valid when every CSS selector matches at least one element."""
    soup = BeautifulSoup(html, "lxml")
    missing = [sel for sel in selectors if soup.select_one(sel) is None]
    if missing:
        return StructureValidation(False, f"missing expected elements: {', '.join(missing)}")
    return StructureValidation(True)


# ─────────────────────────────────────────────────────────────
# Text parsing
# ─────────────────────────────────────────────────────────────

_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")
_TERM = re.compile(r"(\d+)\s*(?:year|yr)", re.IGNORECASE)
_UPPER = re.compile(r"(?:≤|<=|<|lessthanorequalto|upto)(\d+)%")
_LOWER = re.compile(r"(?:>|&gt;|greaterthan)(\d+)%")
_ANY_PCT = re.compile(r"(\d+)%")


def parse_percentage(text: str) -> Optional[float]:
    """'Rate: 3.45 %' -> 3.45; None if no number is present."""
    match = _NUMBER.search(re.sub(r"\s", "", text))
    return float(match.group(1)) if match else None


def parse_term_from_text(text: str) -> Optional[int]:
    """'3 Year Fixed' -> 3, '5yr' -> 5, 'Variable' -> None."""
    match = _TERM.search(text)
    return int(match.group(1)) if match else None


def parse_ltv_band(text: str, default: Tuple[int, int] = (0, 90)) -> Tuple[int, int]:
    """
    LTV band from a product name or table heading.

        '≤50%'          -> (0, 50)
        '>50% ≤80%'     -> (50, 80)
        '>80%'          -> (80, 90)
        'Fixed Rate'    -> default
    """
    clean = re.sub(r"\s", "", text.lower())
    lower = _LOWER.search(clean)
    upper = _UPPER.search(clean)

    if lower:
        lo = int(lower.group(1))
        if upper:
            return lo, int(upper.group(1))
        # '>50% & 60%' style: the next percentage after the lower bound
        rest = [int(p) for p in _ANY_PCT.findall(clean[lower.end():]) if int(p) > lo]
        if rest:
            return lo, rest[0]
        return lo, default[1] if lo < default[1] else lo + 10
    if upper:
        return 0, int(upper.group(1))
    return default
