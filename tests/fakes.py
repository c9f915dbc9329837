"""Test doubles shared across the suite: rate factory, fake aiohttp session, scripted provider."""

from typing import Any, Dict, List, Optional

from ratehistory.providers import HistoricalLenderProvider, LenderProvider, StructureValidation


def make_rate(rate_id: str, **overrides) -> Dict[str, Any]:
    """A schema-valid rate with sensible defaults."""
    rate = {
        "id": rate_id,
        "name": f"{rate_id} rate",
        "lenderId": "test",
        "type": "fixed",
        "rate": 3.5,
        "apr": 3.7,
        "fixedTerm": 3,
        "minLtv": 0,
        "maxLtv": 80,
        "buyerTypes": ["ftb", "mover"],
        "perks": [],
    }
    rate.update(overrides)
    return rate


# ─────────────────────────────────────────────────────────────
# Fake aiohttp transport
# ─────────────────────────────────────────────────────────────

class FakeResponse:
    def __init__(self, status: int = 200, payload: Any = None, text: str = ""):
        self.status = status
        self.reason = {200: "OK", 404: "Not Found", 503: "Service Unavailable"}.get(status, "")
        self._payload = payload
        self._text = text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type=None):
        return self._payload

    async def text(self):
        return self._text


class FakeSession:
    """
    Stand-in for aiohttp.ClientSession.get().

    `routes` maps a URL to a list of responses (or exceptions) served in
    order; the last entry repeats. CDX queries are keyed by the `url` param
    as "cdx:<url>".
    """

    def __init__(self, routes: Optional[Dict[str, List[Any]]] = None):
        self.routes = routes or {}
        self.calls: List[str] = []

    def get(self, url, params=None, **kwargs):
        key = f"cdx:{params['url']}" if params and "url" in params else url
        self.calls.append(key)
        queue = self.routes.get(key)
        if not queue:
            return FakeResponse(404)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        return item


def cdx_rows(*snapshots):
    """CDX JSON table: header row plus (timestamp, url, digest) entries."""
    rows = [["timestamp", "original", "mimetype", "statuscode", "digest"]]
    for timestamp, url, digest in snapshots:
        rows.append([timestamp, url, "text/html", "200", digest])
    return rows


def archived(timestamp: str, url: str) -> str:
    return f"https://web.archive.org/web/{timestamp}id_/{url}"


# ─────────────────────────────────────────────────────────────
# Providers
# ─────────────────────────────────────────────────────────────

class ScriptedProvider(HistoricalLenderProvider):
    """
    Historical provider whose parse results are keyed by page HTML.

    `catalogs` maps html -> rates; `invalid` is a set of html bodies whose
    structure check fails.
    """

    lender_id = "test"
    name = "Test Bank"
    url = "https://bank.example/rates"

    def __init__(self, catalogs=None, invalid=(), validates=True,
                 legacy_url=None, additional_urls=(), live=None):
        self.catalogs = catalogs or {}
        self.invalid = set(invalid)
        self.validates = validates
        self.legacy_url = legacy_url
        self.additional_urls = tuple(additional_urls)
        self.live = live
        self.parsed = []

    async def scrape(self):
        if isinstance(self.live, BaseException):
            raise self.live
        return self.live

    async def parse_html(self, html, additional_htmls):
        self.parsed.append((html, dict(additional_htmls)))
        result = self.catalogs[html]
        if isinstance(result, BaseException):
            raise result
        return result

    def validate_structure(self, html, additional_htmls):
        if not self.validates:
            return None
        if html in self.invalid:
            return StructureValidation(False, "rates table missing")
        return StructureValidation(True)



class LiveOnlyProvider(LenderProvider):
    lender_id = "live"
    name = "Live Only"
    url = "https://live.example/rates"

    async def scrape(self):
        return []


class RetiredProvider(LiveOnlyProvider):
    lender_id = "retired"
    name = "Retired Bank"
    url = "https://retired.example/rates"
    discontinued = True
