"""Tests for the live scrape pipeline and catalog sanity checks."""

import asyncio
import json

import pytest

from pipelines.live import CatalogRejected, run_all, scrape_lender
from ratehistory.builder import new_history
from ratehistory.catalog import validate_catalog
from ratehistory.changeset import reconstruct_rates
from ratehistory.config import Settings
from ratehistory.hashing import compute_rates_hash
from tests.fakes import RetiredProvider, ScriptedProvider, make_rate

T1 = "2024-03-01T10:00:00.000Z"
T2 = "2024-03-02T10:00:00.000Z"
T3 = "2024-03-03T10:00:00.000Z"


def scrape(provider, current_store, builder, now):
    return asyncio.run(scrape_lender(provider, current_store, builder, now=now))


def test_first_scrape_creates_rates_file_and_baseline(current_store, history_store, builder) -> None:
    rates = [make_rate("a"), make_rate("b")]

    outcome = scrape(ScriptedProvider(live=rates), current_store, builder, T1)

    assert outcome.history == "created"
    assert outcome.changed is False
    assert outcome.rates_count == 2
    saved = current_store.load("test")
    assert saved["ratesHash"] == compute_rates_hash(rates)
    assert saved["lastScrapedAt"] == T1
    assert saved["lastUpdatedAt"] == T1
    assert history_store.load("test")["baseline"]["timestamp"] == T1


def test_unchanged_scrape_keeps_last_updated(current_store, history_store, builder) -> None:
    rates = [make_rate("a")]
    scrape(ScriptedProvider(live=rates), current_store, builder, T1)
    history_before = history_store.path_for("test").read_bytes()

    outcome = scrape(ScriptedProvider(live=list(reversed(rates))), current_store, builder, T2)

    assert outcome.changed is False
    assert outcome.history == "existing"
    saved = current_store.load("test")
    assert saved["lastScrapedAt"] == T2
    assert saved["lastUpdatedAt"] == T1
    assert history_store.path_for("test").read_bytes() == history_before


def test_changed_scrape_appends_changeset(current_store, history_store, builder) -> None:
    scrape(ScriptedProvider(live=[make_rate("a")]), current_store, builder, T1)

    outcome = scrape(ScriptedProvider(live=[make_rate("a", rate=3.9)]), current_store, builder, T2)

    assert outcome.changed is True
    assert outcome.history == "appended"
    assert current_store.load("test")["lastUpdatedAt"] == T2
    (changeset,) = history_store.load("test")["changesets"]
    assert changeset["timestamp"] == T2
    assert changeset["afterHash"] == outcome.rates_hash


def test_first_scrape_after_harvested_history(current_store, history_store, builder) -> None:
    rates = [make_rate("a")]
    history_store.save(new_history("test", rates, compute_rates_hash(rates), "2023-01-01T00:00:00Z"))

    outcome = scrape(ScriptedProvider(live=rates), current_store, builder, T1)

    assert outcome.history == "unchanged"
    assert history_store.load("test")["baseline"]["timestamp"] == "2023-01-01T00:00:00Z"


def test_missing_history_is_created_for_unchanged_rates(current_store, history_store, builder) -> None:
    rates = [make_rate("a")]
    scrape(ScriptedProvider(live=rates), current_store, builder, T1)
    history_store.path_for("test").unlink()

    outcome = scrape(ScriptedProvider(live=rates), current_store, builder, T2)

    assert outcome.history == "created"
    assert history_store.exists("test")


def test_failed_history_append_is_recovered_on_next_scrape(current_store, history_store, builder, monkeypatch) -> None:
    scrape(ScriptedProvider(live=[make_rate("a")]), current_store, builder, T1)
    changed = [make_rate("a", rate=4.2)]

    def disk_full(history):
        raise OSError("No space left on device")

    with monkeypatch.context() as m:
        m.setattr(history_store, "save", disk_full)
        with pytest.raises(OSError):
            scrape(ScriptedProvider(live=changed), current_store, builder, T2)

    assert current_store.load("test")["ratesHash"] == compute_rates_hash([make_rate("a")])

    outcome = scrape(ScriptedProvider(live=changed), current_store, builder, T3)

    assert outcome.changed is True
    assert outcome.history == "appended"
    history = history_store.load("test")
    assert len(history["changesets"]) == 1
    assert compute_rates_hash(reconstruct_rates(history)) == current_store.load("test")["ratesHash"]


def test_duplicate_ids_are_rejected(current_store, history_store, builder) -> None:
    provider = ScriptedProvider(live=[make_rate("a"), make_rate("a", rate=4.0)])

    with pytest.raises(CatalogRejected):
        scrape(provider, current_store, builder, T1)

    assert current_store.load("test") is None
    assert history_store.load("test") is None


def test_run_all_continues_past_failures(tmp_path) -> None:
    settings = Settings(data_dir=tmp_path / "rates", health_path=tmp_path / "health.json")
    good = ScriptedProvider(live=[make_rate("a")])
    bad = ScriptedProvider(live=RuntimeError("page timed out"))
    bad.lender_id = "broken"

    outcomes = asyncio.run(run_all({"test": good, "broken": bad}, settings, ["broken", "test", "ghost"]))

    assert outcomes == {"broken": "page timed out", "test": None, "ghost": "unknown lender"}
    assert (tmp_path / "rates" / "test.json").exists()
    assert (tmp_path / "rates" / "history" / "test.json").exists()
    health = json.loads(settings.health_path.read_text(encoding="utf-8"))
    assert health["pipeline"] == "scrape"
    assert health["ok"] == 1
    assert health["total"] == 3
    assert health["failed"] == {"broken": "page timed out", "ghost": "unknown lender"}


def test_run_all_defaults_to_every_provider(tmp_path) -> None:
    settings = Settings(data_dir=tmp_path / "rates", health_path=tmp_path / "health.json")
    other = ScriptedProvider(live=[make_rate("x")])
    other.lender_id = "other"

    outcomes = asyncio.run(run_all({"test": ScriptedProvider(live=[make_rate("a")]), "other": other}, settings))

    assert list(outcomes) == ["other", "test"]


def test_run_all_skips_discontinued_lenders(tmp_path) -> None:
    settings = Settings(data_dir=tmp_path / "rates", health_path=tmp_path / "health.json")
    providers = {"test": ScriptedProvider(live=[make_rate("a")]), "retired": RetiredProvider()}

    assert asyncio.run(run_all(providers, settings)) == {"test": None}
    assert asyncio.run(run_all(providers, settings, ["retired"])) == {"retired": "discontinued lender"}
    assert not (tmp_path / "rates" / "retired.json").exists()


# ───────────────────────── catalog checks ─────────────────────────

def test_validate_catalog_flags_issues() -> None:
    rates = [
        make_rate("a"),
        make_rate("a"),
        make_rate("mixed", buyerTypes=["btl", "ftb"]),
        make_rate("btl", buyerTypes=["btl"], maxLtv=80),
        make_rate("btl-ok", buyerTypes=["btl", "switcher-btl"], maxLtv=70),
    ]

    result = validate_catalog("test", rates)

    assert result.total_rates == 5
    assert not result.valid
    assert result.has_duplicate_ids
    assert [(i.kind, i.rate_id) for i in result.issues] == [
        ("duplicate-id", "a"),
        ("mixed-buyer-types", "mixed"),
        ("btl-ltv-exceeded", "btl"),
    ]


def test_validate_catalog_clean() -> None:
    result = validate_catalog("test", [make_rate("a"), make_rate("b")])
    assert result.valid
    assert not result.has_duplicate_ids
