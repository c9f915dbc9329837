"""Tests for catalog diffing and history replay."""

import copy

import pytest

from ratehistory.changeset import (
    compute_diff_operations,
    count_operations,
    deep_equal,
    reconstruct_at,
    reconstruct_rates,
)
from ratehistory.hashing import compute_rates_hash
from tests.fakes import make_rate


def history_from(catalogs, start_day=1):
    """Baseline + changesets built by diffing consecutive catalogs."""
    history = {
        "lenderId": "test",
        "baseline": {
            "timestamp": f"2024-01-{start_day:02d}T00:00:00Z",
            "ratesHash": compute_rates_hash(catalogs[0]),
            "rates": catalogs[0],
        },
        "changesets": [],
    }
    for i, (prev, curr) in enumerate(zip(catalogs, catalogs[1:]), start=1):
        ops = compute_diff_operations(prev, curr)
        if ops:
            history["changesets"].append({
                "timestamp": f"2024-01-{start_day + i:02d}T00:00:00Z",
                "afterHash": compute_rates_hash(curr),
                "operations": ops,
            })
    return history


# ───────────────────────── diff ─────────────────────────

def test_scenario_update_then_add() -> None:
    old = [{"id": "a", "rate": 3.5}]
    new = [{"id": "a", "rate": 3.6}, {"id": "b", "rate": 4.0}]

    assert compute_diff_operations(old, new) == [
        {"op": "update", "id": "a", "changes": {"id": "a", "rate": 3.6}},
        {"op": "add", "rate": {"id": "b", "rate": 4.0}},
    ]


def test_removes_follow_adds_and_updates_in_old_order() -> None:
    old = [make_rate("x"), make_rate("a"), make_rate("y")]
    new = [make_rate("n"), make_rate("a", rate=4.1)]

    ops = compute_diff_operations(old, new)

    assert [o["op"] for o in ops] == ["add", "update", "remove", "remove"]
    assert [o.get("id") for o in ops[2:]] == ["x", "y"]


def test_identical_rates_produce_no_update() -> None:
    old = [make_rate("a", perks=["b", "a"])]
    new = [make_rate("a", perks=["a", "b"])]

    assert compute_diff_operations(old, new) == []


def test_update_carries_only_changed_fields() -> None:
    old = [make_rate("a")]
    new = [make_rate("a", rate=3.9, perks=["cashback"])]

    (op,) = compute_diff_operations(old, new)
    assert op == {"op": "update", "id": "a", "changes": {"id": "a", "rate": 3.9, "perks": ["cashback"]}}


def test_field_dropped_in_new_rate_is_recorded_as_none() -> None:
    old = [make_rate("a", warning="inferred")]
    new = [make_rate("a")]

    (op,) = compute_diff_operations(old, new)
    assert op["changes"] == {"id": "a", "warning": None}


def test_deep_equal() -> None:
    assert deep_equal(["b", "a"], ["a", "b"])
    assert deep_equal(None, None)
    assert deep_equal(80, 80.0)
    assert deep_equal({"x": [2, 1]}, {"x": [1, 2]})
    assert not deep_equal(["a"], ["a", "b"])
    assert not deep_equal(None, [])
    assert not deep_equal(False, None)


@pytest.mark.parametrize("new", [
    [make_rate("a")],
    [make_rate("a", buyerTypes=["mover", "ftb"])],
    [make_rate("a", rate=3.6)],
    [make_rate("a"), make_rate("b")],
    [],
    [make_rate("a", newBusiness=None)],
    [make_rate("a", newBusiness=False)],
])
def test_diff_empty_iff_hashes_equal(new) -> None:
    old = [make_rate("a")]
    assert (compute_diff_operations(old, new) == []) == (compute_rates_hash(old) == compute_rates_hash(new))


# ───────────────────────── replay ─────────────────────────

def test_round_trip_reconstruction() -> None:
    c0 = [make_rate("a"), make_rate("b")]
    c1 = [make_rate("a", rate=3.4), make_rate("b"), make_rate("c")]
    c2 = [make_rate("a", rate=3.4), make_rate("c", perks=["cashback"])]
    c3 = [make_rate("d"), make_rate("c", perks=["cashback"], warning="note")]
    history = history_from([c0, c1, c2, c3])

    rebuilt = reconstruct_rates(history)

    assert compute_rates_hash(rebuilt) == compute_rates_hash(c3)
    assert compute_rates_hash(rebuilt) == history["changesets"][-1]["afterHash"]
    assert sorted(r["id"] for r in rebuilt) == ["c", "d"]


def test_reconstruct_without_changesets_is_baseline() -> None:
    history = history_from([[make_rate("a")]])
    assert reconstruct_rates(history) == [make_rate("a")]


def test_reconstruct_does_not_mutate_history() -> None:
    history = history_from([[make_rate("a")], [make_rate("a", rate=4.0)]])
    snapshot = copy.deepcopy(history)

    reconstruct_rates(history)

    assert history == snapshot


def test_replay_tolerates_missing_targets() -> None:
    history = history_from([[make_rate("a")]])
    history["changesets"].append({
        "timestamp": "2024-02-01T00:00:00Z",
        "afterHash": "irrelevant",
        "operations": [
            {"op": "remove", "id": "ghost"},
            {"op": "update", "id": "ghost", "changes": {"id": "ghost", "rate": 9.9}},
            {"op": "add", "rate": make_rate("a", rate=5.0)},
        ],
    })

    assert reconstruct_rates(history) == [make_rate("a", rate=5.0)]


def test_reconstruct_at_point_in_time() -> None:
    c0 = [make_rate("a")]
    c1 = [make_rate("a", rate=3.6)]
    c2 = [make_rate("a", rate=3.7)]
    history = history_from([c0, c1, c2])  # baseline Jan 1, changesets Jan 2 and Jan 3

    assert reconstruct_at(history, "2023-12-31T00:00:00Z") == []
    assert reconstruct_at(history, "2024-01-01T12:00:00Z")[0]["rate"] == 3.5
    assert reconstruct_at(history, "2024-01-02T00:00:00Z")[0]["rate"] == 3.6
    assert reconstruct_at(history, "2024-06-01T00:00:00Z")[0]["rate"] == 3.7


def test_count_operations() -> None:
    ops = compute_diff_operations([make_rate("a"), make_rate("b")], [make_rate("a", rate=1.0), make_rate("c")])
    assert count_operations({"operations": ops}) == {"add": 1, "remove": 1, "update": 1}
