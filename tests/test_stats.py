"""Tests for the stats aggregator."""

from __future__ import annotations

import pytest

from fleetrun.client import ClientStats
from fleetrun.state import Node, NodeState
from fleetrun.stats import RunStatistics, StatsAggregator


def test_counts_each_outcome():
    stats = StatsAggregator(total=4)
    for identity, state in [
        ("a", NodeState.SUCCEEDED),
        ("b", NodeState.FAILED),
        ("c", NodeState.TIMED_OUT),
        ("d", NodeState.SUCCEEDED),
    ]:
        stats.record_dispatch(identity)
        assert stats.record(Node(identity, state))

    final = stats.finalize(client_stats=ClientStats(ok_count=2, fail_count=2))

    assert final.dispatched == 4
    assert final.succeeded == 2
    assert final.failed == 1
    assert final.timed_out == 1
    assert final.skipped == 0
    assert final.completed == 4
    assert final.failed_nodes == ("b",)
    assert final.timed_out_nodes == ("c",)
    assert final.client_stats.ok_count == 2
    assert final.exit_code == 1


def test_duplicate_terminal_events_count_once():
    stats = StatsAggregator(total=1)
    stats.record_dispatch("a")

    assert stats.record(Node("a", NodeState.SUCCEEDED))
    assert not stats.record(Node("a", NodeState.FAILED))

    final = stats.finalize()
    assert final.succeeded == 1
    assert final.failed == 0


def test_non_terminal_nodes_are_refused():
    stats = StatsAggregator(total=1)
    with pytest.raises(ValueError):
        stats.record(Node("a", NodeState.RUNNING))


def test_finalize_freezes_the_snapshot():
    stats = StatsAggregator(total=2)
    stats.record_dispatch("a")
    stats.record(Node("a", NodeState.SUCCEEDED))

    first = stats.finalize(interrupted=True)
    assert stats.finalize() is first
    assert first.skipped == 1
    with pytest.raises(RuntimeError):
        stats.record(Node("b", NodeState.SUCCEEDED))
    with pytest.raises(RuntimeError):
        stats.record_dispatch("b")


def test_exit_code():
    assert RunStatistics(total=0).exit_code == 0
    assert RunStatistics(total=2, dispatched=2, succeeded=2).exit_code == 0
    assert RunStatistics(total=2, dispatched=2, succeeded=1, failed=1).exit_code == 1
    assert RunStatistics(total=2, dispatched=1, succeeded=1, skipped=1).exit_code == 1
    assert (
        RunStatistics(total=1, dispatched=1, succeeded=1, interrupted=True).exit_code == 1
    )


def test_summary_lines():
    final = RunStatistics(
        total=3,
        dispatched=3,
        succeeded=1,
        failed=1,
        timed_out=1,
        elapsed=12.5,
        failed_nodes=("b",),
        timed_out_nodes=("c",),
    )

    lines = final.summary_lines()

    assert lines[0] == "Finished processing 3 / 3 nodes in 12.50s"
    assert "Failed nodes: b" in lines
    assert "Timed out nodes: c" in lines
    assert not any("Not started" in line for line in lines)
