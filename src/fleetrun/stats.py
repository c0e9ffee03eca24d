"""Run statistics for batch runs."""

from __future__ import annotations

import time
from dataclasses import dataclass

from .client import ClientStats
from .state import Node, NodeState


@dataclass(frozen=True)
class RunStatistics:
    """Final counts of one batch run."""

    total: int
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    skipped: int = 0
    elapsed: float = 0.0
    interrupted: bool = False
    failed_nodes: tuple[str, ...] = ()
    timed_out_nodes: tuple[str, ...] = ()
    client_stats: ClientStats | None = None

    @property
    def completed(self) -> int:
        return self.succeeded + self.failed + self.timed_out

    @property
    def exit_code(self) -> int:
        if self.interrupted or self.completed != self.total:
            return 1
        return 0 if self.succeeded == self.total else 1

    def summary_lines(self) -> list[str]:
        """Human readable summary, one line per entry."""
        lines = [
            f"Finished processing {self.completed} / {self.total} nodes in {self.elapsed:.2f}s",
            f"      Succeeded: {self.succeeded}",
            f"         Failed: {self.failed}",
            f"      Timed out: {self.timed_out}",
        ]
        if self.skipped:
            lines.append(f"    Not started: {self.skipped}")
        if self.failed_nodes:
            lines.append(f"Failed nodes: {', '.join(self.failed_nodes)}")
        if self.timed_out_nodes:
            lines.append(f"Timed out nodes: {', '.join(self.timed_out_nodes)}")
        return lines


class StatsAggregator:
    """Folds terminal node outcomes into counts.

    Each node is counted once, however many terminal events arrive for it.
    """

    def __init__(self, total: int) -> None:
        self.total = total
        self.started_at = time.monotonic()
        self._dispatched: set[str] = set()
        self._outcomes: dict[str, NodeState] = {}
        self._final: RunStatistics | None = None

    def record_dispatch(self, identity: str) -> None:
        self._check_open()
        self._dispatched.add(identity)

    def record(self, node: Node) -> bool:
        """Record the node's terminal state. Returns False for duplicates."""
        self._check_open()
        if not node.state.is_terminal:
            raise ValueError(f"{node.identity} is not in a terminal state ({node.state.value})")
        if node.identity in self._outcomes:
            return False
        self._outcomes[node.identity] = node.state
        return True

    def _check_open(self) -> None:
        if self._final is not None:
            raise RuntimeError("statistics were already finalized")

    def _nodes_in(self, state: NodeState) -> tuple[str, ...]:
        return tuple(i for i, s in self._outcomes.items() if s is state)

    def finalize(
        self, interrupted: bool = False, client_stats: ClientStats | None = None
    ) -> RunStatistics:
        """Freeze the counts. Later calls return the same snapshot."""
        if self._final is not None:
            return self._final
        failed = self._nodes_in(NodeState.FAILED)
        timed_out = self._nodes_in(NodeState.TIMED_OUT)
        self._final = RunStatistics(
            total=self.total,
            dispatched=len(self._dispatched),
            succeeded=len(self._nodes_in(NodeState.SUCCEEDED)),
            failed=len(failed),
            timed_out=len(timed_out),
            skipped=self.total - len(self._dispatched),
            elapsed=time.monotonic() - self.started_at,
            interrupted=interrupted,
            failed_nodes=failed,
            timed_out_nodes=timed_out,
            client_stats=client_stats,
        )
        return self._final
