"""Concurrency-bounded batch scheduler.

Nodes are admitted in node set order, never more than ``concurrency`` at a
time. Every tracker reports its transitions on one ``asyncio.Queue``; the
scheduler is the only reader, so the in-flight set is only ever touched from
the scheduling loop.
"""

from __future__ import annotations

import asyncio
import sys
from collections import deque
from datetime import datetime
from typing import Any, Callable, Sequence, TextIO

from .client import AgentClient, ClientStats, CommandDescriptor, NodeFilter, check_filter
from .errors import ConfigurationError, ErrorKind, FatalTransportError
from .state import Node, NodeEvent, NodeState, RunStateTracker
from .stats import RunStatistics, StatsAggregator

# Type aliases for observer callbacks
ProgressSink = Callable[[datetime, str], None]  # (timestamp, message) -> None
StateCallback = Callable[[Node], None]  # called after every node transition

DEFAULT_ABANDON_TIMEOUT = 30.0

# Posted on the event channel to wake the loop when a stop is requested
_STOP = object()


def check_run_request(
    nodes: Sequence[str],
    concurrency: Any,
    node_filter: NodeFilter | None = None,
) -> ConfigurationError | None:
    """Return the reason a batch run must not start, or None."""
    if concurrency is None:
        return ConfigurationError(ErrorKind.MISSING_CONCURRENCY)
    if isinstance(concurrency, bool) or not isinstance(concurrency, int):
        return ConfigurationError(ErrorKind.INVALID_CONCURRENCY, concurrency)
    if concurrency <= 0:
        return ConfigurationError(ErrorKind.NON_POSITIVE_CONCURRENCY)

    error = check_filter(node_filter, batch=True)
    if error is not None:
        return error

    seen: set[str] = set()
    for identity in nodes:
        if identity in seen:
            return ConfigurationError(ErrorKind.DUPLICATE_NODE, identity)
        seen.add(identity)
    return None


def timestamped_printer(stream: TextIO | None = None) -> ProgressSink:
    """Progress sink printing ``YYYY-MM-DD HH:MM:SS: message`` lines."""

    def sink(at: datetime, message: str) -> None:
        print(f"{at:%Y-%m-%d %H:%M:%S}: {message}", file=stream or sys.stdout, flush=True)

    return sink


class BatchScheduler:
    """Runs one command across a node set with bounded concurrency."""

    def __init__(
        self,
        client: AgentClient,
        concurrency: int | None,
        *,
        node_timeout: float | None = None,
        run_timeout: float | None = None,
        abandon_timeout: float = DEFAULT_ABANDON_TIMEOUT,
        progress: ProgressSink | None = None,
        on_state: StateCallback | None = None,
    ) -> None:
        self.client = client
        self.concurrency = concurrency
        self.node_timeout = node_timeout
        self.run_timeout = run_timeout
        self.abandon_timeout = abandon_timeout
        self.progress = progress
        self.on_state = on_state
        self.nodes: dict[str, Node] = {}
        self.max_in_flight = 0
        self.done = 0
        self._trackers: dict[str, RunStateTracker] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self._events: asyncio.Queue | None = None
        self._stats: StatsAggregator | None = None
        self._stop_reason: str | None = None
        self._abandon_deadline: float | None = None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def stopping(self) -> bool:
        return self._stop_reason is not None

    def interrupt(self, reason: str = "interrupt") -> None:
        """Stop admitting nodes. In-flight nodes get ``abandon_timeout`` to finish."""
        if self._stop_reason is not None:
            return
        self._stop_reason = reason
        if self._events is not None:
            self._events.put_nowait(_STOP)

    def _emit_progress(self, message: str) -> None:
        if self.progress:
            self.progress(datetime.now(), message)

    def _emit_state(self, node: Node) -> None:
        if self.on_state:
            self.on_state(node)

    def _client_stats(self) -> ClientStats | None:
        try:
            return self.client.stats()
        except Exception:  # informational only
            return None

    async def run(
        self,
        nodes: Sequence[str],
        command: CommandDescriptor,
        node_filter: NodeFilter | None = None,
    ) -> RunStatistics:
        """Run ``command`` on every node and return the aggregated counts.

        Raises ``ConfigurationError`` before dispatching anything when the
        request is invalid, and ``FatalTransportError`` (with partial
        statistics attached) when the client breaks down mid-run.
        """
        error = check_run_request(nodes, self.concurrency, node_filter)
        if error is not None:
            raise error
        if self._events is not None:
            raise RuntimeError("BatchScheduler is already running")

        # Per-run state. A stop requested before the run starts is kept.
        self.nodes = {}
        self.max_in_flight = 0
        self.done = 0
        self._trackers = {}
        self._in_flight = {}
        self._abandon_deadline = None
        self._stats = StatsAggregator(len(nodes))
        if not nodes:
            self._stop_reason = None
            return self._stats.finalize(client_stats=self._client_stats())

        self._events = asyncio.Queue()
        try:
            return await self._run_loop(nodes, command)
        finally:
            self._events = None
            self._stop_reason = None

    async def _run_loop(self, nodes: Sequence[str], command: CommandDescriptor) -> RunStatistics:
        loop = asyncio.get_running_loop()
        queue: deque[RunStateTracker] = deque()
        for identity in nodes:
            node = Node(identity)
            tracker = RunStateTracker(node, self._events.put_nowait)
            self.nodes[identity] = node
            self._trackers[identity] = tracker
            queue.append(tracker)

        run_deadline = None
        if self.run_timeout is not None:
            run_deadline = loop.time() + self.run_timeout

        abandoned = 0
        try:
            while queue or self._in_flight:
                while (
                    self._stop_reason is None
                    and queue
                    and len(self._in_flight) < self.concurrency
                ):
                    tracker = queue.popleft()
                    self._admit(tracker, command, len(queue))
                if not self._in_flight:
                    break

                if self._stop_reason is not None and self._abandon_deadline is None:
                    self._begin_stop(loop)
                deadline = run_deadline if self._stop_reason is None else self._abandon_deadline
                timeout = None if deadline is None else max(0.0, deadline - loop.time())

                if not self._events.empty():
                    event = self._events.get_nowait()
                else:
                    try:
                        event = await asyncio.wait_for(self._events.get(), timeout)
                    except asyncio.TimeoutError:
                        if self._stop_reason is None:
                            self._stop_reason = f"run timeout of {self.run_timeout:g}s"
                            continue
                        break

                if event is _STOP:
                    continue
                await self._handle(event)

            if self._in_flight:
                abandoned = await self._abandon_in_flight(f"abandoned after {self._stop_reason}")
        except BaseException:
            for task in self._in_flight.values():
                task.cancel()
            raise

        if queue:
            self._emit_progress(f"{len(queue)} queued nodes were not started")
        return self._stats.finalize(
            interrupted=bool(queue) or abandoned > 0,
            client_stats=self._client_stats(),
        )

    def _begin_stop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._abandon_deadline = loop.time() + self.abandon_timeout
        self._emit_progress(
            f"Stopping on {self._stop_reason}: waiting up to {self.abandon_timeout:g}s "
            f"for {len(self._in_flight)} running nodes"
        )

    def _admit(self, tracker: RunStateTracker, command: CommandDescriptor, queued: int) -> None:
        tracker.admit()
        self._stats.record_dispatch(tracker.identity)
        self._in_flight[tracker.identity] = asyncio.ensure_future(
            tracker.drive(self.client, command, self.node_timeout)
        )
        self.max_in_flight = max(self.max_in_flight, len(self._in_flight))
        self._emit_progress(
            f"{tracker.identity}: dispatched "
            f"({len(self._in_flight)}/{self.concurrency} in flight, {queued} queued)"
        )
        self._emit_state(tracker.node)

    async def _handle(self, event: NodeEvent) -> None:
        if event.fatal is not None:
            await self._abort(event)

        node = self.nodes[event.identity]
        self._emit_state(node)
        if event.state is NodeState.RUNNING:
            self._emit_progress(f"{event.identity}: running")
            return
        if not event.state.is_terminal:
            return

        # Terminal events for nodes no longer in flight are duplicates
        if self._in_flight.pop(event.identity, None) is None:
            return
        self._stats.record(node)
        self.done += 1

        progress = f"({self.done}/{len(self.nodes)} done)"
        if event.state is NodeState.SUCCEEDED:
            self._emit_progress(f"{event.identity}: succeeded {progress}")
        elif event.state is NodeState.FAILED:
            self._emit_progress(f"{event.identity}: failed: {node.error} {progress}")
        else:
            self._emit_progress(f"{event.identity}: timed out: {node.error} {progress}")

    async def _abandon_in_flight(self, reason: str) -> int:
        """Cancel every in-flight node and record it. Returns the number abandoned."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        abandoned = 0
        for identity in list(self._in_flight):
            tracker = self._trackers[identity]
            if tracker.abandon(reason):
                abandoned += 1
                self._emit_progress(f"{identity}: {tracker.node.state.value} ({reason})")
            self._stats.record(tracker.node)
            self._emit_state(tracker.node)
        self._in_flight.clear()
        return abandoned

    async def _abort(self, event: NodeEvent) -> None:
        self._stop_reason = self._stop_reason or "transport failure"
        self._emit_progress(f"{event.identity}: fatal client error: {event.detail}")
        await self._abandon_in_flight(f"abandoned after transport failure: {event.detail}")
        statistics = self._stats.finalize(interrupted=True, client_stats=self._client_stats())
        raise FatalTransportError(str(event.fatal), statistics) from event.fatal


async def run_batch(
    client: AgentClient,
    nodes: Sequence[str],
    concurrency: int | None,
    command: CommandDescriptor,
    progress: ProgressSink | None = None,
    *,
    node_filter: NodeFilter | None = None,
    **options: Any,
) -> RunStatistics:
    """Single entry point: run ``command`` on ``nodes``, ``concurrency`` at a time.

    ``options`` are passed to ``BatchScheduler`` (``node_timeout``,
    ``run_timeout``, ``abandon_timeout``, ``on_state``).
    """
    scheduler = BatchScheduler(client, concurrency, progress=progress, **options)
    return await scheduler.run(nodes, command, node_filter)
