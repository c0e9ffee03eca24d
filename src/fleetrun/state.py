"""Per-node run state machine."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from .client import AgentClient, CommandDescriptor
from .errors import AgentError, FatalTransportError


class NodeState(Enum):
    """Status of a node within one batch run."""

    QUEUED = "queued"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({NodeState.SUCCEEDED, NodeState.FAILED, NodeState.TIMED_OUT})

TRANSITIONS: dict[NodeState, frozenset[NodeState]] = {
    NodeState.QUEUED: frozenset({NodeState.DISPATCHED}),
    NodeState.DISPATCHED: frozenset({NodeState.RUNNING, NodeState.FAILED}),
    NodeState.RUNNING: frozenset(
        {NodeState.SUCCEEDED, NodeState.FAILED, NodeState.TIMED_OUT}
    ),
    NodeState.SUCCEEDED: frozenset(),
    NodeState.FAILED: frozenset(),
    NodeState.TIMED_OUT: frozenset(),
}


class InvalidTransition(RuntimeError):
    """A node was asked to move along an edge the state machine does not have."""


@dataclass
class Node:
    """Runtime state for a node."""

    identity: str
    state: NodeState = NodeState.QUEUED
    payload: Any = None
    error: str | None = None
    dispatched_at: float | None = None
    finished_at: float | None = None

    @property
    def duration(self) -> float | None:
        if self.dispatched_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.dispatched_at


@dataclass(frozen=True)
class NodeEvent:
    """A transition reported to the scheduler.

    ``fatal`` is set when the client broke down while driving the node;
    the node's state is then left where it was.
    """

    identity: str
    state: NodeState
    detail: str = ""
    fatal: BaseException | None = field(default=None, compare=False)


# Type alias for the event channel writer
EmitCallback = Callable[[NodeEvent], None]

# asyncio.TimeoutError is only an alias of the builtin from Python 3.11
_TIMEOUTS = (asyncio.TimeoutError, TimeoutError)


async def _client_call(call: Awaitable[Any]) -> Any:
    """Await a client call, turning the client's own timeouts into node failures.

    Any timeout left escaping ``wait_for`` is then the node budget.
    """
    try:
        return await call
    except _TIMEOUTS as e:
        raise AgentError(f"client timed out: {e}" if str(e) else "client timed out") from e


class RunStateTracker:
    """Drives a single node from admission to a terminal state."""

    def __init__(self, node: Node, emit: EmitCallback) -> None:
        self.node = node
        self._emit = emit

    @property
    def identity(self) -> str:
        return self.node.identity

    def _move(self, state: NodeState) -> None:
        current = self.node.state
        if state not in TRANSITIONS[current]:
            raise InvalidTransition(
                f"{self.node.identity}: cannot go from {current.value} to {state.value}"
            )
        self.node.state = state
        if state.is_terminal:
            self.node.finished_at = time.monotonic()

    def admit(self) -> None:
        """Mark the node dispatched. Called by the scheduler before driving it."""
        self._move(NodeState.DISPATCHED)
        self.node.dispatched_at = time.monotonic()

    def _finish(self, state: NodeState, payload: Any = None, error: str | None = None) -> None:
        self._move(state)
        self.node.payload = payload
        self.node.error = error
        self._emit(NodeEvent(self.node.identity, state, error or ""))

    async def drive(
        self,
        client: AgentClient,
        command: CommandDescriptor,
        node_timeout: float | None = None,
    ) -> None:
        """Trigger the command and wait for its outcome.

        Every transition after admission is emitted. Client breakdowns are
        emitted as fatal events instead of being raised.
        """
        loop = asyncio.get_running_loop()
        deadline = None if node_timeout is None else loop.time() + node_timeout

        def remaining() -> float | None:
            if deadline is None:
                return None
            return max(0.0, deadline - loop.time())

        try:
            try:
                response = await asyncio.wait_for(
                    _client_call(client.trigger(self.identity, command)), remaining()
                )
            except _TIMEOUTS:
                self._finish(
                    NodeState.FAILED,
                    error=f"no answer to trigger within {node_timeout:g}s",
                )
                return
            except AgentError as e:
                self._finish(NodeState.FAILED, error=str(e) or type(e).__name__)
                return

            if not response.accepted:
                self._finish(NodeState.FAILED, error=response.reason or "trigger rejected")
                return

            self._move(NodeState.RUNNING)
            self._emit(NodeEvent(self.identity, NodeState.RUNNING))

            try:
                outcome = await asyncio.wait_for(
                    _client_call(client.wait_for_outcome(self.identity)), remaining()
                )
            except _TIMEOUTS:
                self._finish(
                    NodeState.TIMED_OUT, error=f"no result within {node_timeout:g}s"
                )
                return
            except AgentError as e:
                self._finish(NodeState.FAILED, error=str(e) or type(e).__name__)
                return

            if outcome.succeeded:
                self._finish(NodeState.SUCCEEDED, payload=outcome.payload)
            else:
                self._finish(
                    NodeState.FAILED,
                    payload=outcome.payload,
                    error=outcome.error or "agent reported failure",
                )
        except FatalTransportError as e:
            self._emit(NodeEvent(self.identity, self.node.state, str(e), fatal=e))
        except Exception as e:
            fatal = FatalTransportError(f"{type(e).__name__}: {e}")
            fatal.__cause__ = e
            self._emit(NodeEvent(self.identity, self.node.state, str(fatal), fatal=fatal))

    def abandon(self, reason: str) -> bool:
        """Give up on an in-flight node, recording it rather than dropping it.

        A dispatched node becomes FAILED, a running one TIMED_OUT. Returns
        False when there was nothing to abandon.
        """
        if self.node.state is NodeState.DISPATCHED:
            self._move(NodeState.FAILED)
        elif self.node.state is NodeState.RUNNING:
            self._move(NodeState.TIMED_OUT)
        else:
            return False
        self.node.error = reason
        return True
