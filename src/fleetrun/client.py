"""Agent client contract consumed by the batch scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import ConfigurationError, ErrorKind


@dataclass
class NodeFilter:
    """Node selection criteria.

    Identities are exact names or ``/regex/`` patterns. Facts are
    ``key=value`` strings. ``compound`` holds free-form select expressions,
    which cannot be re-evaluated per batch.
    """

    identities: list[str] = field(default_factory=list)
    facts: list[str] = field(default_factory=list)
    classes: list[str] = field(default_factory=list)
    compound: list[str] = field(default_factory=list)

    @property
    def is_compound(self) -> bool:
        return bool(self.compound)


@dataclass(frozen=True)
class CommandDescriptor:
    """The command to run on every node. Arguments are opaque to the scheduler."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerResponse:
    """Answer of an agent to a trigger request."""

    accepted: bool
    reason: str = ""

    @classmethod
    def accept(cls) -> TriggerResponse:
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str) -> TriggerResponse:
        return cls(accepted=False, reason=reason)


@dataclass(frozen=True)
class NodeOutcome:
    """Terminal result reported by an agent."""

    succeeded: bool
    payload: Any = None
    error: str | None = None


@dataclass(frozen=True)
class ClientStats:
    """Informational counters kept by the client."""

    ok_count: int = 0
    fail_count: int = 0
    elapsed: float = 0.0


class AgentClient(Protocol):
    """What the scheduler needs from a remote agent client.

    ``trigger`` and ``wait_for_outcome`` raise ``AgentError`` for per-node
    problems and ``FatalTransportError`` when the client can no longer
    reach any node.
    """

    async def discover(self, node_filter: NodeFilter, batch: bool = False) -> list[str]:
        ...

    async def trigger(self, identity: str, command: CommandDescriptor) -> TriggerResponse:
        ...

    async def wait_for_outcome(self, identity: str) -> NodeOutcome:
        ...

    def stats(self) -> ClientStats:
        ...


def check_filter(node_filter: NodeFilter | None, batch: bool) -> ConfigurationError | None:
    """Return the error a batch run would hit with this filter, if any."""
    if node_filter is not None and batch and node_filter.is_compound:
        return ConfigurationError(ErrorKind.COMPOUND_FILTER)
    return None
