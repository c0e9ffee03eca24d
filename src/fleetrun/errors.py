"""Error types for fleetrun."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .stats import RunStatistics


class ErrorKind(Enum):
    """Closed catalog of configuration problems and their messages."""

    INVALID_ACTION = "Action must be one of: %s"
    MISSING_ACTION = "Please specify a command."
    SPLAY_WITH_FORCE = "Cannot set splay when forcing runs"
    SPLAYLIMIT_WITH_FORCE = "Cannot set splaylimit when forcing runs"
    MISSING_CONCURRENCY = "The runall command needs a concurrency limit"
    UNKNOWN_COMMAND = "Do not know how to handle the '%s' command"
    NON_POSITIVE_CONCURRENCY = (
        "The concurrency for the runall command has to be greater than 0"
    )
    INVALID_CONCURRENCY = "'%s' is not a valid concurrency limit"
    COMPOUND_FILTER = "The runall command cannot be used with compound or -S filters"
    UNSUPPORTED_FILTER = "%s"
    DUPLICATE_NODE = "Node '%s' appears more than once in the node set"

    def render(self, *params: Any) -> str:
        if not params:
            return self.value
        return self.value % params


class ConfigurationError(Exception):
    """The caller asked for something that cannot run. Nothing was dispatched."""

    def __init__(self, kind: ErrorKind, *params: Any) -> None:
        super().__init__(kind.render(*params))
        self.kind = kind
        self.params = params


class AgentError(Exception):
    """A per-node client failure. Recorded against the node, never fatal."""


class FatalTransportError(Exception):
    """The agent client itself is unusable and the run was aborted.

    ``statistics`` holds the counts collected up to the abort when the
    error surfaces from a batch run.
    """

    def __init__(self, message: str, statistics: RunStatistics | None = None) -> None:
        super().__init__(message)
        self.statistics = statistics
