"""fleetrun: Run a command across a fleet of nodes, a bounded number at a time."""

from .client import (
    AgentClient,
    ClientStats,
    CommandDescriptor,
    NodeFilter,
    NodeOutcome,
    TriggerResponse,
)
from .config import Config, Defaults, NodeConfig, RunSettings, load_config
from .errors import AgentError, ConfigurationError, ErrorKind, FatalTransportError
from .scheduler import BatchScheduler, check_run_request, run_batch, timestamped_printer
from .state import Node, NodeState, RunStateTracker
from .stats import RunStatistics, StatsAggregator

__all__ = [
    "AgentClient",
    "ClientStats",
    "CommandDescriptor",
    "NodeFilter",
    "NodeOutcome",
    "TriggerResponse",
    "Config",
    "Defaults",
    "NodeConfig",
    "RunSettings",
    "load_config",
    "AgentError",
    "ConfigurationError",
    "ErrorKind",
    "FatalTransportError",
    "BatchScheduler",
    "check_run_request",
    "run_batch",
    "timestamped_printer",
    "Node",
    "NodeState",
    "RunStateTracker",
    "RunStatistics",
    "StatsAggregator",
]
