"""Actions understood by the CLI and the registry that dispatches them."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .client import AgentClient, CommandDescriptor, NodeFilter
from .errors import ConfigurationError, ErrorKind
from .scheduler import BatchScheduler, ProgressSink

if TYPE_CHECKING:
    from .stats import RunStatistics

RUNONCE = "runonce"


@dataclass
class RunOptions:
    """Puppet agent flags forwarded with every triggered run."""

    force: bool = False
    server: str | None = None
    tags: list[str] = field(default_factory=list)
    noop: bool | None = None
    environment: str | None = None
    splay: bool | None = None
    splaylimit: int | None = None

    def validate(self) -> ConfigurationError | None:
        if self.force:
            if self.splay is not None:
                return ConfigurationError(ErrorKind.SPLAY_WITH_FORCE)
            if self.splaylimit is not None:
                return ConfigurationError(ErrorKind.SPLAYLIMIT_WITH_FORCE)
        return None

    def to_descriptor(self) -> CommandDescriptor:
        arguments: dict[str, Any] = {}
        if self.force:
            arguments["force"] = True
        for name in ("server", "noop", "environment", "splay", "splaylimit"):
            value = getattr(self, name)
            if value is not None:
                arguments[name] = value
        if self.tags:
            arguments["tags"] = ",".join(self.tags)
        return CommandDescriptor(RUNONCE, arguments)


class Action(Enum):
    """Closed set of CLI actions."""

    RUNALL = "runall"
    DISCOVER = "discover"


@dataclass
class ActionRequest:
    """A parsed action and its positional argument."""

    action: Action
    concurrency: int | None = None


def parse_action(name: str | None, argument: str | None = None) -> ActionRequest | ConfigurationError:
    """Turn the positional CLI words into a request, or the reason they are wrong."""
    if not name:
        return ConfigurationError(ErrorKind.MISSING_ACTION)
    try:
        action = Action(name)
    except ValueError:
        return ConfigurationError(
            ErrorKind.INVALID_ACTION, ", ".join(a.value for a in Action)
        )

    if action is not Action.RUNALL:
        return ActionRequest(action)

    if argument is None:
        return ConfigurationError(ErrorKind.MISSING_CONCURRENCY)
    try:
        concurrency = int(argument)
    except ValueError:
        return ConfigurationError(ErrorKind.INVALID_CONCURRENCY, argument)
    if concurrency <= 0:
        return ConfigurationError(ErrorKind.NON_POSITIVE_CONCURRENCY)
    return ActionRequest(action, concurrency)


@dataclass
class CommandContext:
    """Everything an action handler needs, built by the CLI."""

    client: AgentClient
    node_filter: NodeFilter
    options: RunOptions
    progress: ProgressSink
    scheduler_factory: Callable[[int], BatchScheduler] | None = None
    output: Callable[[str], None] = print


async def runall_command(ctx: CommandContext, request: ActionRequest) -> RunStatistics:
    """Run puppet on every matching node, ``request.concurrency`` at a time."""
    error = ctx.options.validate()
    if error is not None:
        raise error
    nodes = await ctx.client.discover(ctx.node_filter, batch=True)
    if ctx.scheduler_factory is not None:
        scheduler = ctx.scheduler_factory(request.concurrency)
    else:
        scheduler = BatchScheduler(ctx.client, request.concurrency, progress=ctx.progress)
    return await scheduler.run(nodes, ctx.options.to_descriptor(), ctx.node_filter)


async def discover_command(ctx: CommandContext, request: ActionRequest) -> list[str]:
    """List the nodes matching the filter without running anything."""
    nodes = await ctx.client.discover(ctx.node_filter)
    for identity in nodes:
        ctx.output(identity)
    ctx.output(f"\nTotal matching nodes: {len(nodes)}")
    return nodes


CommandHandler = Callable[[CommandContext, ActionRequest], Awaitable[Any]]

COMMANDS: dict[Action, CommandHandler] = {
    Action.RUNALL: runall_command,
    Action.DISCOVER: discover_command,
}


def get_handler(action: Action | str) -> CommandHandler:
    """Look up the handler for an action. Unknown actions are a configuration error."""
    try:
        return COMMANDS[Action(action)]
    except (KeyError, ValueError):
        name = action.value if isinstance(action, Action) else action
        raise ConfigurationError(ErrorKind.UNKNOWN_COMMAND, name) from None
