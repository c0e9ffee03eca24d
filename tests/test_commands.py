"""Tests for action parsing, run options and the command registry."""

from __future__ import annotations

import pytest

from fleetrun.client import NodeFilter
from fleetrun.commands import (
    COMMANDS,
    RUNONCE,
    Action,
    ActionRequest,
    CommandContext,
    RunOptions,
    get_handler,
    parse_action,
)
from fleetrun.errors import ConfigurationError, ErrorKind


@pytest.mark.parametrize(
    "name, argument, kind",
    [
        (None, None, ErrorKind.MISSING_ACTION),
        ("", None, ErrorKind.MISSING_ACTION),
        ("enable", None, ErrorKind.INVALID_ACTION),
        ("runall", None, ErrorKind.MISSING_CONCURRENCY),
        ("runall", "ten", ErrorKind.INVALID_CONCURRENCY),
        ("runall", "0", ErrorKind.NON_POSITIVE_CONCURRENCY),
        ("runall", "-2", ErrorKind.NON_POSITIVE_CONCURRENCY),
    ],
)
def test_parse_action_errors(name, argument, kind):
    result = parse_action(name, argument)
    assert isinstance(result, ConfigurationError)
    assert result.kind is kind


def test_parse_action_runall():
    result = parse_action("runall", "5")
    assert result == ActionRequest(Action.RUNALL, 5)


def test_parse_action_discover_ignores_argument():
    assert parse_action("discover", "5") == ActionRequest(Action.DISCOVER)


def test_invalid_action_lists_the_choices():
    result = parse_action("status")
    assert str(result) == "Action must be one of: runall, discover"


def test_registry_covers_every_action():
    assert set(COMMANDS) == set(Action)
    assert get_handler("runall") is COMMANDS[Action.RUNALL]


def test_unknown_command_is_a_configuration_error():
    with pytest.raises(ConfigurationError) as excinfo:
        get_handler("summary")
    assert excinfo.value.kind is ErrorKind.UNKNOWN_COMMAND
    assert str(excinfo.value) == "Do not know how to handle the 'summary' command"


@pytest.mark.parametrize(
    "options, kind",
    [
        (RunOptions(force=True, splay=True), ErrorKind.SPLAY_WITH_FORCE),
        (RunOptions(force=True, splay=False), ErrorKind.SPLAY_WITH_FORCE),
        (RunOptions(force=True, splaylimit=30), ErrorKind.SPLAYLIMIT_WITH_FORCE),
    ],
)
def test_force_conflicts(options, kind):
    assert options.validate().kind is kind


def test_valid_options():
    assert RunOptions().validate() is None
    assert RunOptions(force=True, noop=True).validate() is None
    assert RunOptions(splay=True, splaylimit=60).validate() is None


def test_to_descriptor():
    descriptor = RunOptions(
        force=True, server="puppet:8140", tags=["nginx", "ssh"], noop=False, environment="prod"
    ).to_descriptor()

    assert descriptor.name == RUNONCE
    assert descriptor.arguments == {
        "force": True,
        "server": "puppet:8140",
        "noop": False,
        "environment": "prod",
        "tags": "nginx,ssh",
    }
    assert RunOptions().to_descriptor().arguments == {}


def _context(client, output=None, **kwargs):
    return CommandContext(
        client=client,
        node_filter=kwargs.pop("node_filter", NodeFilter()),
        options=kwargs.pop("options", RunOptions()),
        progress=lambda at, message: None,
        output=output or (lambda line: None),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_runall_command_runs_discovered_nodes(make_client):
    client = make_client(nodes=["a", "b", "c"])
    ctx = _context(client, options=RunOptions(noop=True))

    stats = await COMMANDS[Action.RUNALL](ctx, ActionRequest(Action.RUNALL, 2))

    assert client.triggered == ["a", "b", "c"]
    assert client.commands[0].arguments == {"noop": True}
    assert stats.succeeded == 3


@pytest.mark.asyncio
async def test_runall_command_refuses_conflicting_options(make_client):
    client = make_client(nodes=["a"])
    ctx = _context(client, options=RunOptions(force=True, splaylimit=5))

    with pytest.raises(ConfigurationError):
        await COMMANDS[Action.RUNALL](ctx, ActionRequest(Action.RUNALL, 2))
    assert client.triggered == []


@pytest.mark.asyncio
async def test_runall_command_refuses_compound_filter(make_client):
    client = make_client(nodes=["a"])
    ctx = _context(client, node_filter=NodeFilter(compound=["a or b"]))

    with pytest.raises(ConfigurationError) as excinfo:
        await COMMANDS[Action.RUNALL](ctx, ActionRequest(Action.RUNALL, 2))
    assert excinfo.value.kind is ErrorKind.COMPOUND_FILTER
    assert client.triggered == []


@pytest.mark.asyncio
async def test_discover_command_prints_nodes(make_client):
    client = make_client(nodes=["a", "b"])
    lines = []

    nodes = await COMMANDS[Action.DISCOVER](_context(client, lines.append), ActionRequest(Action.DISCOVER))

    assert nodes == ["a", "b"]
    assert lines == ["a", "b", "\nTotal matching nodes: 2"]
    assert client.triggered == []
