from __future__ import annotations

import asyncio
import os
import sys

# Make the src/ layout importable without an installed package.
_SRC = os.path.join(os.path.dirname(os.path.dirname(__file__)), "src")
if _SRC not in sys.path:
    sys.path.insert(0, _SRC)

import pytest

from fleetrun.client import ClientStats, NodeOutcome, TriggerResponse
from fleetrun.errors import AgentError, ConfigurationError, ErrorKind, FatalTransportError


class _FakeAgentClient:
    """In-memory agent client driven by a per-node plan.

    Plans are ``(kind, delay)`` tuples. Kinds: ``ok``, ``fail``, ``reject``,
    ``agent_error``, ``fatal``, ``crash``, ``hang`` (never finishes once
    running), ``trigger_hang`` (never answers the trigger), and
    ``trigger_timeout``/``client_timeout`` (the client's own timeout fires
    while triggering or waiting).
    """

    def __init__(self, plans=None, default=("ok", 0.0), nodes=None):
        self.plans = dict(plans or {})
        self.default = default
        self.nodes = list(nodes or [])
        self.triggered = []
        self.commands = []
        self.active = set()
        self.max_active = 0
        self.ok = 0
        self.failed = 0

    def _plan(self, identity):
        return self.plans.get(identity, self.default)

    async def discover(self, node_filter, batch=False):
        if batch and node_filter.is_compound:
            raise ConfigurationError(ErrorKind.COMPOUND_FILTER)
        return list(self.nodes)

    async def trigger(self, identity, command):
        self.triggered.append(identity)
        self.commands.append(command)
        kind, _ = self._plan(identity)
        if kind == "reject":
            self.failed += 1
            return TriggerResponse.reject("agent unreachable")
        if kind == "agent_error":
            raise AgentError("agent exploded")
        if kind == "fatal":
            raise FatalTransportError("connection to middleware lost")
        if kind == "crash":
            raise RuntimeError("client bug")
        if kind == "trigger_timeout":
            raise asyncio.TimeoutError()
        if kind == "trigger_hang":
            await asyncio.Event().wait()
        self.active.add(identity)
        self.max_active = max(self.max_active, len(self.active))
        return TriggerResponse.accept()

    async def wait_for_outcome(self, identity):
        kind, delay = self._plan(identity)
        try:
            if kind == "hang":
                await asyncio.Event().wait()
            if kind == "client_timeout":
                raise TimeoutError("no reply from middleware")
            await asyncio.sleep(delay)
        finally:
            self.active.discard(identity)
        if kind == "ok":
            self.ok += 1
            return NodeOutcome(succeeded=True, payload={"node": identity})
        self.failed += 1
        return NodeOutcome(succeeded=False, error="puppet run failed")

    def stats(self):
        return ClientStats(ok_count=self.ok, fail_count=self.failed, elapsed=0.0)


@pytest.fixture
def make_client():
    """Factory for fake agent clients."""
    return _FakeAgentClient


class _ProgressRecorder:
    def __init__(self):
        self.lines = []

    def __call__(self, at, message):
        self.lines.append((at, message))

    def messages(self):
        return [m for _, m in self.lines]


@pytest.fixture
def progress():
    return _ProgressRecorder()
