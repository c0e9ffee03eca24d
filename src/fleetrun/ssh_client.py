"""SSH agent client: triggers puppet runs over asyncssh."""

from __future__ import annotations

import asyncio
import contextlib
import os
import re
import shlex
import signal
import time
from dataclasses import dataclass
from typing import Any, Callable

import asyncssh

from .client import ClientStats, CommandDescriptor, NodeFilter, NodeOutcome, TriggerResponse
from .commands import RUNONCE
from .config import Config, NodeConfig
from .errors import AgentError, ConfigurationError, ErrorKind, FatalTransportError

# Type alias for output callback
OutputCallback = Callable[[str, str], None]  # (node_name, line) -> None


def render_command(base: str, command: CommandDescriptor) -> str:
    """Build the remote command line for a runonce descriptor."""
    if command.name != RUNONCE:
        raise ValueError(f"Unsupported command '{command.name}'")

    args = command.arguments
    parts = [base]
    if args.get("noop") is True:
        parts.append("--noop")
    elif args.get("noop") is False:
        parts.append("--no-noop")
    for name in ("environment", "server", "tags"):
        if args.get(name):
            parts.append(f"--{name} {shlex.quote(str(args[name]))}")

    if args.get("force"):
        # Forced runs start right away
        parts.append("--no-splay")
    else:
        if args.get("splay") is True:
            parts.append("--splay")
        elif args.get("splay") is False:
            parts.append("--no-splay")
        if args.get("splaylimit") is not None:
            parts.append(f"--splaylimit {int(args['splaylimit'])}")
    return " ".join(parts)


def _matches(pattern: str, value: str) -> bool:
    if len(pattern) > 1 and pattern.startswith("/") and pattern.endswith("/"):
        return re.search(pattern[1:-1], value) is not None
    return pattern == value


def node_matches(node: NodeConfig, node_filter: NodeFilter) -> bool:
    """Check a node against the identity, fact and class parts of a filter."""
    if node_filter.identities and not any(
        _matches(p, node.name) for p in node_filter.identities
    ):
        return False

    for fact in node_filter.facts:
        key, sep, expected = fact.partition("=")
        if not sep or not key:
            raise ConfigurationError(
                ErrorKind.UNSUPPORTED_FILTER, f"Invalid fact filter '{fact}', expected key=value"
            )
        if key not in node.facts or not _matches(expected, node.facts[key]):
            return False

    for pattern in node_filter.classes:
        if not any(_matches(pattern, c) for c in node.classes):
            return False
    return True


@dataclass
class _Session:
    """A started command on one node."""

    process: Any
    connection: asyncssh.SSHClientConnection | None = None

    async def close(self) -> None:
        """Stop the command if it is still running and wait until it is gone."""
        if self.connection is not None:
            self.connection.close()
            await self.connection.wait_closed()
            return
        if self.process.returncode is None:
            # The shell runs in its own session; take its children down with it
            with contextlib.suppress(ProcessLookupError):
                os.killpg(self.process.pid, signal.SIGKILL)
        await self.process.wait()


class SshAgentClient:
    """Agent client over SSH. Nodes with host ``local`` run as local subprocesses."""

    def __init__(self, config: Config, on_output: OutputCallback | None = None) -> None:
        self.config = config
        self.on_output = on_output
        self._sessions: dict[str, _Session] = {}
        self._ok_count = 0
        self._fail_count = 0
        self._started = time.monotonic()
        self._closed = False

    def _emit_output(self, node_name: str, line: str) -> None:
        if self.on_output:
            self.on_output(node_name, line)

    def _check_open(self) -> None:
        if self._closed:
            raise FatalTransportError("SSH agent client is closed")

    async def discover(self, node_filter: NodeFilter, batch: bool = False) -> list[str]:
        """Return matching node names in configuration order."""
        self._check_open()
        if node_filter.is_compound:
            if batch:
                raise ConfigurationError(ErrorKind.COMPOUND_FILTER)
            raise ConfigurationError(
                ErrorKind.UNSUPPORTED_FILTER,
                "Compound filters are not supported by the SSH agent client",
            )
        return [node.name for node in self.config.nodes if node_matches(node, node_filter)]

    async def trigger(self, identity: str, command: CommandDescriptor) -> TriggerResponse:
        """Connect to the node and start the command."""
        self._check_open()
        try:
            node = self.config.node(identity)
        except KeyError:
            self._fail_count += 1
            return TriggerResponse.reject(f"Unknown node '{identity}'")

        try:
            cmd = render_command(node.command, command)
        except ValueError as e:
            self._fail_count += 1
            return TriggerResponse.reject(str(e))

        try:
            session = await self._start(node, cmd)
        except asyncssh.KeyImportError as e:
            raise FatalTransportError(f"Cannot load SSH key {node.ssh_key}: {e}") from e
        except asyncssh.Error as e:
            self._fail_count += 1
            self._emit_output(identity, f"ERROR: {e}")
            return TriggerResponse.reject(f"SSH error: {e}")
        except (OSError, asyncio.TimeoutError) as e:
            # asyncssh's connect_timeout raises asyncio.TimeoutError, not an OSError before 3.11
            self._fail_count += 1
            reason = str(e) or "connection timed out"
            self._emit_output(identity, f"ERROR: {reason}")
            return TriggerResponse.reject(f"Connection error: {reason}")

        self._sessions[identity] = session
        return TriggerResponse.accept()

    async def _start(self, node: NodeConfig, cmd: str) -> _Session:
        if node.is_local:
            self._emit_output(node.name, f"$ {cmd}")
            process = await asyncio.create_subprocess_shell(
                cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
            return _Session(process)

        # A missing key breaks every node, not just this one
        if not node.ssh_key.exists():
            raise FatalTransportError(f"SSH key not found: {node.ssh_key}")

        self._emit_output(node.name, f"Connecting to {node.user}@{node.host}:{node.port}...")
        conn = await asyncssh.connect(
            node.host,
            port=node.port,
            username=node.user,
            client_keys=[str(node.ssh_key)],
            known_hosts=None,  # Skip host key verification for simplicity
            connect_timeout=node.connect_timeout,
        )
        try:
            process = await conn.create_process(cmd, encoding="utf-8")
        except BaseException:
            conn.close()
            raise
        self._emit_output(node.name, f"$ {cmd}")
        return _Session(process, conn)

    async def wait_for_outcome(self, identity: str) -> NodeOutcome:
        """Stream the command's output and report its exit status."""
        session = self._sessions.get(identity)
        if session is None:
            raise AgentError(f"No command running on '{identity}'")

        async def read_stream(stream, is_stderr: bool = False) -> None:
            while True:
                line = await stream.readline()
                if not line:
                    break
                if isinstance(line, bytes):
                    line = line.decode("utf-8", errors="replace")
                line = line.rstrip("\n\r")
                prefix = "STDERR: " if is_stderr else ""
                self._emit_output(identity, f"{prefix}{line}")

        process = session.process
        try:
            await asyncio.gather(
                read_stream(process.stdout),
                read_stream(process.stderr, is_stderr=True),
            )
            await process.wait()
        except asyncssh.Error as e:
            self._fail_count += 1
            raise AgentError(f"Command error: {e}") from e
        finally:
            self._sessions.pop(identity, None)
            await session.close()

        exit_status = process.returncode
        if exit_status != 0:
            self._fail_count += 1
            self._emit_output(identity, f"Command exited with status {exit_status}")
            return NodeOutcome(
                succeeded=False,
                payload={"exit_status": exit_status},
                error=f"Command exited with status {exit_status}",
            )

        self._ok_count += 1
        return NodeOutcome(succeeded=True, payload={"exit_status": exit_status})

    def stats(self) -> ClientStats:
        return ClientStats(
            ok_count=self._ok_count,
            fail_count=self._fail_count,
            elapsed=time.monotonic() - self._started,
        )

    async def close(self) -> None:
        """Drop every open session. The client cannot be used afterwards."""
        self._closed = True
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)
