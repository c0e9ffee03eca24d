"""TUI Dashboard for fleetrun."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from rich.text import Text
from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import DataTable, Footer, Header, RichLog, Static
from textual.worker import Worker

from .client import NodeFilter
from .commands import ActionRequest, RunOptions
from .config import Config, RunSettings
from .errors import ConfigurationError, FatalTransportError
from .logs import RunLog
from .scheduler import BatchScheduler
from .ssh_client import SshAgentClient
from .state import Node, NodeState
from .stats import RunStatistics


STATUS_ICONS = {
    NodeState.QUEUED: ("·", "dim"),
    NodeState.DISPATCHED: ("→", "yellow"),
    NodeState.RUNNING: ("▶", "yellow"),
    NodeState.SUCCEEDED: ("✓", "green"),
    NodeState.FAILED: ("✗", "red"),
    NodeState.TIMED_OUT: ("⏱", "magenta"),
}


def status_text(state: NodeState) -> Text:
    icon, color = STATUS_ICONS.get(state, ("?", "white"))
    return Text(f"{icon} {state.value}", style=color)


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    in_flight: reactive[int] = reactive(0)
    concurrency: reactive[int] = reactive(0)
    phase: reactive[str] = reactive("Discovering...")

    def render(self) -> str:
        return (
            f"Progress: {self.completed}/{self.total} nodes complete | "
            f"{self.in_flight}/{self.concurrency} in flight | {self.phase} | Press 'q' to quit"
        )


@dataclass
class ProgressLine(Message):
    """Message for a scheduler progress line."""
    at: datetime
    line: str


@dataclass
class NodeStateChange(Message):
    """Message for node state change."""
    identity: str
    state: NodeState
    detail: str


class Dashboard(App):
    """Live view of a runall batch."""

    CSS = """
    #nodes {
        height: 2fr;
        border: solid $primary;
    }

    #progress {
        height: 1fr;
        border: solid $primary;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Stop / Quit"),
        ("escape", "quit", "Stop / Quit"),
    ]

    def __init__(
        self,
        config: Config,
        request: ActionRequest,
        node_filter: NodeFilter,
        options: RunOptions,
        settings: RunSettings,
        enable_logging: bool = True,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.config = config
        self.request = request
        self.node_filter = node_filter
        self.options = options
        self.run_log = RunLog(config, enabled=enable_logging)
        self.client = SshAgentClient(config, on_output=self.run_log.write_output)
        self.scheduler = BatchScheduler(
            self.client,
            request.concurrency,
            node_timeout=settings.node_timeout,
            run_timeout=settings.run_timeout,
            abandon_timeout=settings.abandon_timeout,
            progress=self._on_progress,
            on_state=self._on_state,
        )
        self.statistics: RunStatistics | None = None
        self.error: Exception | None = None
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield DataTable(id="nodes", cursor_type="row")
        yield RichLog(id="progress", highlight=True, markup=False, wrap=True, auto_scroll=True)
        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start execution when the app mounts."""
        table = self.query_one("#nodes", DataTable)
        table.add_column("Node", key="node")
        table.add_column("State", key="state")
        table.add_column("Detail", key="detail")

        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.concurrency = self.request.concurrency or 0

        self._worker = self.run_worker(self._run_execution(), exclusive=True)

    async def _run_execution(self) -> None:
        """Discover nodes, then run the batch and keep the outcome."""
        status_bar = self.query_one("#status-bar", StatusBar)
        try:
            nodes = await self.client.discover(self.node_filter, batch=True)
            table = self.query_one("#nodes", DataTable)
            for identity in nodes:
                table.add_row(identity, status_text(NodeState.QUEUED), "", key=identity)
            status_bar.total = len(nodes)
            status_bar.phase = "Running..."

            self.run_log.setup()
            self.statistics = await self.scheduler.run(
                nodes, self.options.to_descriptor(), self.node_filter
            )
            status_bar.phase = "Interrupted" if self.statistics.interrupted else "Complete"
            for line in self.statistics.summary_lines():
                self._write_progress(line)
        except (ConfigurationError, FatalTransportError) as e:
            self.error = e
            self.statistics = getattr(e, "statistics", None)
            status_bar.phase = "Failed"
            self._write_progress(f"ERROR: {e}")
        finally:
            await self.client.close()

    def _write_progress(self, line: str) -> None:
        log = self.query_one("#progress", RichLog)
        if line.startswith("ERROR:") or ": failed" in line:
            log.write(Text(line, style="bold red"))
        elif ": timed out" in line:
            log.write(Text(line, style="magenta"))
        elif ": succeeded" in line:
            log.write(Text(line, style="green"))
        else:
            log.write(line)

    def _on_progress(self, at: datetime, line: str) -> None:
        """Handle a progress line - posts message to the app."""
        self.run_log.write_progress(at, line)
        self.post_message(ProgressLine(at, line))

    def _on_state(self, node: Node) -> None:
        """Handle a node transition - posts message to the app."""
        self.post_message(NodeStateChange(node.identity, node.state, node.error or ""))

    def on_progress_line(self, message: ProgressLine) -> None:
        self._write_progress(f"{message.at:%H:%M:%S} {message.line}")

    def on_node_state_change(self, message: NodeStateChange) -> None:
        """Handle NodeStateChange message."""
        table = self.query_one("#nodes", DataTable)
        table.update_cell(message.identity, "state", status_text(message.state))
        table.update_cell(message.identity, "detail", message.detail)

        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.in_flight = self.scheduler.in_flight
        status_bar.completed = self.scheduler.done

    async def action_quit(self) -> None:
        """Stop admitting nodes on the first press, quit on the second."""
        if self._worker and self._worker.is_running and not self.scheduler.stopping:
            self.scheduler.interrupt("user request")
            self.query_one("#status-bar", StatusBar).phase = "Stopping..."
            return
        if self._worker and self._worker.is_running:
            self._worker.cancel()
        self.exit()
