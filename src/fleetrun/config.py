"""Configuration loader for fleetrun."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_COMMAND = "puppet agent --onetime --no-daemonize --verbose"
LOCAL_HOST = "local"


@dataclass
class Defaults:
    """Default values that can be overridden per node."""

    user: str = "root"
    port: int = 22
    ssh_key: Path = field(default_factory=lambda: Path("~/.ssh/id_rsa").expanduser())
    connect_timeout: int = 30
    command: str = DEFAULT_COMMAND


@dataclass
class RunSettings:
    """Batch run settings. CLI flags take precedence."""

    concurrency: int | None = None
    node_timeout: float | None = 1800.0
    run_timeout: float | None = None
    abandon_timeout: float = 30.0


@dataclass
class NodeConfig:
    """Configuration for a single node."""

    name: str
    host: str
    port: int = 22
    user: str = "root"
    ssh_key: Path = field(default_factory=lambda: Path("~/.ssh/id_rsa").expanduser())
    connect_timeout: int = 30
    command: str = DEFAULT_COMMAND
    facts: dict[str, str] = field(default_factory=dict)
    classes: list[str] = field(default_factory=list)

    @property
    def is_local(self) -> bool:
        return self.host == LOCAL_HOST


@dataclass
class Config:
    """Main configuration for the runner."""

    nodes: list[NodeConfig]
    defaults: Defaults = field(default_factory=Defaults)
    run: RunSettings = field(default_factory=RunSettings)
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    source_path: Path | None = None  # Path to the original config file

    def node(self, name: str) -> NodeConfig:
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(name)


def load_config(config_path: str | Path) -> Config:
    """Load and validate configuration from a YAML file."""
    config_path = Path(config_path).resolve()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError("Configuration must be a mapping")

    config = parse_config(raw)
    config.source_path = config_path
    return config


def _parse_defaults(raw: dict[str, Any]) -> Defaults:
    """Parse the defaults section."""
    defaults_raw = raw.get("defaults") or {}
    ssh_key_str = defaults_raw.get("ssh_key", "~/.ssh/id_rsa")
    return Defaults(
        user=defaults_raw.get("user", "root"),
        port=defaults_raw.get("port", 22),
        ssh_key=Path(ssh_key_str).expanduser(),
        connect_timeout=defaults_raw.get("connect_timeout", 30),
        command=defaults_raw.get("command", DEFAULT_COMMAND),
    )


def _optional_seconds(raw: dict[str, Any], key: str, default: float | None) -> float | None:
    if key not in raw:
        return default
    value = raw[key]
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValueError(f"'run.{key}' must be a non-negative number of seconds")
    return float(value)


def _parse_run(raw: dict[str, Any]) -> RunSettings:
    """Parse the run section."""
    run_raw = raw.get("run") or {}
    concurrency = run_raw.get("concurrency")
    if concurrency is not None and (
        isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency <= 0
    ):
        raise ValueError("'run.concurrency' must be a positive integer")

    abandon_timeout = _optional_seconds(run_raw, "abandon_timeout", 30.0)
    return RunSettings(
        concurrency=concurrency,
        node_timeout=_optional_seconds(run_raw, "node_timeout", 1800.0),
        run_timeout=_optional_seconds(run_raw, "run_timeout", None),
        abandon_timeout=30.0 if abandon_timeout is None else abandon_timeout,
    )


def parse_config(raw: dict[str, Any]) -> Config:
    """Parse raw YAML data into Config object."""
    defaults = _parse_defaults(raw)
    run = _parse_run(raw)

    log_dir = Path(raw.get("log_dir", "logs")).expanduser().resolve()

    nodes_raw = raw.get("nodes") or []
    if not nodes_raw:
        raise ValueError("No nodes defined in configuration")

    nodes = []
    seen: set[str] = set()
    for node_raw in nodes_raw:
        node = _parse_node(node_raw, defaults)
        if node.name in seen:
            raise ValueError(f"Duplicate node name '{node.name}'")
        seen.add(node.name)
        nodes.append(node)

    return Config(
        nodes=nodes,
        defaults=defaults,
        run=run,
        log_dir=log_dir,
    )


def _parse_node(node_raw: dict[str, Any], defaults: Defaults) -> NodeConfig:
    """Parse a single node configuration."""
    name = node_raw.get("name")
    if not name:
        raise ValueError("Node must have a 'name' field")

    host = node_raw.get("host")
    if not host:
        raise ValueError(f"Node '{name}' must have a 'host' field")

    # Parse SSH key with expanduser
    ssh_key = defaults.ssh_key
    if "ssh_key" in node_raw:
        ssh_key = Path(node_raw["ssh_key"]).expanduser()

    facts = node_raw.get("facts") or {}
    if not isinstance(facts, dict):
        raise ValueError(f"Node '{name}': 'facts' must be a mapping")

    classes = node_raw.get("classes") or []
    if not isinstance(classes, list):
        raise ValueError(f"Node '{name}': 'classes' must be a list")

    return NodeConfig(
        name=str(name),
        host=host,
        port=node_raw.get("port", defaults.port),
        user=node_raw.get("user", defaults.user),
        ssh_key=ssh_key,
        connect_timeout=node_raw.get("connect_timeout", defaults.connect_timeout),
        command=node_raw.get("command", defaults.command),
        facts={str(k): str(v) for k, v in facts.items()},
        classes=[str(c) for c in classes],
    )
