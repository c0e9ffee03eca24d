"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from fleetrun.config import DEFAULT_COMMAND, load_config, parse_config

SAMPLE = """
log_dir: {log_dir}
defaults:
  user: deploy
  port: 2222
  ssh_key: /keys/fleet
  command: puppet agent --test
run:
  concurrency: 4
  node_timeout: 600
  run_timeout: null
nodes:
  - name: web1
    host: 10.0.0.1
    facts: {{role: web, dc: ams}}
    classes: [nginx]
  - name: db1
    host: 10.0.0.2
    user: root
    port: 22
    ssh_key: /keys/db
    command: puppet agent --test --noop
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "fleetrun.yaml"
    path.write_text(text)
    return path


def test_load_config(tmp_path):
    path = _write(tmp_path, SAMPLE.format(log_dir=tmp_path / "logs"))
    config = load_config(path)

    assert config.source_path == path.resolve()
    assert config.log_dir == (tmp_path / "logs").resolve()
    assert config.run.concurrency == 4
    assert config.run.node_timeout == 600.0
    assert config.run.run_timeout is None
    assert config.run.abandon_timeout == 30.0

    web1 = config.node("web1")
    assert web1.user == "deploy"
    assert web1.port == 2222
    assert web1.ssh_key == Path("/keys/fleet")
    assert web1.command == "puppet agent --test"
    assert web1.facts == {"role": "web", "dc": "ams"}
    assert web1.classes == ["nginx"]

    db1 = config.node("db1")
    assert db1.user == "root"
    assert db1.port == 22
    assert db1.ssh_key == Path("/keys/db")
    assert db1.command == "puppet agent --test --noop"


def test_minimal_config_uses_defaults():
    config = parse_config({"nodes": [{"name": "n1", "host": "local"}]})

    node = config.nodes[0]
    assert node.is_local
    assert node.command == DEFAULT_COMMAND
    assert config.run.concurrency is None
    assert config.run.node_timeout == 1800.0



def test_null_node_timeout_disables_it():
    config = parse_config(
        {"run": {"node_timeout": None}, "nodes": [{"name": "n1", "host": "local"}]}
    )
    assert config.run.node_timeout is None


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


@pytest.mark.parametrize(
    "raw, message",
    [
        ({}, "No nodes defined"),
        ({"nodes": [{"host": "h"}]}, "must have a 'name'"),
        ({"nodes": [{"name": "n"}]}, "must have a 'host'"),
        (
            {"nodes": [{"name": "n", "host": "h"}, {"name": "n", "host": "i"}]},
            "Duplicate node name 'n'",
        ),
        ({"nodes": [{"name": "n", "host": "h", "facts": ["x"]}]}, "'facts' must be a mapping"),
        (
            {"run": {"concurrency": 0}, "nodes": [{"name": "n", "host": "h"}]},
            "positive integer",
        ),
        (
            {"run": {"node_timeout": -1}, "nodes": [{"name": "n", "host": "h"}]},
            "non-negative number",
        ),
    ],
)
def test_invalid_config(raw, message):
    with pytest.raises(ValueError, match=message):
        parse_config(raw)


def test_non_mapping_file(tmp_path):
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, "- just\n- a list\n"))
