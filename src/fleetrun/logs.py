"""Per-run log directory: progress lines and per-node output."""

from __future__ import annotations

import shutil
from datetime import datetime
from pathlib import Path

from .config import Config

PROGRESS_LOG = "progress.log"


class RunLog:
    """Writes one run's logs under ``<log_dir>/<timestamp>/``."""

    def __init__(self, config: Config, enabled: bool = True) -> None:
        self.config = config
        self.enabled = enabled
        self.directory: Path | None = None

    def setup(self) -> Path | None:
        """Create the log directory with timestamp."""
        if not self.enabled:
            return None
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.directory = self.config.log_dir / timestamp
        self.directory.mkdir(parents=True, exist_ok=True)

        # Copy the source config file to the log directory
        if self.config.source_path and self.config.source_path.exists():
            shutil.copy(self.config.source_path, self.directory / "config.yaml")
        return self.directory

    def node_log(self, node_name: str) -> Path | None:
        if self.directory is None:
            return None
        return self.directory / f"{node_name}.log"

    def write_output(self, node_name: str, line: str) -> None:
        """Append an output line to the node's log file."""
        path = self.node_log(node_name)
        if path is not None:
            with open(path, "a") as f:
                f.write(line + "\n")

    def write_progress(self, at: datetime, message: str) -> None:
        """Append a progress line to the run's progress log."""
        if self.directory is not None:
            with open(self.directory / PROGRESS_LOG, "a") as f:
                f.write(f"{at:%Y-%m-%d %H:%M:%S}: {message}\n")
