"""Per-project log sinks for build output."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import List, Optional, Protocol

logger = logging.getLogger(__name__)


class LogSink(Protocol):
    def write(self, line: str) -> None: ...

    def close(self) -> None: ...


class LoggerFactory(Protocol):
    def create_project_logger(self, workspace_id: str, project_name: str) -> LogSink: ...


class ProjectLogger:
    """Appends build output lines to a project log file.

    Writes are serialized because the log relays run on their own threads.
    """

    def __init__(self, path: Path, name: str) -> None:
        self.path = path
        self.name = name
        self._lock = threading.Lock()
        self._handle = None
        self._closed = False

    def write(self, line: str) -> None:
        if not line.endswith("\n"):
            line += "\n"
        with self._lock:
            if self._closed:
                return
            if self._handle is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._handle = self.path.open("a", encoding="utf-8")
            self._handle.write(line)
            self._handle.flush()
        logger.debug(f"[{self.name}] {line.rstrip()}")

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._handle is not None:
                self._handle.close()
                self._handle = None


class FileLoggerFactory:
    """Creates one log file per project under <logs_dir>/<workspace_id>/."""

    def __init__(self, logs_dir: Path) -> None:
        self.logs_dir = logs_dir

    def create_project_logger(self, workspace_id: str, project_name: str) -> ProjectLogger:
        path = self.logs_dir / workspace_id / f"{project_name}.log"
        return ProjectLogger(path, name=f"{workspace_id}/{project_name}")


class MemorySink:
    """Collects lines in memory; used by callers that want the output back."""

    def __init__(self) -> None:
        self.lines: List[str] = []
        self.closed = False

    def write(self, line: str) -> None:
        self.lines.append(line.rstrip("\n"))

    def close(self) -> None:
        self.closed = True


class MemoryLoggerFactory:
    def __init__(self) -> None:
        self.sinks: dict = {}

    def create_project_logger(self, workspace_id: str, project_name: str) -> MemorySink:
        key = f"{workspace_id}/{project_name}"
        sink = self.sinks.get(key)
        if sink is None:
            sink = self.sinks[key] = MemorySink()
        return sink


def write_lines(sink: Optional[LogSink], text: str) -> None:
    """Write every line of text into sink (no-op without a sink)."""
    if sink is None:
        return
    for line in text.splitlines():
        sink.write(line)
