from pathlib import Path
from unittest.mock import MagicMock

import pytest

from coltec_builder.config import BuilderConfig
from coltec_builder.logs import MemoryLoggerFactory
from coltec_builder.runtime import ExecResult, ExecStream, RuntimeClient
from coltec_builder.spec import Project, Repository


@pytest.fixture
def project():
    return Project(
        name="api",
        workspace_id="ws-1",
        repository=Repository(url="https://github.com/acme/api.git", branch="main"),
    )


@pytest.fixture
def config(tmp_path):
    """
    Builder config rooted in a temp dir so records, logs, clones and nested
    daemon sockets never touch the real home directory.
    """
    return BuilderConfig(
        server_config_folder=tmp_path / "server",
        base_path=tmp_path / "builds",
        socket_root=tmp_path / "sockets",
        log_relay_backoff=0.01,
    )


@pytest.fixture
def logger_factory():
    return MemoryLoggerFactory()


@pytest.fixture
def runtime():
    """
    A RuntimeClient double; every method is a MagicMock with a benign default.
    """
    client = MagicMock(spec=RuntimeClient)
    client.create_container.return_value = "container-id"
    client.exec_sync.return_value = ExecResult(output="", exit_code=0)
    client.stream_logs.return_value = iter([])
    return client


def make_stream(lines, exit_code=0):
    """An ExecStream double yielding lines and then reporting exit_code."""
    stream = MagicMock(spec=ExecStream)
    stream.lines.side_effect = lambda: iter(lines)
    stream.exit_code.return_value = exit_code
    return stream


def write_devcontainer(project_dir: Path, relative=".devcontainer/devcontainer.json"):
    path = project_dir / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text('{"image": "mcr.microsoft.com/devcontainers/base:ubuntu"}', encoding="utf-8")
    return path
