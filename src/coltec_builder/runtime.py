"""Container runtime client.

A thin facade over the docker SDK. Every call goes to a daemon over a local
control socket: the host daemon for the builder container itself, and a
per-build nested daemon for the images the devcontainer CLI produces.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import docker
from docker.errors import DockerException, NotFound
from docker.utils import parse_repository_tag

from .errors import CommandFailed, ControlPlaneError
from .logs import LogSink, write_lines

logger = logging.getLogger(__name__)

EXIT_CODE_POLL_INTERVAL = 0.1
EXIT_CODE_POLL_ATTEMPTS = 50


@contextmanager
def _control_plane(action: str) -> Iterator[None]:
    try:
        yield
    except DockerException as exc:
        raise ControlPlaneError(f"{action} failed: {exc}") from exc


def iter_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Re-split a byte stream into decoded text lines."""
    buffer = b""
    for chunk in chunks:
        if not chunk:
            continue
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        buffer += chunk
        while b"\n" in buffer:
            line, buffer = buffer.split(b"\n", 1)
            yield line.decode("utf-8", errors="replace").rstrip("\r")
    if buffer:
        yield buffer.decode("utf-8", errors="replace").rstrip("\r")


@dataclass
class ContainerSpec:
    image: str
    name: Optional[str] = None
    entrypoint: Optional[List[str]] = None
    command: Optional[List[str]] = None
    binds: List[str] = field(default_factory=list)
    privileged: bool = False
    network_mode: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExecResult:
    output: str
    exit_code: int


class ExecStream:
    """Live output of a running exec, plus its exit code once it ends."""

    def __init__(self, api: Any, exec_id: str, chunks: Iterable[bytes]) -> None:
        self.api = api
        self.exec_id = exec_id
        self._chunks = chunks

    def lines(self) -> Iterator[str]:
        try:
            yield from iter_lines(self._chunks)
        except (DockerException, OSError) as exc:
            raise ControlPlaneError(f"reading exec {self.exec_id[:12]} output failed: {exc}") from exc

    def exit_code(self) -> int:
        with _control_plane(f"inspect exec {self.exec_id[:12]}"):
            for _ in range(EXIT_CODE_POLL_ATTEMPTS):
                info = self.api.exec_inspect(self.exec_id)
                if not info.get("Running") and info.get("ExitCode") is not None:
                    return int(info["ExitCode"])
                time.sleep(EXIT_CODE_POLL_INTERVAL)
        raise ControlPlaneError(f"exec {self.exec_id[:12]} did not report an exit code")


class RuntimeClient:
    """Image, container and exec operations against one daemon."""

    def __init__(self, client: docker.DockerClient) -> None:
        self.client = client

    @classmethod
    def from_env(cls) -> "RuntimeClient":
        with _control_plane("connect to container runtime"):
            return cls(docker.from_env())

    @classmethod
    def for_socket(cls, socket_path: str) -> "RuntimeClient":
        with _control_plane(f"connect to container runtime at {socket_path}"):
            return cls(docker.DockerClient(base_url=f"unix://{socket_path}", version="auto"))

    @property
    def api(self) -> Any:
        return self.client.api

    def close(self) -> None:
        self.client.close()

    def pull_image(self, ref: str, on_line: Optional[Callable[[str], None]] = None) -> None:
        """Pull ref and wait for the pull to complete."""
        repository, tag = parse_repository_tag(ref)
        logger.info(f"Pulling image {ref}")
        with _control_plane(f"pull {ref}"):
            for item in self.api.pull(repository, tag=tag or "latest", stream=True, decode=True):
                if item.get("error"):
                    raise ControlPlaneError(f"pull {ref} failed: {item['error']}")
                if on_line is not None and item.get("status"):
                    on_line(_progress_line(item))

    def create_container(self, spec: ContainerSpec) -> str:
        with _control_plane(f"create container {spec.name or spec.image}"):
            host_config = self.api.create_host_config(
                binds=spec.binds or None,
                privileged=spec.privileged,
                network_mode=spec.network_mode,
            )
            response = self.api.create_container(
                spec.image,
                command=spec.command,
                name=spec.name,
                entrypoint=spec.entrypoint,
                environment=spec.environment or None,
                labels=spec.labels or None,
                host_config=host_config,
            )
        container_id = response["Id"]
        logger.info(f"Created container {spec.name or container_id[:12]} from {spec.image}")
        return container_id

    def start_container(self, handle: str) -> None:
        with _control_plane(f"start container {handle}"):
            self.api.start(handle)

    def exec_sync(
        self,
        handle: str,
        cmd: List[str],
        user: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        log: Optional[LogSink] = None,
        check: bool = True,
    ) -> ExecResult:
        """Run cmd in the container and block until it exits.

        With check, a non-zero exit raises CommandFailed carrying the output.
        """
        with _control_plane(f"exec in {handle}"):
            exec_id = self.api.exec_create(
                handle, cmd, stdout=True, stderr=True, user=user or "", environment=env
            )["Id"]
            raw = self.api.exec_start(exec_id)
        output = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else (raw or "")
        write_lines(log, output)

        exit_code = ExecStream(self.api, exec_id, []).exit_code()
        if check and exit_code != 0:
            raise CommandFailed(cmd, exit_code, output)
        return ExecResult(output=output, exit_code=exit_code)

    def exec_stream(
        self,
        handle: str,
        cmd: List[str],
        user: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ExecStream:
        """Start cmd in the container with stdout and stderr attached."""
        with _control_plane(f"exec in {handle}"):
            exec_id = self.api.exec_create(
                handle, cmd, stdout=True, stderr=True, user=user or "", environment=env
            )["Id"]
            chunks = self.api.exec_start(exec_id, stream=True)
        return ExecStream(self.api, exec_id, chunks)

    def stream_logs(self, handle: str, since: Optional[float] = None) -> Iterator[str]:
        """Follow container logs, from the start or from the since timestamp."""
        kwargs: Dict[str, Any] = {"stream": True, "follow": True}
        if since is not None:
            kwargs["since"] = since
        with _control_plane(f"attach to logs of {handle}"):
            chunks = self.api.logs(handle, **kwargs)
        try:
            yield from iter_lines(chunks)
        except (DockerException, OSError) as exc:
            raise ControlPlaneError(f"reading logs of {handle} failed: {exc}") from exc

    def tag_image(self, source: str, target: str) -> None:
        repository, tag = parse_repository_tag(target)
        with _control_plane(f"tag {source} as {target}"):
            tagged = self.api.tag(source, repository, tag=tag or "latest")
        if not tagged:
            raise ControlPlaneError(f"tag {source} as {target} was rejected")
        logger.info(f"Tagged {source} as {target}")

    def push_image(
        self,
        ref: str,
        auth_config: Optional[Dict[str, str]] = None,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> None:
        repository, tag = parse_repository_tag(ref)
        logger.info(f"Pushing image {ref}")
        with _control_plane(f"push {ref}"):
            for item in self.api.push(
                repository, tag=tag or "latest", stream=True, decode=True, auth_config=auth_config
            ):
                if item.get("error"):
                    raise ControlPlaneError(f"push {ref} failed: {item['error']}")
                if on_line is not None:
                    on_line(_progress_line(item))

    def inspect_image(self, ref: str) -> Dict[str, Any]:
        with _control_plane(f"inspect {ref}"):
            return self.api.inspect_image(ref)

    def remove_container(self, handle: str, force: bool = True) -> bool:
        """Remove a container. Returns False if it was already gone."""
        try:
            self.api.remove_container(handle, force=force, v=True)
        except NotFound:
            logger.info(f"Container {handle} already removed")
            return False
        except DockerException as exc:
            raise ControlPlaneError(f"remove container {handle} failed: {exc}") from exc
        logger.info(f"Removed container {handle}")
        return True


def _progress_line(item: Dict[str, Any]) -> str:
    parts = [str(item[key]) for key in ("id", "status", "progress") if item.get(key)]
    return " ".join(parts) if parts else str(item)
