"""Devcontainer build strategy.

The devcontainer CLI needs a docker daemon of its own, so each build gets an
ephemeral privileged builder container running a nested dockerd. The nested
daemon's socket lives in a per-build host directory, which keeps the images
of concurrent builds apart and lets the host talk to that daemon directly to
tag, inspect and push the result.
"""

from __future__ import annotations

import json
import logging
import posixpath
import shutil
from pathlib import Path
from typing import Callable, List, Optional

from pydantic import ValidationError

from .builder import Builder
from .errors import BuildFailed, ProtocolViolation
from .relay import LogRelay
from .runtime import ContainerSpec, RuntimeClient
from .spec import BuildOutcome, BuildResult, DevcontainerBuild

logger = logging.getLogger(__name__)

PROJECT_MOUNT = "/project"
NESTED_SOCKET_MOUNT = "/tmp/docker"
DEVCONTAINER_METADATA_LABEL = "devcontainer.metadata"
OUTCOME_MARKER = '{"outcome"'

# TODO: replace with credentials from the container registry store once the
# registry lookup is wired into the builder. An empty value is rejected by
# the daemon with an X-Registry-Auth error, so a placeholder is sent.
PLACEHOLDER_REGISTRY_AUTH = {"auth": "empty"}


def parse_outcome_line(line: str) -> Optional[BuildOutcome]:
    """Extract the outcome record from a line of devcontainer CLI output.

    Returns None for lines that do not carry one. A line that does carry one
    but fails to decode raises ProtocolViolation.
    """
    if OUTCOME_MARKER not in line:
        return None
    start = line.find("{")
    end = line.rfind("}")
    payload = line[start : end + 1] if start != -1 and end > start else line
    try:
        return BuildOutcome.model_validate(json.loads(payload))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ProtocolViolation(f"could not decode devcontainer build outcome: {exc}") from exc


def extract_remote_user(image_attrs: dict) -> str:
    """Read the first non-empty remoteUser from the devcontainer metadata label."""
    labels = (image_attrs.get("Config") or {}).get("Labels") or {}
    raw = labels.get(DEVCONTAINER_METADATA_LABEL)
    if raw is None:
        raise ProtocolViolation(f"{DEVCONTAINER_METADATA_LABEL} label not found")
    try:
        metadata = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolViolation(f"{DEVCONTAINER_METADATA_LABEL} label is not valid JSON: {exc}") from exc
    if not isinstance(metadata, list):
        raise ProtocolViolation(f"{DEVCONTAINER_METADATA_LABEL} label is not a JSON array")

    for entry in metadata:
        if isinstance(entry, dict) and isinstance(entry.get("remoteUser"), str) and entry["remoteUser"]:
            return entry["remoteUser"]
    raise ProtocolViolation("remoteUser not found in metadata")


class DevcontainerBuilder(Builder):
    strategy = "devcontainer"

    def __init__(
        self,
        *args,
        runtime_factory: Callable[[], RuntimeClient] = RuntimeClient.from_env,
        nested_runtime_factory: Callable[[str], RuntimeClient] = RuntimeClient.for_socket,
        devcontainer_file_path: str = "",
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._devcontainer_file_path = devcontainer_file_path
        self.runtime_factory = runtime_factory
        self.nested_runtime_factory = nested_runtime_factory
        self.build_image_name: Optional[str] = None
        self._runtime: Optional[RuntimeClient] = None
        self._nested_runtime: Optional[RuntimeClient] = None
        self._relays: List[LogRelay] = []

    @property
    def runtime(self) -> RuntimeClient:
        if self._runtime is None:
            self._runtime = self.runtime_factory()
        return self._runtime

    @property
    def nested_runtime(self) -> RuntimeClient:
        """Client for the daemon running inside the builder container."""
        if self._nested_runtime is None:
            self._nested_runtime = self.nested_runtime_factory(str(self.local_docker_socket))
        return self._nested_runtime

    @property
    def socket_dir(self) -> Path:
        return Path(self.config.socket_root) / self.id

    @property
    def local_docker_socket(self) -> Path:
        return self.socket_dir / "docker" / "docker.sock"

    @property
    def devcontainer_file_path(self) -> str:
        if self._devcontainer_file_path:
            return self._devcontainer_file_path
        build_config = self.project.build
        if isinstance(build_config, DevcontainerBuild):
            return build_config.devcontainer_file_path
        return ""

    def target_image_name(self) -> str:
        # TODO: tag with the repository commit instead of "latest".
        return f"{self.config.local_container_registry_server}/p-{self.id}:latest"

    def build(self) -> BuildResult:
        self.check_cancelled()
        self.start_container()
        self.check_cancelled()
        self.start_docker()
        self.check_cancelled()
        self.build_devcontainer()
        self.check_cancelled()
        remote_user = self.get_remote_user()

        return BuildResult(
            user=remote_user,
            image_name=self.build_image_name,
            project_volume_path=str(self.project_volume_path),
            hash=self.hash,
        )

    def start_container(self) -> None:
        image = self.config.builder_image
        self.runtime.pull_image(image)

        # The nested daemon creates its socket here; the host reaches it
        # through the bind mount below.
        self.local_docker_socket.parent.mkdir(parents=True, exist_ok=True)

        self.runtime.create_container(
            ContainerSpec(
                image=image,
                name=self.id,
                entrypoint=["sleep", "infinity"],
                binds=[
                    f"{self.project_volume_path}:{PROJECT_MOUNT}",
                    f"{self.local_docker_socket.parent}:{NESTED_SOCKET_MOUNT}",
                ],
                privileged=True,
                network_mode="host",
                labels={"coltec.build_id": self.id, "coltec.project": self.project.name},
            )
        )
        self.runtime.start_container(self.id)
        logger.info(f"Builder container {self.id} started for {self.project.name}")

    def start_docker(self) -> None:
        """Launch the nested dockerd without waiting for it to become ready."""
        cmd = [
            "dockerd",
            "-H",
            f"unix://{NESTED_SOCKET_MOUNT}/docker.sock",
            "-H",
            "unix:///var/run/docker.sock",
            "--insecure-registry",
            self.config.insecure_registry,
        ]
        stream = self.runtime.exec_stream(self.id, cmd)
        relay = LogRelay(
            f"dockerd-{self.id}",
            stream.lines,
            self.log,
            backoff=self.config.log_relay_backoff,
            reattach=False,
        )
        self._relays.append(relay.start())

    def build_devcontainer(self) -> None:
        cmd = ["devcontainer", "build", "--workspace-folder", PROJECT_MOUNT]
        if self.devcontainer_file_path:
            cmd.extend(["--config", posixpath.join(PROJECT_MOUNT, self.devcontainer_file_path)])

        self.log.write(f"$ {' '.join(cmd)}")
        stream = self.runtime.exec_stream(self.id, cmd)

        outcome: Optional[BuildOutcome] = None
        for line in stream.lines():
            self.log.write(line)
            parsed = parse_outcome_line(line)
            if parsed is not None:
                outcome = parsed
            self.check_cancelled()

        exit_code = stream.exit_code()
        if outcome is None:
            raise BuildFailed("devcontainer build produced no outcome", exit_code=exit_code)
        if outcome.outcome != "success" or exit_code != 0:
            raise BuildFailed(
                f"devcontainer build failed (outcome={outcome.outcome}, exit code={exit_code})",
                exit_code=exit_code,
            )
        if not outcome.image_name:
            raise ProtocolViolation("devcontainer build outcome has no imageName")

        image_name = self.target_image_name()
        self.nested_runtime.tag_image(outcome.image_name[0], image_name)
        self.build_image_name = image_name
        self.log.write(f"Built image {image_name}")

    def get_remote_user(self) -> str:
        if not self.build_image_name:
            raise RuntimeError("build_devcontainer() must run before get_remote_user()")
        attrs = self.nested_runtime.inspect_image(self.build_image_name)
        return extract_remote_user(attrs)

    def publish(self) -> None:
        if not self.build_image_name:
            raise RuntimeError("nothing to publish; build() has not produced an image")
        logger.warning(
            f"Pushing {self.build_image_name} with a placeholder registry credential"
        )
        self.nested_runtime.push_image(
            self.build_image_name,
            auth_config=PLACEHOLDER_REGISTRY_AUTH,
            on_line=self.log.write,
        )

    def cleanup(self) -> None:
        for relay in self._relays:
            relay.signal()

        if self._nested_runtime is not None:
            self._nested_runtime.close()
            self._nested_runtime = None

        try:
            # Exec streams only close once the container is gone.
            self.runtime.remove_container(self.id, force=True)
        finally:
            for relay in self._relays:
                relay.join()
            self._relays = []

        if self.socket_dir.exists():
            shutil.rmtree(self.socket_dir)
        super().cleanup()
