"""Repository acquisition inside a throwaway container.

Used where the checkout must land on a host the builder only reaches through
the container runtime (and, optionally, an SSH session): the clone runs as the
workspace user after that user has been remapped to the operator's UID/GID.
"""

from __future__ import annotations

import logging
import posixpath
import time
from pathlib import Path
from typing import Iterator, Optional

from .config import DEFAULT_BUILDER_IMAGE
from .errors import TransportError
from .git import GitService, redact, render_shell
from .logs import LogSink, write_lines
from .ownership import DEFAULT_WORKSPACE_USER, reconcile_ownership, resolve_ownership_params
from .relay import LogRelay
from .runtime import ContainerSpec, RuntimeClient
from .spec import GitProviderConfig, Project
from .ssh import SshClient

logger = logging.getLogger(__name__)

WORKDIR_MOUNT = "/workdir"
LOG_REATTACH_BACKOFF = 0.1


def clone_container_name(project: Project) -> str:
    return f"git-clone-{project.workspace_id}-{project.name}"


def log_follower(runtime: RuntimeClient, handle: str):
    """Return a stream opener that resumes after the last relayed line.

    Re-attaching from the start of the log would repeat every line already
    written to the project log.
    """
    last_seen: dict = {}

    def open_stream() -> Iterator[str]:
        for line in runtime.stream_logs(handle, since=last_seen.get("since")):
            last_seen["since"] = time.time()
            yield line

    return open_stream


def clone_in_container(
    runtime: RuntimeClient,
    project: Project,
    project_dir: Path,
    gpc: Optional[GitProviderConfig] = None,
    ssh_client: Optional[SshClient] = None,
    log: Optional[LogSink] = None,
    image: str = DEFAULT_BUILDER_IMAGE,
    remote_user: str = DEFAULT_WORKSPACE_USER,
) -> None:
    """Clone project into project_dir from inside a helper container.

    The parent of project_dir is bind-mounted at /workdir. The helper
    container is removed on every exit path.
    """
    project_dir = Path(project_dir)
    target = posixpath.join(WORKDIR_MOUNT, project_dir.name)
    clone_cmd = render_shell(GitService(Path(target)).clone_repository_cmd(project, gpc))

    runtime.pull_image(image)
    handle = runtime.create_container(
        ContainerSpec(
            image=image,
            name=clone_container_name(project),
            entrypoint=["sleep"],
            command=["infinity"],
            binds=[f"{project_dir.parent}:{WORKDIR_MOUNT}"],
        )
    )

    relay: Optional[LogRelay] = None
    try:
        runtime.start_container(handle)
        relay = LogRelay(
            f"clone-{project.name}",
            log_follower(runtime, handle),
            log,
            backoff=LOG_REATTACH_BACKOFF,
        ).start()

        params = resolve_ownership_params(ssh_client, remote_user)
        reconcile_ownership(runtime, handle, params, log=log)

        logger.info(f"Cloning {redact(project.repository.url)} as {params.container_user}")
        result = runtime.exec_sync(
            handle,
            ["sh", "-c", clone_cmd],
            user=params.container_user,
            check=False,
        )
        write_lines(log, redact(result.output))
        if result.exit_code != 0:
            raise TransportError(
                f"git clone failed with exit code {result.exit_code}: {redact(result.output.strip())}"
            )
    finally:
        if relay is not None:
            relay.signal()
        try:
            runtime.remove_container(handle, force=True)
        finally:
            if relay is not None:
                relay.join()
