"""Builder strategies share one capability set: build, publish, cleanup."""

from __future__ import annotations

import logging
import secrets
import shutil
import threading
from pathlib import Path
from typing import Optional

from .config import BuilderConfig
from .errors import BuildCancelled
from .logs import LoggerFactory, LogSink
from .spec import BuildResult, GitProviderConfig, ImageBuild, Project

logger = logging.getLogger(__name__)


def generate_build_id() -> str:
    """A short random id, usable as a container name and a path component."""
    return secrets.token_hex(6)


class Builder:
    """Base for a single build attempt.

    A builder exclusively owns its working tree (and, for container-based
    strategies, its builder container) until cleanup() is called. Builders are
    context managers so every exit path releases those resources.
    """

    strategy = "base"

    def __init__(
        self,
        build_id: str,
        project: Project,
        config: BuilderConfig,
        project_volume_path: Path,
        logger_factory: LoggerFactory,
        git_provider_config: Optional[GitProviderConfig] = None,
        config_hash: str = "",
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.id = build_id
        self.project = project
        self.config = config
        self.project_volume_path = Path(project_volume_path)
        self.logger_factory = logger_factory
        self.git_provider_config = git_provider_config
        self.hash = config_hash or project.config_hash()
        self.cancel = cancel or threading.Event()
        self._log: Optional[LogSink] = None

    @property
    def log(self) -> LogSink:
        if self._log is None:
            self._log = self.logger_factory.create_project_logger(
                self.project.workspace_id, self.project.name
            )
        return self._log

    def check_cancelled(self) -> None:
        if self.cancel.is_set():
            raise BuildCancelled(f"build {self.id} for {self.project.name} was cancelled")

    def build(self) -> BuildResult:
        raise NotImplementedError

    def publish(self) -> None:
        raise NotImplementedError

    def cleanup(self) -> None:
        """Release everything the builder created. Safe to call repeatedly."""
        if self.project_volume_path.exists():
            shutil.rmtree(self.project_volume_path)
        if self._log is not None:
            self._log.close()
            self._log = None

    def __enter__(self) -> "Builder":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.cleanup()
        except Exception as cleanup_exc:
            if exc is None:
                raise
            # The build error propagates; the leak is only logged.
            logger.error(f"Cleanup of build {self.id} failed: {cleanup_exc}")


class ImageBuilder(Builder):
    """Hands back a pre-built image unchanged."""

    strategy = "image"

    def build(self) -> BuildResult:
        self.check_cancelled()
        build_config = self.project.build
        if not isinstance(build_config, ImageBuild):
            raise RuntimeError("ImageBuilder requires an image build descriptor")

        self.log.write(f"Using pre-built image {build_config.image}")
        return BuildResult(
            user=self.project.user or self.config.default_project_user,
            image_name=build_config.image,
            project_volume_path=str(self.project_volume_path),
            hash=self.hash,
        )

    def publish(self) -> None:
        logger.info(f"Image {self.project.build.image} is pre-built; nothing to publish")
