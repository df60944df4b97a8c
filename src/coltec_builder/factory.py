"""Builder factory: cache lookup, repository checkout and strategy detection."""

from __future__ import annotations

import logging
import os
import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple, Union

from pydantic import ValidationError

from .builder import Builder, ImageBuilder, generate_build_id
from .config import BuilderConfig
from .devcontainer import DevcontainerBuilder
from .errors import UnknownStrategy
from .git import GitService, TransportConfig
from .logs import FileLoggerFactory, LoggerFactory
from .runtime import RuntimeClient
from .spec import (
    BUILD_STATUS_SUCCESS,
    BuildRecord,
    BuildResult,
    DevcontainerBuild,
    GitProviderConfig,
    ImageBuild,
    Project,
)

logger = logging.getLogger(__name__)

BUILDER_TYPE_DEVCONTAINER = "devcontainer"
BUILDER_TYPE_IMAGE = "image"

# Accepted devcontainer config locations, in lookup order.
DEVCONTAINER_CONFIG_PATHS = (".devcontainer/devcontainer.json", ".devcontainer.json")


def detect_devcontainer_config_path(project_dir: Path) -> Optional[str]:
    for candidate in DEVCONTAINER_CONFIG_PATHS:
        if (Path(project_dir) / candidate).is_file():
            return candidate
    return None


def detect_builder_type(project: Project, project_dir: Path) -> Tuple[str, Optional[str]]:
    """Return (builder_type, devcontainer_config_path) for a checked-out project.

    An explicit devcontainer path wins, then the conventional locations, then
    an explicit image descriptor.
    """
    build_config = project.build
    if isinstance(build_config, DevcontainerBuild) and build_config.devcontainer_file_path:
        if not (Path(project_dir) / build_config.devcontainer_file_path).is_file():
            raise UnknownStrategy(
                f"devcontainer config {build_config.devcontainer_file_path} not found in {project.name}"
            )
        return BUILDER_TYPE_DEVCONTAINER, build_config.devcontainer_file_path

    config_path = detect_devcontainer_config_path(project_dir)
    if config_path is not None:
        return BUILDER_TYPE_DEVCONTAINER, config_path

    if isinstance(build_config, ImageBuild):
        return BUILDER_TYPE_IMAGE, None

    raise UnknownStrategy(
        f"No devcontainer config or image found for project {project.name}; "
        "add .devcontainer/devcontainer.json or set an image build"
    )


class BuilderFactory:
    """Resolves which builder, if any, a project request needs.

    The check-then-build sequence is not locked: two callers missing the cache
    for the same hash will both build. Serialize externally if that matters.
    """

    def __init__(
        self,
        config: BuilderConfig,
        logger_factory: Optional[LoggerFactory] = None,
        runtime_factory: Callable[[], RuntimeClient] = RuntimeClient.from_env,
        nested_runtime_factory: Callable[[str], RuntimeClient] = RuntimeClient.for_socket,
        git_service_factory: Callable[..., GitService] = GitService,
    ) -> None:
        self.config = config
        self.logger_factory = logger_factory or FileLoggerFactory(config.logs_folder())
        self.runtime_factory = runtime_factory
        self.nested_runtime_factory = nested_runtime_factory
        self.git_service_factory = git_service_factory

    def build_record_path(self, config_hash: str) -> Path:
        return self.config.builds_folder() / config_hash / "build.json"

    def project_dir(self, config_hash: str) -> Path:
        return Path(self.config.base_path) / config_hash / "project"

    def check_existing_build(self, project: Project) -> Optional[BuildRecord]:
        path = self.build_record_path(project.config_hash())
        if not path.exists():
            return None
        try:
            return BuildRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise RuntimeError(f"Failed to parse build record at {path}: {exc}") from exc

    def save_build_record(self, project: Project, result: BuildResult) -> BuildRecord:
        """Persist a successful build. An existing record is left untouched."""
        path = self.build_record_path(project.config_hash())
        existing = self.check_existing_build(project)
        if existing is not None:
            logger.info(f"Build record for {project.name} already exists at {path}")
            return existing

        record = BuildRecord(
            status=BUILD_STATUS_SUCCESS,
            image_name=[result.image_name],
            user=result.user,
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)
        logger.info(f"Wrote build record {path}")
        return record

    def create(
        self,
        project: Project,
        gpc: Optional[GitProviderConfig] = None,
        transport: Optional[TransportConfig] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Builder:
        """Check out the project and return the builder for its strategy.

        Raises UnknownStrategy when the repository has no devcontainer config
        and the project names no image. The working tree is removed before
        the error propagates.
        """
        build_id = generate_build_id()
        config_hash = project.config_hash()
        project_dir = self.project_dir(config_hash)

        if project_dir.exists():
            shutil.rmtree(project_dir)

        project_logger = self.logger_factory.create_project_logger(
            project.workspace_id, project.name
        )
        try:
            git_service = self.git_service_factory(project_dir, log_writer=project_logger)
            git_service.clone_repository(project, auth=gpc, transport=transport)
            builder_type, config_path = detect_builder_type(project, project_dir)
        except UnknownStrategy:
            shutil.rmtree(project_dir, ignore_errors=True)
            raise
        finally:
            project_logger.close()

        common = dict(
            build_id=build_id,
            project=project,
            config=self.config,
            project_volume_path=project_dir,
            logger_factory=self.logger_factory,
            git_provider_config=gpc,
            config_hash=config_hash,
            cancel=cancel,
        )
        logger.info(f"Project {project.name}: {builder_type} build {build_id} ({config_hash[:12]})")

        if builder_type == BUILDER_TYPE_DEVCONTAINER:
            return DevcontainerBuilder(
                runtime_factory=self.runtime_factory,
                nested_runtime_factory=self.nested_runtime_factory,
                devcontainer_file_path=config_path,
                **common,
            )
        return ImageBuilder(**common)

    def resolve(
        self,
        project: Project,
        gpc: Optional[GitProviderConfig] = None,
        transport: Optional[TransportConfig] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Union[BuildRecord, Builder]:
        """A cached record on a hit, otherwise a fresh builder."""
        record = self.check_existing_build(project)
        if record is not None:
            logger.info(f"Cache hit for {project.name}: {record.image}")
            return record
        return self.create(project, gpc=gpc, transport=transport, cancel=cancel)

    @contextmanager
    def lease(
        self,
        project: Project,
        gpc: Optional[GitProviderConfig] = None,
        transport: Optional[TransportConfig] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[Builder]:
        """A builder whose container and working tree are released on exit."""
        builder = self.create(project, gpc=gpc, transport=transport, cancel=cancel)
        with builder:
            yield builder

    def build_project(
        self,
        project: Project,
        gpc: Optional[GitProviderConfig] = None,
        publish: bool = True,
        transport: Optional[TransportConfig] = None,
        cancel: Optional[threading.Event] = None,
    ) -> BuildRecord:
        """Cache lookup, then build (and optionally publish) under a lease."""
        record = self.check_existing_build(project)
        if record is not None:
            logger.info(f"Cache hit for {project.name}: {record.image}")
            return record

        with self.lease(project, gpc=gpc, transport=transport, cancel=cancel) as builder:
            result = builder.build()
            if publish:
                builder.publish()
            return self.save_build_record(project, result)
