"""Builder configuration loading."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_BUILDER_IMAGE = "daytonaio/workspace-project"
DEFAULT_CONFIG_FILENAME = "builder-config.yaml"

# Environment variable -> config field. Env wins over the YAML file.
ENV_OVERRIDES = {
    "COLTEC_BUILDER_SERVER_CONFIG_FOLDER": "server_config_folder",
    "COLTEC_BUILDER_BASE_PATH": "base_path",
    "COLTEC_BUILDER_REGISTRY": "local_container_registry_server",
    "COLTEC_BUILDER_IMAGE": "builder_image",
    "COLTEC_BUILDER_SOCKET_ROOT": "socket_root",
    "COLTEC_BUILDER_DEFAULT_PROJECT_USER": "default_project_user",
}


class BuilderConfig(BaseModel):
    """Settings shared by every build the factory hands out."""

    version: int = 1
    server_config_folder: Path = Field(
        default_factory=lambda: Path.home() / ".config" / "coltec-builder"
    )
    base_path: Path = Field(
        default_factory=lambda: Path.home() / ".cache" / "coltec-builder" / "builds"
    )
    local_container_registry_server: str = "localhost:5000"
    insecure_registry: str = "localhost:5000"
    builder_image: str = DEFAULT_BUILDER_IMAGE
    socket_root: Path = Path("/tmp")
    default_project_image: str = DEFAULT_BUILDER_IMAGE
    default_project_user: str = "daytona"
    default_project_post_start_commands: List[str] = Field(default_factory=list)
    log_relay_backoff: float = 0.1

    @field_validator("local_container_registry_server", "builder_image")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("registry server and builder image cannot be empty")
        return value.strip().rstrip("/")

    @field_validator("log_relay_backoff")
    @classmethod
    def _positive_backoff(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("log_relay_backoff must be positive")
        return value

    def builds_folder(self) -> Path:
        return Path(self.server_config_folder) / "builds"

    def logs_folder(self) -> Path:
        return Path(self.server_config_folder) / "logs"


def _apply_env_overrides(data: Dict[str, Any], env: Dict[str, str]) -> Dict[str, Any]:
    for var, field in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            data[field] = value
    return data


def load_builder_config(
    path: Optional[Path] = None, env: Optional[Dict[str, str]] = None
) -> BuilderConfig:
    """Load builder settings from YAML, then apply environment overrides.

    A missing file yields the defaults.
    """
    env = dict(os.environ) if env is None else env
    data: Dict[str, Any] = {}

    if path is not None and path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise RuntimeError(f"Failed to parse builder config at {path}: {exc}") from exc

        version = data.get("version")
        if version not in (None, 1):
            raise RuntimeError(
                f"Unsupported builder config version ({version}). Expected version 1 at {path}."
            )

    return BuilderConfig.model_validate(_apply_env_overrides(data, env))


def find_builder_config(start_path: Path) -> Optional[Path]:
    """Search upward from start_path for builder-config.yaml."""
    current = start_path.resolve()
    while current != current.parent:
        candidate = current / DEFAULT_CONFIG_FILENAME
        if candidate.exists():
            return candidate
        current = current.parent
    return None
