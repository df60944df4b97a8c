"""Typed project descriptors for workspace image builds.

A project names the repository to check out and, optionally, how to turn it
into an image. The same models describe the cached outcome of a finished
build so a repeated request can skip the container work entirely.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

BUILD_STATUS_SUCCESS = "success"


class Repository(BaseModel):
    """Where the project source lives."""

    url: str
    branch: Optional[str] = None
    sha: str = Field("", description="Pinned commit; equal to branch means 'alias'")
    owner: Optional[str] = None
    name: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _non_empty_url(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("repository url cannot be empty")
        return value.strip()

    @field_validator("branch")
    @classmethod
    def _blank_branch_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class DevcontainerBuild(BaseModel):
    """Build from a devcontainer configuration file inside the repository."""

    type: Literal["devcontainer"] = "devcontainer"
    devcontainer_file_path: str = ""

    @field_validator("devcontainer_file_path")
    @classmethod
    def _relative_path(cls, value: str) -> str:
        if value.startswith("/"):
            raise ValueError("devcontainer_file_path must be relative to the repository root")
        return value


class ImageBuild(BaseModel):
    """Use a pre-built image as-is."""

    type: Literal["image"] = "image"
    image: str

    @field_validator("image")
    @classmethod
    def _non_empty_image(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("image reference cannot be empty")
        return value.strip()


ProjectBuild = Annotated[
    Union[DevcontainerBuild, ImageBuild], Field(discriminator="type")
]


class Project(BaseModel):
    """A workspace/project pair and the inputs of its image build."""

    name: str
    workspace_id: str
    repository: Repository
    build: Optional[ProjectBuild] = None

    # Informational; these never change what gets built.
    image: Optional[str] = None
    user: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    post_start_commands: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @field_validator("name", "workspace_id")
    @classmethod
    def _slug(cls, value: str) -> str:
        if not value:
            raise ValueError("project name and workspace id cannot be empty")
        if any(char.isspace() for char in value):
            raise ValueError("project name and workspace id must be slug-like (no whitespace)")
        return value

    def hash_payload(self) -> Dict[str, Any]:
        """The normalized build inputs the config hash is computed over."""
        return {
            "repository": {
                "url": self.repository.url,
                "branch": self.repository.branch or "",
                "sha": self.repository.sha,
            },
            "build": self.build.model_dump() if self.build is not None else None,
        }

    def config_hash(self) -> str:
        canonical = json.dumps(
            self.hash_payload(), sort_keys=True, separators=(",", ":")
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class GitProviderConfig(BaseModel):
    """Credentials for a git provider, embedded into clone URLs."""

    id: str = ""
    username: str
    token: str
    base_api_url: Optional[str] = None

    def __repr__(self) -> str:
        return f"GitProviderConfig(id={self.id!r}, username={self.username!r}, token='***')"


class GitUser(BaseModel):
    name: str
    email: str


class BuildOutcome(BaseModel):
    """The JSON object the devcontainer CLI prints when it finishes."""

    outcome: str
    image_name: List[str] = Field(default_factory=list, alias="imageName")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class BuildResult(BaseModel):
    """What a builder hands to the workspace attachment side."""

    user: str
    image_name: str
    project_volume_path: str
    hash: str = ""


class BuildRecord(BaseModel):
    """Persisted outcome of a successful build, keyed by config hash."""

    status: str = BUILD_STATUS_SUCCESS
    image_name: List[str] = Field(default_factory=list)
    user: Optional[str] = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(tz=timezone.utc)
    )

    @property
    def image(self) -> Optional[str]:
        return self.image_name[0] if self.image_name else None


def example_project() -> Project:
    """Handy sample used for tests and docs."""

    return Project(
        name="formualizer",
        workspace_id="ws-formualizer",
        repository=Repository(
            url="https://github.com/psu3d0/formualizer.git",
            branch="main",
        ),
    )


if __name__ == "__main__":
    project = example_project()
    print(json.dumps(project.hash_payload(), indent=2, sort_keys=True))
    print(project.config_hash())
