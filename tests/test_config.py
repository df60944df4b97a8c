"""Unit tests for builder configuration loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from coltec_builder.config import (
    DEFAULT_BUILDER_IMAGE,
    BuilderConfig,
    find_builder_config,
    load_builder_config,
)


class TestLoadBuilderConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_builder_config(tmp_path / "nope.yaml", env={})
        assert config.builder_image == DEFAULT_BUILDER_IMAGE
        assert config.local_container_registry_server == "localhost:5000"
        assert config.default_project_user == "daytona"

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "builder-config.yaml"
        path.write_text(
            "version: 1\n"
            "local_container_registry_server: registry.internal:5000/\n"
            f"base_path: {tmp_path / 'work'}\n",
            encoding="utf-8",
        )
        config = load_builder_config(path, env={})
        assert config.local_container_registry_server == "registry.internal:5000"
        assert config.base_path == tmp_path / "work"

    def test_env_overrides_yaml(self, tmp_path):
        path = tmp_path / "builder-config.yaml"
        path.write_text("builder_image: from-yaml\n", encoding="utf-8")
        config = load_builder_config(path, env={"COLTEC_BUILDER_IMAGE": "from-env"})
        assert config.builder_image == "from-env"

    def test_empty_env_value_ignored(self, tmp_path):
        config = load_builder_config(None, env={"COLTEC_BUILDER_REGISTRY": ""})
        assert config.local_container_registry_server == "localhost:5000"

    def test_unsupported_version(self, tmp_path):
        path = tmp_path / "builder-config.yaml"
        path.write_text("version: 2\n", encoding="utf-8")
        with pytest.raises(RuntimeError, match="Unsupported builder config version"):
            load_builder_config(path, env={})

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "builder-config.yaml"
        path.write_text("version: [1\n", encoding="utf-8")
        with pytest.raises(RuntimeError, match="Failed to parse"):
            load_builder_config(path, env={})


class TestBuilderConfig:
    def test_folders_derive_from_server_config(self, tmp_path):
        config = BuilderConfig(server_config_folder=tmp_path)
        assert config.builds_folder() == tmp_path / "builds"
        assert config.logs_folder() == tmp_path / "logs"

    def test_non_positive_backoff_fails(self):
        with pytest.raises(ValidationError, match="log_relay_backoff must be positive"):
            BuilderConfig(log_relay_backoff=0)


def test_find_builder_config_walks_up(tmp_path):
    (tmp_path / "builder-config.yaml").write_text("version: 1\n", encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    assert find_builder_config(nested) == tmp_path / "builder-config.yaml"


def test_find_builder_config_none(tmp_path, mocker):
    mocker.patch.object(Path, "exists", return_value=False)
    assert find_builder_config(tmp_path) is None
