"""CLI for building workspace images from project descriptors."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from .config import BuilderConfig, find_builder_config, load_builder_config
from .devcontainer import DevcontainerBuilder
from .errors import BuilderError
from .factory import BuilderFactory
from .git import GitService, TransportConfig, redact, render_shell
from .logs import FileLoggerFactory
from .project import clone_in_container
from .runtime import RuntimeClient
from .spec import GitProviderConfig, Project
from .ssh import SshClient, SshSessionConfig


def _load_project(path: Path) -> Project:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not data:
        raise SystemExit(f"Project file {path} is empty")
    try:
        return Project.model_validate(data)
    except ValidationError as exc:
        raise SystemExit(f"Invalid project file {path}:\n{exc}")


def _load_config(args: argparse.Namespace) -> BuilderConfig:
    if args.config:
        return load_builder_config(Path(args.config))
    return load_builder_config(find_builder_config(Path.cwd()))


def _git_provider_from_env() -> Optional[GitProviderConfig]:
    username = os.getenv("COLTEC_GIT_USERNAME")
    token = os.getenv("COLTEC_GIT_TOKEN")
    if username and token:
        return GitProviderConfig(username=username, token=token)
    return None


def cmd_hash(args: argparse.Namespace) -> None:
    project = _load_project(Path(args.project))
    print(project.config_hash())


def cmd_clone_cmd(args: argparse.Namespace) -> None:
    project = _load_project(Path(args.project))
    cmd = GitService(Path(args.dest)).clone_repository_cmd(project, _git_provider_from_env())
    print(redact(render_shell(cmd)))


def cmd_clone(args: argparse.Namespace) -> None:
    project = _load_project(Path(args.project))
    dest = Path(args.dest).resolve()
    gpc = _git_provider_from_env()
    config = _load_config(args)
    sink = FileLoggerFactory(config.logs_folder()).create_project_logger(
        project.workspace_id, project.name
    )

    try:
        if args.in_container:
            ssh_client = None
            if args.ssh_host:
                ssh_client = SshClient(
                    SshSessionConfig(
                        hostname=args.ssh_host,
                        port=args.ssh_port,
                        username=args.ssh_user or os.getenv("USER", "root"),
                        private_key_path=Path(args.ssh_key) if args.ssh_key else None,
                    )
                ).connect()
            try:
                clone_in_container(
                    RuntimeClient.from_env(),
                    project,
                    dest,
                    gpc=gpc,
                    ssh_client=ssh_client,
                    log=sink,
                    image=config.builder_image,
                    remote_user=config.default_project_user,
                )
            finally:
                if ssh_client is not None:
                    ssh_client.close()
        else:
            transport = TransportConfig(ssl_verify=args.ssl_verify)
            GitService(dest, log_writer=sink).clone_repository(project, auth=gpc, transport=transport)
    finally:
        sink.close()
    print(f"[build] Cloned {redact(project.repository.url)} into {dest}")


def cmd_check(args: argparse.Namespace) -> int:
    project = _load_project(Path(args.project))
    factory = BuilderFactory(_load_config(args))
    record = factory.check_existing_build(project)
    if record is None:
        print(f"[build] No cached build for {project.name} ({project.config_hash()[:12]})")
        return 1
    print(f"[build] Cached build for {project.name}: {record.image} (user: {record.user})")
    return 0


def cmd_build(args: argparse.Namespace) -> None:
    project = _load_project(Path(args.project))
    factory = BuilderFactory(_load_config(args))
    transport = TransportConfig(ssl_verify=args.ssl_verify)
    record = factory.build_project(
        project,
        gpc=_git_provider_from_env(),
        publish=not args.no_publish,
        transport=transport,
    )
    print(f"[build] Image: {record.image}")
    print(f"[build] Remote user: {record.user}")


def cmd_cleanup(args: argparse.Namespace) -> None:
    project = _load_project(Path(args.project))
    config = _load_config(args)
    factory = BuilderFactory(config)
    project_dir = factory.project_dir(project.config_hash())
    builder = DevcontainerBuilder(
        build_id=args.build_id,
        project=project,
        config=config,
        project_volume_path=project_dir,
        logger_factory=factory.logger_factory,
    )
    builder.cleanup()
    print(f"[build] Removed builder container {args.build_id} and {project_dir}")


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("project", help="Path to project YAML descriptor")
    parser.add_argument("--config", help="Path to builder-config.yaml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coltec-builder",
        description="Build workspace images from project repositories",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    hash_cmd = sub.add_parser("hash", help="Print the config hash of a project")
    _add_common(hash_cmd)
    hash_cmd.set_defaults(func=cmd_hash)

    clone_cmd = sub.add_parser("clone-cmd", help="Print the equivalent clone shell command")
    _add_common(clone_cmd)
    clone_cmd.add_argument("--dest", required=True, help="Clone destination")
    clone_cmd.set_defaults(func=cmd_clone_cmd)

    clone = sub.add_parser("clone", help="Clone a project repository")
    _add_common(clone)
    clone.add_argument("--dest", required=True, help="Clone destination")
    clone.add_argument("--in-container", action="store_true", help="Clone from a helper container")
    clone.add_argument("--ssh-host", help="Take the operator UID/GID from this SSH host")
    clone.add_argument("--ssh-port", type=int, default=22)
    clone.add_argument("--ssh-user")
    clone.add_argument("--ssh-key", help="Private key for the SSH session")
    clone.add_argument("--ssl-verify", action="store_true", help="Verify TLS certificates")
    clone.set_defaults(func=cmd_clone)

    check = sub.add_parser("check", help="Look up a cached build")
    _add_common(check)
    check.set_defaults(func=cmd_check)

    build = sub.add_parser("build", help="Build (and publish) a project image")
    _add_common(build)
    build.add_argument("--no-publish", action="store_true", help="Skip pushing the image")
    build.add_argument("--ssl-verify", action="store_true", help="Verify TLS certificates")
    build.set_defaults(func=cmd_build)

    cleanup = sub.add_parser("cleanup", help="Remove a builder container and working tree")
    _add_common(cleanup)
    cleanup.add_argument("--build-id", required=True)
    cleanup.set_defaults(func=cmd_cleanup)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        result = args.func(args)
    except BuilderError as exc:
        print(f"[build] Error: {exc}", file=sys.stderr)
        return 1
    return result if isinstance(result, int) else 0


if __name__ == "__main__":
    sys.exit(main())
