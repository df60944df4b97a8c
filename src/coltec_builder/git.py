"""Repository acquisition: clone a project's repository into a directory."""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .errors import AuthError, TransportError
from .logs import LogSink, write_lines
from .spec import GitProviderConfig, GitUser, Project

logger = logging.getLogger(__name__)

CREDENTIAL_HELPER = "/usr/local/bin/daytona git-cred"

_AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "invalid username or password",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
)

_CREDENTIALS_RE = re.compile(r"(https?://)[^/@\s]+:[^/@\s]+@")


@dataclass
class TransportConfig:
    """Per-call git transport options, rendered as `git -c` arguments."""

    ssl_verify: bool = False
    protocol_version: Optional[int] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def git_args(self) -> List[str]:
        options = {"http.sslVerify": "true" if self.ssl_verify else "false"}
        if self.protocol_version is not None:
            options["protocol.version"] = str(self.protocol_version)
        options.update(self.extra)
        args: List[str] = []
        for key, value in options.items():
            args.extend(["-c", f"{key}={value}"])
        return args


@dataclass
class GitCommands:
    """Thin wrapper to allow mocking in tests."""

    def run(
        self, args: List[str], cwd: Optional[str] = None
    ) -> subprocess.CompletedProcess:
        return subprocess.run(
            args, cwd=cwd, check=False, capture_output=True, text=True
        )


def redact(text: str) -> str:
    """Hide user:token pairs embedded in URLs."""
    return _CREDENTIALS_RE.sub(r"\1***@", text)


def authenticated_url(url: str, auth: Optional[GitProviderConfig]) -> str:
    """Embed credentials into an http(s) clone URL.

    Acquisition may run as a plain command string inside a container, so the
    URL is the only credential channel available.
    """
    if auth is None:
        return url
    bare = url
    for prefix in ("https://", "http://"):
        if bare.startswith(prefix):
            bare = bare[len(prefix):]
            break
    return f"https://{auth.username}:{auth.token}@{bare}"


def should_clone_branch(project: Project) -> bool:
    branch = project.repository.branch
    if not branch:
        return False
    if not project.repository.sha:
        return True
    return branch != project.repository.sha


def should_checkout_sha(project: Project) -> bool:
    branch = project.repository.branch
    if not project.repository.sha or not branch:
        return False
    return branch == project.repository.sha


def render_shell(cmd: List[str]) -> str:
    """Quote argv tokens for `sh -c`, leaving `&&` separators intact."""
    return " ".join(token if token == "&&" else shlex.quote(token) for token in cmd)


class GitService:
    """Clones a project repository into project_dir."""

    def __init__(
        self,
        project_dir: Path,
        git_config_file: Optional[Path] = None,
        log_writer: Optional[LogSink] = None,
        commands: Optional[GitCommands] = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.git_config_file = git_config_file
        self.log_writer = log_writer
        self.commands = commands or GitCommands()

    def _git(self, args: List[str], cwd: Optional[str] = None) -> subprocess.CompletedProcess:
        printable = redact(" ".join(args))
        logger.info(f"[git] $ {printable}")
        if self.log_writer is not None:
            self.log_writer.write(f"$ {printable}")

        try:
            result = self.commands.run(args, cwd=cwd)
        except FileNotFoundError as exc:
            raise TransportError("git executable not found in PATH") from exc

        write_lines(self.log_writer, redact(result.stderr or ""))
        if result.returncode != 0:
            stderr = redact(result.stderr or "").strip()
            lowered = stderr.lower()
            if any(marker in lowered for marker in _AUTH_FAILURE_MARKERS):
                raise AuthError(f"git authentication failed: {stderr}")
            raise TransportError(
                f"{printable} failed with exit code {result.returncode}: {stderr}"
            )
        return result

    def clone_repository(
        self,
        project: Project,
        auth: Optional[GitProviderConfig] = None,
        transport: Optional[TransportConfig] = None,
    ) -> None:
        """Clone the project's repository, resolving branch vs pinned commit.

        Errors abort immediately. A partial clone is left in place; the
        destination directory belongs to the caller.
        """
        transport = transport or TransportConfig()
        cmd = ["git", *transport.git_args(), "clone", "--progress", "--single-branch"]

        if should_clone_branch(project) or should_checkout_sha(project):
            cmd.extend(["--depth", "1", "--branch", project.repository.branch])

        cmd.extend([authenticated_url(project.repository.url, auth), str(self.project_dir)])
        self.project_dir.parent.mkdir(parents=True, exist_ok=True)
        self._git(cmd)

        if should_checkout_sha(project):
            self._git(
                [
                    "git",
                    *transport.git_args(),
                    "-C",
                    str(self.project_dir),
                    "checkout",
                    project.repository.sha,
                ]
            )

    def clone_repository_cmd(
        self, project: Project, auth: Optional[GitProviderConfig] = None
    ) -> List[str]:
        """The equivalent clone invocation as argv tokens, without running it."""
        cmd = ["git", "clone", "--single-branch"]

        if should_clone_branch(project) or should_checkout_sha(project):
            cmd.extend(["--depth", "1", "--branch", project.repository.branch])

        cmd.append(authenticated_url(project.repository.url, auth))
        cmd.append(str(self.project_dir))

        if should_checkout_sha(project):
            cmd.extend(["&&", "cd", str(self.project_dir)])
            cmd.extend(["&&", "git", "checkout", project.repository.sha])

        return cmd

    def repository_exists(self) -> bool:
        return (self.project_dir / ".git").exists()

    def set_git_config(self, user: Optional[GitUser] = None) -> None:
        """Point git at the credential helper and record the committer identity."""
        if self.git_config_file is None:
            raise RuntimeError("git_config_file is not set")

        self.git_config_file.parent.mkdir(parents=True, exist_ok=True)
        self.git_config_file.touch(exist_ok=True)

        config_path = str(self.git_config_file)
        settings = [("credential.helper", CREDENTIAL_HELPER)]
        if user is not None:
            settings.extend([("user.name", user.name), ("user.email", user.email)])

        for key, value in settings:
            self._git(["git", "config", "-f", config_path, key, value])
