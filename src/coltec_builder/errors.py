"""Error taxonomy for the build orchestration engine."""

from __future__ import annotations

from typing import Optional


class BuilderError(RuntimeError):
    """Base class for every failure raised by the builder."""


class TransportError(BuilderError):
    """Repository clone/push/pull failed. Retryable by the caller."""


class AuthError(TransportError):
    """The repository host rejected the supplied credentials."""


class ControlPlaneError(BuilderError):
    """A container runtime API call failed."""


class CommandFailed(ControlPlaneError):
    """A command executed inside a container exited non-zero."""

    def __init__(self, cmd, exit_code: int, output: str = "") -> None:
        self.cmd = list(cmd)
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            f"command {self.cmd[0] if self.cmd else '?'!s} exited with code {exit_code}: "
            f"{output.strip()[-500:]}"
        )


class ProtocolViolation(BuilderError):
    """Tool output or image metadata did not match the expected contract."""


class BuildFailed(BuilderError):
    """The devcontainer build tool reported failure."""

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        self.exit_code = exit_code
        super().__init__(message)


class UnknownStrategy(BuilderError):
    """Neither a devcontainer config nor an image descriptor was found."""


class BuildCancelled(BuilderError):
    """The caller cancelled the build."""


class ConflictSkipped(Warning):
    """Ownership reconciliation declined a UID/GID change.

    Emitted through warnings.warn; never raised.
    """
