"""UID/GID reconciliation for the workspace user inside a container.

Bind-mounted host directories keep their numeric owner, so the container's
workspace account is remapped to the operator's UID/GID before anything is
written to the mount. The remap is best effort: it never creates two
accounts sharing a UID.
"""

from __future__ import annotations

import logging
import os
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import ConflictSkipped
from .logs import LogSink
from .runtime import RuntimeClient
from .ssh import SshClient

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_USER = "daytona"

# Inputs: REMOTE_USER, NEW_UID, NEW_GID; PASSWD_FILE and GROUP_FILE default
# to the system account database.
UPDATE_UID_GID_SCRIPT = r"""PASSWD_FILE="${PASSWD_FILE:-/etc/passwd}"; \
GROUP_FILE="${GROUP_FILE:-/etc/group}"; \
eval $(sed -n "s/^${REMOTE_USER}:[^:]*:\([^:]*\):\([^:]*\):[^:]*:\([^:]*\).*/OLD_UID=\1;OLD_GID=\2;HOME_FOLDER=\3/p" "$PASSWD_FILE"); \
eval $(sed -n "s/^\([^:]*\):[^:]*:${NEW_UID}:.*/EXISTING_USER=\1/p" "$PASSWD_FILE"); \
eval $(sed -n "s/^\([^:]*\):[^:]*:${NEW_GID}:.*/EXISTING_GROUP=\1/p" "$GROUP_FILE"); \
if [ -z "$OLD_UID" ]; then \
	echo "Remote user not found in $PASSWD_FILE ($REMOTE_USER)."; \
elif [ "$OLD_UID" = "$NEW_UID" -a "$OLD_GID" = "$NEW_GID" ]; then \
	echo "UIDs and GIDs are the same ($NEW_UID:$NEW_GID)."; \
elif [ "$OLD_UID" != "$NEW_UID" -a -n "$EXISTING_USER" ]; then \
	echo "User with UID exists ($EXISTING_USER=$NEW_UID)."; \
else \
	if [ "$OLD_GID" != "$NEW_GID" -a -n "$EXISTING_GROUP" ]; then \
		echo "Group with GID exists ($EXISTING_GROUP=$NEW_GID)."; \
		NEW_GID="$OLD_GID"; \
	fi; \
	if [ "$OLD_UID" = "$NEW_UID" -a "$OLD_GID" = "$NEW_GID" ]; then \
		echo "UIDs and GIDs are the same ($NEW_UID:$NEW_GID)."; \
	else \
		echo "Updating UID:GID from $OLD_UID:$OLD_GID to $NEW_UID:$NEW_GID."; \
		sed -i -e "s/^\(${REMOTE_USER}:[^:]*:\)[^:]*:[^:]*/\1${NEW_UID}:${NEW_GID}/" "$PASSWD_FILE"; \
		if [ "$OLD_GID" != "$NEW_GID" ]; then \
			sed -i -e "s/^\([^:]*:[^:]*:\)${OLD_GID}:/\1${NEW_GID}:/" "$GROUP_FILE"; \
		fi; \
		chown -R "$NEW_UID:$NEW_GID" "$HOME_FOLDER"; \
	fi; \
fi;"""

_CONFLICT_MARKERS = (
    "Remote user not found",
    "User with UID exists",
    "Group with GID exists",
)


@dataclass
class OwnershipParams:
    remote_user: str
    uid: str
    gid: str

    @property
    def is_root(self) -> bool:
        return self.uid == "0" and self.gid == "0"

    @property
    def container_user(self) -> str:
        """The account that should own files written into the mount."""
        return "root" if self.is_root else self.remote_user

    def env(self) -> Dict[str, str]:
        return {
            "REMOTE_USER": self.remote_user,
            "NEW_UID": self.uid,
            "NEW_GID": self.gid,
        }


@dataclass
class ReconcileResult:
    output: str
    updated: bool = False
    conflicts: List[str] = field(default_factory=list)


def local_ownership_params(remote_user: str = DEFAULT_WORKSPACE_USER) -> OwnershipParams:
    return OwnershipParams(remote_user=remote_user, uid=str(os.getuid()), gid=str(os.getgid()))


def remote_ownership_params(
    ssh_client: SshClient, remote_user: str = DEFAULT_WORKSPACE_USER
) -> OwnershipParams:
    uid, gid = ssh_client.get_user_uid_gid()
    return OwnershipParams(remote_user=remote_user, uid=uid, gid=gid)


def resolve_ownership_params(
    ssh_client: Optional[SshClient] = None, remote_user: str = DEFAULT_WORKSPACE_USER
) -> OwnershipParams:
    """Take the operator identity from the SSH session if there is one, else locally."""
    if ssh_client is not None:
        return remote_ownership_params(ssh_client, remote_user)
    return local_ownership_params(remote_user)


def parse_reconcile_output(output: str) -> ReconcileResult:
    result = ReconcileResult(output=output)
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("Updating UID:GID"):
            result.updated = True
        elif line.startswith(_CONFLICT_MARKERS):
            result.conflicts.append(line)
    return result


def reconcile_ownership(
    runtime: RuntimeClient,
    handle: str,
    params: OwnershipParams,
    log: Optional[LogSink] = None,
) -> ReconcileResult:
    """Run the remap procedure as root inside the container.

    Declined changes are logged and emitted as ConflictSkipped warnings, never
    raised; the acquisition continues with whatever ownership the container
    ends up with.
    """
    if params.is_root:
        logger.info("Operator is root; skipping UID/GID reconciliation")
        return ReconcileResult(output="")

    exec_result = runtime.exec_sync(
        handle,
        ["sh", "-c", UPDATE_UID_GID_SCRIPT],
        user="root",
        env=params.env(),
        log=log,
    )
    result = parse_reconcile_output(exec_result.output)
    for conflict in result.conflicts:
        logger.warning(f"Skipped ownership change in {handle}: {conflict}")
        warnings.warn(conflict, ConflictSkipped, stacklevel=2)
    if result.updated:
        logger.info(f"Remapped {params.remote_user} to {params.uid}:{params.gid} in {handle}")
    return result
