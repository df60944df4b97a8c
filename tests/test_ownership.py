"""Tests for UID/GID reconciliation.

The remap script is exercised against scratch passwd/group files with a
recording `chown` first on PATH, so nothing on the host is touched.
"""

import os
import shutil
import subprocess
from unittest.mock import MagicMock

import pytest

from coltec_builder.errors import ConflictSkipped
from coltec_builder.ownership import (
    UPDATE_UID_GID_SCRIPT,
    OwnershipParams,
    parse_reconcile_output,
    reconcile_ownership,
    resolve_ownership_params,
)
from coltec_builder.runtime import ExecResult

PASSWD = (
    "root:x:0:0:root:/root:/bin/sh\n"
    "daytona:x:1000:1000::/home/daytona:/bin/sh\n"
)
GROUP = "root:x:0:\ndaytona:x:1000:\n"

needs_shell = pytest.mark.skipif(
    shutil.which("sh") is None or shutil.which("sed") is None,
    reason="sh and sed are required",
)


@pytest.fixture
def account_db(tmp_path):
    """Scratch account files plus a fake chown that records its arguments."""
    passwd = tmp_path / "passwd"
    group = tmp_path / "group"
    passwd.write_text(PASSWD, encoding="utf-8")
    group.write_text(GROUP, encoding="utf-8")

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    chown_log = tmp_path / "chown.log"
    chown = bin_dir / "chown"
    chown.write_text(f'#!/bin/sh\necho "$@" >> "{chown_log}"\n', encoding="utf-8")
    chown.chmod(0o755)

    def run(remote_user, uid, gid):
        env = {
            "PATH": f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}",
            "PASSWD_FILE": str(passwd),
            "GROUP_FILE": str(group),
            "REMOTE_USER": remote_user,
            "NEW_UID": str(uid),
            "NEW_GID": str(gid),
        }
        result = subprocess.run(
            ["sh", "-c", UPDATE_UID_GID_SCRIPT],
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )
        assert result.returncode == 0, result.stderr
        return result.stdout

    run.passwd = passwd
    run.group = group
    run.chown_log = chown_log
    return run


@needs_shell
class TestUpdateScript:
    def test_same_ids_no_writes(self, account_db):
        output = account_db("daytona", 1000, 1000)
        assert "UIDs and GIDs are the same (1000:1000)." in output
        assert account_db.passwd.read_text(encoding="utf-8") == PASSWD
        assert account_db.group.read_text(encoding="utf-8") == GROUP
        assert not account_db.chown_log.exists()

    def test_remaps_uid_and_gid(self, account_db):
        output = account_db("daytona", 1001, 1001)
        assert "Updating UID:GID from 1000:1000 to 1001:1001." in output
        assert "daytona:x:1001:1001::/home/daytona:/bin/sh" in account_db.passwd.read_text(encoding="utf-8")
        assert "daytona:x:1001:" in account_db.group.read_text(encoding="utf-8")
        assert account_db.chown_log.read_text(encoding="utf-8").split() == [
            "-R", "1001:1001", "/home/daytona",
        ]

    def test_existing_gid_keeps_old_gid(self, account_db):
        account_db.group.write_text(GROUP + "other:x:2000:\n", encoding="utf-8")
        output = account_db("daytona", 1001, 2000)
        assert "Group with GID exists (other=2000)." in output
        assert "Updating UID:GID from 1000:1000 to 1001:1000." in output
        assert "daytona:x:1001:1000:" in account_db.passwd.read_text(encoding="utf-8")
        assert "daytona:x:1000:" in account_db.group.read_text(encoding="utf-8")

    def test_existing_gid_same_uid_is_noop(self, account_db):
        account_db.group.write_text(GROUP + "other:x:2000:\n", encoding="utf-8")
        output = account_db("daytona", 1000, 2000)
        assert "Group with GID exists (other=2000)." in output
        assert "Updating" not in output
        assert account_db.passwd.read_text(encoding="utf-8") == PASSWD
        assert not account_db.chown_log.exists()

    def test_uid_collision_declined(self, account_db):
        account_db.passwd.write_text(PASSWD + "alice:x:1001:1001::/home/alice:/bin/sh\n", encoding="utf-8")
        output = account_db("daytona", 1001, 1001)
        assert "User with UID exists (alice=1001)." in output
        assert "daytona:x:1000:1000:" in account_db.passwd.read_text(encoding="utf-8")
        assert not account_db.chown_log.exists()

    def test_missing_user(self, account_db):
        output = account_db("ghost", 1001, 1001)
        assert "Remote user not found" in output
        assert account_db.passwd.read_text(encoding="utf-8") == PASSWD

    def test_prefix_user_not_matched(self, account_db):
        account_db.passwd.write_text(PASSWD + "daytona2:x:1002:1002::/home/d2:/bin/sh\n", encoding="utf-8")
        account_db("daytona", 1001, 1001)
        assert "daytona2:x:1002:1002:" in account_db.passwd.read_text(encoding="utf-8")


class TestParseReconcileOutput:
    def test_updated(self):
        result = parse_reconcile_output("Updating UID:GID from 1000:1000 to 1001:1001.\n")
        assert result.updated
        assert result.conflicts == []

    def test_conflicts(self):
        result = parse_reconcile_output(
            "Group with GID exists (other=2000).\nUpdating UID:GID from 1000:1000 to 1001:1000.\n"
        )
        assert result.updated
        assert result.conflicts == ["Group with GID exists (other=2000)."]


class TestOwnershipParams:
    def test_root_uses_root_account(self):
        params = OwnershipParams(remote_user="daytona", uid="0", gid="0")
        assert params.is_root
        assert params.container_user == "root"

    def test_non_root_uses_remote_user(self):
        params = OwnershipParams(remote_user="daytona", uid="1000", gid="1000")
        assert params.container_user == "daytona"
        assert params.env() == {"REMOTE_USER": "daytona", "NEW_UID": "1000", "NEW_GID": "1000"}

    def test_resolve_from_ssh(self):
        ssh_client = MagicMock()
        ssh_client.get_user_uid_gid.return_value = ("1500", "1600")
        params = resolve_ownership_params(ssh_client, "vscode")
        assert (params.remote_user, params.uid, params.gid) == ("vscode", "1500", "1600")

    def test_resolve_locally(self, mocker):
        mocker.patch("coltec_builder.ownership.os.getuid", return_value=1234)
        mocker.patch("coltec_builder.ownership.os.getgid", return_value=1235)
        params = resolve_ownership_params(None)
        assert (params.uid, params.gid) == ("1234", "1235")


class TestReconcileOwnership:
    def test_root_skips_exec(self, runtime):
        result = reconcile_ownership(runtime, "cid", OwnershipParams("daytona", "0", "0"))
        runtime.exec_sync.assert_not_called()
        assert not result.updated

    def test_runs_script_as_root(self, runtime):
        runtime.exec_sync.return_value = ExecResult(
            output="User with UID exists (alice=1001).\n", exit_code=0
        )
        params = OwnershipParams("daytona", "1001", "1001")

        with pytest.warns(ConflictSkipped, match="alice=1001"):
            result = reconcile_ownership(runtime, "cid", params)

        args, kwargs = runtime.exec_sync.call_args
        assert args == ("cid", ["sh", "-c", UPDATE_UID_GID_SCRIPT])
        assert kwargs["user"] == "root"
        assert kwargs["env"] == params.env()
        assert result.conflicts == ["User with UID exists (alice=1001)."]
        assert not result.updated

    def test_clean_remap_emits_no_warning(self, runtime, recwarn):
        runtime.exec_sync.return_value = ExecResult(
            output="Updating UID:GID from 1000:1000 to 1001:1001.\n", exit_code=0
        )
        result = reconcile_ownership(runtime, "cid", OwnershipParams("daytona", "1001", "1001"))
        assert result.updated
        assert not [w for w in recwarn if issubclass(w.category, ConflictSkipped)]
