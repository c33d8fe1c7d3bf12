# test_remote.py - ssh command lines and the authorized_keys update script

import base64
import os
import shutil
import subprocess
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import OLD_KEY, requires_bash
from sshrotate.remote import (
    SSH,
    UPDATE_AUTHORIZED_KEYS,
    VERIFY_SENTINEL,
    KeyUpdateRequest,
    push_key_update,
    verify_new_key,
)

NEW_KEY = "ssh-ed25519 AAAANEW admin@dbserver"
OTHER_KEY = "ssh-rsa AAAAOTHER someone@elsewhere"


def run_update(home: Path, new_key: str = NEW_KEY, old_key: str = OLD_KEY, path_prefix=None, extra_env=None):
    """Run the remote script the way `ssh host bash -s -- NEW OLD` would."""
    path = os.environ.get("PATH", "")
    if path_prefix:
        path = f"{path_prefix}{os.pathsep}{path}"
    env = {"HOME": str(home), "PATH": path, **(extra_env or {})}
    return subprocess.run(
        KeyUpdateRequest(new_key, old_key).argv(),
        input=UPDATE_AUTHORIZED_KEYS,
        env=env,
        capture_output=True,
        text=True,
        timeout=30,
    )


def auth_lines(home: Path):
    return (home / ".ssh" / "authorized_keys").read_text().splitlines()


@pytest.fixture
def home(tmp_path):
    h = tmp_path / "home"
    h.mkdir()
    return h


def seed(home: Path, content: str) -> None:
    (home / ".ssh").mkdir(exist_ok=True)
    (home / ".ssh" / "authorized_keys").write_text(content)


class TestKeyUpdateRequest:
    """Typed request instead of shell-templated key material"""

    def test_argv_is_base64(self):
        """Key lines travel as base64 arguments, never as shell text"""
        argv = KeyUpdateRequest(NEW_KEY + "\n", "ssh-rsa AAAA x'; rm -rf ~; '").argv()

        assert argv[:3] == ["bash", "-s", "--"]
        assert base64.b64decode(argv[3]).decode() == NEW_KEY
        assert base64.b64decode(argv[4]).decode() == "ssh-rsa AAAA x'; rm -rf ~; '"
        assert all(c.isalnum() or c in "+/=" for c in argv[3] + argv[4])


class TestSSHCommand:
    """ssh options for unattended sessions"""

    def test_cmd_base_options(self):
        """Batch mode, trust-on-first-use and a connect timeout are always set"""
        cmd = SSH(port=2222, timeout=7, session_timeout=60, proxy_jump=None).cmd_base()

        assert cmd[:3] == ["ssh", "-p", "2222"]
        assert "BatchMode=yes" in cmd
        assert "StrictHostKeyChecking=accept-new" in cmd
        assert "ConnectTimeout=7" in cmd
        assert "-J" not in cmd

    def test_cmd_base_identity_only(self, tmp_path):
        """Verification offers exactly one identity"""
        cmd = SSH(22, 10, 60, "bastion").cmd_base(tmp_path / "id", identities_only=True)

        assert cmd[cmd.index("-i") + 1] == str(tmp_path / "id")
        assert "IdentitiesOnly=yes" in cmd
        assert cmd[cmd.index("-J") + 1] == "bastion"

    def test_run_timeout(self):
        """A hung session is reported, not raised"""
        ssh = SSH(22, 10, 5, None)
        with patch("sshrotate.remote.run", side_effect=subprocess.TimeoutExpired("ssh", 5)):
            rc, out, err = ssh.run("root@10.0.0.5", ["true"])

        assert rc == 124
        assert "timeout" in err

    def test_push_feeds_script_on_stdin(self, tmp_path):
        """The mutate session runs bash -s with the script on stdin and the old identity"""
        ssh = SSH(22, 10, 60, None)
        with patch("sshrotate.remote.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess([], 0, "ok\n", "")
            rc, out, _ = push_key_update(
                ssh, "admin@10.0.0.5", KeyUpdateRequest(NEW_KEY, OLD_KEY), tmp_path / "id_rsa"
            )

        cmd = mock_run.call_args[0][0]
        assert rc == 0 and out == "ok"
        assert mock_run.call_args[1]["input"] == UPDATE_AUTHORIZED_KEYS
        assert cmd[cmd.index("-i") + 1] == str(tmp_path / "id_rsa")
        assert "IdentitiesOnly=yes" not in cmd
        assert cmd[cmd.index("admin@10.0.0.5") + 1 :][:3] == ["bash", "-s", "--"]

    def test_verify_requires_sentinel(self, tmp_path):
        """Exit 0 alone is not enough; the sentinel must come back"""
        ssh = SSH(22, 10, 60, None)
        with patch("sshrotate.remote.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess([], 0, "motd only\n", "")
            ok, _ = verify_new_key(ssh, "admin@10.0.0.5", tmp_path / "id")
            assert ok is False

            mock_run.return_value = subprocess.CompletedProcess([], 0, VERIFY_SENTINEL + "\n", "")
            ok, _ = verify_new_key(ssh, "admin@10.0.0.5", tmp_path / "id")
            assert ok is True


@requires_bash
class TestUpdateScript:
    """The remote script, executed locally against a temporary HOME"""

    def test_creates_ssh_dir_and_file(self, home):
        """Missing ~/.ssh and authorized_keys are created with tight permissions"""
        cp = run_update(home)

        assert cp.returncode == 0, cp.stderr
        assert auth_lines(home) == [NEW_KEY]
        assert stat.S_IMODE((home / ".ssh").stat().st_mode) == 0o700
        assert stat.S_IMODE((home / ".ssh" / "authorized_keys").stat().st_mode) == 0o600

    def test_adds_new_and_revokes_old(self, home):
        """Old key lines go, other keys stay, new key is added once"""
        seed(home, f"{OTHER_KEY}\n{OLD_KEY}\n{OLD_KEY}\n")

        cp = run_update(home)

        assert cp.returncode == 0, cp.stderr
        assert auth_lines(home) == [OTHER_KEY, NEW_KEY]
        assert "[remote] New key added." in cp.stdout
        assert "[remote] Old key revoked." in cp.stdout

    def test_idempotent(self, home):
        """Running twice leaves exactly one new key and no old key"""
        seed(home, f"{OLD_KEY}\n")

        first = run_update(home)
        second = run_update(home)

        assert first.returncode == 0 and second.returncode == 0
        assert auth_lines(home).count(NEW_KEY) == 1
        assert OLD_KEY not in auth_lines(home)
        assert "[remote] New key already present." in second.stdout
        assert "[remote] Old key not found (already removed?)." in second.stdout

    def test_add_happens_before_revoke(self, home, tmp_path):
        """Every file state the script renames into place already holds the new key"""
        seed(home, f"{OTHER_KEY}\n{OLD_KEY}\n")
        real_mv = shutil.which("mv")
        snaps = tmp_path / "snaps"
        snaps.mkdir()
        shim_dir = tmp_path / "bin"
        shim_dir.mkdir()
        shim = shim_dir / "mv"
        # Record each rename destination and a copy of the file being moved.
        shim.write_text(
            "#!/bin/sh\n"
            'printf \'%s\\n\' "$3" >> "$SNAP_DIR/renames"\n'
            'n=$(wc -l < "$SNAP_DIR/renames" | tr -d " ")\n'
            'cp "$2" "$SNAP_DIR/state.$n"\n'
            f'exec "{real_mv}" "$@"\n'
        )
        shim.chmod(0o755)

        cp = run_update(home, path_prefix=str(shim_dir), extra_env={"SNAP_DIR": str(snaps)})

        assert cp.returncode == 0, cp.stderr
        renames = (snaps / "renames").read_text().splitlines()
        auth = str(home / ".ssh" / "authorized_keys")
        assert renames.count(auth) == 1
        assert renames[-1] == auth
        for n in range(1, len(renames) + 1):
            state = (snaps / f"state.{n}").read_text().splitlines()
            assert NEW_KEY in state
        final = (snaps / f"state.{len(renames)}").read_text().splitlines()
        assert final == [OTHER_KEY, NEW_KEY]

    def test_old_key_matched_by_blob(self, home):
        """Old key lines go whatever their options prefix or comment"""
        with_options = f'from="10.0.0.1",no-pty {OLD_KEY}'
        other_comment = "ssh-ed25519 AAAAOLD someone@else"
        no_comment = "ssh-ed25519 AAAAOLD"
        seed(home, f"{with_options}\n{other_comment}\n{no_comment}\n{OLD_KEY}\n")

        cp = run_update(home)

        assert cp.returncode == 0, cp.stderr
        assert auth_lines(home) == [NEW_KEY]
        assert "[remote] Old key revoked." in cp.stdout

    def test_other_blobs_kept(self, home):
        """Keys sharing a prefix, a comment or a type with the old key stay"""
        longer_blob = "ssh-ed25519 AAAAOLDER old@laptop"
        other_type = "ssh-rsa AAAAOLD old@laptop"
        blob_in_comment = "ssh-ed25519 AAAAKEEP mentions AAAAOLD"
        seed(home, f"{longer_blob}\n{other_type}\n{blob_in_comment}\n{OTHER_KEY}\n{OLD_KEY}\n")

        run_update(home)

        assert auth_lines(home) == [longer_blob, other_type, blob_in_comment, OTHER_KEY, NEW_KEY]

    def test_missing_trailing_newline(self, home):
        """The new key is not glued onto an unterminated last line"""
        seed(home, OTHER_KEY)

        run_update(home)

        assert auth_lines(home) == [OTHER_KEY, NEW_KEY]

    def test_old_key_absent(self, home):
        """A host that never had the old key still gets the new one"""
        seed(home, f"{OTHER_KEY}\n")

        cp = run_update(home)

        assert cp.returncode == 0
        assert auth_lines(home) == [OTHER_KEY, NEW_KEY]

    def test_no_temp_files_left(self, home):
        """Work files are cleaned up"""
        seed(home, f"{OLD_KEY}\n")

        run_update(home)

        assert sorted(p.name for p in (home / ".ssh").iterdir()) == ["authorized_keys"]

    def test_empty_new_key_refused(self, home):
        """An empty new key aborts without touching the file"""
        seed(home, f"{OLD_KEY}\n")

        cp = run_update(home, new_key="")

        assert cp.returncode != 0
        assert auth_lines(home) == [OLD_KEY]
