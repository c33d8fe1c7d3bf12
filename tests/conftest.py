# conftest.py - shared fixtures for the ssh-key-rotate tests

import os
import secrets
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

# Allow running the suite from a plain checkout
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sshrotate.remote import SSH, VERIFY_SENTINEL  # noqa: E402

OLD_KEY = "ssh-ed25519 AAAAOLD old@laptop"

requires_bash = pytest.mark.skipif(
    any(shutil.which(tool) is None for tool in ("bash", "base64", "awk")),
    reason="bash, base64 and awk are needed to run the remote script locally",
)


#==============================================================================
# FIXTURES - ssh-keygen stand-in
#==============================================================================

def _fake_keygen(cmd, **kwargs):
    """Behave like ssh-keygen for the two invocations the tool makes."""
    if "-y" in cmd:
        priv = Path(cmd[cmd.index("-f") + 1])
        body = priv.read_text().split()[1]
        return subprocess.CompletedProcess(cmd, 0, f"ssh-ed25519 {body}\n", "")

    key_type = cmd[cmd.index("-t") + 1]
    comment = cmd[cmd.index("-C") + 1]
    priv = Path(cmd[cmd.index("-f") + 1])
    body = "AAAA" + secrets.token_hex(16)
    prefix = "ssh-rsa" if key_type == "rsa" else f"ssh-{key_type}"
    priv.write_text(f"PRIVATE {body}\n")
    Path(str(priv) + ".pub").write_text(f"{prefix} {body} {comment}\n")
    return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def fake_keygen(monkeypatch):
    """Patch the subprocess runner used by sshrotate.keys; returns the call log."""
    calls = []

    def runner(cmd, **kwargs):
        calls.append(list(cmd))
        return _fake_keygen(cmd, **kwargs)

    monkeypatch.setattr("sshrotate.keys.run", runner)
    return calls


#==============================================================================
# FIXTURES - simulated fleet
#==============================================================================

class FakeFleetSSH(SSH):
    """SSH runner that executes the real remote script against local fake homes.

    Each address gets its own HOME directory. Verification succeeds only when
    the offered identity's public key is in that home's authorized_keys.
    """

    def __init__(self, root: Path):
        super().__init__(port=22, timeout=5, session_timeout=30, proxy_jump=None)
        self.root = root
        self.unreachable = set()
        self.verify_broken = set()
        self.calls = []

    def home(self, address: str) -> Path:
        home = self.root / address
        home.mkdir(parents=True, exist_ok=True)
        return home

    def authorized_keys(self, address: str) -> Path:
        return self.home(address) / ".ssh" / "authorized_keys"

    def seed(self, address: str, *lines: str) -> None:
        auth = self.authorized_keys(address)
        auth.parent.mkdir(parents=True, exist_ok=True)
        auth.write_text("".join(line + "\n" for line in lines))

    def run(self, target, remote_argv, *, identity=None, identities_only=False, stdin=None):
        user, address = target.split("@", 1)
        self.calls.append((address, remote_argv[0], identity, identities_only))
        if address in self.unreachable:
            return 255, "", f"ssh: connect to host {address} port 22: Connection timed out"

        if remote_argv[0] == "bash":
            env = {"HOME": str(self.home(address)), "PATH": os.environ.get("PATH", "")}
            cp = subprocess.run(
                remote_argv, input=stdin, env=env, capture_output=True, text=True, timeout=30
            )
            return cp.returncode, cp.stdout.strip(), cp.stderr.strip()

        if remote_argv[0] == "echo":
            auth = self.authorized_keys(address)
            pub = Path(str(identity) + ".pub").read_text().strip()
            trusted = auth.exists() and pub in auth.read_text().splitlines()
            if address in self.verify_broken or not trusted:
                return 255, "", f"{target}: Permission denied (publickey)."
            return 0, VERIFY_SENTINEL, ""

        return 127, "", f"unexpected remote command {remote_argv!r}"


@pytest.fixture
def fleet(tmp_path):
    return FakeFleetSSH(tmp_path / "remote")


@pytest.fixture
def key_dir(tmp_path):
    return tmp_path / "keys"
