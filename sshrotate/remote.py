"""
Remote side of a rotation: the ssh runner, the authorized_keys update and the
new-key check.
"""

from __future__ import annotations

import dataclasses
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from .util import b64, run

VERIFY_SENTINEL = "__SSHROTATE_NEW_KEY_OK__"

# Fed to `bash -s` on stdin. $1/$2 are the new/old key lines, base64 encoded,
# so key material never goes through remote shell quoting. All edits happen
# on a temp copy that replaces authorized_keys in one rename; the new key is
# asserted present before the old one is dropped.
UPDATE_AUTHORIZED_KEYS = r"""
set -eu
umask 077

new_key="$(printf '%s' "$1" | base64 -d)"
old_key="$(printf '%s' "$2" | base64 -d)"
if [ -z "$new_key" ]; then
  echo "[remote] Empty new key, refusing to touch authorized_keys." >&2
  exit 2
fi

ssh_dir="$HOME/.ssh"
auth="$ssh_dir/authorized_keys"
mkdir -p "$ssh_dir"
chmod 700 "$ssh_dir"
touch "$auth"
chmod 600 "$auth"

tmp="$(mktemp "$auth.rotate.XXXXXX")"
trap 'rm -f "$tmp" "$tmp.keep"' EXIT
cat "$auth" > "$tmp"

if grep -qxF -e "$new_key" "$tmp"; then
  echo "[remote] New key already present."
else
  if [ -s "$tmp" ] && [ -n "$(tail -c 1 "$tmp")" ]; then
    echo >> "$tmp"
  fi
  printf '%s\n' "$new_key" >> "$tmp"
  echo "[remote] New key added."
fi

if ! grep -qxF -e "$new_key" "$tmp"; then
  echo "[remote] New key missing after append, old key left in place." >&2
  exit 3
fi

old_type=""
old_blob=""
if [ -n "$old_key" ]; then
  read -r old_type old_blob _rest <<EOF
$old_key
EOF
fi

# A line is the old key when it carries the same type and blob, whatever its
# options prefix or comment.
removed=0
if [ -n "$old_blob" ]; then
  : > "$tmp.keep"
  removed="$(awk -v t="$old_type" -v b="$old_blob" -v keep="$tmp.keep" '
    { for (i = 1; i < NF; i++) if ($i == t && $(i + 1) == b) { n++; next }
      print > keep }
    END { print n + 0 }
  ' "$tmp")"
fi
if [ "$removed" -gt 0 ]; then
  mv -f "$tmp.keep" "$tmp"
  echo "[remote] Old key revoked."
else
  rm -f "$tmp.keep"
  echo "[remote] Old key not found (already removed?)."
fi

if ! grep -qxF -e "$new_key" "$tmp"; then
  echo "[remote] New key lost while revoking the old one, nothing changed." >&2
  exit 3
fi

chmod 600 "$tmp"
mv -f "$tmp" "$auth"
trap - EXIT
"""


@dataclasses.dataclass(frozen=True)
class KeyUpdateRequest:
    """Add ``new_key`` to authorized_keys, then remove every line holding ``old_key``'s blob."""

    new_key: str
    old_key: str

    def argv(self) -> List[str]:
        return ["bash", "-s", "--", b64(self.new_key.strip()), b64(self.old_key.strip())]


@dataclasses.dataclass
class SSH:
    port: int
    timeout: int
    session_timeout: int
    proxy_jump: Optional[str]

    def cmd_base(
        self, identity: Optional[Path] = None, *, identities_only: bool = False
    ) -> List[str]:
        cmd = [
            "ssh",
            "-p",
            str(self.port),
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            f"ConnectTimeout={self.timeout}",
        ]
        if identity is not None:
            cmd += ["-i", str(identity)]
        if identities_only:
            cmd += ["-o", "IdentitiesOnly=yes"]
        if self.proxy_jump:
            cmd += ["-J", self.proxy_jump]
        return cmd

    def run(
        self,
        target: str,
        remote_argv: List[str],
        *,
        identity: Optional[Path] = None,
        identities_only: bool = False,
        stdin: Optional[str] = None,
    ) -> Tuple[int, str, str]:
        full = self.cmd_base(identity, identities_only=identities_only) + [
            target,
            *remote_argv,
        ]
        try:
            cp = run(full, input=stdin, timeout=self.session_timeout)
            return cp.returncode, (cp.stdout or "").strip(), (cp.stderr or "").strip()
        except FileNotFoundError as ex:
            return 127, "", f"ssh not found: {ex}"
        except subprocess.TimeoutExpired:
            return 124, "", f"timeout after {self.session_timeout}s"


def push_key_update(
    ssh: SSH, target: str, request: KeyUpdateRequest, identity: Optional[Path]
) -> Tuple[int, str, str]:
    """Connect-and-mutate session, authenticated with the old credential."""
    return ssh.run(target, request.argv(), identity=identity, stdin=UPDATE_AUTHORIZED_KEYS)


def verify_new_key(ssh: SSH, target: str, identity: Path) -> Tuple[bool, str]:
    """Log in offering only ``identity`` and check a trivial command runs."""
    rc, out, err = ssh.run(
        target, ["echo", VERIFY_SENTINEL], identity=identity, identities_only=True
    )
    ok = rc == 0 and VERIFY_SENTINEL in out.splitlines()
    return ok, f"rc={rc} {err or out}".strip()
