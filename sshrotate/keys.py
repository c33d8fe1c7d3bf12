"""
Per-host key material under the local key directory.

One keypair per alias at ``<key_dir>/id_<type>_<alias>``. Existing keys are
never regenerated, so re-running the whole tool is safe.
"""

from __future__ import annotations

import dataclasses
import os
import subprocess
from pathlib import Path
from typing import List

from .util import run


class KeyGenError(RuntimeError):
    pass


@dataclasses.dataclass(frozen=True)
class KeyPair:
    alias: str
    private_path: Path
    public_path: Path
    public_key: str
    generated: bool = False


def key_path(key_dir: Path, key_type: str, alias: str) -> Path:
    return Path(key_dir) / f"id_{key_type}_{alias}"


def keygen_cmd(path: Path, key_type: str, comment: str, rsa_bits: int) -> List[str]:
    cmd = ["ssh-keygen", "-q", "-t", key_type]
    if key_type == "rsa":
        cmd += ["-b", str(rsa_bits)]
    cmd += ["-N", "", "-C", comment, "-f", str(path)]
    return cmd


def _ssh_keygen(cmd: List[str], what: str) -> str:
    try:
        cp = run(cmd, timeout=120)
    except FileNotFoundError as ex:
        raise KeyGenError(f"ssh-keygen not found: {ex}") from ex
    except subprocess.TimeoutExpired:
        raise KeyGenError(f"{what}: ssh-keygen timed out") from None
    if cp.returncode != 0:
        raise KeyGenError(
            f"{what}: ssh-keygen rc={cp.returncode} {(cp.stderr or cp.stdout or '').strip()}".strip()
        )
    return cp.stdout or ""


def ensure_keypair(
    key_dir: Path,
    alias: str,
    user: str,
    key_type: str = "ed25519",
    rsa_bits: int = 4096,
) -> KeyPair:
    priv = key_path(key_dir, key_type, alias)
    pub = priv.with_name(priv.name + ".pub")
    generated = False

    try:
        Path(key_dir).mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as ex:
        raise KeyGenError(f"cannot create key directory {key_dir}: {ex}") from ex

    if priv.exists():
        if not pub.exists():
            # Private half survived, public half lost: re-derive, never regenerate.
            out = _ssh_keygen(["ssh-keygen", "-y", "-f", str(priv)], str(priv))
            fields = out.split()
            if len(fields) < 2:
                raise KeyGenError(f"{priv}: ssh-keygen -y produced no public key")
            pub.write_text(f"{fields[0]} {fields[1]} {user}@{alias}\n", encoding="utf-8")
    else:
        _ssh_keygen(keygen_cmd(priv, key_type, f"{user}@{alias}", rsa_bits), str(priv))
        generated = True
        if not priv.exists() or not pub.exists():
            raise KeyGenError(f"{priv}: ssh-keygen reported success but key files are missing")
        os.chmod(priv, 0o600)

    try:
        public_key = pub.read_text(encoding="utf-8").strip()
    except OSError as ex:
        raise KeyGenError(f"cannot read {pub}: {ex}") from ex
    if not public_key:
        raise KeyGenError(f"{pub} is empty")

    return KeyPair(
        alias=alias,
        private_path=priv,
        public_path=pub,
        public_key=public_key,
        generated=generated,
    )
