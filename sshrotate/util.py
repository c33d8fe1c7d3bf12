"""
Shared helpers: subprocess wrapper, YAML config access, local file reads.
"""

from __future__ import annotations

import base64
import re
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional


class PreflightError(RuntimeError):
    """Raised for problems that must abort the run before any remote change."""


def eprint(*args: Any) -> None:
    print(*args, file=sys.stderr)


def run(
    cmd: List[str],
    *,
    input: Optional[str] = None,
    check: bool = False,
    timeout: int = 30,
) -> subprocess.CompletedProcess:
    return subprocess.run(
        cmd,
        input=input,
        check=check,
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def b64(s: str) -> str:
    return base64.b64encode(s.encode("utf-8")).decode("ascii")


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        import yaml  # type: ignore
    except Exception as ex:
        raise PreflightError(
            "PyYAML is required. Install with: python3 -m pip install pyyaml "
            "or your distro package (python3-pyyaml)."
        ) from ex

    p = Path(path).expanduser()
    if not p.exists():
        raise PreflightError(f"Config file not found: {p}")
    try:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as ex:
        raise PreflightError(f"Invalid YAML in {p}: {ex}") from ex
    except (OSError, UnicodeDecodeError) as ex:
        raise PreflightError(f"Cannot read config file {p}: {ex}") from ex
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise PreflightError("Config root must be a mapping/dict")
    return data


def cfg_get(cfg: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def read_local_file(path: str, label: str) -> str:
    p = Path(path).expanduser()
    if not p.is_file():
        raise PreflightError(f"{label} not found: {p}")
    try:
        return p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as ex:
        raise PreflightError(f"Cannot read {label.lower()} {p}: {ex}") from ex


def ensure_ssh_pubkey_looks_valid(pub: str, label: str) -> None:
    # minimal check: single line, known type, base64 body
    if "\n" in pub.strip() or not re.match(
        r"^(ssh-ed25519|ssh-rsa|ecdsa-sha2-nistp(256|384|521)|sk-ssh-ed25519@openssh\.com)"
        r"\s+[A-Za-z0-9+/=]+(\s+.*)?$",
        pub.strip(),
    ):
        raise PreflightError(f"{label} does not look like a single SSH public key line")
