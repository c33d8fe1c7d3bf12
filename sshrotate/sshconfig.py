"""
Managed block of the local ssh client config.

The block sits between START_MARKER and END_MARKER lines and is owned by
this tool: every run regenerates it in full from that run's successful hosts.
Nothing outside the markers is modified.
"""

from __future__ import annotations

import dataclasses
import datetime
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .hosts import HostRecord

START_MARKER = "# >>> MANAGED BY ssh-key-rotate - DO NOT EDIT MANUALLY >>>"
END_MARKER = "# <<< END MANAGED BLOCK <<<"


class ConfigBlockError(RuntimeError):
    pass


@dataclasses.dataclass(frozen=True)
class AliasEntry:
    host: HostRecord
    identity_file: Path


@dataclasses.dataclass(frozen=True)
class ConfigUpdate:
    path: Path
    backup_path: Path
    entries: int
    replaced: bool


def _is_marker(line: str, marker: str) -> bool:
    return line.rstrip("\r\n") == marker


def split_managed_block(text: str) -> Tuple[str, Optional[str], str]:
    """Split ``text`` into (prefix, block, suffix).

    ``block`` includes both marker lines and is None when there is no block,
    in which case ``prefix`` is the whole text and ``suffix`` is empty.
    """
    lines = text.splitlines(keepends=True)
    starts = [i for i, ln in enumerate(lines) if _is_marker(ln, START_MARKER)]
    ends = [i for i, ln in enumerate(lines) if _is_marker(ln, END_MARKER)]

    if not starts and not ends:
        return text, None, ""
    if len(starts) > 1 or len(ends) > 1:
        raise ConfigBlockError(
            f"found {len(starts)} start and {len(ends)} end markers; expected at most one block"
        )
    if not starts or not ends:
        missing = "end" if starts else "start"
        raise ConfigBlockError(f"managed block has no {missing} marker")
    s, e = starts[0], ends[0]
    if e < s:
        raise ConfigBlockError("managed block end marker precedes start marker")

    return "".join(lines[:s]), "".join(lines[s : e + 1]), "".join(lines[e + 1 :])


def render_block(entries: Sequence[AliasEntry]) -> str:
    out: List[str] = [START_MARKER + "\n"]
    for e in entries:
        out += [
            "\n",
            f"Host {e.host.alias}\n",
            f"    HostName {e.host.address}\n",
            f"    User {e.host.user}\n",
            f"    IdentityFile {e.identity_file}\n",
            "    IdentitiesOnly yes\n",
        ]
    out += ["\n", END_MARKER + "\n"]
    return "".join(out)


def backup_config(path: Path, now: Optional[datetime.datetime] = None) -> Path:
    stamp = (now or datetime.datetime.now()).strftime("%Y%m%d%H%M%S")
    base = path.with_name(f"{path.name}.bak.{stamp}")
    dest = base
    n = 0
    while dest.exists():
        n += 1
        dest = base.with_name(f"{base.name}.{n}")
    shutil.copy2(path, dest)
    return dest


def _write_atomic(path: Path, content: str, mode: int) -> None:
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
            f.write(content)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def update_config(
    config_path: Path,
    entries: Sequence[AliasEntry],
    *,
    now: Optional[datetime.datetime] = None,
) -> ConfigUpdate:
    """Back up ``config_path`` and replace its managed block with ``entries``."""
    path = Path(config_path).expanduser()
    if not path.exists():
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        path.touch(mode=0o600)

    backup = backup_config(path, now)
    # Write through a symlinked config instead of replacing the link.
    target = path.resolve()

    # Bytes that are not UTF-8 are carried through unchanged.
    with open(target, "r", encoding="utf-8", errors="surrogateescape", newline="") as f:
        text = f.read()
    prefix, block, suffix = split_managed_block(text)

    new_block = render_block(entries)
    if block is None:
        if prefix and not prefix.endswith("\n"):
            prefix += "\n"
        if prefix:
            prefix += "\n"
    _write_atomic(target, prefix + new_block + suffix, stat.S_IMODE(target.stat().st_mode))

    return ConfigUpdate(
        path=path, backup_path=backup, entries=len(entries), replaced=block is not None
    )
