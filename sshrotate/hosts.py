"""
Host list loading.

Format, one host per line::

    ADDRESS  [ALIAS]  [USER]

Blank lines and lines starting with ``#`` are ignored. ALIAS defaults to
ADDRESS and USER to the configured fallback user.
"""

from __future__ import annotations

import dataclasses
import re
from pathlib import Path
from typing import Dict, List, Tuple

from .util import PreflightError

# Tokens end up in ssh argv, file names and ~/.ssh/config, so only a
# conservative character set is accepted.
_ADDRESS_RE = re.compile(r"^[A-Za-z0-9._:%\[\]-]+$")
_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class HostListError(PreflightError):
    pass


@dataclasses.dataclass(frozen=True)
class HostRecord:
    address: str
    alias: str
    user: str

    @property
    def target(self) -> str:
        return f"{self.user}@{self.address}"


def _check_token(kind: str, value: str, pattern: "re.Pattern[str]", lineno: int) -> str:
    if value.startswith("-") or not pattern.match(value):
        raise HostListError(f"line {lineno}: invalid {kind} {value!r}")
    return value


def parse_hosts(text: str, default_user: str) -> List[HostRecord]:
    records: List[HostRecord] = []
    seen_address: Dict[str, int] = {}
    seen_alias: Dict[str, int] = {}

    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split()
        if len(fields) > 3:
            raise HostListError(
                f"line {lineno}: expected 'ADDRESS [ALIAS] [USER]', got {len(fields)} fields"
            )

        address = _check_token("address", fields[0], _ADDRESS_RE, lineno)
        alias = _check_token(
            "alias", fields[1] if len(fields) > 1 else address, _NAME_RE, lineno
        )
        user = _check_token(
            "user", fields[2] if len(fields) > 2 else default_user, _NAME_RE, lineno
        )

        if address in seen_address:
            raise HostListError(
                f"line {lineno}: duplicate address {address} (first seen on line {seen_address[address]})"
            )
        if alias in seen_alias:
            raise HostListError(
                f"line {lineno}: duplicate alias {alias} (first seen on line {seen_alias[alias]})"
            )
        seen_address[address] = lineno
        seen_alias[alias] = lineno
        records.append(HostRecord(address=address, alias=alias, user=user))

    return records


def load_hosts(path: Path, default_user: str) -> Tuple[HostRecord, ...]:
    p = Path(path).expanduser()
    if not p.is_file():
        raise HostListError(
            f"Server list not found: {p}\n"
            "Create it with one server per line:\n"
            "  IP_OR_HOSTNAME  [alias]  [user]"
        )
    try:
        text = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as ex:
        raise HostListError(f"Cannot read server list {p}: {ex}") from ex
    records = parse_hosts(text, default_user)
    if not records:
        raise HostListError(f"No servers found in {p}")
    return tuple(records)
