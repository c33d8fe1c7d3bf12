"""
Operator-facing output: live progress, the plan table and the final summary.
"""

from __future__ import annotations

import dataclasses
import os
import sys
import threading
from typing import TYPE_CHECKING, List, Optional, Sequence, TextIO

if TYPE_CHECKING:
    from .hosts import HostRecord
    from .rotate import RotationOutcome
    from .settings import Settings

_COLORS = {"INFO": "\033[0;32m", "WARN": "\033[1;33m", "FAIL": "\033[0;31m"}
_LABELS = {"INFO": "[INFO] ", "WARN": "[WARN] ", "FAIL": "[ERROR]"}
_RESET = "\033[0m"


@dataclasses.dataclass
class Finding:
    target: str
    severity: str  # "INFO" | "WARN" | "FAIL"
    action: str
    details: str


class Reporter:
    def __init__(self, stream: Optional[TextIO] = None, color: Optional[bool] = None) -> None:
        self.stream = stream or sys.stdout
        if color is None:
            color = self.stream.isatty() and not os.environ.get("NO_COLOR")
        self.color = color
        self.items: List[Finding] = []
        self._lock = threading.Lock()

    def _emit(self, severity: str, target: str, action: str, details: str) -> None:
        label = _LABELS[severity]
        if self.color:
            label = f"{_COLORS[severity]}{label}{_RESET}"
        prefix = f"{target}: " if target else ""
        with self._lock:
            self.items.append(Finding(target, severity, action, details))
            print(f"{label} {prefix}{details}", file=self.stream, flush=True)

    def info(self, target: str, action: str, details: str) -> None:
        self._emit("INFO", target, action, details)

    def warn(self, target: str, action: str, details: str) -> None:
        self._emit("WARN", target, action, details)

    def fail(self, target: str, action: str, details: str) -> None:
        self._emit("FAIL", target, action, details)

    def line(self, text: str = "") -> None:
        with self._lock:
            print(text, file=self.stream, flush=True)

    def plan(self, hosts: Sequence["HostRecord"], settings: "Settings") -> None:
        self.info("", "plan", f"Found {len(hosts)} server(s) to process.")
        self.line()
        self.line("Plan:")
        self.line(f"  1. Generate a new {settings.key_type} key per server in {settings.key_dir}/")
        self.line("  2. Deploy each new public key to the server")
        self.line(f"  3. Revoke the old shared key ({settings.old_pub_key}) from each server")
        self.line(f"  4. Update {settings.ssh_config} so SSH auto-selects the right key")
        self.line()
        self.line(f"  {'HOST':<30} {'ALIAS':<20} {'USER':<10}")
        self.line(f"  {'----':<30} {'-----':<20} {'----':<10}")
        for h in hosts:
            self.line(f"  {h.address:<30} {h.alias:<20} {h.user:<10}")
        self.line()

    def summary(
        self,
        outcomes: Sequence["RotationOutcome"],
        settings: "Settings",
        backup_path: Optional[str] = None,
    ) -> None:
        succeeded = [o for o in outcomes if o.ok]
        failed = [o for o in outcomes if not o.ok]

        self.line()
        self.line("=" * 41)
        self.line("  SUMMARY")
        self.line("=" * 41)
        self.info("", "summary", f"Succeeded: {len(succeeded)}")
        if failed:
            self.warn("", "summary", f"Failed:    {len(failed)}")
            for o in failed:
                self.line(f"    - {o.host.address} ({o.host.alias}): {o.reason}")
        risky = [o for o in failed if o.lockout_risk]
        if risky:
            self.line()
            self.fail(
                "",
                "summary",
                "New key did not verify after the old key was revoked on: "
                + ", ".join(o.host.address for o in risky),
            )
            self.line("    These hosts may no longer accept either key. Check console access.")
        self.line()
        self.info("", "summary", f"Keys stored in:  {settings.key_dir}/")
        self.info("", "summary", f"SSH config:      {settings.ssh_config}")
        if backup_path:
            self.info("", "summary", f"Config backup:   {backup_path}")
        if succeeded:
            self.line()
            self.info("", "summary", f"Test with:  ssh {succeeded[0].host.alias}")
