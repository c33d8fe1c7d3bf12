"""
Rotation of one host, and of a batch of independent hosts.

Per host:

  keypair  ->  connect-and-mutate (old key)  ->  verify (new key only)

Any failure ends that host with a FAILED outcome; no other host is affected.
A verification failure after a successful mutation is reported distinctly:
the old key has probably been revoked already, so the host may be locked out.
"""

from __future__ import annotations

import dataclasses
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .hosts import HostRecord
from .keys import KeyGenError, KeyPair, ensure_keypair
from .remote import SSH, KeyUpdateRequest, push_key_update, verify_new_key
from .report import Reporter

SUCCESS = "success"
FAILED = "failed"

REASON_KEYGEN = "key generation failed"
REASON_SAME_KEY = "new key is identical to the old key"
REASON_MUTATE = "connect/mutate error"
REASON_VERIFY = "verification failed - old key state uncertain"
REASON_UNEXPECTED = "unexpected error"


@dataclasses.dataclass(frozen=True)
class RotationOutcome:
    host: HostRecord
    status: str  # SUCCESS | FAILED
    reason: str = ""
    key: Optional[KeyPair] = None
    details: str = ""

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS

    @property
    def lockout_risk(self) -> bool:
        return self.status == FAILED and self.reason == REASON_VERIFY


@dataclasses.dataclass(frozen=True)
class RotationContext:
    """Read-only inputs shared by every host of a run."""

    ssh: SSH
    old_key: str
    old_identity: Optional[Path]
    key_dir: Path
    key_type: str = "ed25519"
    rsa_bits: int = 4096


def _relay(rep: Reporter, target: str, output: str) -> None:
    for line in output.splitlines():
        if line.strip():
            rep.info(target, "remote", line.strip())


def _rotate(host: HostRecord, ctx: RotationContext, rep: Reporter) -> RotationOutcome:
    t = host.address
    rep.info(t, "start", f"--- Processing: {t} (alias: {host.alias}, user: {host.user}) ---")

    try:
        key = ensure_keypair(ctx.key_dir, host.alias, host.user, ctx.key_type, ctx.rsa_bits)
    except (KeyGenError, OSError) as ex:
        rep.fail(t, "keygen", f"{REASON_KEYGEN}: {ex}")
        return RotationOutcome(host, FAILED, REASON_KEYGEN, details=str(ex))
    if key.generated:
        rep.info(t, "keygen", f"Key created: {key.private_path}")
    else:
        rep.warn(t, "keygen", f"Key already exists: {key.private_path} - skipping generation.")

    if key.public_key == ctx.old_key.strip():
        rep.fail(t, "keygen", f"{REASON_SAME_KEY}: {key.public_path}")
        return RotationOutcome(host, FAILED, REASON_SAME_KEY, key=key)

    rep.info(t, "mutate", "Deploying new key and revoking old key...")
    request = KeyUpdateRequest(new_key=key.public_key, old_key=ctx.old_key)
    rc, out, err = push_key_update(ctx.ssh, host.target, request, ctx.old_identity)
    _relay(rep, t, out)
    if rc != 0:
        details = f"rc={rc} {err or out}".strip()
        rep.fail(t, "mutate", f"Could not update {t} - skipping ({details})")
        return RotationOutcome(host, FAILED, REASON_MUTATE, key=key, details=details)

    rep.info(t, "verify", "Verifying new key...")
    ok, details = verify_new_key(ctx.ssh, host.target, key.private_path)
    if not ok:
        rep.warn(
            t,
            "verify",
            f"New key verification failed for {t}. Old key may already be revoked! ({details})",
        )
        return RotationOutcome(host, FAILED, REASON_VERIFY, key=key, details=details)

    rep.info(t, "done", f"{t} complete.")
    return RotationOutcome(host, SUCCESS, key=key)


def rotate_host(host: HostRecord, ctx: RotationContext, rep: Reporter) -> RotationOutcome:
    """Rotate one host. Never raises: every error becomes a FAILED outcome."""
    try:
        return _rotate(host, ctx, rep)
    except Exception as ex:
        rep.fail(host.address, "error", f"{REASON_UNEXPECTED}: {ex!r}")
        return RotationOutcome(host, FAILED, REASON_UNEXPECTED, details=repr(ex))


def rotate_all(
    hosts: Sequence[HostRecord],
    ctx: RotationContext,
    rep: Reporter,
    workers: int = 1,
) -> List[RotationOutcome]:
    """Rotate every host; returns one outcome per host, in host-list order."""
    results: Dict[str, RotationOutcome] = {}
    lock = threading.Lock()

    def record(outcome: RotationOutcome) -> None:
        with lock:
            results[outcome.host.address] = outcome

    if workers <= 1 or len(hosts) <= 1:
        for host in hosts:
            record(rotate_host(host, ctx, rep))
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_host = {executor.submit(rotate_host, h, ctx, rep): h for h in hosts}
            for future in as_completed(future_to_host):
                record(future.result())

    return [results[h.address] for h in hosts]
