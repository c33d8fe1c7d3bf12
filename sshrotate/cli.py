"""
ssh-key-rotate

Retire a shared SSH key across a fleet: generate one key per host, install it
using the old key, revoke the old key, verify the new one, and point
~/.ssh/config aliases at the new keys.

Exit codes:
  0 = batch completed (individual hosts may have failed, see summary),
      dry run, or aborted at the confirmation prompt
  3 = runtime/config error (nothing was changed on any host)
  130 = interrupted
"""

from __future__ import annotations

import argparse
import sys
import textwrap
from typing import Callable, List, Optional

from .hosts import load_hosts
from .remote import SSH
from .report import Reporter
from .rotate import RotationContext, rotate_all
from .settings import KEY_TYPES, resolve_settings
from .sshconfig import AliasEntry, ConfigBlockError, update_config
from .util import PreflightError, eprint, ensure_ssh_pubkey_looks_valid, read_local_file


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="ssh-key-rotate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Replace a shared SSH key with per-server keys across a list of hosts.",
        epilog=textwrap.dedent("""\
        Host list format (one per line, '#' comments allowed):
          IP_OR_HOSTNAME  [alias]  [user]

        Every option can also be set in the environment (OLD_PUB_KEY, SSH_USER,
        KEY_TYPE, RSA_BITS, KEY_DIR, SERVERS_FILE, SSH_CONFIG, ...) or in the
        'rotation:' mapping of a YAML file passed with --config.

        Examples:
          ssh-key-rotate --servers servers.txt --old-pub-key ~/.ssh/id_rsa.pub
          KEY_TYPE=rsa RSA_BITS=4096 ssh-key-rotate --yes
          ssh-key-rotate --config rotate.yml --workers 8
          ssh-key-rotate --dry-run
        """),
    )
    ap.add_argument("--config", help="YAML settings file (rotation: mapping)")
    ap.add_argument("--servers", dest="servers_file", help="Host list file")
    ap.add_argument("--old-pub-key", help="Public key to revoke from every host")
    ap.add_argument(
        "--old-identity",
        help="Private key used to log in with the old credential "
        "(default: old public key path without .pub, if present)",
    )
    ap.add_argument("--ssh-user", help="Remote user when the host list gives none")
    ap.add_argument("--key-type", choices=KEY_TYPES, help="Type of the new keys")
    ap.add_argument("--rsa-bits", type=int, help="Key size when --key-type rsa")
    ap.add_argument("--key-dir", help="Directory for the generated keys")
    ap.add_argument("--ssh-config", help="ssh client config to update")
    ap.add_argument("--ssh-port", type=int, help="Remote ssh port")
    ap.add_argument("--connect-timeout", type=int, help="ssh ConnectTimeout in seconds")
    ap.add_argument("--proxy-jump", help="ssh -J jump host")
    ap.add_argument("--workers", type=int, help="Hosts processed in parallel (default 1)")
    ap.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the plan only; no keys, remote changes or config writes",
    )
    return ap


def confirm(prompt: str = "Proceed? [y/N] ") -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def main(
    argv: Optional[List[str]] = None,
    *,
    ask: Callable[[], bool] = confirm,
    rep: Optional[Reporter] = None,
) -> int:
    args = build_parser().parse_args(argv)
    rep = rep or Reporter()

    overrides = {
        "servers_file": args.servers_file,
        "old_pub_key": args.old_pub_key,
        "old_identity": args.old_identity,
        "ssh_user": args.ssh_user,
        "key_type": args.key_type,
        "rsa_bits": args.rsa_bits,
        "key_dir": args.key_dir,
        "ssh_config": args.ssh_config,
        "ssh_port": args.ssh_port,
        "connect_timeout": args.connect_timeout,
        "proxy_jump": args.proxy_jump,
        "workers": args.workers,
    }

    try:
        settings = resolve_settings(args.config, overrides=overrides)
        hosts = load_hosts(settings.servers_file, settings.ssh_user)
        old_key = read_local_file(str(settings.old_pub_key), "Old public key").strip()
        ensure_ssh_pubkey_looks_valid(old_key, f"Old public key ({settings.old_pub_key})")
    except PreflightError as ex:
        eprint(f"ERROR: {ex}")
        return 3

    rep.plan(hosts, settings)
    if args.dry_run:
        rep.info("", "plan", "Dry run: nothing changed.")
        return 0
    if not args.yes and not ask():
        rep.info("", "plan", "Aborted.")
        return 0
    rep.line()

    ctx = RotationContext(
        ssh=SSH(
            port=settings.ssh_port,
            timeout=settings.connect_timeout,
            session_timeout=settings.session_timeout,
            proxy_jump=settings.proxy_jump,
        ),
        old_key=old_key,
        old_identity=settings.old_identity_path,
        key_dir=settings.key_dir,
        key_type=settings.key_type,
        rsa_bits=settings.rsa_bits,
    )

    try:
        outcomes = rotate_all(hosts, ctx, rep, workers=settings.workers)
    except KeyboardInterrupt:
        eprint("ERROR: interrupted; re-run to finish the remaining hosts")
        return 130

    rep.line()
    rep.info("", "config", f"Updating {settings.ssh_config}...")
    entries = [AliasEntry(o.host, o.key.private_path) for o in outcomes if o.ok and o.key]
    try:
        result = update_config(settings.ssh_config, entries)
    except (ConfigBlockError, OSError, ValueError) as ex:
        eprint(f"ERROR: could not update {settings.ssh_config}: {ex}")
        rep.summary(outcomes, settings)
        return 3
    rep.info("", "config", f"Backup saved: {result.backup_path}")
    rep.info("", "config", "SSH config updated. You can now connect with: ssh <alias>")

    rep.summary(outcomes, settings, str(result.backup_path))
    return 0


if __name__ == "__main__":
    sys.exit(main())
