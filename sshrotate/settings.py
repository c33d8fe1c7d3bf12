"""
Run settings.

Resolved from (lowest to highest precedence): built-in defaults, the
``rotation:`` mapping of an optional YAML config file, environment variables
and command-line flags.
"""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .util import PreflightError, cfg_get, load_yaml

KEY_TYPES = ("ed25519", "rsa")
MIN_RSA_BITS = 2048


class SettingsError(PreflightError):
    pass


@dataclasses.dataclass(frozen=True)
class Settings:
    old_pub_key: Path
    old_identity: Optional[Path]
    ssh_user: str
    key_type: str
    rsa_bits: int
    key_dir: Path
    servers_file: Path
    ssh_config: Path
    ssh_port: int
    connect_timeout: int
    session_timeout: int
    proxy_jump: Optional[str]
    workers: int

    @property
    def old_identity_path(self) -> Optional[Path]:
        """Private half of the old credential, if one can be offered with -i."""
        if self.old_identity is not None:
            return self.old_identity
        if self.old_pub_key.suffix == ".pub":
            candidate = self.old_pub_key.with_suffix("")
            if candidate.is_file():
                return candidate
        return None


# setting name -> (yaml path, env var, default)
_SOURCES: Dict[str, Any] = {
    "old_pub_key": ("rotation.old_pub_key", "OLD_PUB_KEY", "~/.ssh/id_rsa.pub"),
    "old_identity": ("rotation.old_identity", "OLD_IDENTITY", None),
    "ssh_user": ("rotation.ssh_user", "SSH_USER", "root"),
    "key_type": ("rotation.key_type", "KEY_TYPE", "ed25519"),
    "rsa_bits": ("rotation.rsa_bits", "RSA_BITS", 4096),
    "key_dir": ("rotation.key_dir", "KEY_DIR", "~/.ssh/per-server"),
    "servers_file": ("rotation.servers_file", "SERVERS_FILE", "./servers.txt"),
    "ssh_config": ("rotation.ssh_config", "SSH_CONFIG", "~/.ssh/config"),
    "ssh_port": ("rotation.ssh.port", "SSH_PORT", 22),
    "connect_timeout": (
        "rotation.ssh.connect_timeout_seconds",
        "CONNECT_TIMEOUT",
        10,
    ),
    "session_timeout": ("rotation.ssh.session_timeout_seconds", None, 60),
    "proxy_jump": ("rotation.ssh.proxy_jump", "PROXY_JUMP", None),
    "workers": ("rotation.workers", "ROTATE_WORKERS", 1),
}


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise SettingsError(f"{name} must be an integer, got {value!r}") from None


def _as_path(value: Any) -> Path:
    return Path(str(value)).expanduser()


def resolve_settings(
    config_path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Settings:
    """Merge defaults, YAML config, environment and flag overrides.

    ``overrides`` holds CLI values keyed by setting name; ``None`` values
    mean "not given" and do not override anything.
    """
    cfg = load_yaml(config_path) if config_path else {}
    if config_path and cfg.get("rotation") is not None and not isinstance(
        cfg.get("rotation"), dict
    ):
        raise SettingsError("config.rotation must be a mapping/dict")
    env = os.environ if env is None else env
    overrides = overrides or {}

    raw: Dict[str, Any] = {}
    for name, (yaml_path, env_var, default) in _SOURCES.items():
        value = cfg_get(cfg, yaml_path, default)
        if env_var and env.get(env_var):
            value = env[env_var]
        if overrides.get(name) is not None:
            value = overrides[name]
        raw[name] = value

    key_type = str(raw["key_type"]).strip().lower()
    if key_type not in KEY_TYPES:
        raise SettingsError(
            f"key_type must be one of {', '.join(KEY_TYPES)}, got {raw['key_type']!r}"
        )

    rsa_bits = _as_int("rsa_bits", raw["rsa_bits"])
    if key_type == "rsa" and rsa_bits < MIN_RSA_BITS:
        raise SettingsError(f"rsa_bits must be at least {MIN_RSA_BITS}, got {rsa_bits}")

    workers = _as_int("workers", raw["workers"])
    if workers < 1:
        raise SettingsError(f"workers must be at least 1, got {workers}")

    connect_timeout = _as_int("connect_timeout", raw["connect_timeout"])
    session_timeout = _as_int("session_timeout", raw["session_timeout"])
    if connect_timeout < 1 or session_timeout < 1:
        raise SettingsError("timeouts must be positive")

    ssh_user = str(raw["ssh_user"]).strip()
    if not ssh_user:
        raise SettingsError("ssh_user must not be empty")

    return Settings(
        old_pub_key=_as_path(raw["old_pub_key"]),
        old_identity=_as_path(raw["old_identity"]) if raw["old_identity"] else None,
        ssh_user=ssh_user,
        key_type=key_type,
        rsa_bits=rsa_bits,
        key_dir=_as_path(raw["key_dir"]),
        servers_file=_as_path(raw["servers_file"]),
        ssh_config=_as_path(raw["ssh_config"]),
        ssh_port=_as_int("ssh_port", raw["ssh_port"]),
        connect_timeout=connect_timeout,
        session_timeout=session_timeout,
        proxy_jump=str(raw["proxy_jump"]) if raw["proxy_jump"] else None,
        workers=workers,
    )
