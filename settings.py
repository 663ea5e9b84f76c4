"""
Layered configuration for cfwg-zt.

Sources, lowest precedence first:
  1. built-in DEFAULTS
  2. config.yaml, from an explicit path or the first hit in SEARCH_DIRS
  3. CFWG_* environment variables (key path upper-cased, joined with "_")
"""

import copy
import dataclasses
import getpass
import os
import shutil
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import yaml

ENV_PREFIX = "CFWG"
CONFIG_NAME = "config.yaml"
CONFIG_FILE_ENV = f"{ENV_PREFIX}_CONFIG_FILE"
DEFAULT_CONFIG_PATH = "/etc/cfwg-zt/config.yaml"
SEARCH_DIRS = [".", "/etc/cfwg-zt", "~/.cfwg-zt"]

DEFAULTS: Dict[str, Any] = {
    "cloudflare_zero_trust": {
        "client_id": "",
        "client_secret": "",
        "team_name": "",
        "account_id": "",
    },
    "wireguard": {
        "interface_name": "wg0",
        "config_path": "/etc/wireguard/wg0.conf",
    },
    "udm_pro": {
        "wireguard_service_name": "wg-quick@wg0",
        "config_backup_path": "/etc/wireguard/backup",
    },
    "refresh_interval_minutes": 60,
    "debug": False,
}

DEFAULT_CONFIG_TEMPLATE = """\
# Cloudflare Zero Trust WireGuard Manager Configuration
# Keeps a UDM Pro UI-created WireGuard configuration authenticated to Cloudflare Zero Trust

# Cloudflare Zero Trust settings
cloudflare_zero_trust:
  client_id: "your_client_id_here"
  client_secret: "your_client_secret_here"
  team_name: "your_team_name_here"
  account_id: "your_account_id_here"

# WireGuard settings - these should match your UI-created configuration
wireguard:
  interface_name: "wg0"
  config_path: "/etc/wireguard/wg0.conf"

# UDM-Pro specific settings
udm_pro:
  wireguard_service_name: "wg-quick@wg0"  # must match the interface name
  config_backup_path: "/etc/wireguard/backup"

# General settings
refresh_interval_minutes: 60  # how often to refresh authentication
debug: false
"""


class ConfigError(RuntimeError):
    pass


_debug_enabled = False


def set_debug(enabled: bool) -> None:
    global _debug_enabled
    _debug_enabled = bool(enabled)


def debug(msg: str) -> None:
    if _debug_enabled:
        print(f"[debug] {msg}", flush=True)


@dataclasses.dataclass
class CloudflareZeroTrust:
    client_id: str = ""
    client_secret: str = ""
    team_name: str = ""
    account_id: str = ""


@dataclasses.dataclass
class WireGuard:
    interface_name: str = "wg0"
    config_path: str = "/etc/wireguard/wg0.conf"


@dataclasses.dataclass
class UDMPro:
    wireguard_service_name: str = "wg-quick@wg0"
    config_backup_path: str = "/etc/wireguard/backup"


@dataclasses.dataclass
class Config:
    cloudflare_zero_trust: CloudflareZeroTrust = dataclasses.field(default_factory=CloudflareZeroTrust)
    wireguard: WireGuard = dataclasses.field(default_factory=WireGuard)
    udm_pro: UDMPro = dataclasses.field(default_factory=UDMPro)
    refresh_interval_minutes: int = 60
    debug: bool = False
    config_file_used: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        return cls(
            cloudflare_zero_trust=CloudflareZeroTrust(**data["cloudflare_zero_trust"]),
            wireguard=WireGuard(**data["wireguard"]),
            udm_pro=UDMPro(**data["udm_pro"]),
            refresh_interval_minutes=data["refresh_interval_minutes"],
            debug=data["debug"],
        )

    def to_dict(self) -> Dict[str, Any]:
        out = dataclasses.asdict(self)
        out.pop("config_file_used", None)
        return out

    def validate(self) -> None:
        """Raise ConfigError for settings the service cannot start without."""
        missing: List[str] = []
        if not self.cloudflare_zero_trust.client_id:
            missing.append("cloudflare_zero_trust.client_id")
        if not self.cloudflare_zero_trust.client_secret:
            missing.append("cloudflare_zero_trust.client_secret")
        if not self.wireguard.config_path:
            missing.append("wireguard.config_path")
        if missing:
            raise ConfigError(f"missing required config: {', '.join(missing)}")
        if self.refresh_interval_minutes <= 0:
            raise ConfigError("refresh_interval_minutes must be positive")


def _parse_bool(raw: Any, key: str) -> bool:
    if isinstance(raw, bool):
        return raw
    s = str(raw).strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("", "0", "false", "no", "off"):
        return False
    raise ConfigError(f"{key}: expected a boolean, got {raw!r}")


def _coerce(default: Any, raw: Any, key: str) -> Any:
    if isinstance(default, bool):
        return _parse_bool(raw, key)
    if isinstance(default, int):
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"{key}: expected an integer, got {raw!r}")
    if raw is None:
        return ""
    return str(raw)


def _overlay(base: Dict[str, Any], data: Dict[str, Any], prefix: str = "") -> None:
    """Copy known keys from data onto base, coerced to the default's type."""
    for key, val in data.items():
        path = f"{prefix}{key}"
        if key not in base:
            debug(f"ignoring unknown config key {path}")
            continue
        if isinstance(base[key], dict):
            if not isinstance(val, dict):
                raise ConfigError(f"{path}: expected a mapping")
            _overlay(base[key], val, f"{path}.")
        else:
            base[key] = _coerce(base[key], val, path)


def env_var_name(path: List[str]) -> str:
    return "_".join([ENV_PREFIX] + [p.upper() for p in path])


def _overlay_env(base: Dict[str, Any], environ: Dict[str, str], path: List[str]) -> None:
    for key, val in base.items():
        sub = path + [key]
        if isinstance(val, dict):
            _overlay_env(val, environ, sub)
            continue
        name = env_var_name(sub)
        if name in environ:
            base[key] = _coerce(val, environ[name], ".".join(sub))


def find_config_file() -> Optional[str]:
    for d in SEARCH_DIRS:
        path = os.path.join(os.path.expanduser(d), CONFIG_NAME)
        if os.path.isfile(path):
            return path
    return None


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"failed to read config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path}: root must be a mapping")
    return data


def load(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Config:
    env = os.environ if environ is None else environ
    data = copy.deepcopy(DEFAULTS)

    explicit = path or env.get(CONFIG_FILE_ENV)
    if explicit:
        if not os.path.isfile(explicit):
            raise ConfigError(f"config file not found: {explicit}")
        used: Optional[str] = explicit
    else:
        used = find_config_file()

    if used:
        _overlay(data, load_yaml(used))
    else:
        print("[config] config file not found, using defaults and environment", flush=True)

    _overlay_env(data, env, [])
    cfg = Config.from_dict(data)
    cfg.config_file_used = used
    return cfg


def write_text(path: str, text: str, mode: Optional[int] = None) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)
    if mode is not None:
        os.chmod(path, mode)


def create_default_config_file(path: str) -> None:
    write_text(path, DEFAULT_CONFIG_TEMPLATE, mode=0o644)


def save_config(cfg: Config, path: str) -> None:
    header = "# Cloudflare Zero Trust WireGuard Manager Configuration\n"
    body = yaml.safe_dump(cfg.to_dict(), sort_keys=False, default_flow_style=False)
    write_text(path, header + body, mode=0o600)


def _ask(input_fn: Callable[[str], str], label: str, default: str = "") -> str:
    prompt = f"{label} [{default}]: " if default else f"{label}: "
    answer = input_fn(prompt).strip()
    return answer or default


def run_wizard(
    input_fn: Callable[[str], str] = input,
    secret_fn: Callable[[str], str] = getpass.getpass,
) -> Config:
    """Interactively build a Config, one prompt per setting."""
    cfg = Config()
    print("Cloudflare Zero Trust WireGuard Manager configuration wizard", flush=True)
    print("Press enter to accept the value in brackets.", flush=True)

    cz = cfg.cloudflare_zero_trust
    while not cz.client_id:
        cz.client_id = _ask(input_fn, "Cloudflare client ID")
    while not cz.client_secret:
        cz.client_secret = secret_fn("Cloudflare client secret: ").strip()
    cz.team_name = _ask(input_fn, "Cloudflare team name")
    cz.account_id = _ask(input_fn, "Cloudflare account ID")

    wg = cfg.wireguard
    wg.interface_name = _ask(input_fn, "WireGuard interface name", wg.interface_name)
    wg.config_path = _ask(input_fn, "WireGuard config path", f"/etc/wireguard/{wg.interface_name}.conf")

    udm = cfg.udm_pro
    udm.wireguard_service_name = _ask(input_fn, "WireGuard service name", f"wg-quick@{wg.interface_name}")
    udm.config_backup_path = _ask(input_fn, "Backup directory", udm.config_backup_path)

    while True:
        raw = _ask(input_fn, "Refresh interval (minutes)", str(cfg.refresh_interval_minutes))
        if raw.isdigit() and int(raw) > 0:
            cfg.refresh_interval_minutes = int(raw)
            break
        print("Please enter a positive whole number.", flush=True)

    cfg.debug = _ask(input_fn, "Enable debug output (y/n)", "n").lower() in ("y", "yes")
    return cfg


def _backup_name(backup_dir: str, path: str) -> str:
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    base = os.path.join(backup_dir, f"{os.path.basename(path)}.{stamp}")
    candidate = f"{base}.bak"
    n = 1
    # a second write within the same second must not overwrite the first backup
    while os.path.exists(candidate):
        candidate = f"{base}-{n}.bak"
        n += 1
    return candidate


def backup_then_write(path: str, text: str, backup_dir: str, mode: int = 0o600) -> Optional[str]:
    """Back up an existing file, then replace it atomically.

    The backup is named <basename>.<YYYYmmdd-HHMMSS>.bak, with a -N suffix
    when that name is already taken. If it cannot be written the target is
    left untouched and the error propagates. Text is written as given, line
    endings included.
    """
    backup_path: Optional[str] = None
    if os.path.exists(path):
        os.makedirs(backup_dir, mode=0o755, exist_ok=True)
        backup_path = _backup_name(backup_dir, path)
        shutil.copyfile(path, backup_path)
        os.chmod(backup_path, 0o600)
        debug(f"backed up {path} to {backup_path}")

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    new_path = f"{path}.new"
    fd = os.open(new_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        os.chmod(new_path, mode)
        os.replace(new_path, path)
    except OSError:
        try:
            os.remove(new_path)
        except FileNotFoundError:
            pass
        raise
    return backup_path
