import argparse
import json
import os
import signal
import subprocess
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import settings
from identity import DeviceToken, IdentityClient, IdentityError, RotatedCredentials
from service import ServiceController, ServiceError
from settings import Config, ConfigError, backup_then_write, debug

VERSION = "1.0.0"
GEN_DIR = os.environ.get("CFWG_GEN_DIR") or os.path.join(os.path.dirname(os.path.abspath(__file__)), "generators")
PLACEHOLDER_NAME = "dummy-wireguard.conf"
UDM_MARKER = "/usr/bin/ubnt-systool"

MAX_CONSECUTIVE_FAILURES = 5
RETRY_DELAY = 60
INACTIVE_DELAY = 5 * 60
MAX_BACKOFF_MINUTES = 30

EXIT_OK = 0
EXIT_FAIL = 1
EXIT_CONFIG = 3


class GeneratorError(RuntimeError):
    pass


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+0000")


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def _run_generator(name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    cmd = [sys.executable, os.path.join(GEN_DIR, f"{name}.py")]
    try:
        cp = subprocess.run(
            cmd,
            input=json.dumps(payload),
            text=True,
            capture_output=True,
        )
    except OSError as e:
        raise GeneratorError(f"generator {name} could not run: {e}") from e
    if cp.returncode != 0:
        raise GeneratorError(f"generator {name} failed: {cp.stderr.strip() or cp.stdout.strip()}")
    try:
        return json.loads(cp.stdout)
    except json.JSONDecodeError as e:
        raise GeneratorError(f"generator {name} invalid JSON: {e}") from e


def backoff_minutes(failures: int) -> int:
    return min((failures - MAX_CONSECUTIVE_FAILURES + 1) * 2, MAX_BACKOFF_MINUTES)


class FailureState:
    """Consecutive cycle failures and the backoff they trigger."""

    def __init__(self, limit: int = MAX_CONSECUTIVE_FAILURES):
        self.limit = limit
        self.count = 0

    def record(self) -> int:
        self.count += 1
        return self.count

    def reset(self) -> None:
        self.count = 0

    def needs_backoff(self) -> bool:
        return self.count >= self.limit

    def backoff_seconds(self) -> int:
        return backoff_minutes(self.count) * 60

    def after_backoff(self) -> None:
        # stays warm: two more failures put the loop straight back into backoff
        self.count = self.limit - 2


# ---------- tunnel config ----------

def update_tunnel_config(cfg: Config, creds: RotatedCredentials) -> Optional[str]:
    """Merge (or render) fresh credentials into the tunnel file. Returns the backup path."""
    path = cfg.wireguard.config_path
    try:
        existing: Optional[str] = _read_text(path)
    except FileNotFoundError:
        existing = None

    out = _run_generator("gen_wireguard", {"credentials": creds.to_payload(), "existing": existing})
    text = out.get("config") or ""
    if not text:
        missing = ", ".join(out.get("missing") or []) or "unknown"
        raise GeneratorError(f"invalid WireGuard credentials, missing required fields: {missing}")

    backup = backup_then_write(path, text, cfg.udm_pro.config_backup_path)
    if backup:
        print(f"[wireguard] backup of {path} written to {backup}", flush=True)
    print(f"[wireguard] updated {path} ({out.get('mode')})", flush=True)
    return backup


def validate_tunnel_config(path: str) -> List[str]:
    """Warnings about the tunnel file; an empty list means it looks usable."""
    try:
        text = _read_text(path)
    except FileNotFoundError:
        return [f"WireGuard configuration file not found at {path}"]
    out = _run_generator("gen_wireguard", {"validate": text})
    warnings = list(out.get("problems") or [])
    if out.get("placeholder"):
        print("[wireguard] configuration still contains the placeholder keys, they will be replaced", flush=True)
    return warnings


# ---------- reconcile ----------

class Reconciler:
    def __init__(
        self,
        cfg: Config,
        identity: IdentityClient,
        service: ServiceController,
        shutdown: Optional[threading.Event] = None,
    ):
        self.cfg = cfg
        self.identity = identity
        self.service = service
        self.shutdown = shutdown or threading.Event()
        self.failures = FailureState()
        self._timers: List[threading.Timer] = []

    @property
    def interval_seconds(self) -> int:
        return self.cfg.refresh_interval_minutes * 60

    def sleep(self, seconds: float) -> bool:
        """Wait unless shutdown is requested first. True when shutting down."""
        return self.shutdown.wait(seconds)

    def _fail(self, what: str, err: Exception) -> int:
        n = self.failures.record()
        print(
            f"[reconcile] {what}: {err}, retrying in 1 minute (failure {n}/{self.failures.limit})",
            flush=True,
        )
        return RETRY_DELAY

    def run_once(self) -> int:
        """One reconciliation cycle. Returns the delay before the next one."""
        print("[auth] authenticating with Cloudflare Zero Trust", flush=True)
        try:
            token = self.identity.authenticate()
        except IdentityError as e:
            return self._fail("error authenticating device", e)

        print("[wireguard] retrieving WireGuard configuration", flush=True)
        try:
            creds = self.identity.fetch_credentials(token)
        except IdentityError as e:
            return self._fail("error getting WireGuard config", e)

        try:
            running = self.service.is_active()
        except ServiceError as e:
            print(f"[service] error checking WireGuard status: {e}", flush=True)
            running = False
        fresh = not os.path.exists(self.cfg.wireguard.config_path)
        if not running and fresh:
            print("[service] no tunnel configuration yet, rendering a new one and starting the service", flush=True)
        elif not running:
            print(
                f"[service] {self.service.unit} is not running, the UI-created configuration may have been "
                "disabled. Check the UDM Pro settings. Retrying in 5 minutes.",
                flush=True,
            )
            return INACTIVE_DELAY

        print("[wireguard] updating configuration file, UI-created settings are preserved", flush=True)
        try:
            update_tunnel_config(self.cfg, creds)
        except (GeneratorError, OSError) as e:
            return self._fail("error updating WireGuard config", e)

        try:
            action = self.service.apply()
        except ServiceError as e:
            return self._fail("error applying WireGuard config", e)

        self.failures.reset()
        print(f"[reconcile] configuration updated and applied ({action}) at {now_utc_iso()}", flush=True)
        self.schedule_refresh(token, self.interval_seconds / 2)
        print(f"[reconcile] next configuration check in {self.cfg.refresh_interval_minutes} minutes", flush=True)
        return self.interval_seconds

    def _refresh(self, token: DeviceToken) -> None:
        try:
            self.identity.refresh_registration(token)
            print("[refresh] device registration refreshed", flush=True)
        except Exception as e:
            print(f"[refresh] warning: failed to refresh device registration: {e}", flush=True)

    def schedule_refresh(self, token: DeviceToken, delay: float) -> threading.Timer:
        self._timers = [t for t in self._timers if t.is_alive()]
        t = threading.Timer(delay, self._refresh, args=(token,))
        t.daemon = True
        t.start()
        self._timers.append(t)
        debug(f"registration refresh scheduled in {delay:.0f}s")
        return t

    def backoff(self) -> None:
        if not self.failures.needs_backoff():
            return
        seconds = self.failures.backoff_seconds()
        print(
            f"[reconcile] too many consecutive failures ({self.failures.count}), "
            f"backing off for {seconds // 60} minutes",
            flush=True,
        )
        self.sleep(seconds)
        self.failures.after_backoff()

    def run(self) -> None:
        while not self.shutdown.is_set():
            self.backoff()
            if self.shutdown.is_set():
                break
            try:
                delay = self.run_once()
            except Exception as e:
                delay = self._fail("unexpected error", e)
            self.sleep(delay)
        for t in self._timers:
            t.cancel()
        print("[reconcile] shutting down", flush=True)


def install_signal_handlers(shutdown: threading.Event) -> None:
    def handler(signum, frame):
        print(f"[signal] received {signal.Signals(signum).name}, initiating shutdown", flush=True)
        shutdown.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


# ---------- commands ----------

def load_config(args: argparse.Namespace) -> Config:
    cfg = settings.load(args.config)
    if args.debug:
        cfg.debug = True
    settings.set_debug(cfg.debug)
    return cfg


def cmd_start(cfg: Config) -> int:
    print(f"[init] starting Cloudflare Zero Trust WireGuard Manager v{VERSION}", flush=True)
    cfg.validate()
    print(f"[init] configuration loaded from {cfg.config_file_used or 'defaults/environment'}", flush=True)
    print(f"[init] refresh interval: {cfg.refresh_interval_minutes} minutes", flush=True)

    identity = IdentityClient(cfg)
    service = ServiceController(cfg)
    if not os.path.exists(UDM_MARKER):
        print("[init] warning: this does not look like a UDM Pro, some functionality may not work", flush=True)
    service.verify_available()

    for w in validate_tunnel_config(cfg.wireguard.config_path):
        print(f"[wireguard] warning: {w}; credentials will be written on the next cycle", flush=True)

    shutdown = threading.Event()
    install_signal_handlers(shutdown)
    Reconciler(cfg, identity, service, shutdown).run()
    return EXIT_OK


def cmd_status(
    cfg: Config,
    identity: Optional[IdentityClient] = None,
    service: Optional[ServiceController] = None,
    out: Callable[[str], None] = print,
) -> int:
    identity = identity or IdentityClient(cfg)
    service = service or ServiceController(cfg)

    path = cfg.wireguard.config_path
    if not os.path.exists(path):
        out(f"WireGuard configuration file not found at {path}")
        out("If you created the configuration in the UDM Pro UI, point wireguard.config_path at that file.")
        return EXIT_FAIL

    if not service.is_active():
        out("WireGuard is not running. Please check your UDM Pro UI settings.")
        out("You may need to enable the WireGuard interface in the UDM Pro UI.")
        return EXIT_FAIL

    try:
        token = identity.authenticate()
        active = identity.device_active(token)
    except IdentityError as e:
        out("WireGuard is running but Cloudflare Zero Trust status is unknown")
        out(f"Error: {e}")
        return EXIT_FAIL

    if not active:
        out("WireGuard is running but not active in Cloudflare Zero Trust")
        out("The service will attempt to reconnect automatically.")
        return EXIT_FAIL

    out("WireGuard is running and connected to Cloudflare Zero Trust")
    out("The UDM Pro UI-created WireGuard configuration is being maintained.")
    return EXIT_OK


def _confirm_overwrite(path: str, input_fn: Callable[[str], str]) -> bool:
    if not os.path.exists(path):
        return True
    print(f"Configuration file already exists at {path}")
    return input_fn("Do you want to overwrite it? (y/n) ").strip().lower() == "y"


def write_placeholder(config_path: str) -> str:
    path = os.path.join(os.path.dirname(config_path) or ".", PLACEHOLDER_NAME)
    out = _run_generator("gen_wireguard", {"placeholder": True})
    settings.write_text(path, out["config"], mode=0o600)
    return path


def cmd_setup(path: Optional[str], input_fn: Callable[[str], str] = input) -> int:
    path = path or settings.DEFAULT_CONFIG_PATH
    if not _confirm_overwrite(path, input_fn):
        print("Setup aborted")
        return EXIT_OK
    settings.create_default_config_file(path)
    placeholder = write_placeholder(path)
    print(f"Configuration file created at {path}")
    print("Please edit this file to add your Cloudflare Zero Trust credentials")
    print(f"A placeholder WireGuard configuration for UI import was written to {placeholder}")
    return EXIT_OK


def cmd_config_wizard(path: Optional[str], input_fn: Callable[[str], str] = input) -> int:
    path = path or settings.DEFAULT_CONFIG_PATH
    if not _confirm_overwrite(path, input_fn):
        print("Config wizard aborted")
        return EXIT_OK
    cfg = settings.run_wizard(input_fn=input_fn)
    settings.save_config(cfg, path)
    placeholder = write_placeholder(path)
    print(f"Configuration file created at {path}")
    print()
    print("Next steps:")
    print("1. Make sure you have a WireGuard configuration in your UDM Pro UI")
    print(f"   - If not, import {placeholder} under Settings > VPN > WireGuard > Create New > Import")
    print("   - The placeholder keys are replaced automatically once the service runs")
    print("2. Start the service with: cfwg-zt start")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="cfwg-zt",
        description="Keep a UDM Pro WireGuard configuration authenticated to Cloudflare Zero Trust.",
    )
    ap.add_argument("-c", "--config", help=f"path to config file (default: search, then {settings.DEFAULT_CONFIG_PATH})")
    ap.add_argument("-d", "--debug", action="store_true", help="enable debug output")
    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("start", help="run the service")
    sub.add_parser("status", help="check the status of the WireGuard connection")
    sub.add_parser("setup", help="write a default configuration file")
    sub.add_parser("config-wizard", help="create a configuration file interactively")
    sub.add_parser("version", help="print the version number")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "version":
        print(f"Cloudflare Zero Trust WireGuard Manager v{VERSION}")
        return EXIT_OK

    try:
        if args.command == "setup":
            return cmd_setup(args.config)
        if args.command == "config-wizard":
            return cmd_config_wizard(args.config)
        cfg = load_config(args)
        if args.command == "status":
            return cmd_status(cfg)
        return cmd_start(cfg)
    except (ConfigError, ServiceError, GeneratorError, OSError) as e:
        print(f"[init] fatal: {e}", file=sys.stderr, flush=True)
        return EXIT_CONFIG


if __name__ == "__main__":
    sys.exit(main())
