import shutil
import subprocess
from typing import List

from settings import Config

SYSTEMCTL_TIMEOUT = 60

# `systemctl is-active` answers that mean "not running" rather than "broken"
INACTIVE_STATES = ("inactive", "unknown", "failed")


class ServiceError(RuntimeError):
    pass


def _systemctl(args: List[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            ["systemctl", *args],
            capture_output=True,
            text=True,
            timeout=SYSTEMCTL_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ServiceError(f"systemctl {' '.join(args)}: {e}") from e


def _output(cp: subprocess.CompletedProcess) -> str:
    return ((cp.stdout or "") + (cp.stderr or "")).strip()


class ServiceController:
    def __init__(self, cfg: Config):
        self.unit = cfg.udm_pro.wireguard_service_name
        self.interface = cfg.wireguard.interface_name

    def verify_available(self) -> None:
        for tool in ("wg", "wg-quick"):
            if not shutil.which(tool):
                raise ServiceError(f"WireGuard '{tool}' command not found")
        if not self.interface:
            raise ServiceError("WireGuard interface name not configured")
        if not self.unit:
            raise ServiceError("WireGuard service name not configured")

    def is_active(self) -> bool:
        cp = _systemctl(["is-active", self.unit])
        state = (cp.stdout or "").strip()
        if cp.returncode == 0:
            return state == "active"
        if state in INACTIVE_STATES:
            return False
        raise ServiceError(f"error checking {self.unit}: {_output(cp) or f'exit {cp.returncode}'}")

    def _action(self, action: str) -> None:
        print(f"[service] {action} {self.unit}", flush=True)
        cp = _systemctl([action, self.unit])
        if cp.returncode != 0:
            raise ServiceError(f"failed to {action} {self.unit} (exit {cp.returncode}): {_output(cp)}")

    def start(self) -> None:
        self._action("start")

    def stop(self) -> None:
        self._action("stop")

    def restart(self) -> None:
        self._action("restart")

    def apply(self) -> str:
        """Restart a running unit or start a stopped one, then confirm it is up."""
        if self.is_active():
            self.restart()
            action = "restart"
        else:
            self.start()
            action = "start"
        if not self.is_active():
            raise ServiceError(f"{self.unit} is not active after {action}")
        return action
