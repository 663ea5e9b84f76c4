import dataclasses
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests

from settings import Config, ConfigError, debug

API_BASE = "https://api.cloudflare.com/client/v4/accounts"
REQUEST_TIMEOUT = 30
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)
DEVICE_NAME = "UDM-Pro-WARP"
DEVICE_TYPE = "router"


class IdentityError(RuntimeError):
    pass


class AuthError(IdentityError):
    pass


class FetchError(IdentityError):
    pass


class RefreshError(IdentityError):
    pass


class StatusError(IdentityError):
    pass


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_expiry(raw: Any) -> datetime:
    """RFC3339 expiry; anything unparseable or without an offset gets the short default."""
    try:
        ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        ts = None
    if ts is None or ts.tzinfo is None:
        debug(f"unparseable token expiry {raw!r}, assuming {DEFAULT_TOKEN_LIFETIME}")
        return now_utc() + DEFAULT_TOKEN_LIFETIME
    return ts


@dataclasses.dataclass
class DeviceToken:
    value: str
    expires_at: datetime
    device_id: str = ""

    def valid(self, at: Optional[datetime] = None) -> bool:
        return bool(self.value) and (at or now_utc()) < self.expires_at


@dataclasses.dataclass
class RotatedCredentials:
    private_key: str
    public_key: str
    peer_public_key: str
    endpoint: str
    endpoint_port: int = 0
    allowed_ips: List[str] = dataclasses.field(default_factory=list)
    peer_preshared_key: str = ""
    dns: List[str] = dataclasses.field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def _json_result(resp: requests.Response, err: type, what: str) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as e:
        raise err(f"{what}: error decoding response: {e}") from e
    if not isinstance(body, dict):
        raise err(f"{what}: unexpected response body")
    if not body.get("success"):
        raise err(f"{what} failed (HTTP {resp.status_code})")
    result = body.get("result")
    if not isinstance(result, dict):
        raise err(f"{what}: response has no result object")
    return result


def _str_list(val: Any) -> List[str]:
    if not val:
        return []
    if not isinstance(val, list):
        raise ValueError(f"expected a list, got {type(val).__name__}")
    return [str(x) for x in val]


class IdentityClient:
    """Cloudflare Zero Trust device registration and WARP WireGuard credentials."""

    def __init__(self, cfg: Config, session: Optional[requests.Session] = None):
        cz = cfg.cloudflare_zero_trust
        if not cz.client_id or not cz.client_secret:
            raise ConfigError("missing Cloudflare Zero Trust credentials in configuration")
        self.cfg = cfg
        self.base_url = f"{API_BASE}/{cz.account_id}"
        self.http = session or requests.Session()
        self._token: Optional[DeviceToken] = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}/devices/warp/{path}"

    @staticmethod
    def _auth_headers(token: DeviceToken) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {token.value}"}

    def authenticate(self) -> DeviceToken:
        if self._token is not None and self._token.valid():
            debug(f"reusing device token until {self._token.expires_at.isoformat()}")
            return self._token

        cz = self.cfg.cloudflare_zero_trust
        body = {
            "client_id": cz.client_id,
            "client_secret": cz.client_secret,
            "device_name": DEVICE_NAME,
            "device_type": DEVICE_TYPE,
            "warp_enabled": True,
        }
        try:
            resp = self.http.post(self._url("register"), json=body, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise AuthError(f"error sending registration request: {e}") from e

        result = _json_result(resp, AuthError, "device authentication")
        value = result.get("token") or ""
        if not value:
            raise AuthError("device authentication returned no token")

        self._token = DeviceToken(
            value=value,
            expires_at=parse_expiry(result.get("expires_at")),
            device_id=result.get("device_id") or "",
        )
        print(f"[auth] device token valid until {self._token.expires_at.isoformat()}", flush=True)
        return self._token

    def fetch_credentials(self, token: DeviceToken) -> RotatedCredentials:
        try:
            resp = self.http.get(self._url("wireguard"), headers=self._auth_headers(token), timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise FetchError(f"error sending wireguard config request: {e}") from e

        result = _json_result(resp, FetchError, "wireguard config")
        try:
            return RotatedCredentials(
                private_key=str(result.get("client_private_key") or ""),
                public_key=str(result.get("client_public_key") or ""),
                peer_public_key=str(result.get("peer_public_key") or ""),
                endpoint=str(result.get("endpoint") or ""),
                endpoint_port=int(result.get("endpoint_port") or 0),
                allowed_ips=_str_list(result.get("allowed_ips")),
                peer_preshared_key=str(result.get("peer_preshared_key") or ""),
                dns=_str_list(result.get("dns_servers")),
            )
        except (TypeError, ValueError) as e:
            raise FetchError(f"wireguard config: malformed payload: {e}") from e

    def refresh_registration(self, token: DeviceToken) -> None:
        try:
            resp = self.http.post(
                self._url("refresh"),
                params={"device_token": token.value},
                headers={"Content-Type": "application/json"},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise RefreshError(f"error sending refresh request: {e}") from e
        if resp.status_code != 200:
            raise RefreshError(f"device refresh failed with status {resp.status_code}, response: {resp.text}")

    def device_active(self, token: DeviceToken) -> bool:
        try:
            resp = self.http.get(self._url("status"), headers=self._auth_headers(token), timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise StatusError(f"error sending status request: {e}") from e
        if resp.status_code != 200:
            raise StatusError(f"device status check failed with status {resp.status_code}")
        try:
            result = resp.json().get("result") or {}
        except (ValueError, AttributeError) as e:
            raise StatusError(f"device status: error decoding response: {e}") from e
        if not isinstance(result, dict):
            raise StatusError("device status: response has no result object")
        return bool(result.get("active")) and bool(result.get("warp_enabled"))
