from typing import Any, Dict, List, Optional

from common import read_input, write_output, as_list, directive_key

KEEPALIVE_SECONDS = 25
DEFAULT_ADDRESS = "100.64.0.1/32"
DEFAULT_MTU = 1280
DEFAULT_ALLOWED_IPS = ["0.0.0.0/0", "::/0"]

# keys shipped in the importable placeholder file
PLACEHOLDER_PRIVATE_KEY = "mLmL+DB1n8MfA+7Dc+vnEdZD+VffR3Li3QcJhdTLuEU="
PLACEHOLDER_PEER_PUBLIC_KEY = "YOw/RK8gT3PR4ImRfpnfvJ8UTY3GfJlO6PcPbl40Tkw="
PLACEHOLDER_ENDPOINT = "engage.cloudflareclient.com:2408"

REQUIRED_FIELDS = ("private_key", "public_key", "peer_public_key", "endpoint")


def missing_fields(creds: Dict[str, Any]) -> List[str]:
    return [f for f in REQUIRED_FIELDS if not creds.get(f)]


def _endpoint(creds: Dict[str, Any]) -> str:
    host = creds.get("endpoint", "")
    port = creds.get("endpoint_port") or 0
    if port:
        return f"{host}:{port}"
    return host


def _add_kv(lines: List[str], key: str, value: str) -> None:
    if value:
        lines.append(f"{key} = {value}")


def render(creds: Dict[str, Any]) -> str:
    """Build a complete tunnel config. Returns "" when key material is missing."""
    if missing_fields(creds):
        return ""

    lines: List[str] = ["[Interface]"]
    lines.append(f"PrivateKey = {creds['private_key']}")
    lines.append("# Address and DNS are managed from the UDM Pro UI")
    lines.append(f"Address = {DEFAULT_ADDRESS}")
    _add_kv(lines, "DNS", ", ".join(as_list(creds.get("dns"))))
    lines.append(f"MTU = {DEFAULT_MTU}")

    lines.append("")
    lines.append("[Peer]")
    lines.append(f"PublicKey = {creds['peer_public_key']}")
    _add_kv(lines, "PresharedKey", creds.get("peer_preshared_key", ""))
    allowed = as_list(creds.get("allowed_ips")) or DEFAULT_ALLOWED_IPS
    lines.append("# AllowedIPs is managed by policy-based routing in the UDM Pro UI")
    lines.append(f"AllowedIPs = {', '.join(allowed)}")
    lines.append(f"Endpoint = {_endpoint(creds)}")
    lines.append(f"PersistentKeepalive = {KEEPALIVE_SECONDS}")
    return "\n".join(lines) + "\n"


def _split_lines(text: str) -> List[str]:
    """Split on LF only; every line keeps its own ending (CRLF, LF or none)."""
    parts = text.split("\n")
    lines = [p + "\n" for p in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _ending(line: str) -> str:
    if line.endswith("\r\n"):
        return "\r\n"
    if line.endswith("\n"):
        return "\n"
    return ""


def _header(line: str) -> Optional[str]:
    s = line.strip()
    if s.startswith("[") and s.endswith("]"):
        return s[1:-1].strip().lower()
    return None


def merge(existing: str, creds: Dict[str, Any]) -> str:
    """Rewrite only the system-owned lines of an existing config.

    Section tracking is a three-state machine (none, interface, peer). In
    [Interface] only PrivateKey is replaced; in [Peer] PublicKey, Endpoint and,
    when a new one is supplied, PresharedKey. Every other line, including
    comments, blank lines and anything before the first header, is copied
    byte for byte and in order. Replaced lines keep the ending of the line
    they replace.
    """
    psk = creds.get("peer_preshared_key", "")
    out: List[str] = []
    section: Optional[str] = None
    has_keepalive = False
    newline = ""
    peer_end: Optional[int] = None  # index after the last non-blank line of the last [Peer]

    for line in _split_lines(existing):
        ending = _ending(line)
        newline = newline or ending
        name = _header(line)
        if name is not None:
            section = name if name in ("interface", "peer") else None
            if section == "peer":
                peer_end = len(out) + 1
            out.append(line)
            continue

        key = directive_key(line)
        if key == "persistentkeepalive":
            has_keepalive = True

        if section == "interface" and key == "privatekey":
            out.append(f"PrivateKey = {creds['private_key']}{ending}")
        elif section == "peer" and key == "publickey":
            out.append(f"PublicKey = {creds['peer_public_key']}{ending}")
        elif section == "peer" and key == "presharedkey" and psk:
            out.append(f"PresharedKey = {psk}{ending}")
        elif section == "peer" and key == "endpoint":
            out.append(f"Endpoint = {_endpoint(creds)}{ending}")
        else:
            out.append(line)
        if section == "peer" and line.strip():
            peer_end = len(out)

    if not has_keepalive:
        newline = newline or "\n"
        at = len(out) if peer_end is None else peer_end
        keepalive = f"PersistentKeepalive = {KEEPALIVE_SECONDS}"
        if at > 0 and not _ending(out[at - 1]):
            # inserting after an unterminated last line
            out[at - 1] += newline
            out.insert(at, keepalive)
        else:
            out.insert(at, keepalive + newline)
    return "".join(out)


def _headers(text: str) -> set:
    return {l.strip().lower() for l in text.split("\n")}


def _has_sections(text: str) -> bool:
    headers = _headers(text)
    return "[interface]" in headers and "[peer]" in headers


def update(existing: Optional[str], creds: Dict[str, Any]) -> Dict[str, Any]:
    missing = missing_fields(creds)
    if missing:
        return {"config": "", "mode": "invalid", "missing": missing}
    if existing and existing.strip():
        merged = merge(existing, creds)
        if _has_sections(merged):
            return {"config": merged, "mode": "merge", "missing": []}
    return {"config": render(creds), "mode": "render", "missing": []}


def has_placeholder_keys(text: str) -> bool:
    return PLACEHOLDER_PRIVATE_KEY in text or PLACEHOLDER_PEER_PUBLIC_KEY in text


def validate(text: str) -> List[str]:
    problems: List[str] = []
    headers = _headers(text)
    if "[interface]" not in headers:
        problems.append("missing [Interface] section")
    if "[peer]" not in headers:
        problems.append("missing [Peer] section")
    return problems


def placeholder_config() -> str:
    host, port = PLACEHOLDER_ENDPOINT.rsplit(":", 1)
    return render({
        "private_key": PLACEHOLDER_PRIVATE_KEY,
        "public_key": "placeholder",
        "peer_public_key": PLACEHOLDER_PEER_PUBLIC_KEY,
        "endpoint": host,
        "endpoint_port": int(port),
        "allowed_ips": DEFAULT_ALLOWED_IPS,
    })


def main() -> None:
    payload = read_input()
    if payload.get("placeholder"):
        write_output({"config": placeholder_config(), "mode": "placeholder", "missing": []})
        return
    if "validate" in payload:
        text = payload["validate"] or ""
        write_output({"problems": validate(text), "placeholder": has_placeholder_keys(text)})
        return
    write_output(update(payload.get("existing"), payload.get("credentials") or {}))


if __name__ == "__main__":
    main()
