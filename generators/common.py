import json
import sys
from typing import Any, Dict, List, Optional


def read_input() -> Dict[str, Any]:
    return json.load(sys.stdin)


def write_output(obj: Dict[str, Any]) -> None:
    json.dump(obj, sys.stdout, ensure_ascii=True)


def split_ml(val: str) -> List[str]:
    if not val:
        return []
    return [x.strip() for x in val.replace("\r\n", "\n").replace("\r", "\n").split("\n") if x.strip()]


def as_list(val: Any) -> List[str]:
    """Accept a JSON list or a comma/newline separated string."""
    if not val:
        return []
    if isinstance(val, str):
        return [x.strip() for x in ",".join(split_ml(val)).split(",") if x.strip()]
    return [str(x).strip() for x in val if str(x).strip()]


def directive_key(line: str) -> Optional[str]:
    """Lower-cased key of a `Key = Value` line, None for comments and other lines."""
    s = line.strip()
    if not s or s.startswith("#") or s.startswith(";") or "=" not in s:
        return None
    return s.split("=", 1)[0].strip().lower()
