from __future__ import annotations

import json
import math
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

KNOWN_EVENT_TYPES = ("pageview", "event", "unload", "download", "outbound")
DEFAULT_EVENT_TYPE = "pageview"

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

# SQLite INTEGER is a signed 64-bit value.
SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1
# 9999-12-31T23:59:59Z, the last second datetime can represent.
MAX_TIMESTAMP = 253402300799


@dataclass(frozen=True)
class AnalyticsRecord:
    site_id: str
    session_id: str
    visitor_id: str
    ip_hash: Optional[str]
    ts: int
    user_agent: str = ""
    browser: str = ""
    browser_version: str = ""
    os: str = ""
    device: str = ""
    device_type: str = "desktop"
    screen_resolution: str = ""
    language: str = ""
    referrer: str = ""
    url: str = "/"
    path: str = "/"
    query: Dict[str, Any] = field(default_factory=dict)
    event_type: str = DEFAULT_EVENT_TYPE
    custom_event: bool = False
    event_name: Optional[str] = None
    event_data: Dict[str, Any] = field(default_factory=dict)
    session_start: bool = False
    session_duration: int = 0
    load_time: Optional[int] = None
    bandwidth: int = 0
    is_bot: bool = False
    bot_name: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.site_id or not str(self.site_id).strip():
            raise ValueError("site_id is required")

    @property
    def date(self) -> str:
        return datetime.fromtimestamp(self.ts, tz=timezone.utc).strftime("%Y-%m-%d")

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["query"] = json.dumps(self.query, ensure_ascii=False, separators=(",", ":"))
        row["event_data"] = json.dumps(self.event_data, ensure_ascii=False, separators=(",", ":"))
        row["custom_event"] = int(self.custom_event)
        row["session_start"] = int(self.session_start)
        row["is_bot"] = int(self.is_bot)
        row["date"] = self.date
        return row


def parse_int(value: Any, default: Optional[int]) -> Optional[int]:
    """
    Leading-integer parse ("12px" -> 12). Anything unparsable, zero, and values
    SQLite cannot store as INTEGER yield default.
    """
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, float):
        if not math.isfinite(value):
            return default
        n = int(value)
    elif isinstance(value, int):
        n = value
    else:
        m = _LEADING_INT.match(str(value))
        if not m:
            return default
        n = int(m.group(1))
    if not n or n < SQLITE_INT_MIN or n > SQLITE_INT_MAX:
        return default
    return n


def parse_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true" if value is not None else False


def parse_timestamp(value: Any, *, now: float) -> int:
    """
    Client timestamps arrive as epoch ms (Date.now()), epoch seconds or ISO-8601.
    Returns epoch seconds; falls back to server time.
    """
    if value is None or value == "" or isinstance(value, bool):
        return int(now)
    if isinstance(value, (int, float)) or re.fullmatch(r"\s*\d+(\.\d+)?\s*", str(value)):
        try:
            n = float(value)
        except OverflowError:
            return int(now)
        if not math.isfinite(n):
            return int(now)
        if n > 1e11:
            n = n / 1000.0
        return int(n) if 0 < n <= MAX_TIMESTAMP else int(now)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return int(now)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    ts = int(dt.timestamp())
    # Record dates must stay within what datetime can format.
    return ts if 0 < ts <= MAX_TIMESTAMP else int(now)


def normalize_url(url: Any, path: Any = None) -> Tuple[str, str]:
    """
    Returns (url, path). Absolute URLs keep only path + query in `path`;
    relative ones are used as given.
    """
    u = str(url) if url else "/"
    p = str(path) if path else u
    if u.startswith("http"):
        try:
            parsed = urlparse(u)
        except ValueError:
            return u, p
        p = (parsed.path or "/") + (f"?{parsed.query}" if parsed.query else "")
    return u, p


def parse_event_data(value: Any) -> Dict[str, Any]:
    """
    eventData is sent JSON-encoded by the beacon client. Malformed JSON raises
    (json.JSONDecodeError is a ValueError); the caller decides what that means.
    """
    if value is None or value == "":
        return {}
    if isinstance(value, str):
        decoded = json.loads(value)
        return decoded if isinstance(decoded, dict) else {"value": decoded}
    if isinstance(value, Mapping):
        return dict(value)
    return {"value": value}


def parse_query(value: Any) -> Dict[str, Any]:
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str) and value.strip():
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def classify_event_type(value: Any) -> Tuple[str, bool]:
    """
    Returns (event_type, custom_event). Unknown names are kept verbatim and tagged custom.
    """
    name = str(value).strip() if value is not None else ""
    if not name:
        return DEFAULT_EVENT_TYPE, False
    if name in KNOWN_EVENT_TYPES:
        return name, False
    return name, True
