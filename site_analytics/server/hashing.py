from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

SESSION_BUCKET_MS = 30 * 60 * 1000
VISITOR_ID_LENGTH = 16


@dataclass(frozen=True)
class HashingConfig:
    salt: str


def _to_bytes(s: str) -> bytes:
    return s.encode("utf-8", errors="replace")


def sha256_hex(cfg: HashingConfig, *, label: str, value: Optional[str]) -> Optional[str]:
    """
    One-way hash for sensitive fields. Never store raw values to disk.

    - Includes a required salt (cfg.salt)
    - Includes a label domain separator to prevent hash reuse across fields
    - Returns None if value is None/empty
    """
    if value is None:
        return None
    v = value.strip()
    if not v:
        return None

    h = hashlib.sha256()
    h.update(_to_bytes("site_analytics:v1:"))
    h.update(_to_bytes(label))
    h.update(b":")
    h.update(_to_bytes(cfg.salt))
    h.update(b":")
    h.update(_to_bytes(v))
    return h.hexdigest()


def hash_ip(cfg: HashingConfig, ip: Optional[str]) -> Optional[str]:
    return sha256_hex(cfg, label="ip", value=ip)


def session_bucket(now_ms: int) -> int:
    return int(now_ms) // SESSION_BUCKET_MS


def derive_session_id(*, ip: str, user_agent: str, now_ms: int) -> str:
    """
    Session key for hits that carry no sessionId.

    Hits from the same (IP, UA) inside one 30-minute bucket collapse to the same id;
    the next bucket starts a new one.
    """
    combined = f"{ip}{user_agent}{session_bucket(now_ms)}"
    return hashlib.md5(_to_bytes(combined)).hexdigest()


def derive_visitor_id(*, ip: str, user_agent: str) -> str:
    """
    Stable "unique visitor" key derived from (IP + UA). Not time bucketed.
    """
    combined = f"{ip}{user_agent}"
    return hashlib.sha256(_to_bytes(combined)).hexdigest()[:VISITOR_ID_LENGTH]
