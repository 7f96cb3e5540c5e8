from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import yaml

from .database import DatabaseConfig
from .hashing import HashingConfig

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
CONFIG_ENV = "SITE_ANALYTICS_CONFIG"
DEFAULT_MAX_BODY_BYTES = 1024 * 1024


@dataclass(frozen=True)
class IngestConfig:
    dispatch: str = "thread"
    workers: int = 4
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    trust_proxy_headers: bool = True


@dataclass(frozen=True)
class AppConfig:
    host: str
    port: int
    database: DatabaseConfig
    hashing: HashingConfig
    ingest: IngestConfig
    stats_token: Optional[str] = None
    log_level: str = "INFO"


def default_config_path() -> str:
    return os.environ.get(CONFIG_ENV, os.path.join(ROOT_DIR, "config.yaml"))


def load_config(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def build_config(raw: Dict[str, Any], *, base_dir: Optional[str] = None) -> AppConfig:
    """
    Freeze a raw YAML mapping into typed config. Relative paths are resolved
    against base_dir (the config file's directory).
    """
    base_dir = base_dir or os.getcwd()

    def resolve(p: str) -> str:
        if os.path.isabs(p):
            return p
        return os.path.abspath(os.path.join(base_dir, p))

    server = raw.get("server", {}) or {}
    database = raw.get("database", {}) or {}
    security = raw.get("security", {}) or {}
    privacy = raw.get("privacy", {}) or {}
    ingest = raw.get("ingest", {}) or {}
    log = raw.get("logging", {}) or {}

    dispatch = str(ingest.get("dispatch", "thread")).strip().lower()
    if dispatch not in ("thread", "inline"):
        dispatch = "thread"

    stats_token = security.get("stats_token")
    return AppConfig(
        host=str(server.get("host", "127.0.0.1")),
        port=int(server.get("port", 5055)),
        database=DatabaseConfig(sqlite_path=resolve(str(database.get("sqlite_path", "storage/analytics.db")))),
        hashing=HashingConfig(salt=str(security["hashing_salt"])),
        ingest=IngestConfig(
            dispatch=dispatch,
            workers=int(ingest.get("workers", 4)),
            max_body_bytes=int(ingest.get("max_body_bytes", DEFAULT_MAX_BODY_BYTES)),
            trust_proxy_headers=bool(privacy.get("trust_proxy_headers", True)),
        ),
        stats_token=str(stats_token) if stats_token else None,
        log_level=str(log.get("level", "INFO")).upper(),
    )


def load_app_config(path: Optional[str] = None) -> AppConfig:
    cfg_path = path or default_config_path()
    return build_config(load_config(cfg_path), base_dir=os.path.dirname(os.path.abspath(cfg_path)))
