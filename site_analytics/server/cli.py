"""
Site analytics command line.

Run the ingestion server:
  site-analytics run

Seed the local site registry (sites normally belong to the hosting platform):
  site-analytics create-site --name "My blog"
  site-analytics set-status <site_id> inactive
  site-analytics analytics <site_id> off
  site-analytics embed <site_id>

Drop records older than the retention window:
  site-analytics cleanup --days 90
"""

from __future__ import annotations

import argparse
import time
from typing import Dict, List, Optional

from .config import AppConfig, default_config_path, load_app_config
from .database import SITE_ACTIVE, Database

DEFAULT_RETENTION_DAYS = 90


def embed_snippets(base_url: str, site_id: str) -> Dict[str, str]:
    base = base_url.rstrip("/")
    hit_url = f"{base}/api/analytics/hit/{site_id}"
    return {
        "pixel_html": f'<img src="{hit_url}.gif?url=/" width="1" height="1" alt="" />',
        "endpoint_curl": f"curl -sS -X POST -H 'Content-Type: application/json' -d '{{\"type\":\"pageview\",\"url\":\"/\"}}' {hit_url}",
    }


def cmd_run(cfg: AppConfig, *, host: Optional[str], port: Optional[int]) -> int:
    from .app import configure_logging, create_app

    configure_logging(cfg.log_level)
    app = create_app(cfg)
    app.run(host=host or cfg.host, port=port or cfg.port, debug=False)
    return 0


def cmd_create_site(cfg: AppConfig, *, name: str, site_id: Optional[str], inactive: bool) -> int:
    db = Database(cfg.database)
    sid = db.create_site(name=name, site_id=site_id, status="inactive" if inactive else SITE_ACTIVE)
    print("Site created")
    print(f"- site_id: {sid}")
    print(f"- name: {name}")
    print("")
    base = f"http://{cfg.host}:{cfg.port}"
    for line in embed_snippets(base, sid).values():
        print(line)
    return 0


def cmd_set_status(cfg: AppConfig, *, site_id: str, status: str) -> int:
    if not Database(cfg.database).set_site_status(site_id, status):
        print(f"Unknown site: {site_id}")
        return 1
    print(f"{site_id}: status={status}")
    return 0


def cmd_analytics(cfg: AppConfig, *, site_id: str, enabled: bool) -> int:
    if not Database(cfg.database).set_analytics_enabled(site_id, enabled):
        print(f"Unknown site: {site_id}")
        return 1
    print(f"{site_id}: analytics {'enabled' if enabled else 'disabled'}")
    return 0


def cmd_embed(cfg: AppConfig, *, site_id: str, base_url: Optional[str]) -> int:
    for line in embed_snippets(base_url or f"http://{cfg.host}:{cfg.port}", site_id).values():
        print(line)
    return 0


def cmd_cleanup(cfg: AppConfig, *, days: int, now: Optional[float] = None) -> int:
    if days < 1:
        print("--days must be at least 1")
        return 2
    cutoff = int(now if now is not None else time.time()) - days * 86400
    deleted = Database(cfg.database).purge_before(cutoff)
    print(f"Deleted {deleted} records older than {days} days")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Site analytics hit ingestion")
    ap.add_argument("--config", default=default_config_path(), help="Path to config.yaml")
    sub = ap.add_subparsers(dest="cmd", required=False)

    runp = sub.add_parser("run", help="Run the server")
    runp.add_argument("--host", default=None)
    runp.add_argument("--port", type=int, default=None)

    createp = sub.add_parser("create-site", help="Register a site and print embed snippets")
    createp.add_argument("--name", required=True)
    createp.add_argument("--site-id", default=None, help="Explicit id (default: random hex)")
    createp.add_argument("--inactive", action="store_true")

    statusp = sub.add_parser("set-status", help="Change a site's status (active, inactive, deleted, ...)")
    statusp.add_argument("site_id")
    statusp.add_argument("status")

    analyticsp = sub.add_parser("analytics", help="Turn analytics collection on or off for a site")
    analyticsp.add_argument("site_id")
    analyticsp.add_argument("state", choices=("on", "off"))

    embedp = sub.add_parser("embed", help="Print embed snippets for a site")
    embedp.add_argument("site_id")
    embedp.add_argument("--base-url", default=None)

    cleanupp = sub.add_parser("cleanup", help="Delete analytics records older than --days")
    cleanupp.add_argument("--days", type=int, default=DEFAULT_RETENTION_DAYS)

    args = ap.parse_args(argv)
    cfg = load_app_config(args.config)

    cmd = args.cmd or "run"
    if cmd == "run":
        return cmd_run(cfg, host=getattr(args, "host", None), port=getattr(args, "port", None))
    if cmd == "create-site":
        return cmd_create_site(cfg, name=args.name, site_id=args.site_id, inactive=args.inactive)
    if cmd == "set-status":
        return cmd_set_status(cfg, site_id=args.site_id, status=args.status)
    if cmd == "analytics":
        return cmd_analytics(cfg, site_id=args.site_id, enabled=args.state == "on")
    if cmd == "embed":
        return cmd_embed(cfg, site_id=args.site_id, base_url=args.base_url)
    if cmd == "cleanup":
        return cmd_cleanup(cfg, days=args.days)
    ap.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
