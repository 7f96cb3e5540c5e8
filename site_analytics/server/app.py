from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import MethodNotAllowed

from .config import AppConfig, load_app_config
from .database import Database
from .dispatch import Dispatcher
from .hit import HitIngestor, add_cors_headers, beacon_response, hit_context, read_hit_data

logger = logging.getLogger(__name__)

HIT_PREFIX = "/api/analytics/hit"
HIT_METHODS = ("GET", "POST")
ACTIVE_WINDOW_SECONDS = 5 * 60


@dataclass
class Services:
    cfg: AppConfig
    db: Database
    dispatcher: Dispatcher
    ingestor: HitIngestor


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


def _bearer_token() -> Optional[str]:
    authz = request.headers.get("Authorization", "")
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return None


def _utc_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _hit_method_not_allowed(method: str) -> Response:
    resp = jsonify({"error": f"Method {method} not allowed"})
    resp.status_code = 405
    resp.headers["Allow"] = ", ".join(HIT_METHODS)
    return resp


def _site_id_required() -> Response:
    resp = jsonify({"error": "Site ID is required"})
    resp.status_code = 400
    return resp


def create_app(cfg: Optional[AppConfig] = None, *, clock: Callable[[], float] = time.time) -> Flask:
    cfg = cfg or load_app_config()
    db = Database(cfg.database)
    dispatcher = Dispatcher(mode=cfg.ingest.dispatch, workers=cfg.ingest.workers)
    ingestor = HitIngestor(db=db, hashing_cfg=cfg.hashing, dispatcher=dispatcher, clock=clock)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = cfg.ingest.max_body_bytes
    app.extensions["site_analytics"] = Services(cfg=cfg, db=db, dispatcher=dispatcher, ingestor=ingestor)

    @app.get("/health")
    def health() -> Response:
        return jsonify({"status": "ok"})

    # -------- hit ingestion --------
    @app.route(f"{HIT_PREFIX}/", defaults={"site_id": ""}, methods=["GET", "POST", "OPTIONS"], strict_slashes=False)
    @app.route(f"{HIT_PREFIX}/<site_id>", methods=["GET", "POST", "OPTIONS"])
    def hit(site_id: str) -> Response:
        """
        Beacon endpoint. Whatever happens after the request-shape checks, the
        caller gets the pixel (GET) or the JSON ack (POST); analytics must never
        break the page that embeds it.
        """
        site_id = (site_id or "").strip()
        if site_id.endswith(".gif"):
            # Image-beacon alias: /hit/<site_id>.gif
            site_id = site_id[:-4]
        if not site_id:
            return _site_id_required()

        method = request.method
        if method == "OPTIONS":
            return add_cors_headers(Response(status=204))
        if method not in HIT_METHODS:
            return _hit_method_not_allowed(method)

        try:
            data = read_hit_data(request)
            ctx = hit_context(request, trust_proxy_headers=cfg.ingest.trust_proxy_headers)
            ingestor.process(site_id, data, ctx)
        except Exception:
            logger.exception("Analytics hit processing failed for site %s", site_id)
        return beacon_response(method=method, accept=request.headers.get("Accept", ""), now=clock())

    @app.errorhandler(MethodNotAllowed)
    def method_not_allowed(e: MethodNotAllowed) -> Any:
        # Methods outside the route table never reach hit(); answer them the same way.
        if request.path.rstrip("/") == HIT_PREFIX:
            return _site_id_required()
        if request.path.startswith(f"{HIT_PREFIX}/"):
            return _hit_method_not_allowed(request.method)
        return e

    # -------- site analytics read API --------
    @app.get("/api/analytics/site/<site_id>/daily")
    def site_daily(site_id: str) -> Any:
        token = _bearer_token()
        if not cfg.stats_token or not token or not secrets.compare_digest(token, cfg.stats_token):
            return jsonify({"error": "Unauthorized access to analytics"}), 403

        site = db.find_site(site_id)
        if site is None:
            return jsonify({"error": "Site not found"}), 404

        try:
            days = int(request.args.get("days", 30))
        except ValueError:
            return jsonify({"error": "Days must be between 1 and 365"}), 400
        if days < 1 or days > 365:
            return jsonify({"error": "Days must be between 1 and 365"}), 400
        group_by = request.args.get("groupBy", default="day", type=str)
        if group_by != "month":
            group_by = "day"

        now = clock()
        since_ts = int(now) - days * 86400
        today_start = int(now) - int(now) % 86400
        summary: Dict[str, Any] = {
            "today": db.totals(site_id, since_ts=today_start),
            "yesterday": db.totals(site_id, since_ts=today_start - 86400, until_ts=today_start),
            "last_7_days": db.totals(site_id, since_ts=int(now) - 7 * 86400),
            "period": db.totals(site_id, since_ts=since_ts),
            "all_time": db.totals(site_id),
        }
        active = db.active_sessions(site_id, since_ts=int(now) - ACTIVE_WINDOW_SECONDS)
        for session in active:
            session["active_seconds"] = max(0, int(now) - int(session["last_seen"]))
        return jsonify(
            {
                "success": True,
                "site": {
                    "site_id": site.site_id,
                    "name": site.name,
                    "status": site.status,
                    "analytics_enabled": site.analytics_enabled,
                },
                "counters": {
                    "total_hits": site.total_hits,
                    "total_sessions": site.total_sessions,
                    "last_hit": _utc_iso(site.last_hit_ts) if site.last_hit_ts else None,
                },
                "timeframe": {
                    "days": days,
                    "group_by": group_by,
                    "start_date": _utc_iso(since_ts),
                    "end_date": _utc_iso(now),
                },
                "summary": summary,
                "analytics": db.time_series(site_id, group_by=group_by, since_ts=since_ts),
                "breakdowns": {
                    "top_pages": db.breakdown(site_id, column="path", since_ts=since_ts),
                    "referrers": db.breakdown(site_id, column="referrer", since_ts=since_ts),
                    "devices": db.breakdown(site_id, column="device_type", since_ts=since_ts),
                    "browsers": db.breakdown(site_id, column="browser", since_ts=since_ts, limit=5),
                },
                "realtime": {"active_visitors": len({a["visitor_id"] for a in active}), "active_sessions": active},
                "bandwidth": db.bandwidth_usage(site_id, since_ts=since_ts),
            }
        )

    return app


if __name__ == "__main__":
    cfg = load_app_config()
    configure_logging(cfg.log_level)
    create_app(cfg).run(host=cfg.host, port=cfg.port, debug=False)
