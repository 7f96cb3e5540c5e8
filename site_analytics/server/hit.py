from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl

from flask import Request, Response, jsonify

from .database import Database
from .dispatch import Dispatcher
from .hashing import HashingConfig, derive_session_id, derive_visitor_id, hash_ip
from .pixel import transparent_pixel_gif
from .records import (
    AnalyticsRecord,
    classify_event_type,
    normalize_url,
    parse_event_data,
    parse_flag,
    parse_int,
    parse_query,
    parse_timestamp,
)
from .useragent import detect_bot, parse_user_agent

logger = logging.getLogger(__name__)

UNKNOWN_IP = "unknown"
NO_STORE = "no-store, no-cache, must-revalidate, max-age=0"


@dataclass(frozen=True)
class HitContext:
    """Request facts that do not come from the hit payload."""

    ip: str
    user_agent: str = ""
    referrer: str = ""
    accept_language: str = ""


def client_ip(headers: Mapping[str, str], remote_addr: Optional[str], *, trust_proxy_headers: bool = True) -> str:
    if trust_proxy_headers:
        xff = headers.get("X-Forwarded-For")
        if xff:
            # Left-most entry is the client.
            first = xff.split(",")[0].strip()
            if first:
                return first
        real_ip = headers.get("X-Real-IP")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return remote_addr or UNKNOWN_IP


def hit_context(req: Request, *, trust_proxy_headers: bool) -> HitContext:
    return HitContext(
        ip=client_ip(req.headers, req.remote_addr, trust_proxy_headers=trust_proxy_headers),
        user_agent=req.headers.get("User-Agent", ""),
        referrer=req.headers.get("Referer") or req.headers.get("Referrer") or "",
        accept_language=req.headers.get("Accept-Language", ""),
    )


def read_hit_data(req: Request) -> Dict[str, Any]:
    """
    GET beacons carry everything in the query string; POST bodies are JSON or
    form encoded. sendBeacon() with a string body arrives as text/plain and is
    read as form encoding too.
    """
    if req.method == "GET":
        return req.args.to_dict()

    mimetype = req.mimetype or ""
    if mimetype == "application/json":
        body = req.get_json(silent=True)
        return dict(body) if isinstance(body, dict) else {}
    if mimetype == "application/x-www-form-urlencoded":
        return req.form.to_dict()
    if mimetype == "text/plain":
        return dict(parse_qsl(req.get_data(as_text=True), keep_blank_values=True))
    return {}


class HitIngestor:
    def __init__(
        self,
        *,
        db: Database,
        hashing_cfg: HashingConfig,
        dispatcher: Dispatcher,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.hashing_cfg = hashing_cfg
        self.dispatcher = dispatcher
        self.clock = clock

    def build_record(self, site_id: str, data: Mapping[str, Any], ctx: HitContext) -> AnalyticsRecord:
        now = self.clock()
        ua = ctx.user_agent
        bot = detect_bot(ua)
        ua_info = parse_user_agent(ua)
        url, path = normalize_url(data.get("url"), data.get("path"))
        event_type, custom_event = classify_event_type(data.get("type"))

        session_id = str(data.get("sessionId") or "") or derive_session_id(
            ip=ctx.ip, user_agent=ua, now_ms=int(now * 1000)
        )
        visitor_id = str(data.get("visitorId") or "") or derive_visitor_id(ip=ctx.ip, user_agent=ua)

        language = str(data.get("language") or "")
        if not language and ctx.accept_language:
            language = ctx.accept_language.split(",")[0].strip()

        event_name = data.get("eventName")
        return AnalyticsRecord(
            site_id=site_id,
            session_id=session_id,
            visitor_id=visitor_id,
            ip_hash=hash_ip(self.hashing_cfg, ctx.ip),
            ts=parse_timestamp(data.get("ts", data.get("timestamp")), now=now),
            user_agent=ua,
            browser=ua_info.browser,
            browser_version=ua_info.browser_version,
            os=ua_info.os,
            device=ua_info.device,
            device_type=ua_info.device,
            screen_resolution=str(data.get("screenResolution") or ""),
            language=language,
            referrer=str(data.get("referrer") or ctx.referrer or ""),
            url=url,
            path=path,
            query=parse_query(data.get("query")),
            event_type=event_type,
            custom_event=custom_event,
            event_name=str(event_name) if event_name else None,
            event_data=parse_event_data(data.get("eventData")),
            session_start=parse_flag(data.get("sessionStart")),
            session_duration=parse_int(data.get("sessionDuration"), 0) or 0,
            load_time=parse_int(data.get("loadTime"), None),
            bandwidth=parse_int(data.get("bandwidth"), 0) or 0,
            is_bot=bot.is_bot,
            bot_name=bot.bot_name,
        )

    def process(self, site_id: str, data: Mapping[str, Any], ctx: HitContext) -> Optional[AnalyticsRecord]:
        """
        Record one hit. Returns None when the site does not take hits; the caller
        answers the same way in both cases.
        """
        site = self.db.find_site(site_id)
        if site is None:
            logger.debug("Hit for unknown site %s ignored", site_id)
            return None
        if not site.accepts_hits:
            logger.debug("Hit for site %s ignored (status=%s analytics=%s)", site_id, site.status, site.analytics_enabled)
            return None

        record = self.build_record(site_id, data, ctx)
        self.dispatcher.submit("insert_record", self.db.insert_record, record)
        self.dispatcher.submit(
            "increment_site_counters",
            self.db.increment_site_counters,
            site_id,
            hits=1,
            sessions=1 if record.session_start else 0,
        )
        return record


def wants_image(method: str, accept: str) -> bool:
    return method == "GET" or "image/gif" in (accept or "")


def beacon_response(*, method: str, accept: str = "", now: Optional[float] = None) -> Response:
    if wants_image(method, accept):
        resp = Response(transparent_pixel_gif(), mimetype="image/gif")
        resp.headers["Cache-Control"] = NO_STORE
        resp.headers["Pragma"] = "no-cache"
        resp.headers["Access-Control-Allow-Origin"] = "*"
        return resp

    ts = datetime.fromtimestamp(now if now is not None else time.time(), tz=timezone.utc)
    resp = jsonify({"success": True, "timestamp": ts.isoformat().replace("+00:00", "Z")})
    resp.status_code = 200
    add_cors_headers(resp)
    return resp


def add_cors_headers(resp: Response) -> Response:
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp
