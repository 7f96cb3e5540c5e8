"""
Visitor-side analytics client.

A BeaconClient is one explicitly constructed context per embedding page: it owns
its configuration, identity state, storage handles and transports, so several
clients can run side by side and each can be driven from tests with fakes.

Usage:
  client = BeaconClient(environment=PageEnvironment(script_attributes={"data-site-id": "abc"}))
  client.init()                       # schedules the first pageview
  client.track_event("signup", {"plan": "pro"})
  client.on_unload()
"""

from __future__ import annotations

import json
import logging
import secrets
import string
import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import requests

from .environment import PageEnvironment, default_beacon_url, discover_site_id
from .storage import MemoryStorage, StorageUnavailable
from .transports import BeaconTransport, FetchTransport, PixelTransport

logger = logging.getLogger("site_analytics.beacon")

SCRIPT_VERSION = "1.0.0"
VISITOR_KEY = "site_analytics_visitor"
SESSION_KEY = "site_analytics_session"

_BASE36 = string.digits + string.ascii_lowercase

Runner = Callable[[Callable[[], None]], None]
Scheduler = Callable[[float, Callable[[], None]], None]


@dataclass(frozen=True)
class BeaconConfig:
    script_version: str = SCRIPT_VERSION
    beacon_url: Optional[str] = None
    collect_pageviews: bool = True
    collect_events: bool = True
    respect_dnt: bool = True
    session_timeout: float = 30 * 60
    pageview_delay: float = 0.1
    debug: bool = False


@dataclass
class BeaconState:
    site_id: Optional[str] = None
    session_id: Optional[str] = None
    visitor_id: Optional[str] = None
    pageviews: int = 0
    last_activity: int = 0
    initialized: bool = False
    session_fresh: bool = False


@dataclass
class Transports:
    beacon: Optional[BeaconTransport] = None
    pixel: Optional[PixelTransport] = None
    fetch: Optional[FetchTransport] = None

    @classmethod
    def default(cls) -> "Transports":
        session = requests.Session()
        return cls(
            beacon=BeaconTransport(session),
            pixel=PixelTransport(session),
            fetch=FetchTransport(session),
        )


def to_base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def hash_string(s: str) -> str:
    """
    Cheap 32-bit string hash (h = h * 31 + code unit, wrapped to signed int32),
    hex of the absolute value.
    """
    h = 0
    units = s.encode("utf-16-le")
    for i in range(0, len(units), 2):
        code = units[i] | (units[i + 1] << 8)
        h = (h * 31 + code) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x")


def visitor_fingerprint(env: PageEnvironment) -> str:
    components = "|".join(
        [
            env.user_agent,
            env.language,
            f"{env.screen_width}x{env.screen_height}",
            str(env.timezone_offset),
            "true" if env.cookie_enabled else "false",
            "true" if env.do_not_track else "false",
        ]
    )
    return hash_string(components)


def generate_visitor_id(now_ms: int) -> str:
    rand = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"visitor_{rand}_{to_base36(now_ms)}"


def new_session_id(now_ms: int) -> str:
    return f"session_{to_base36(now_ms)}"


def run_in_background(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, name="beacon-send", daemon=True).start()


def schedule_later(delay: float, fn: Callable[[], None]) -> None:
    t = threading.Timer(delay, fn)
    t.daemon = True
    t.start()


class BeaconClient:
    def __init__(
        self,
        *,
        environment: PageEnvironment,
        config: Optional[BeaconConfig] = None,
        durable_storage: Any = None,
        session_storage: Any = None,
        transports: Optional[Transports] = None,
        clock: Callable[[], float] = time.time,
        scheduler: Scheduler = schedule_later,
        runner: Runner = run_in_background,
    ):
        self.env = environment
        self.config = config or BeaconConfig()
        self.durable_storage = durable_storage if durable_storage is not None else MemoryStorage()
        self.session_storage = session_storage if session_storage is not None else MemoryStorage()
        self.transports = transports if transports is not None else Transports.default()
        self.clock = clock
        self.scheduler = scheduler
        self.runner = runner
        self.state = BeaconState()

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def log(self, message: str, data: Any = None) -> None:
        if not self.config.debug:
            return
        if data is None:
            logger.info("[Site Analytics] %s", message)
        else:
            logger.info("[Site Analytics] %s %s", message, data)

    # -------- lifecycle --------
    def init(self) -> bool:
        if self.state.initialized:
            return True

        self.state.site_id = discover_site_id(self.env)
        if not self.state.site_id:
            self.log("Failed to initialize: No site ID found")
            return False

        self.state.visitor_id = self._load_visitor_id()
        self._load_session()
        self.state.initialized = True
        self.log(
            "Analytics initialized",
            {"site_id": self.state.site_id, "visitor_id": self.state.visitor_id, "session_id": self.state.session_id},
        )
        self.scheduler(self.config.pageview_delay, self.track_pageview)
        return True

    def _load_visitor_id(self) -> str:
        try:
            stored = self.durable_storage.get_item(VISITOR_KEY)
            if stored:
                return str(json.loads(stored)["visitorId"])
            visitor_id = generate_visitor_id(self._now_ms())
            self.durable_storage.set_item(
                VISITOR_KEY, json.dumps({"visitorId": visitor_id, "firstVisit": self._now_ms()})
            )
            return visitor_id
        except (StorageUnavailable, ValueError, KeyError, TypeError):
            # No durable storage: fall back to a fingerprint of the browser.
            return visitor_fingerprint(self.env)

    def _load_session(self) -> None:
        now = self._now_ms()
        try:
            stored = self.session_storage.get_item(SESSION_KEY)
            if stored:
                data = json.loads(stored)
                self.state.session_id = str(data["sessionId"])
                self.state.last_activity = int(data.get("lastActivity") or now)
                self.state.session_fresh = False
                return
        except (StorageUnavailable, ValueError, KeyError, TypeError):
            pass
        self.state.session_id = new_session_id(now)
        self.state.last_activity = now
        self.state.session_fresh = True

    def check_session(self) -> None:
        now = self._now_ms()
        if now - self.state.last_activity > self.config.session_timeout * 1000:
            self.state.session_id = new_session_id(now)
            self.state.pageviews = 0
            self.state.session_fresh = True
            self.log("New session started")
        self.state.last_activity = now

        try:
            self.session_storage.set_item(
                SESSION_KEY,
                json.dumps(
                    {
                        "sessionId": self.state.session_id,
                        "visitorId": self.state.visitor_id,
                        "lastActivity": self.state.last_activity,
                    }
                ),
            )
        except StorageUnavailable:
            pass

    # -------- tracking --------
    def track_pageview(self) -> None:
        if not self.config.collect_pageviews or not self.state.initialized:
            return

        self.check_session()
        self.state.pageviews += 1
        data: Dict[str, Any] = {
            "pageviews": self.state.pageviews,
            "title": self.env.title,
            "hostname": self.env.hostname,
        }
        if self.state.session_fresh:
            data["sessionStart"] = "true"
            self.state.session_fresh = False
        self.send("pageview", data)

    def track_event(self, event_name: str, event_data: Optional[Dict[str, Any]] = None) -> None:
        if not self.state.initialized or not self.config.collect_events:
            return
        self.send("event", {"eventName": event_name, "eventData": json.dumps(event_data or {})})

    def on_visibility_change(self, visibility_state: str) -> None:
        self.env.visibility_state = visibility_state
        if visibility_state == "visible" and self.state.initialized:
            self.check_session()

    def on_unload(self) -> None:
        if not self.state.initialized:
            return
        self.send("unload", {"timeOnPage": self._now_ms() - self.state.last_activity})

    def send(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """
        Build the flat payload and hand it to every usable transport.
        Returns False when nothing was attempted (DNT, no site id).
        """
        if self.config.respect_dnt and self.env.dnt_enabled:
            self.log("Do Not Track enabled, skipping analytics")
            return False
        if not self.state.site_id:
            self.log("Site ID not found, skipping analytics")
            return False

        payload: Dict[str, Any] = {
            "siteId": self.state.site_id,
            "visitorId": self.state.visitor_id,
            "sessionId": self.state.session_id,
            "type": event_type,
            "url": self.env.pathname,
            "referrer": self.env.referrer or "direct",
            "timestamp": self._now_ms(),
        }
        payload.update(data or {})

        base = (self.config.beacon_url or default_beacon_url(self.env)).rstrip("/")
        url = f"{base}/{self.state.site_id}"
        params = urlencode(payload)

        t = self.transports
        if t.beacon is not None and t.beacon.available:
            self._dispatch(t.beacon, url, params)
        elif t.pixel is not None and t.pixel.available:
            self._dispatch(t.pixel, url, params)
        if t.fetch is not None and t.fetch.available:
            self._dispatch(t.fetch, url, params)

        self.log(f"Beacon sent: {event_type}", payload)
        return True

    def _dispatch(self, transport: Any, url: str, params: str) -> None:
        def attempt() -> None:
            try:
                transport.send(url, params)
            except Exception as e:
                # Delivery is best effort; the host page never sees transport errors.
                logger.debug("Beacon transport %s failed: %s", getattr(transport, "name", "?"), e)

        try:
            self.runner(attempt)
        except Exception as e:
            logger.debug("Beacon runner failed: %s", e)

    # -------- host-page API --------
    def configure(self, **changes: Any) -> BeaconConfig:
        self.config = replace(self.config, **changes)
        self.log("Configuration updated", asdict(self.config))
        return self.config

    def set_debug(self, enable: bool) -> None:
        self.config = replace(self.config, debug=bool(enable))
        self.log("Debug mode " + ("enabled" if enable else "disabled"))

    def get_state(self) -> Dict[str, Any]:
        state = asdict(self.state)
        state["config"] = asdict(self.config)
        return state

    @property
    def version(self) -> str:
        return self.config.script_version
