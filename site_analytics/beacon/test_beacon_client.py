import json
import os
import tempfile
import unittest
from urllib.parse import parse_qs, urlsplit

from site_analytics.beacon.client import (
    SESSION_KEY,
    VISITOR_KEY,
    BeaconClient,
    BeaconConfig,
    Transports,
    hash_string,
    to_base36,
    visitor_fingerprint,
)
from site_analytics.beacon.environment import PageEnvironment, default_beacon_url, discover_site_id
from site_analytics.beacon.storage import MemoryStorage, UnavailableStorage

START = 1_700_000_000.0


class FakeTransport:
    def __init__(self, name, *, available=True, fail=False):
        self.name = name
        self.available = available
        self.fail = fail
        self.sent = []

    def send(self, url, params):
        self.sent.append((url, {k: v[0] for k, v in parse_qs(params).items()}))
        if self.fail:
            raise ConnectionError("network down")


class Clock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now


def page(**overrides):
    env = dict(
        origin="https://blog.example.com",
        hostname="blog.example.com",
        pathname="/posts/hello",
        title="Hello",
        script_attributes={"data-site-id": "site123"},
        user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/120.0",
        language="en-US",
        screen_width=1920,
        screen_height=1080,
        timezone_offset=-60,
    )
    env.update(overrides)
    return PageEnvironment(**env)


class BeaconClientTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = Clock()
        self.durable = MemoryStorage()
        self.session = MemoryStorage()
        self.scheduled = []
        self.beacon = FakeTransport("beacon")
        self.pixel = FakeTransport("pixel")
        self.fetch = FakeTransport("fetch")

    def make_client(self, env=None, config=None, **kwargs):
        kwargs.setdefault("durable_storage", self.durable)
        kwargs.setdefault("session_storage", self.session)
        return BeaconClient(
            environment=env or page(),
            config=config,
            transports=Transports(beacon=self.beacon, pixel=self.pixel, fetch=self.fetch),
            clock=self.clock,
            scheduler=lambda delay, fn: self.scheduled.append((delay, fn)),
            runner=lambda fn: fn(),
            **kwargs,
        )

    def run_scheduled(self):
        pending, self.scheduled = self.scheduled, []
        for _, fn in pending:
            fn()

    def all_sends(self):
        return self.beacon.sent + self.pixel.sent + self.fetch.sent

    def test_init_schedules_first_pageview(self):
        client = self.make_client()
        self.assertTrue(client.init())
        self.assertEqual(len(self.scheduled), 1)
        self.assertAlmostEqual(self.scheduled[0][0], 0.1)
        self.assertEqual(self.all_sends(), [])

        self.run_scheduled()
        url, payload = self.beacon.sent[0]
        self.assertEqual(url, "https://blog.example.com/api/analytics/hit/site123")
        self.assertEqual(payload["siteId"], "site123")
        self.assertEqual(payload["type"], "pageview")
        self.assertEqual(payload["url"], "/posts/hello")
        self.assertEqual(payload["referrer"], "direct")
        self.assertEqual(payload["timestamp"], str(int(START * 1000)))
        self.assertEqual(payload["pageviews"], "1")
        self.assertEqual(payload["title"], "Hello")
        self.assertEqual(payload["hostname"], "blog.example.com")
        self.assertEqual(payload["sessionStart"], "true")
        self.assertTrue(payload["visitorId"].startswith("visitor_"))
        self.assertTrue(payload["sessionId"].startswith("session_"))

    def test_double_init_is_ignored(self):
        client = self.make_client()
        client.init()
        client.init()
        self.assertEqual(len(self.scheduled), 1)

    def test_no_site_id_sends_nothing(self):
        client = self.make_client(env=page(script_attributes={}))
        self.assertFalse(client.init())
        client.track_pageview()
        client.track_event("click")
        client.on_unload()
        self.assertEqual(client.send("pageview"), False)
        self.assertEqual(self.all_sends(), [])

    def test_beacon_preferred_fetch_always(self):
        client = self.make_client()
        client.init()
        self.run_scheduled()
        self.assertEqual(len(self.beacon.sent), 1)
        self.assertEqual(len(self.pixel.sent), 0)
        self.assertEqual(len(self.fetch.sent), 1)

    def test_pixel_used_without_beacon(self):
        self.beacon.available = False
        self.fetch.available = False
        client = self.make_client()
        client.init()
        self.run_scheduled()
        self.assertEqual(len(self.pixel.sent), 1)
        self.assertEqual(self.beacon.sent, [])

    def test_transport_failures_are_swallowed(self):
        self.beacon.fail = True
        self.fetch.fail = True
        client = self.make_client()
        client.init()
        self.run_scheduled()
        client.track_event("click", {"x": 1})
        self.assertEqual(len(self.beacon.sent), 2)

    def test_do_not_track_blocks_every_send(self):
        client = self.make_client(env=page(do_not_track="1"))
        client.init()
        self.run_scheduled()
        client.track_pageview()
        client.track_event("click", {"x": 1})
        client.on_unload()
        self.assertEqual(self.all_sends(), [])

    def test_do_not_track_ignored_when_not_respected(self):
        client = self.make_client(env=page(do_not_track="1"), config=BeaconConfig(respect_dnt=False))
        client.init()
        self.run_scheduled()
        self.assertEqual(len(self.beacon.sent), 1)

    def test_session_survives_reload_within_timeout(self):
        first = self.make_client()
        first.init()
        self.run_scheduled()
        session_id = first.state.session_id

        self.clock.now += 10 * 60
        reloaded = self.make_client()
        reloaded.init()
        self.run_scheduled()
        self.assertEqual(reloaded.state.session_id, session_id)
        payload = self.beacon.sent[-1][1]
        self.assertEqual(payload["sessionId"], session_id)
        self.assertNotIn("sessionStart", payload)

    def test_session_rotates_after_timeout(self):
        first = self.make_client()
        first.init()
        self.run_scheduled()
        first.track_pageview()
        self.assertEqual(first.state.pageviews, 2)
        session_id = first.state.session_id

        self.clock.now += 31 * 60
        reloaded = self.make_client()
        reloaded.init()
        self.run_scheduled()
        self.assertNotEqual(reloaded.state.session_id, session_id)
        self.assertEqual(reloaded.state.pageviews, 1)
        payload = self.beacon.sent[-1][1]
        self.assertEqual(payload["sessionStart"], "true")
        stored = json.loads(self.session.get_item(SESSION_KEY))
        self.assertEqual(stored["sessionId"], reloaded.state.session_id)

    def test_visibility_regain_checks_session(self):
        client = self.make_client()
        client.init()
        session_id = client.state.session_id
        self.clock.now += 45 * 60
        client.on_visibility_change("hidden")
        self.assertEqual(client.state.session_id, session_id)
        client.on_visibility_change("visible")
        self.assertNotEqual(client.state.session_id, session_id)

    def test_visitor_id_persists_in_durable_storage(self):
        first = self.make_client()
        first.init()
        stored = json.loads(self.durable.get_item(VISITOR_KEY))
        self.assertEqual(stored["visitorId"], first.state.visitor_id)

        second = self.make_client(session_storage=MemoryStorage())
        second.init()
        self.assertEqual(second.state.visitor_id, first.state.visitor_id)

    def test_fingerprint_fallback_without_durable_storage(self):
        env = page()
        client = self.make_client(env=env, durable_storage=UnavailableStorage(), session_storage=UnavailableStorage())
        client.init()
        self.assertEqual(client.state.visitor_id, visitor_fingerprint(env))
        self.run_scheduled()
        self.assertEqual(len(self.beacon.sent), 1)

    def test_track_event(self):
        client = self.make_client()
        client.init()
        client.track_event("signup", {"plan": "pro"})
        url, payload = self.beacon.sent[-1]
        self.assertEqual(payload["type"], "event")
        self.assertEqual(payload["eventName"], "signup")
        self.assertEqual(json.loads(payload["eventData"]), {"plan": "pro"})

        client.configure(collect_events=False)
        client.track_event("ignored")
        self.assertEqual(len(self.beacon.sent), 1)

    def test_unload_reports_time_on_page(self):
        client = self.make_client()
        client.init()
        self.run_scheduled()
        self.clock.now += 12.5
        client.on_unload()
        payload = self.beacon.sent[-1][1]
        self.assertEqual(payload["type"], "unload")
        self.assertEqual(payload["timeOnPage"], "12500")

    def test_configure_debug_and_state(self):
        client = self.make_client(config=BeaconConfig(beacon_url="https://stats.example.net/api/analytics/hit/"))
        client.init()
        with self.assertLogs("site_analytics.beacon", level="INFO"):
            client.set_debug(True)
        state = client.get_state()
        self.assertTrue(state["initialized"])
        self.assertEqual(state["site_id"], "site123")
        self.assertTrue(state["config"]["debug"])
        self.assertEqual(client.version, "1.0.0")

        self.run_scheduled()
        self.assertEqual(self.beacon.sent[0][0], "https://stats.example.net/api/analytics/hit/site123")

        with self.assertRaises(TypeError):
            client.configure(no_such_option=True)

    def test_instances_are_independent(self):
        a = self.make_client(env=page(script_attributes={"data-site-id": "aaa"}))
        b = self.make_client(env=page(script_attributes={"data-site-id": "bbb"}), session_storage=MemoryStorage())
        a.init()
        b.init()
        a.configure(collect_pageviews=False)
        self.run_scheduled()
        self.assertEqual([p["siteId"] for _, p in self.beacon.sent], ["bbb"])


class HelpersTestCase(unittest.TestCase):
    def test_hash_string(self):
        self.assertEqual(hash_string(""), "0")
        self.assertEqual(hash_string("a"), "61")
        self.assertEqual(hash_string("ab"), "c21")

    def test_fingerprint_is_deterministic(self):
        self.assertEqual(visitor_fingerprint(page()), visitor_fingerprint(page()))
        self.assertNotEqual(visitor_fingerprint(page()), visitor_fingerprint(page(screen_width=1280)))

    def test_base36(self):
        self.assertEqual(to_base36(0), "0")
        self.assertEqual(to_base36(35), "z")
        self.assertEqual(to_base36(36), "10")

    def test_site_id_discovery(self):
        self.assertEqual(discover_site_id(page()), "site123")
        self.assertEqual(
            discover_site_id(page(script_attributes={}, script_src="https://cdn.example.com/a.js?siteId=ab12-cd34")),
            "ab12-cd34",
        )
        self.assertIsNone(discover_site_id(page(script_attributes={}, script_src="/a.js")))

    def test_default_beacon_url(self):
        self.assertEqual(
            default_beacon_url(page(origin="http://localhost:8080", hostname="localhost")),
            "http://localhost:3000/api/analytics/hit",
        )
        self.assertEqual(default_beacon_url(page()), "https://blog.example.com/api/analytics/hit")


class FlaskClientTransport:
    """Delivers beacons straight into the ingestion app's test client."""

    def __init__(self, app, name="beacon", *, as_pixel=False):
        self.client = app.test_client()
        self.name = name
        self.available = True
        self.as_pixel = as_pixel
        self.responses = []

    def send(self, url, params):
        path = urlsplit(url).path
        if self.as_pixel:
            resp = self.client.get(f"{path}.gif?{params}", headers={"Accept": "image/gif"})
        else:
            resp = self.client.post(path, data=params, content_type="application/x-www-form-urlencoded")
        self.responses.append(resp)


class EndToEndTestCase(unittest.TestCase):
    def setUp(self):
        from site_analytics.server.app import create_app
        from site_analytics.server.config import build_config

        self._tmp = tempfile.TemporaryDirectory()
        cfg = build_config(
            {
                "database": {"sqlite_path": os.path.join(self._tmp.name, "analytics.db")},
                "security": {"hashing_salt": "test-salt"},
                "ingest": {"dispatch": "inline"},
            }
        )
        self.app = create_app(cfg)
        self.db = self.app.extensions["site_analytics"].db
        self.db.create_site(name="Blog", site_id="site123")

    def tearDown(self):
        self._tmp.cleanup()

    def test_client_hits_land_as_records(self):
        beacon = FlaskClientTransport(self.app)
        client = BeaconClient(
            environment=page(referrer="https://news.example.com/"),
            transports=Transports(beacon=beacon),
            scheduler=lambda delay, fn: fn(),
            runner=lambda fn: fn(),
        )
        client.init()
        client.track_event("signup", {"plan": "pro"})
        client.on_unload()

        self.assertTrue(all(r.status_code == 200 for r in beacon.responses))
        rows = sorted(self.db.recent_records("site123"), key=lambda r: r["id"])
        self.assertEqual([r["event_type"] for r in rows], ["pageview", "event", "unload"])
        self.assertEqual({r["session_id"] for r in rows}, {client.state.session_id})
        self.assertEqual(rows[0]["path"], "/posts/hello")
        self.assertEqual(rows[0]["referrer"], "https://news.example.com/")
        self.assertEqual(rows[0]["session_start"], 1)
        self.assertEqual(json.loads(rows[1]["event_data"]), {"plan": "pro"})
        self.assertEqual(self.db.find_site("site123").total_sessions, 1)

    def test_pixel_fallback_lands_as_record(self):
        pixel = FlaskClientTransport(self.app, "pixel", as_pixel=True)
        client = BeaconClient(
            environment=page(),
            transports=Transports(pixel=pixel),
            scheduler=lambda delay, fn: fn(),
            runner=lambda fn: fn(),
        )
        client.init()
        self.assertEqual(pixel.responses[0].mimetype, "image/gif")
        self.assertEqual(len(self.db.recent_records("site123")), 1)


if __name__ == "__main__":
    unittest.main()
