import json
import unittest

from site_analytics.server.records import (
    AnalyticsRecord,
    classify_event_type,
    normalize_url,
    parse_event_data,
    parse_flag,
    parse_int,
    parse_query,
    parse_timestamp,
)
from site_analytics.server.useragent import detect_bot, parse_user_agent

NOW = 1_700_000_000.0


class TestFieldParsing(unittest.TestCase):
    def test_normalize_url(self):
        self.assertEqual(normalize_url("http://example.com/foo?x=1"), ("http://example.com/foo?x=1", "/foo?x=1"))
        self.assertEqual(normalize_url("https://example.com"), ("https://example.com", "/"))
        self.assertEqual(normalize_url("/blog/post"), ("/blog/post", "/blog/post"))
        self.assertEqual(normalize_url(None), ("/", "/"))
        self.assertEqual(normalize_url("/a", "/explicit"), ("/a", "/explicit"))

    def test_parse_int(self):
        self.assertEqual(parse_int("12px", 0), 12)
        self.assertEqual(parse_int("abc", 0), 0)
        self.assertIsNone(parse_int("abc", None))
        self.assertIsNone(parse_int("0", None))
        self.assertEqual(parse_int(7.9, 0), 7)
        self.assertEqual(parse_int(True, 0), 0)

    def test_parse_int_out_of_sqlite_range(self):
        self.assertIsNone(parse_int("99999999999999999999", None))
        self.assertEqual(parse_int(-(2**63) - 1, 0), 0)
        self.assertEqual(parse_int(2**63 - 1, 0), 2**63 - 1)
        self.assertEqual(parse_int(float("inf"), 0), 0)
        self.assertEqual(parse_int(float("nan"), 0), 0)
        self.assertEqual(parse_int(1e300, 0), 0)

    def test_parse_flag(self):
        self.assertTrue(parse_flag("true"))
        self.assertTrue(parse_flag(True))
        self.assertFalse(parse_flag("1"))
        self.assertFalse(parse_flag(None))

    def test_parse_timestamp(self):
        self.assertEqual(parse_timestamp(1_600_000_000_000, now=NOW), 1_600_000_000)
        self.assertEqual(parse_timestamp("1600000000", now=NOW), 1_600_000_000)
        self.assertEqual(parse_timestamp("2020-09-13T12:26:40Z", now=NOW), 1_600_000_000)
        self.assertEqual(parse_timestamp("not a date", now=NOW), int(NOW))
        self.assertEqual(parse_timestamp(None, now=NOW), int(NOW))

    def test_parse_timestamp_out_of_range(self):
        self.assertEqual(parse_timestamp("999999999999999999999", now=NOW), int(NOW))
        self.assertEqual(parse_timestamp(10**400, now=NOW), int(NOW))
        self.assertEqual(parse_timestamp(float("inf"), now=NOW), int(NOW))
        self.assertEqual(parse_timestamp("0001-01-01T00:00:00+01:00", now=NOW), int(NOW))
        self.assertEqual(parse_timestamp(253_402_300_799_000, now=NOW), 253_402_300_799)

    def test_event_data(self):
        self.assertEqual(parse_event_data('{"a": 1}'), {"a": 1})
        self.assertEqual(parse_event_data({"a": 1}), {"a": 1})
        self.assertEqual(parse_event_data(None), {})
        with self.assertRaises(ValueError):
            parse_event_data("{broken")

    def test_query(self):
        self.assertEqual(parse_query({"q": "x"}), {"q": "x"})
        self.assertEqual(parse_query('{"q": "x"}'), {"q": "x"})
        self.assertEqual(parse_query("{broken"), {})

    def test_event_type(self):
        self.assertEqual(classify_event_type(None), ("pageview", False))
        self.assertEqual(classify_event_type("unload"), ("unload", False))
        self.assertEqual(classify_event_type("video_play"), ("video_play", True))
        long_name = "checkout_step_" + "x" * 100
        self.assertEqual(classify_event_type(long_name), (long_name, True))


class TestAnalyticsRecord(unittest.TestCase):
    def test_site_id_required(self):
        with self.assertRaises(ValueError):
            AnalyticsRecord(site_id=" ", session_id="s", visitor_id="v", ip_hash=None, ts=int(NOW))

    def test_to_row(self):
        rec = AnalyticsRecord(
            site_id="site123",
            session_id="s",
            visitor_id="v",
            ip_hash="h",
            ts=1_600_000_000,
            event_data={"k": "v"},
            session_start=True,
        )
        row = rec.to_row()
        self.assertEqual(row["date"], "2020-09-13")
        self.assertEqual(json.loads(row["event_data"]), {"k": "v"})
        self.assertEqual(row["session_start"], 1)
        self.assertEqual(row["query"], "{}")

    def test_far_future_timestamp_still_has_a_date(self):
        ts = parse_timestamp("999999999999999999999", now=NOW)
        rec = AnalyticsRecord(site_id="s", session_id="s", visitor_id="v", ip_hash=None, ts=ts)
        self.assertEqual(rec.date, "2023-11-14")


class TestUserAgent(unittest.TestCase):
    def test_named_bots(self):
        self.assertEqual(detect_bot("Mozilla/5.0 (compatible; bingbot/2.0)").bot_name, "Bingbot")
        self.assertEqual(detect_bot("Slackbot-LinkExpanding 1.0").bot_name, "Slackbot")
        self.assertFalse(detect_bot("").is_bot)

    def test_browsers(self):
        iphone = parse_user_agent(
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
        )
        self.assertEqual(iphone.os, "iOS")
        self.assertEqual(iphone.device, "mobile")

        chrome = parse_user_agent(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        )
        self.assertEqual(chrome.browser, "Chrome")
        self.assertEqual(chrome.os, "Windows")
        self.assertEqual(chrome.device, "desktop")

    def test_empty_user_agent(self):
        info = parse_user_agent("")
        self.assertEqual(info.browser, "Unknown")
        self.assertEqual(info.device, "desktop")


if __name__ == "__main__":
    unittest.main()
