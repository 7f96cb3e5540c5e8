import unittest
from unittest import mock

from site_analytics.beacon.transports import BeaconTransport, FetchTransport, PixelTransport

URL = "https://blog.example.com/api/analytics/hit/site123"


class TestTransports(unittest.TestCase):
    def test_beacon_posts_form(self):
        session = mock.Mock()
        BeaconTransport(session).send(URL, "type=pageview&url=%2F")
        session.post.assert_called_once_with(
            URL, data="type=pageview&url=%2F", headers={"Content-Type": "application/x-www-form-urlencoded"}
        )

    def test_pixel_gets_gif(self):
        session = mock.Mock()
        PixelTransport(session).send(URL, "type=pageview")
        session.get.assert_called_once_with(URL + ".gif?type=pageview", headers={"Accept": "image/gif"})

    def test_fetch_keeps_alive(self):
        session = mock.Mock()
        transport = FetchTransport(session, available=False)
        self.assertFalse(transport.available)
        transport.send(URL, "type=unload")
        headers = session.post.call_args.kwargs["headers"]
        self.assertEqual(headers["Connection"], "keep-alive")


if __name__ == "__main__":
    unittest.main()
