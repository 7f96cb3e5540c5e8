from __future__ import annotations

from typing import Optional

import requests

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


class BeaconTransport:
    """
    sendBeacon-style delivery: one form POST, response ignored.
    """

    name = "beacon"

    def __init__(self, session: Optional[requests.Session] = None, *, available: bool = True):
        self.session = session or requests.Session()
        self.available = available

    def send(self, url: str, params: str) -> None:
        self.session.post(url, data=params, headers={"Content-Type": FORM_CONTENT_TYPE})


class PixelTransport:
    """Image request fallback: GET <url>.gif?<params>."""

    name = "pixel"

    def __init__(self, session: Optional[requests.Session] = None, *, available: bool = True):
        self.session = session or requests.Session()
        self.available = available

    def send(self, url: str, params: str) -> None:
        self.session.get(f"{url}.gif?{params}", headers={"Accept": "image/gif"})


class FetchTransport:
    """Form POST over a kept-alive connection, like fetch(..., {keepalive: true})."""

    name = "fetch"

    def __init__(self, session: Optional[requests.Session] = None, *, available: bool = True):
        self.session = session or requests.Session()
        self.available = available

    def send(self, url: str, params: str) -> None:
        self.session.post(
            url,
            data=params,
            headers={"Content-Type": FORM_CONTENT_TYPE, "Connection": "keep-alive"},
        )
