from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Optional

_SITE_ID_IN_SRC = re.compile(r"siteId=([a-f0-9-]+)", re.IGNORECASE)


@dataclass
class PageEnvironment:
    """
    What the embedding page exposes to the client: the script tag, the page
    location and the navigator/screen facts used for fingerprinting.
    """

    origin: str = "http://localhost:3000"
    hostname: str = "localhost"
    pathname: str = "/"
    referrer: str = ""
    title: str = ""
    script_src: str = ""
    script_attributes: Dict[str, str] = field(default_factory=dict)
    user_agent: str = ""
    language: str = ""
    screen_width: int = 0
    screen_height: int = 0
    timezone_offset: int = 0
    cookie_enabled: bool = True
    do_not_track: Optional[str] = None
    visibility_state: str = "visible"

    @property
    def dnt_enabled(self) -> bool:
        return str(self.do_not_track).strip().lower() in ("1", "yes", "true")


def discover_site_id(env: PageEnvironment) -> Optional[str]:
    """data-site-id on the script tag wins; otherwise look for siteId= in its src."""
    attr = env.script_attributes.get("data-site-id")
    if attr:
        return attr
    m = _SITE_ID_IN_SRC.search(env.script_src or "")
    return m.group(1) if m else None


def default_beacon_url(env: PageEnvironment) -> str:
    if "localhost" in env.origin:
        return "http://localhost:3000/api/analytics/hit"
    return f"https://{env.hostname}/api/analytics/hit"
