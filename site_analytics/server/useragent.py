from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Tuple

from user_agents import parse as parse_ua

# Named crawlers first; user_agents only knows "is it a bot", not which one.
_BOT_PATTERNS: Tuple[Tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(p, re.IGNORECASE), name)
    for p, name in (
        (r"googlebot", "Googlebot"),
        (r"bingbot", "Bingbot"),
        (r"slurp", "Yahoo Slurp"),
        (r"duckduckbot", "DuckDuckGo"),
        (r"baiduspider", "Baiduspider"),
        (r"yandexbot", "YandexBot"),
        (r"facebookexternalhit", "Facebook"),
        (r"twitterbot", "Twitterbot"),
        (r"rogerbot", "Rogerbot"),
        (r"linkedinbot", "LinkedInBot"),
        (r"embedly", "Embedly"),
        (r"quora link preview", "Quora"),
        (r"showyoubot", "ShowYouBot"),
        (r"outbrain", "Outbrain"),
        (r"pinterest", "Pinterest"),
        (r"developers\.google\.com", "Google Developers"),
        (r"slackbot", "Slackbot"),
        (r"applebot", "Applebot"),
        (r"whatsapp", "WhatsApp"),
        (r"flipboard", "Flipboard"),
        (r"tumblr", "Tumblr"),
        (r"bitlybot", "Bitly"),
        (r"skypeuripreview", "Skype"),
        (r"nuzzel", "Nuzzel"),
        (r"discordbot", "Discord"),
        (r"telegrambot", "Telegram"),
        (r"mj12bot", "Majestic"),
        (r"ahrefsbot", "Ahrefs"),
        (r"semrushbot", "Semrush"),
        (r"dotbot", "Dotbot"),
        (r"moz\.com", "Moz"),
    )
)


@dataclass(frozen=True)
class BotDetection:
    is_bot: bool
    bot_name: Optional[str] = None


@dataclass(frozen=True)
class UserAgentInfo:
    browser: str = "Unknown"
    browser_version: str = ""
    os: str = "Unknown"
    device: str = "desktop"


def detect_bot(user_agent: Optional[str]) -> BotDetection:
    if not user_agent:
        return BotDetection(is_bot=False)

    for pattern, name in _BOT_PATTERNS:
        if pattern.search(user_agent):
            return BotDetection(is_bot=True, bot_name=name)

    ua = parse_ua(user_agent)
    if ua.is_bot:
        return BotDetection(is_bot=True, bot_name=ua.browser.family or "Unknown bot")
    return BotDetection(is_bot=False)


def parse_user_agent(user_agent: Optional[str]) -> UserAgentInfo:
    """
    Browser / OS / device-type breakdown for dashboards.

    device is one of: desktop, mobile, tablet, bot.
    """
    if not user_agent:
        return UserAgentInfo()

    ua = parse_ua(user_agent)
    if ua.is_bot:
        device = "bot"
    elif ua.is_tablet:
        device = "tablet"
    elif ua.is_mobile:
        device = "mobile"
    else:
        device = "desktop"

    browser = ua.browser.family if ua.browser.family and ua.browser.family != "Other" else "Unknown"
    os_name = ua.os.family if ua.os.family and ua.os.family != "Other" else "Unknown"
    return UserAgentInfo(
        browser=browser,
        browser_version=ua.browser.version_string or "",
        os=os_name,
        device=device,
    )
