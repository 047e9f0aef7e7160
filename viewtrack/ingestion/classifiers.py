"""
Request classification for view ingest.

Derives the device class, bot flag, traffic source, country and the
anonymous fingerprint from request metadata.
"""

import hashlib
import hmac
import re
from datetime import datetime
from typing import Mapping, Optional
from urllib.parse import urlsplit

from viewtrack.clock import to_epoch
from viewtrack.database.models import DeviceType, ViewSource

_BOT_PATTERN = re.compile(
    r"bot\b|bot/|crawl|spider|slurp|facebookexternalhit|embedly|quora link preview"
    r"|bingpreview|headlesschrome|phantomjs|python-requests|curl/|wget/|httpclient",
    re.IGNORECASE,
)
_TABLET_PATTERN = re.compile(r"ipad|tablet|kindle|silk|playbook|(android(?!.*mobile))", re.IGNORECASE)
_MOBILE_PATTERN = re.compile(
    r"mobi|iphone|ipod|android.*mobile|windows phone|blackberry|opera mini|iemobile",
    re.IGNORECASE,
)
_DESKTOP_PATTERN = re.compile(r"windows nt|macintosh|mac os x|x11|linux x86_64|cros", re.IGNORECASE)

SEARCH_ENGINES = (
    "google.",
    "bing.com",
    "duckduckgo.com",
    "search.yahoo.com",
    "yandex.",
    "baidu.com",
    "ecosia.org",
    "search.brave.com",
)
SOCIAL_NETWORKS = (
    "facebook.com",
    "fb.com",
    "twitter.com",
    "t.co",
    "x.com",
    "linkedin.com",
    "lnkd.in",
    "reddit.com",
    "instagram.com",
    "pinterest.com",
    "news.ycombinator.com",
    "youtube.com",
    "tiktok.com",
)

_COUNTRY_HEADERS = ("cf-ipcountry", "x-country-code")
_UNKNOWN_COUNTRY_CODES = {"XX", "T1"}
_COUNTRY_PATTERN = re.compile(r"^[A-Z]{2}$")


def is_bot(user_agent: Optional[str]) -> bool:
    """Known crawler, preview fetcher or scripted client."""
    if not user_agent:
        return False
    return bool(_BOT_PATTERN.search(user_agent))


def classify_device(user_agent: Optional[str]) -> DeviceType:
    """Map a User-Agent onto ``mobile | tablet | desktop | other``."""
    if not user_agent:
        return DeviceType.OTHER
    if _TABLET_PATTERN.search(user_agent):
        return DeviceType.TABLET
    if _MOBILE_PATTERN.search(user_agent):
        return DeviceType.MOBILE
    if _DESKTOP_PATTERN.search(user_agent):
        return DeviceType.DESKTOP
    return DeviceType.OTHER


def referrer_host(referrer: Optional[str]) -> Optional[str]:
    """Lower-cased host of a referrer URL, ``www.`` stripped; None when unparseable."""
    if not referrer:
        return None
    candidate = referrer.strip()
    if "://" not in candidate:
        candidate = f"//{candidate}"
    try:
        host = urlsplit(candidate).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def _host_matches(host: str, patterns) -> bool:
    for pattern in patterns:
        if pattern.endswith("."):
            if host.startswith(pattern) or f".{pattern}" in f".{host}":
                return True
        elif host == pattern or host.endswith(f".{pattern}"):
            return True
    return False


def infer_source(hint: Optional[str], host: Optional[str]) -> ViewSource:
    """
    Resolve the traffic source.

    A recognized hint wins. Otherwise the referrer host decides: search
    engines and social networks by domain, no referrer means direct.
    Unrecognized hints and hosts collapse to ``other``.
    """
    if hint:
        try:
            return ViewSource(hint.strip().lower())
        except ValueError:
            return ViewSource.OTHER
    if not host:
        return ViewSource.DIRECT
    if _host_matches(host, SEARCH_ENGINES):
        return ViewSource.SEARCH
    if _host_matches(host, SOCIAL_NETWORKS):
        return ViewSource.SOCIAL
    return ViewSource.OTHER


class HeaderCountryResolver:
    """
    Country lookup from CDN-provided headers.

    Any object with ``resolve(headers, client_ip)`` can replace it, e.g. a
    GeoIP database reader.
    """

    def __init__(self, header_names=_COUNTRY_HEADERS):
        self.header_names = tuple(name.lower() for name in header_names)

    def resolve(self, headers: Mapping[str, str], client_ip: Optional[str] = None) -> Optional[str]:
        lowered = {key.lower(): value for key, value in headers.items()}
        for name in self.header_names:
            value = (lowered.get(name) or "").strip().upper()
            if not value:
                continue
            if value in _UNKNOWN_COUNTRY_CODES or not _COUNTRY_PATTERN.match(value):
                return None
            return value
        return None


def anonymous_fingerprint(
    client_ip: Optional[str],
    user_agent: Optional[str],
    secret: str,
    now: datetime,
    rotation_hours: int = 24,
) -> str:
    """
    Opaque viewer identity for unauthenticated requests.

    HMAC-SHA256 of ``ip|user-agent`` keyed by a salt that rotates every
    ``rotation_hours``, so the same visitor maps to a new value per period.
    """
    period = int(to_epoch(now) // (rotation_hours * 3600))
    salt = hmac.new(secret.encode(), f"salt:{period}".encode(), hashlib.sha256).digest()
    material = f"{client_ip or '-'}|{user_agent or '-'}".encode()
    return hmac.new(salt, material, hashlib.sha256).hexdigest()[:32]
