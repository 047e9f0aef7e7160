"""
Unit Tests - Request Classification
"""
from datetime import datetime, timedelta

import pytest

from viewtrack.database.models import DeviceType, ViewSource
from viewtrack.ingestion.classifiers import (
    HeaderCountryResolver,
    anonymous_fingerprint,
    classify_device,
    infer_source,
    is_bot,
    referrer_host,
)
from tests.conftest import BOT_UA, DESKTOP_UA, MOBILE_UA, TABLET_UA


class TestDeviceClassification:
    """Tests for User-Agent device mapping"""

    @pytest.mark.parametrize(
        "user_agent,expected",
        [
            (MOBILE_UA, DeviceType.MOBILE),
            (TABLET_UA, DeviceType.TABLET),
            (DESKTOP_UA, DeviceType.DESKTOP),
            ("Mozilla/5.0 (Linux; Android 13; SM-X700) AppleWebKit/537.36 Chrome/120.0 Safari/537.36",
             DeviceType.TABLET),
            ("Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 Chrome/120.0 Mobile Safari/537.36",
             DeviceType.MOBILE),
            ("SmartTV/1.0", DeviceType.OTHER),
            (None, DeviceType.OTHER),
        ],
    )
    def test_classify_device(self, user_agent, expected):
        assert classify_device(user_agent) == expected

    def test_bot_detection(self):
        """Test crawler and scripted clients are flagged"""
        assert is_bot(BOT_UA)
        assert is_bot("curl/8.4.0")
        assert is_bot("python-requests/2.31")
        assert not is_bot(DESKTOP_UA)
        assert not is_bot(None)


class TestSourceInference:
    """Tests for traffic source resolution"""

    def test_referrer_host_strips_www(self):
        assert referrer_host("https://www.Google.com/search?q=x") == "google.com"
        assert referrer_host("news.ycombinator.com/item?id=1") == "news.ycombinator.com"
        assert referrer_host("") is None
        assert referrer_host(None) is None

    def test_hint_wins_over_referrer(self):
        assert infer_source("recommendation_feed", "google.com") == ViewSource.RECOMMENDATION_FEED
        assert infer_source("RECOMMENDATION_SIMILAR", None) == ViewSource.RECOMMENDATION_SIMILAR

    def test_unknown_hint_collapses_to_other(self):
        assert infer_source("newsletter", None) == ViewSource.OTHER

    def test_referrer_classification(self):
        assert infer_source(None, None) == ViewSource.DIRECT
        assert infer_source(None, "google.co.uk") == ViewSource.SEARCH
        assert infer_source(None, "duckduckgo.com") == ViewSource.SEARCH
        assert infer_source(None, "t.co") == ViewSource.SOCIAL
        assert infer_source(None, "m.facebook.com") == ViewSource.SOCIAL
        assert infer_source(None, "blog.example.org") == ViewSource.OTHER


class TestCountryResolver:
    """Tests for header-based country lookup"""

    def test_cloudflare_header(self):
        resolver = HeaderCountryResolver()
        assert resolver.resolve({"CF-IPCountry": "de"}) == "DE"

    def test_fallback_header(self):
        resolver = HeaderCountryResolver()
        assert resolver.resolve({"X-Country-Code": "FR"}) == "FR"

    @pytest.mark.parametrize("value", ["XX", "T1", "Germany", "1A"])
    def test_unknown_values(self, value):
        assert HeaderCountryResolver().resolve({"cf-ipcountry": value}) is None

    def test_missing_header(self):
        assert HeaderCountryResolver().resolve({}) is None


class TestAnonymousFingerprint:
    """Tests for the rotating anonymous identity"""

    def test_stable_within_period(self):
        now = datetime(2025, 3, 10, 1, 0)
        first = anonymous_fingerprint("198.51.100.1", DESKTOP_UA, "secret", now)
        second = anonymous_fingerprint("198.51.100.1", DESKTOP_UA, "secret", now + timedelta(hours=5))
        assert first == second
        assert len(first) == 32

    def test_rotates_across_periods(self):
        now = datetime(2025, 3, 10, 1, 0)
        first = anonymous_fingerprint("198.51.100.1", DESKTOP_UA, "secret", now)
        later = anonymous_fingerprint("198.51.100.1", DESKTOP_UA, "secret", now + timedelta(days=1))
        assert first != later

    def test_distinguishes_clients(self):
        now = datetime(2025, 3, 10, 1, 0)
        assert anonymous_fingerprint("198.51.100.1", DESKTOP_UA, "secret", now) != anonymous_fingerprint(
            "198.51.100.2", DESKTOP_UA, "secret", now
        )
