"""Shared test fixtures for visitor-id."""

import pytest

from visitor_id.identity.models import DeviceFingerprint
from visitor_id.identity.resolver import IdentityResolver
from visitor_id.matching import SimilarityScorer
from visitor_id.store import InMemoryStore, SqlStore

CHROME_119 = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36"
)
CHROME_120 = CHROME_119.replace("Chrome/119", "Chrome/120")


class FakeClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


def make_fingerprint(**overrides) -> DeviceFingerprint:
    data = dict(
        canvas_hash="c" * 64,
        audio_hash="a" * 64,
        webgl_hash="w" * 64,
        user_agent=CHROME_119,
        platform="Win32",
        language="en-US",
        timezone="Europe/Berlin",
        timezone_offset=-60,
        screen_width=1920,
        screen_height=1080,
        color_depth=24,
        pixel_ratio=1.0,
        hardware_concurrency=8,
        device_memory=8.0,
        fonts=["Arial", "Calibri", "Segoe UI", "Times New Roman"],
        plugins=["PDF Viewer"],
        ip_address="203.0.113.10",
    )
    data.update(overrides)
    return DeviceFingerprint(**data)


@pytest.fixture
def fingerprint():
    return make_fingerprint()


@pytest.fixture
def scorer():
    return SimilarityScorer()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return InMemoryStore()


@pytest.fixture
def sql_store(tmp_path):
    return SqlStore(f"sqlite:///{tmp_path / 'visitor_id.db'}")


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStore()
    return SqlStore(f"sqlite:///{tmp_path / 'visitor_id.db'}")


@pytest.fixture
def resolver(store, clock):
    return IdentityResolver(store, clock=clock)


@pytest.fixture
def device_payload():
    """Collector payload as posted by the browser script."""
    return {
        "canvas": {"hash": "data:image/png;base64,iVBORw0KGgo"},
        "audio": {"hash": "124.04347527516074"},
        "webgl": {"vendor": "Google Inc. (NVIDIA)", "renderer": "ANGLE (NVIDIA GeForce RTX 3060)"},
        "userAgent": CHROME_119,
        "platform": "Win32",
        "language": "en-US",
        "timezone": "Europe/Berlin",
        "timezoneOffset": -60,
        "screen": {"width": 1920, "height": 1080, "colorDepth": 24, "pixelRatio": 1},
        "hardware": {"hardwareConcurrency": 8, "deviceMemory": 8},
        "fonts": {"fonts": ["Arial", "Calibri", "Segoe UI"]},
        "browser": {"plugins": [{"name": "PDF Viewer"}, {"name": "Chrome PDF Viewer"}]},
    }
