"""
Ingress adapter for browser collector payloads.

Turns the nested camelCase ``device_info`` document sent by the browser
collector into a DeviceFingerprint. Raw sensor outputs are reduced to
SHA-256 digests here, before they reach the resolver.
"""

from __future__ import annotations

import hashlib
from typing import Any

from .errors import ValidationError
from .identity.models import DeviceFingerprint

# Values the collector reports when a sensor could not produce a reading.
COLLECTOR_SENTINELS = frozenset({"unavailable", "error", "timeout"})

MAX_TOKEN_LENGTH = 64


def hash_fingerprint(value: Any) -> str | None:
    """SHA-256 hex digest of a sensor value, or None for missing readings."""
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in COLLECTOR_SENTINELS:
        return None
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def validate_identify_request(body: Any) -> tuple[str, dict[str, Any]]:
    """Return (client_token, device_info) or raise ValidationError."""
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")

    client_token = body.get("client_token")
    device_info = body.get("device_info")
    if not client_token or not device_info:
        raise ValidationError("client_token and device_info are required")
    if not isinstance(client_token, str) or len(client_token) > MAX_TOKEN_LENGTH:
        raise ValidationError(f"client_token must be a string of at most {MAX_TOKEN_LENGTH} characters")
    if not isinstance(device_info, dict):
        raise ValidationError("device_info must be an object")
    return client_token, device_info


def fingerprint_from_payload(
    device_info: dict[str, Any],
    ip_address: str | None = None,
    country: str | None = None,
    city: str | None = None,
) -> DeviceFingerprint:
    """Map a collector payload onto a DeviceFingerprint."""
    canvas = _section(device_info, "canvas")
    audio = _section(device_info, "audio")
    webgl = _section(device_info, "webgl")
    screen = _section(device_info, "screen")
    hardware = _section(device_info, "hardware")
    fonts = _section(device_info, "fonts")
    browser = _section(device_info, "browser")

    plugins = [
        p["name"] for p in browser.get("plugins") or []
        if isinstance(p, dict) and p.get("name")
    ]

    return DeviceFingerprint(
        canvas_hash=hash_fingerprint(canvas.get("hash")),
        audio_hash=hash_fingerprint(audio.get("hash")),
        webgl_hash=hash_fingerprint(webgl.get("renderer")),
        user_agent=_text(device_info.get("userAgent")),
        platform=_text(device_info.get("platform")),
        language=_text(device_info.get("language")),
        timezone=_text(device_info.get("timezone")),
        timezone_offset=_integer(device_info.get("timezoneOffset")),
        screen_width=_integer(screen.get("width")),
        screen_height=_integer(screen.get("height")),
        color_depth=_integer(screen.get("colorDepth")),
        pixel_ratio=_number(screen.get("pixelRatio")),
        hardware_concurrency=_integer(hardware.get("hardwareConcurrency")),
        device_memory=_number(hardware.get("deviceMemory")),
        fonts=[str(f) for f in fonts.get("fonts") or []],
        plugins=plugins,
        ip_address=ip_address,
        country=country,
        city=city,
        webgl_vendor=_text(webgl.get("vendor")),
        webgl_renderer=_text(webgl.get("renderer")),
    )


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _integer(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
