"""Tests for collector payload ingress."""

import hashlib

import pytest

from visitor_id.errors import ValidationError
from visitor_id.payload import fingerprint_from_payload, hash_fingerprint, validate_identify_request


class TestHashFingerprint:
    def test_sha256(self):
        expected = hashlib.sha256(b"124.04347527516074").hexdigest()
        assert hash_fingerprint("124.04347527516074") == expected

    def test_numbers_are_hashed_as_text(self):
        assert hash_fingerprint(124.5) == hash_fingerprint("124.5")

    @pytest.mark.parametrize("value", [None, "", "   ", "unavailable", "error", "TIMEOUT"])
    def test_missing_readings(self, value):
        assert hash_fingerprint(value) is None


class TestValidateRequest:
    def test_valid(self, device_payload):
        token, info = validate_identify_request({"client_token": "tok-1", "device_info": device_payload})
        assert token == "tok-1"
        assert info is device_payload

    @pytest.mark.parametrize("body", [
        None,
        [],
        {},
        {"client_token": "tok-1"},
        {"device_info": {"platform": "Win32"}},
        {"client_token": "", "device_info": {"platform": "Win32"}},
        {"client_token": 42, "device_info": {"platform": "Win32"}},
        {"client_token": "x" * 65, "device_info": {"platform": "Win32"}},
        {"client_token": "tok-1", "device_info": "Win32"},
    ])
    def test_invalid(self, body):
        with pytest.raises(ValidationError):
            validate_identify_request(body)


class TestFingerprintFromPayload:
    def test_full_payload(self, device_payload):
        fp = fingerprint_from_payload(device_payload, ip_address="203.0.113.10")
        assert fp.canvas_hash == hash_fingerprint("data:image/png;base64,iVBORw0KGgo")
        assert fp.audio_hash == hash_fingerprint("124.04347527516074")
        assert fp.webgl_hash == hash_fingerprint("ANGLE (NVIDIA GeForce RTX 3060)")
        assert fp.webgl_vendor == "Google Inc. (NVIDIA)"
        assert fp.platform == "Win32"
        assert fp.timezone_offset == -60
        assert (fp.screen_width, fp.screen_height, fp.color_depth) == (1920, 1080, 24)
        assert fp.pixel_ratio == 1.0
        assert fp.hardware_concurrency == 8
        assert fp.device_memory == 8.0
        assert fp.fonts == ["Arial", "Calibri", "Segoe UI"]
        assert fp.plugins == ["PDF Viewer", "Chrome PDF Viewer"]
        assert fp.ip_address == "203.0.113.10"

    def test_hashes_are_not_raw_values(self, device_payload):
        fp = fingerprint_from_payload(device_payload)
        assert "iVBORw0KGgo" not in fp.canvas_hash
        assert len(fp.canvas_hash) == 64

    def test_minimal_payload(self):
        fp = fingerprint_from_payload({"platform": "Linux x86_64"})
        assert fp.platform == "Linux x86_64"
        assert fp.canvas_hash is None
        assert fp.screen_width is None
        assert fp.fonts == []
        assert fp.plugins == []

    def test_sentinel_readings_become_missing(self):
        fp = fingerprint_from_payload({
            "canvas": {"hash": "unavailable"},
            "audio": {"hash": "error"},
        })
        assert fp.canvas_hash is None
        assert fp.audio_hash is None

    def test_malformed_sections_are_ignored(self):
        fp = fingerprint_from_payload({
            "screen": "1920x1080",
            "hardware": {"hardwareConcurrency": "lots", "deviceMemory": True},
            "browser": {"plugins": ["bare string", {"name": ""}, {"name": "Flash"}]},
        })
        assert fp.screen_width is None
        assert fp.hardware_concurrency is None
        assert fp.device_memory is None
        assert fp.plugins == ["Flash"]
