"""Identity, device profile and audit record models."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ChangeType(str, Enum):
    NEW_DEVICE = "new_device"
    MINOR = "minor"
    MAJOR = "major"
    RESET = "reset"


class ChangeCategory(str, Enum):
    INITIAL_REGISTRATION = "initial_registration"
    OS_CHANGE = "os_change"
    HARDWARE_CHANGE = "hardware_change"
    SCREEN_CHANGE = "screen_change"
    BROWSER_UPDATE = "browser_update"
    IP_CHANGE = "ip_change"
    ENVIRONMENTAL_CHANGE = "environmental_change"
    DEVICE_RESET = "device_reset"


class MatchStatus(str, Enum):
    RECOGNIZED = "recognized"
    RECOVERED = "recovered"
    NEW = "new"
    FAILED = "failed"


class MatchMethod(str, Enum):
    TOKEN_DIRECT = "token_direct"
    FINGERPRINT_MATCH = "fingerprint_match"
    NEW_USER = "new_user"


def new_identity_id() -> str:
    return f"usr_{uuid.uuid4().hex[:12]}"


def new_session_id() -> str:
    return f"ses_{uuid.uuid4().hex[:12]}"


@dataclass
class DeviceFingerprint:
    """
    One observed browser/device configuration.

    Every attribute is optional; None means the collector did not
    report it. Hash fields already hold one-way digests.
    """
    canvas_hash: str | None = None
    audio_hash: str | None = None
    webgl_hash: str | None = None
    user_agent: str | None = None
    platform: str | None = None
    language: str | None = None
    timezone: str | None = None
    timezone_offset: int | None = None
    screen_width: int | None = None
    screen_height: int | None = None
    color_depth: int | None = None
    pixel_ratio: float | None = None
    hardware_concurrency: int | None = None
    device_memory: float | None = None
    fonts: list[str] = field(default_factory=list)
    plugins: list[str] = field(default_factory=list)
    ip_address: str | None = None
    country: str | None = None
    city: str | None = None
    webgl_vendor: str | None = None
    webgl_renderer: str | None = None

    def fingerprint_dict(self) -> dict[str, Any]:
        """Fingerprint attributes only, without any profile bookkeeping."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(DeviceFingerprint)
        }

    def to_fingerprint(self) -> DeviceFingerprint:
        data = self.fingerprint_dict()
        data["fonts"] = list(data["fonts"] or [])
        data["plugins"] = list(data["plugins"] or [])
        return DeviceFingerprint(**data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeviceFingerprint:
        names = {f.name for f in fields(DeviceFingerprint)}
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class Identity:
    """A recognized visitor."""
    identity_id: str = field(default_factory=new_identity_id)
    created_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    total_sessions: int = 1
    total_devices: int = 1
    active: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "created_at": self.created_at,
            "last_seen": self.last_seen,
            "total_sessions": self.total_sessions,
            "total_devices": self.total_devices,
            "active": self.active,
            "metadata": self.metadata,
        }


@dataclass
class DeviceProfile(DeviceFingerprint):
    """A fingerprint snapshot bound to one identity and one session."""
    identity_id: str = ""
    client_token: str = ""
    session_id: str = field(default_factory=new_session_id)
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    is_current: bool = True
    visit_count: int = 1
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_fingerprint(
        cls,
        fingerprint: DeviceFingerprint,
        identity_id: str,
        client_token: str,
        seen_at: float | None = None,
        raw: dict[str, Any] | None = None,
    ) -> DeviceProfile:
        seen = seen_at if seen_at is not None else time.time()
        base = fingerprint.to_fingerprint().fingerprint_dict()
        return cls(
            identity_id=identity_id,
            client_token=client_token,
            first_seen=seen,
            last_seen=seen,
            raw=dict(raw or {}),
            **base,
        )

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "identity_id": self.identity_id,
            "platform": self.platform,
            "user_agent": self.user_agent,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "is_current": self.is_current,
            "visit_count": self.visit_count,
        }


@dataclass
class ChangeEvent:
    """Append-only record of one transition between device profiles."""
    identity_id: str
    session_id: str
    change_type: ChangeType
    change_category: ChangeCategory
    previous_session_id: str | None = None
    changed_fields: list[str] = field(default_factory=list)
    confidence: float = 1.0
    method: str = ""
    summary: str = ""
    previous_values: dict[str, Any] = field(default_factory=dict)
    new_values: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    detected_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "identity_id": self.identity_id,
            "session_id": self.session_id,
            "previous_session_id": self.previous_session_id,
            "change_type": self.change_type.value,
            "change_category": self.change_category.value,
            "changed_fields": self.changed_fields,
            "confidence": self.confidence,
            "method": self.method,
            "summary": self.summary,
            "previous_values": self.previous_values,
            "new_values": self.new_values,
            "detected_at": self.detected_at,
        }


@dataclass
class MatchLog:
    """Audit entry for one resolution attempt, successful or not."""
    client_token: str
    status: MatchStatus
    identity_id: str | None = None
    method: MatchMethod | None = None
    confidence: float = 0.0
    processing_ms: float = 0.0
    candidates_evaluated: int = 0
    canvas_hash: str | None = None
    audio_hash: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    log_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempted_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "log_id": self.log_id,
            "client_token": self.client_token,
            "identity_id": self.identity_id,
            "status": self.status.value,
            "method": self.method.value if self.method else None,
            "confidence": self.confidence,
            "processing_ms": self.processing_ms,
            "candidates_evaluated": self.candidates_evaluated,
            "attempted_at": self.attempted_at,
        }


@dataclass
class ResolutionResult:
    """Outcome of IdentityResolver.identify()."""
    identity_id: str
    session_id: str
    status: MatchStatus
    confidence: float
    device_changed: bool = False
    change_type: ChangeType | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "user_id": self.identity_id,
            "session_id": self.session_id,
            "status": self.status.value,
            "confidence": self.confidence,
            "is_device_changed": self.device_changed,
        }
        if self.change_type is not None:
            data["change_type"] = self.change_type.value
        return data
