"""Identity context for visitor-id."""

from .models import (
    ChangeCategory,
    ChangeEvent,
    ChangeType,
    DeviceFingerprint,
    DeviceProfile,
    Identity,
    MatchLog,
    MatchMethod,
    MatchStatus,
    ResolutionResult,
)

__all__ = [
    "ChangeCategory",
    "ChangeEvent",
    "ChangeType",
    "DeviceFingerprint",
    "DeviceProfile",
    "Identity",
    "MatchLog",
    "MatchMethod",
    "MatchStatus",
    "ResolutionResult",
]
