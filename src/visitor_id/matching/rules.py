"""
Device change classification rules.

Rules are evaluated in list order and the first whose predicate holds
decides the classification. The final rule always matches.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from ..identity.models import ChangeCategory, ChangeType, DeviceFingerprint
from .browser import is_browser_update

Predicate = Callable[[DeviceFingerprint, DeviceFingerprint], bool]


@dataclass(frozen=True)
class ClassificationRule:
    """A (predicate, classification) pair in the change cascade."""
    name: str
    predicate: Predicate
    change_type: ChangeType
    category: ChangeCategory

    def evaluate(self, previous: DeviceFingerprint, current: DeviceFingerprint) -> bool:
        return self.predicate(previous, current)


def _differs(*attrs: str) -> Predicate:
    def predicate(previous: DeviceFingerprint, current: DeviceFingerprint) -> bool:
        return any(getattr(previous, a) != getattr(current, a) for a in attrs)
    return predicate


def _browser_updated(previous: DeviceFingerprint, current: DeviceFingerprint) -> bool:
    return is_browser_update(previous.user_agent, current.user_agent)


CLASSIFICATION_RULES: list[ClassificationRule] = [
    ClassificationRule(
        "platform", _differs("platform"),
        ChangeType.MAJOR, ChangeCategory.OS_CHANGE,
    ),
    ClassificationRule(
        "hardware", _differs("hardware_concurrency", "device_memory"),
        ChangeType.MAJOR, ChangeCategory.HARDWARE_CHANGE,
    ),
    ClassificationRule(
        "screen", _differs("screen_width", "screen_height"),
        ChangeType.MINOR, ChangeCategory.SCREEN_CHANGE,
    ),
    ClassificationRule(
        "browser", _browser_updated,
        ChangeType.MINOR, ChangeCategory.BROWSER_UPDATE,
    ),
    ClassificationRule(
        "ip", _differs("ip_address"),
        ChangeType.MINOR, ChangeCategory.IP_CHANGE,
    ),
    ClassificationRule(
        "environment", lambda previous, current: True,
        ChangeType.MINOR, ChangeCategory.ENVIRONMENTAL_CHANGE,
    ),
]


def first_matching_rule(
    previous: DeviceFingerprint,
    current: DeviceFingerprint,
    rules: list[ClassificationRule] | None = None,
) -> ClassificationRule:
    for rule in rules or CLASSIFICATION_RULES:
        if rule.evaluate(previous, current):
            return rule
    # Custom rule lists without a catch-all still classify something.
    return CLASSIFICATION_RULES[-1]
