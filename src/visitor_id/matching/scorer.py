"""
Weighted device similarity scoring.

Compares two fingerprints across canvas, audio, hardware, screen and
font dimensions, picks the best candidate for a recovery lookup, and
classifies what changed between two snapshots of the same device.
Everything here is a pure function of its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence, TypeVar

from ..config import MatcherConfig
from ..identity.models import ChangeCategory, ChangeType, DeviceFingerprint
from .rules import ClassificationRule, first_matching_rule

# Scalar attributes compared by detect_changes(), in reporting order.
TRACKED_FIELDS: tuple[str, ...] = (
    "user_agent",
    "platform",
    "language",
    "timezone",
    "screen_width",
    "screen_height",
    "color_depth",
    "pixel_ratio",
    "hardware_concurrency",
    "device_memory",
    "canvas_hash",
    "audio_hash",
    "webgl_hash",
    "ip_address",
    "country",
    "city",
)
LIST_FIELDS: tuple[str, ...] = ("fonts", "plugins")

PIXEL_RATIO_TOLERANCE = 0.1

F = TypeVar("F", bound=DeviceFingerprint)


@dataclass
class Similarity:
    """Composite similarity with the weighted per-dimension breakdown."""
    total_score: float
    breakdown: dict[str, float] = field(default_factory=dict)
    is_match: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_score": self.total_score,
            "breakdown": self.breakdown,
            "is_match": self.is_match,
        }


@dataclass
class BestMatch:
    candidate: DeviceFingerprint
    similarity: Similarity


@dataclass
class Classification:
    change_type: ChangeType
    category: ChangeCategory
    confidence: float


class SimilarityScorer:
    """
    Scores device fingerprints against each other.

    Missing attributes never raise; they simply contribute nothing to
    the score.
    """

    def __init__(
        self,
        config: MatcherConfig | None = None,
        rules: list[ClassificationRule] | None = None,
    ):
        self.config = config or MatcherConfig()
        self.rules = rules

    @property
    def threshold(self) -> float:
        return self.config.match_threshold

    def calculate_similarity(self, a: DeviceFingerprint, b: DeviceFingerprint) -> Similarity:
        """Weighted similarity of two fingerprints."""
        raw = {
            "canvas": _compare_exact(a.canvas_hash, b.canvas_hash),
            "audio": _compare_exact(a.audio_hash, b.audio_hash),
            "hardware": _compare_hardware(a, b),
            "screen": _compare_screen(a, b),
            "fonts": _compare_fonts(a.fonts, b.fonts),
        }
        weights = self.config.weights
        breakdown = {k: round(raw[k] * weights[k], 4) for k in weights}

        total = sum(raw[k] * weights[k] for k in weights)
        total = round(max(0.0, min(1.0, total)), 4)

        return Similarity(
            total_score=total,
            breakdown=breakdown,
            is_match=total >= self.config.match_threshold,
        )

    def find_best_match(
        self, target: DeviceFingerprint, candidates: Sequence[F] | None
    ) -> BestMatch | None:
        """
        Return the highest-scoring candidate if it clears the threshold.

        Ties keep the earliest candidate.
        """
        if not candidates:
            return None

        best: BestMatch | None = None
        best_score = 0.0
        for candidate in candidates:
            similarity = self.calculate_similarity(target, candidate)
            if similarity.total_score > best_score:
                best_score = similarity.total_score
                best = BestMatch(candidate=candidate, similarity=similarity)

        if best is not None and best.similarity.is_match:
            return best
        return None

    def classify_change(
        self, previous: DeviceFingerprint, current: DeviceFingerprint
    ) -> Classification:
        similarity = self.calculate_similarity(previous, current)
        rule = first_matching_rule(previous, current, self.rules)
        return Classification(
            change_type=rule.change_type,
            category=rule.category,
            confidence=similarity.total_score,
        )

    def detect_changes(
        self, previous: DeviceFingerprint, current: DeviceFingerprint
    ) -> list[str]:
        """Names of the tracked attributes that differ between snapshots."""
        changes = [
            name for name in TRACKED_FIELDS
            if getattr(previous, name) != getattr(current, name)
        ]
        for name in LIST_FIELDS:
            if list(getattr(previous, name) or []) != list(getattr(current, name) or []):
                changes.append(name)
        return changes


def diff_values(
    previous: DeviceFingerprint, current: DeviceFingerprint, changed: list[str]
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Old and new values of the changed attributes."""
    old_values = {}
    new_values = {}
    for name in changed:
        old_values[name] = getattr(previous, name, None)
        new_values[name] = getattr(current, name, None)
    return old_values, new_values


# --- Dimension comparisons (each returns a value in [0, 1]) ---

def _compare_exact(value1: str | None, value2: str | None) -> float:
    if value1 is None or value2 is None:
        return 0.0
    return 1.0 if value1 == value2 else 0.0


def _mean_of_present(pairs: list[tuple[Any, Any, bool]]) -> float:
    """Average the equality flags of the pairs where both sides are present."""
    compared = [equal for left, right, equal in pairs if left is not None and right is not None]
    if not compared:
        return 0.0
    return sum(1.0 for equal in compared if equal) / len(compared)


def _compare_hardware(a: DeviceFingerprint, b: DeviceFingerprint) -> float:
    return _mean_of_present([
        (a.hardware_concurrency, b.hardware_concurrency,
         a.hardware_concurrency == b.hardware_concurrency),
        (a.device_memory, b.device_memory, a.device_memory == b.device_memory),
    ])


def _compare_screen(a: DeviceFingerprint, b: DeviceFingerprint) -> float:
    ratio_equal = (
        a.pixel_ratio is not None and b.pixel_ratio is not None
        and abs(a.pixel_ratio - b.pixel_ratio) < PIXEL_RATIO_TOLERANCE
    )
    return _mean_of_present([
        (a.screen_width, b.screen_width, a.screen_width == b.screen_width),
        (a.screen_height, b.screen_height, a.screen_height == b.screen_height),
        (a.color_depth, b.color_depth, a.color_depth == b.color_depth),
        (a.pixel_ratio, b.pixel_ratio, ratio_equal),
    ])


def _compare_fonts(fonts1: list[str] | None, fonts2: list[str] | None) -> float:
    """Jaccard similarity of the two font sets."""
    if not fonts1 or not fonts2:
        return 0.0
    set1, set2 = set(fonts1), set(fonts2)
    return len(set1 & set2) / len(set1 | set2)
