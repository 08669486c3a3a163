"""Device fingerprint similarity and change classification."""

from .scorer import SimilarityScorer, Similarity, BestMatch, Classification
from .rules import CLASSIFICATION_RULES, ClassificationRule
from .browser import extract_browser_info, is_browser_update

__all__ = [
    "SimilarityScorer",
    "Similarity",
    "BestMatch",
    "Classification",
    "CLASSIFICATION_RULES",
    "ClassificationRule",
    "extract_browser_info",
    "is_browser_update",
]
