"""
Confidence helpers shared by OCR and text-quality scoring.
All scores live in [0, 1].
"""

from statistics import mean
from typing import Iterable, List


_COMBINERS = {
    "mean": mean,
    "min": min,
    "max": max,
}

_LEVELS = (
    (0.95, "VERY_HIGH"),
    (0.85, "HIGH"),
    (0.70, "ACCEPTABLE"),
    (0.50, "LOW"),
)


def clamp_confidence(score: float) -> float:
    return max(0.0, min(1.0, score))


def combine_confidence_scores(scores: List[float], method: str = "mean") -> float:
    """
    Collapse several scores into one.

    Args:
        scores: Scores to combine; out-of-range values are clamped first
        method: "mean", "min" or "max"
    """
    if method not in _COMBINERS:
        raise ValueError(f"Unknown confidence combination method: {method}")
    if not scores:
        return 0.0
    return _COMBINERS[method]([clamp_confidence(s) for s in scores])


def word_confidences(raw: Iterable) -> List[float]:
    """Tesseract per-box confidences (0-100, -1 for non-word boxes) as [0, 1] scores."""
    return [float(value) / 100 for value in raw if float(value) > -1]


def penalize_confidence(base_confidence: float, penalty_factor: float = 0.9) -> float:
    """Multiply a score down, staying in range."""
    return clamp_confidence(base_confidence * penalty_factor)


def confidence_level_name(confidence: float) -> str:
    for threshold, name in _LEVELS:
        if confidence >= threshold:
            return name
    return "VERY_LOW"
