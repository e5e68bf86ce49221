"""
Tests for confidence scoring helpers used by OCR and text-quality checks.
"""

import pytest
from po_pipeline.utils.confidence import (
    clamp_confidence,
    combine_confidence_scores,
    penalize_confidence,
    confidence_level_name,
    word_confidences,
)


def test_word_confidences_drop_non_word_boxes():
    assert word_confidences(["-1", "96", 80, -1, "0"]) == [0.96, 0.8, 0.0]


def test_ocr_word_scores_average():
    scores = word_confidences([90, 70, -1, 80])
    assert combine_confidence_scores(scores) == pytest.approx(0.8)


@pytest.mark.parametrize("method,expected", [("min", 0.4), ("max", 0.95)])
def test_combine_extremes(method, expected):
    assert combine_confidence_scores([0.6, 0.4, 0.95], method=method) == expected


def test_combine_with_no_scores_is_zero():
    assert combine_confidence_scores([], method="min") == 0.0


def test_combine_rejects_unknown_method():
    with pytest.raises(ValueError):
        combine_confidence_scores([0.5], method="weighted_mean")


def test_out_of_range_scores_are_clamped_before_combining():
    assert clamp_confidence(-0.2) == 0.0
    assert clamp_confidence(3) == 1.0
    assert combine_confidence_scores([2.0, 0.0], method="mean") == pytest.approx(0.5)


def test_text_quality_penalties_compound():
    # Short text that is also garbled
    confidence = penalize_confidence(penalize_confidence(1.0, 0.5), 0.6)
    assert confidence == pytest.approx(0.3)
    assert confidence_level_name(confidence) == "VERY_LOW"


@pytest.mark.parametrize("score,level", [
    (1.0, "VERY_HIGH"),
    (0.95, "VERY_HIGH"),
    (0.85, "HIGH"),
    (0.7, "ACCEPTABLE"),
    (0.5, "LOW"),
    (0.49, "VERY_LOW"),
])
def test_confidence_level_boundaries(score, level):
    assert confidence_level_name(score) == level
