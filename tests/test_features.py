"""
Feature extraction for corrections and discharge summaries.
"""

import pytest

from clinfeedback.core.features import (
    classify_transformation, detect_certainty, detect_content_patterns, extract_features,
    extract_summary_features, extraction_difficulty,
)


@pytest.mark.parametrize("before,after,expected", [
    ("SAH", "sah", "case_change"),
    ("SAH", "subarachnoid hemorrhage (SAH)", "abbreviation_expansion"),
    ("Hunt Hess grade", "Hunt Hess grade 3", "number_extraction"),
    ("03/15/2024", "March 15", "date_formatting"),
    ("aneurysm ruptured left MCA", "left MCA aneurysm ruptured", "minor_correction"),
    ("left side", "left MCA", "partial_correction"),
    ("frontal", "occipital", "complete_replacement"),
])
def test_classify_transformation(before, after, expected):
    """Test transformation classification."""
    assert classify_transformation(before, after) == expected


class TestDifficulty:

    def test_missing_context_is_neutral(self):
        """Test that missing context gives neutral difficulty."""
        assert extraction_difficulty(None) == 0.5
        assert extraction_difficulty("") == 0.5

    def test_short_context_is_easy(self):
        """Test that short context is easy."""
        assert extraction_difficulty("left MCA aneurysm") == 0.3

    def test_long_dense_context_is_harder(self):
        """Test that long, dense context is harder."""
        context = (
            "SAH from ruptured aneurysm with hydrocephalus and vasospasm. "
            "Craniotomy and clipping, EVD placed, later shunt. Edema and seizure noted. "
            "CTA MRI DSA ICU GCS reviewed. "
        ) * 12
        difficulty = extraction_difficulty(context)
        assert difficulty > 0.5
        assert difficulty <= 1.0


def test_content_patterns():
    """Test content pattern detection."""
    patterns = detect_content_patterns("Hunt Hess grade 3, 5 mm aneurysm on 03/15/2024")
    assert {"number", "date", "grade", "measurement"} <= set(patterns)
    assert detect_content_patterns(None) == []


def test_certainty_levels():
    """Test certainty marker detection."""
    certainty = detect_certainty("Findings consistent with vasospasm; cannot rule out infarct.")
    assert certainty["high"] == ["consistent with"]
    assert certainty["low"] == ["cannot rule out"]
    assert certainty["medium"] == []


class TestExtractFeatures:

    def test_correction_features(self):
        """Test features of a correction."""
        bag = extract_features(
            "left side", "left MCA",
            "Patient presented with headache and underwent clipping. Diagnosis confirmed on angiogram."
        )
        assert bag.added_tokens == ["mca"]
        assert bag.removed_tokens == ["side"]
        assert bag.length_delta == -1
        assert bag.has_abbreviation is True
        assert bag.transformation_type == "partial_correction"
        assert {"presentation", "procedure"} <= set(bag.context_sections)
        assert "diagnosis" in bag.context_keywords
        assert "confirmed" in bag.certainty["high"]

    def test_pattern_change(self):
        """Test content pattern changes between values."""
        bag = extract_features("aneurysm", "5 mm aneurysm")
        assert set(bag.pattern_change["added"]) == {"number", "measurement"}
        assert bag.pattern_change["removed"] == []
        assert bag.has_numbers is True

    def test_missing_values_and_context(self):
        """Test features with missing values and context."""
        bag = extract_features(None, "left MCA")
        assert bag.before_length == 0
        assert bag.context_sections == []
        assert bag.extraction_difficulty == 0.5


def test_summary_features():
    """Test summary shape features."""
    features = extract_summary_features("Patient admitted with SAH. Underwent clipping. Discharged home.")
    assert features["word_count"] == 8
    assert features["sentence_count"] == 3
    assert {"presentation", "procedure", "discharge"} <= set(features["sections"])
    assert features["abbreviations"] == ["SAH"]

    empty = extract_summary_features("")
    assert empty["word_count"] == 0
    assert empty["extraction_difficulty"] == 0.5
