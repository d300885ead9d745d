"""
Field value variants and snapshot validation - malformed state is rejected before any write.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from clinfeedback.core.schema import FieldValue, MatchRule, map_field_value, merge_field_values
from clinfeedback.core.snapshot import (
    FeedbackSnapshot, PatternPayload, SnapshotValidationError, validate_payload
)


def pattern_payload(**overrides):
    data = {
        "id": "p1",
        "field_path": "pathology.location",
        "match_rule": {"pattern": r"(?<!\w)left\ MCA(?!\w)"},
        "confidence": 0.74,
    }
    data.update(overrides)
    return data


class TestFieldValue:
    """Tagged field values dispatch on their kind."""

    def test_of_detects_kind(self):
        """Test that raw values are tagged scalar, list or structured."""
        assert FieldValue.of("left MCA").kind == "scalar"
        assert FieldValue.of(["nimodipine", "levetiracetam"]).kind == "list"
        assert FieldValue.of({"grade": 3}).kind == "structured"

    def test_render_text(self):
        """Test flattening of list and mapping values to comparison text."""
        assert FieldValue.of(["a", "b"]).as_text() == "a; b"
        assert FieldValue.of({"side": "left", "grade": 3}).as_text() == "grade: 3; side: left"
        assert FieldValue.of(None).is_empty()

    def test_map_keeps_shape(self):
        """Test that mapping string leaves preserves the value's shape."""
        mapped = map_field_value(FieldValue.of({"site": ["left MCA"], "grade": 3}), str.upper)
        assert mapped == FieldValue("structured", {"site": ["LEFT MCA"], "grade": 3})

    def test_merge_lists_and_mappings(self):
        """Test merging of list items and mapping keys."""
        merged = merge_field_values(FieldValue.of(["a", "b"]), FieldValue.of(["b", "c"]))
        assert merged.value == ["a", "b", "c"]

        merged = merge_field_values(FieldValue.of({"grade": 2}), FieldValue.of({"side": "left"}))
        assert merged.value == {"grade": 2, "side": "left"}

    def test_merge_kind_change_takes_incoming(self):
        """Test that a change of kind takes the incoming value."""
        assert merge_field_values(FieldValue.of("a"), FieldValue.of(["b"])) == FieldValue.of(["b"])

    def test_unknown_kind_rejected(self):
        """Test that an unknown value kind is rejected."""
        with pytest.raises(ValueError):
            FieldValue.from_dict({"kind": "blob", "value": 1})


class TestMatchRule:

    def test_round_trip_keeps_replacement(self):
        """Test that a rule keeps its replacement through serialization."""
        rule = MatchRule(pattern="left MCA", replacement=FieldValue.of("left MCA"), context_terms=["cta"])
        assert MatchRule.from_dict(rule.to_dict()) == rule

    def test_matching_is_case_insensitive(self):
        """Test case-insensitive rule matching."""
        assert MatchRule(pattern="left MCA").extract("CTA: LEFT mca aneurysm") == "LEFT mca"
        assert MatchRule(pattern="left MCA").extract("") is None


class TestPatternPayload:

    def test_valid_pattern_passes(self):
        """Test that a well-formed pattern validates with defaults filled in."""
        payload = PatternPayload.model_validate(pattern_payload())
        assert payload.enabled is True
        assert payload.match_rule.rule_type == "regex"

    def test_uncompilable_rule_rejected(self):
        """Test that a rule that does not compile is rejected."""
        with pytest.raises(PydanticValidationError) as exc_info:
            PatternPayload.model_validate(pattern_payload(match_rule={"pattern": "left ("}))
        assert "pattern does not compile" in str(exc_info.value)

    def test_successes_cannot_exceed_applications(self):
        """Test that success counts above application counts are rejected."""
        with pytest.raises(PydanticValidationError) as exc_info:
            PatternPayload.model_validate(pattern_payload(success_count=3, application_count=2))
        assert "success_count cannot exceed application_count" in str(exc_info.value)

    @pytest.mark.parametrize("confidence", [-0.1, 1.5])
    def test_confidence_range(self, confidence):
        """Test that confidence outside [0, 1] is rejected."""
        with pytest.raises(PydanticValidationError):
            PatternPayload.model_validate(pattern_payload(confidence=confidence))


class TestFeedbackSnapshot:

    def test_flat_patterns_become_learning_section(self):
        """Test that a bare patterns list is read as the learning section."""
        snapshot = FeedbackSnapshot.model_validate({"patterns": [pattern_payload()]})
        assert snapshot.learning.patterns[0].id == "p1"
        assert snapshot.corrections is None

    def test_requires_learning_or_corrections(self):
        """Test that a snapshot without learning or corrections is rejected."""
        with pytest.raises(PydanticValidationError) as exc_info:
            FeedbackSnapshot.model_validate({"version": "1", "field_applications": {"x": 1}})
        assert "learning section or a corrections section" in str(exc_info.value)

    def test_unknown_collection_rejected(self):
        """Test that unknown vector collections are rejected."""
        with pytest.raises(PydanticValidationError) as exc_info:
            FeedbackSnapshot.model_validate({"corrections": [], "vector_collections": {"chat": {}}})
        assert "unknown collections" in str(exc_info.value)

    def test_validate_payload_wraps_errors(self):
        """Test that validation errors surface as SnapshotValidationError."""
        with pytest.raises(SnapshotValidationError, match="import.snapshot"):
            validate_payload(FeedbackSnapshot, {"version": "1"}, "import.snapshot")

    def test_list_value_must_be_list(self):
        """Test that a list-kind value must hold a list."""
        correction = {
            "id": "c1", "field_path": "medications",
            "before": {"kind": "list", "value": "nimodipine"},
            "after": {"kind": "list", "value": ["nimodipine"]},
            "created_at": "2024-03-01T00:00:00+00:00",
        }
        with pytest.raises(PydanticValidationError) as exc_info:
            FeedbackSnapshot.model_validate({"corrections": [correction]})
        assert "list field value must be a list" in str(exc_info.value)
