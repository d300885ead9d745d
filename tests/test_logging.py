"""
Structured logging and privacy-controlled audit events.
"""

import logging

import pytest
from unittest.mock import patch

from clinfeedback.util.logging import StructuredLogger, audit_event, logger, sanitize_payload


class TestSanitizePayload:

    def test_sensitive_keys_redacted(self):
        """Test that sensitive keys are redacted."""
        sanitized = sanitize_payload({
            "field_path": "pathology.location",
            "before": "left side",
            "after": "left MCA",
            "source_context": "Patient John Smith",
        })
        assert sanitized == {
            "field_path": "pathology.location",
            "before": "[REDACTED]",
            "after": "[REDACTED]",
            "source_context": "[REDACTED]",
        }

    def test_nested_structures(self):
        """Test redaction inside nested structures."""
        sanitized = sanitize_payload({"items": [{"text": "secret", "id": "n1"}], "count": 2})
        assert sanitized == {"items": [{"text": "[REDACTED]", "id": "n1"}], "count": 2}

    def test_long_strings_truncated(self):
        """Test that long strings are truncated."""
        assert sanitize_payload("x" * 150) == "x" * 100 + "..."

    def test_reveal_sensitive(self):
        """Test that sensitive values can be revealed."""
        assert sanitize_payload({"text": "shown"}, reveal_sensitive=True) == {"text": "shown"}


class TestStructuredLogger:

    @pytest.mark.parametrize("status,level", [
        ("success", logging.INFO),
        ("audit", logging.INFO),
        ("degraded", logging.WARNING),
        ("rejected", logging.WARNING),
        ("failed", logging.ERROR),
    ])
    def test_status_levels(self, caplog, status, level):
        """Test log levels by status."""
        with caplog.at_level(logging.INFO, logger="clinfeedback"):
            logger.log_operation("learning.test", status, {"pattern_id": "p1"})
        assert caplog.records[-1].levelno == level
        assert "Operation: learning.test" in caplog.records[-1].getMessage()

    def test_clinical_values_never_logged(self, caplog):
        """Test that clinical values are never logged."""
        with caplog.at_level(logging.INFO, logger="clinfeedback"):
            logger.log_operation("correction.tracked", "success", {"after": "left MCA", "field_path": "x"})
        assert "left MCA" not in caplog.text

    def test_validation_errors_keep_location_only(self, caplog):
        """Test that validation errors keep location and type only."""
        errors = [{"loc": ("corrections", 0, "confidence_before"), "type": "less_than_equal",
                   "msg": "Input should be less than or equal to 1", "input": "Patient John Smith"}]
        with caplog.at_level(logging.WARNING, logger="clinfeedback"):
            logger.log_validation_error("import.corrections", errors)
        assert "John Smith" not in caplog.text
        assert "less_than_equal" in caplog.text

    def test_single_handler_per_name(self):
        """Test that each logger name gets a single handler."""
        first = StructuredLogger("clinfeedback.test_handlers")
        second = StructuredLogger("clinfeedback.test_handlers")
        assert first.logger is second.logger
        assert len(second.logger.handlers) == 1


class TestAuditEvent:

    @patch('clinfeedback.core.config.PRIVACY_AUDIT_LEVEL', "standard")
    def test_standard_includes_sanitized_payload(self):
        """Test that standard audits include the sanitized payload."""
        with patch.object(logger, "log_operation") as mock_log:
            audit_event("privacy.residual_phi", {"field_path": "x"}, {"context": "raw", "types": ["names"]})

        mock_log.assert_called_once_with("privacy", "audit", {
            "field_path": "x", "payload": {"context": "[REDACTED]", "types": ["names"]},
        })

    @patch('clinfeedback.core.config.PRIVACY_AUDIT_LEVEL', "minimal")
    def test_minimal_omits_payload(self):
        """Test that minimal audits omit the payload."""
        with patch.object(logger, "log_operation") as mock_log:
            audit_event("export.snapshot", {"patterns": 1}, {"text": "raw"})

        mock_log.assert_called_once_with("snapshot", "audit", {"patterns": 1})

    @patch('clinfeedback.core.config.PRIVACY_AUDIT_LEVEL', "verbose")
    def test_verbose_lists_redacted_keys(self):
        """Test that verbose audits list redacted keys."""
        with patch.object(logger, "log_operation") as mock_log:
            audit_event("import.snapshot", {}, {"text": "raw", "after": "raw", "count": 1})

        details = mock_log.call_args[0][2]
        assert details["redacted_keys"] == ["after", "text"]
        assert details["payload"]["count"] == 1

    def test_other_events_use_their_name(self):
        """Test operation names for other events."""
        with patch.object(logger, "log_operation") as mock_log:
            audit_event("learning.cleared", {"removed": 2})
        assert mock_log.call_args[0][0] == "learning_cleared"
