"""
Structured logging for the feedback loop.
Raw clinical values never reach a log line; only identifiers, counts and tags.
"""

import logging
from typing import Any, Dict, List

# Keys that may carry clinical free text and are redacted before logging
SENSITIVE_FIELDS = [
    'before', 'after', 'before_value', 'after_value', 'text', 'context',
    'source_context', 'value', 'content', 'query', 'replacement',
]


class StructuredLogger:
    """Structured logger for corrections, learning, vector and import operations."""

    def __init__(self, name: str = "clinfeedback"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {sanitize_payload(details)}"

        if status in ("failed", "error"):
            self.logger.error(message)
        elif status in ("rejected", "degraded", "skipped"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_correction_tracked(self, correction_id: str, field_path: str, transformation_type: str,
                               items_anonymized: int = 0, status: str = "success"):
        """Log an appended correction record."""
        details = {
            "correction_id": correction_id,
            "field_path": field_path,
            "transformation_type": transformation_type,
            "items_anonymized": items_anonymized,
        }
        self.log_operation("correction.tracked", status, details)

    def log_pattern_event(self, event: str, pattern_id: str, field_path: str, details: Dict[str, Any] = None):
        """Log pattern minting, reinforcement, feedback and retirement."""
        log_details = {"pattern_id": pattern_id, "field_path": field_path}
        if details:
            log_details.update(details)

        self.log_operation(f"pattern.{event}", "success", log_details)

    def log_vector_operation(self, operation: str, record_id: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector operation."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(details)

        self.log_operation(f"vector.{operation}", status, log_details)

    def log_anonymization(self, stats: Dict[str, Any]):
        """Log anonymization counts (never the text itself)."""
        status = "degraded" if stats.get("degraded") else "success"
        self.log_operation("anonymizer.run", status, stats)

    def log_import(self, kind: str, counts: Dict[str, Any], status: str = "success"):
        """Log an import or export of persisted state."""
        self.log_operation(f"import.{kind}", status, counts)

    def log_validation_error(self, operation: str, errors: List[Any]):
        """Log validation errors with sanitized details."""
        # Error payloads may echo offending input back, keep location and type only
        sanitized_errors = []
        for error in errors:
            if isinstance(error, dict):
                sanitized_errors.append({
                    "loc": error.get("loc"),
                    "type": error.get("type"),
                    "msg": str(error.get("msg", ""))[:100],
                })
            else:
                sanitized_errors.append(str(error)[:100])

        log_details = {
            "operation": operation,
            "errors": sanitized_errors,
            "error_count": len(sanitized_errors)
        }
        self.log_operation("validation.error", "rejected", log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with privacy controls."""
    from ..core.config import PRIVACY_AUDIT_LEVEL

    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    # minimal: identifiers only; verbose: also list which keys were redacted
    if payload and PRIVACY_AUDIT_LEVEL != "minimal":
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)
        if PRIVACY_AUDIT_LEVEL == "verbose":
            log_details["redacted_keys"] = sorted(k for k in payload if k in sensitive_fields)

    if event_type.startswith("privacy"):
        operation = "privacy"
    elif event_type.startswith("import") or event_type.startswith("export"):
        operation = "snapshot"
    else:
        operation = event_type.replace(".", "_")

    logger.log_operation(operation, "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, (list, tuple)):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
