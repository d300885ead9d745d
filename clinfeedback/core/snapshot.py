"""
Validation models for exported and imported state.
Every import is checked against these models before anything is written.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ..util.logging import logger

COLLECTION_NAMES = ("notes", "patterns", "entities", "summaries")
CORRECTION_TYPES = ("addition", "deletion", "minor_edit", "modification", "replacement")

Model = TypeVar("Model", bound=BaseModel)


class SnapshotValidationError(ValueError):
    """Raised when imported state does not have the expected shape."""


class FieldValuePayload(BaseModel):
    kind: Literal["scalar", "list", "structured"] = "scalar"
    value: Any = None

    @model_validator(mode="after")
    def value_matches_kind(self):
        if self.kind == "list" and not isinstance(self.value, list):
            raise ValueError("list field value must be a list")
        if self.kind == "structured" and not isinstance(self.value, dict):
            raise ValueError("structured field value must be a mapping")
        return self


class MatchRulePayload(BaseModel):
    pattern: str
    rule_type: str = "regex"
    replacement: Optional[FieldValuePayload] = None
    source_values: List[str] = Field(default_factory=list)
    context_terms: List[str] = Field(default_factory=list)
    signature: str = ""
    transformation_type: str = ""

    @field_validator('pattern')
    @classmethod
    def pattern_must_compile(cls, v):
        if not v.strip():
            raise ValueError('pattern cannot be empty')
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f'pattern does not compile: {e}')
        return v


class PatternPayload(BaseModel):
    id: str
    field_path: str
    pathology: Optional[str] = None
    match_rule: MatchRulePayload
    confidence: float = Field(ge=0.0, le=1.0)
    success_count: int = Field(default=0, ge=0)
    application_count: int = Field(default=0, ge=0)
    enabled: bool = True
    origin_correction_ids: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    last_applied_at: Optional[datetime] = None

    @field_validator('id', 'field_path')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('value cannot be empty')
        return v

    @model_validator(mode="after")
    def successes_within_applications(self):
        if self.success_count > self.application_count:
            raise ValueError('success_count cannot exceed application_count')
        return self


class LearningSnapshot(BaseModel):
    version: Optional[str] = None
    exported_at: Optional[datetime] = None
    patterns: List[PatternPayload] = Field(default_factory=list)


class CorrectionPayload(BaseModel):
    id: str
    field_path: str
    before: FieldValuePayload
    after: FieldValuePayload
    source_context: Optional[str] = None
    pathology: str = "unknown"
    extraction_method: str = "unknown"
    confidence_before: float = Field(default=0.0, ge=0.0, le=1.0)
    created_at: datetime
    correction_type: Literal[CORRECTION_TYPES] = "modification"
    features: Dict[str, Any] = Field(default_factory=dict)
    diff: Dict[str, Any] = Field(default_factory=dict)
    anonymization: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('id', 'field_path')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('value cannot be empty')
        return v


class CorrectionsSnapshot(BaseModel):
    version: Optional[str] = None
    exported_at: Optional[datetime] = None
    corrections: List[CorrectionPayload] = Field(default_factory=list)
    field_applications: Dict[str, int] = Field(default_factory=dict)


class DocumentPayload(BaseModel):
    id: Optional[str] = None
    text: str
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    domain_key: Optional[str] = None
    timestamp: Optional[datetime] = None

    @field_validator('text')
    @classmethod
    def text_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('text cannot be empty')
        return v


class CollectionSnapshot(BaseModel):
    collection: Optional[str] = None
    exported_at: Optional[datetime] = None
    model: Optional[str] = None
    dimension: Optional[int] = None
    document_count: Optional[int] = None
    documents: List[DocumentPayload] = Field(default_factory=list)


class MetricsSnapshotPayload(BaseModel):
    id: str
    accuracy: float = Field(ge=0.0, le=1.0)
    timestamp: datetime
    partial_accuracy: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1: float = 0.0
    per_field_results: Dict[str, Any] = Field(default_factory=dict)
    source: str = "extraction"


class PatternOutcomePayload(BaseModel):
    pattern_id: str
    success: bool
    timestamp: datetime


class MetricsExport(BaseModel):
    version: Optional[str] = None
    exported_at: Optional[datetime] = None
    snapshots: List[MetricsSnapshotPayload] = Field(default_factory=list)
    pattern_outcomes: List[PatternOutcomePayload] = Field(default_factory=list)


class FeedbackSnapshot(BaseModel):
    """Whole-system snapshot exchanged with a host import/export feature."""
    version: Optional[str] = None
    exported_at: Optional[datetime] = None
    learning: Optional[LearningSnapshot] = None
    corrections: Optional[List[CorrectionPayload]] = None
    field_applications: Dict[str, int] = Field(default_factory=dict)
    vector_collections: Dict[str, CollectionSnapshot] = Field(default_factory=dict)
    metrics: Optional[MetricsExport] = None

    @model_validator(mode="before")
    @classmethod
    def accept_flat_patterns(cls, data):
        # {"patterns": [...]} at top level is the learning section without its wrapper
        if isinstance(data, dict) and "patterns" in data and "learning" not in data:
            data = dict(data)
            data["learning"] = {"patterns": data.pop("patterns")}
        return data

    @field_validator('vector_collections')
    @classmethod
    def collections_must_be_known(cls, v):
        unknown = [name for name in v if name not in COLLECTION_NAMES]
        if unknown:
            raise ValueError(f'unknown collections: {unknown}')
        return v

    @model_validator(mode="after")
    def requires_learning_or_corrections(self):
        if self.learning is None and self.corrections is None:
            raise ValueError('snapshot needs a learning section or a corrections section')
        return self


def validate_payload(model: Type[Model], data: Any, operation: str) -> Model:
    """Validate ``data`` against ``model``, logging sanitized errors on failure."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.log_validation_error(operation, e.errors())
        raise SnapshotValidationError(f"{operation}: {e.error_count()} validation errors") from e
