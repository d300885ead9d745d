"""
Domain records for the feedback loop.
Corrections, features, diffs, patterns and metrics snapshots, plus the tagged FieldValue variant.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so stored timestamps sort lexically."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_utc(value).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    return to_utc(datetime.fromisoformat(str(value)))


# Field values ----------------------------------------------------------------

SCALAR = "scalar"
LIST = "list"
STRUCTURED = "structured"
FIELD_VALUE_KINDS = (SCALAR, LIST, STRUCTURED)


@dataclass(frozen=True)
class FieldValue:
    """A corrected field value tagged with its shape.

    Extracted fields are plain scalars (``"left MCA"``), lists of items
    (medications, procedures) or structured mappings (``{"grade": 3}``).
    Every operation that touches a value dispatches on ``kind``.
    """

    kind: str
    value: Any

    @classmethod
    def of(cls, raw: Any) -> "FieldValue":
        if isinstance(raw, FieldValue):
            return raw
        if isinstance(raw, (list, tuple)):
            return cls(LIST, [FieldValue.of(item).value for item in raw])
        if isinstance(raw, dict):
            return cls(STRUCTURED, {str(k): FieldValue.of(v).value for k, v in raw.items()})
        return cls(SCALAR, raw)

    def is_empty(self) -> bool:
        return self.as_text().strip() == ""

    def as_text(self) -> str:
        return render_text(self)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldValue":
        kind = data.get("kind", SCALAR)
        if kind not in FIELD_VALUE_KINDS:
            raise ValueError(f"Unknown field value kind: {kind}")
        return cls(kind, data.get("value"))


def _scalar_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "; ".join(_scalar_text(item) for item in value)
    if isinstance(value, dict):
        return "; ".join(f"{k}: {_scalar_text(value[k])}" for k in sorted(value))
    return str(value)


def render_text(value: FieldValue) -> str:
    """Flatten a field value to the text used for similarity and diffing."""
    return _scalar_text(value.value)


def map_field_value(value: FieldValue, fn: Callable[[str], str]) -> FieldValue:
    """Apply ``fn`` to every string leaf of the value, keeping its shape."""
    def _walk(node):
        if isinstance(node, str):
            return fn(node)
        if isinstance(node, list):
            return [_walk(item) for item in node]
        if isinstance(node, dict):
            return {k: _walk(v) for k, v in node.items()}
        return node

    return FieldValue(value.kind, _walk(value.value))


def _merge_scalar(existing: FieldValue, incoming: FieldValue) -> FieldValue:
    return incoming


def _merge_list(existing: FieldValue, incoming: FieldValue) -> FieldValue:
    merged = list(existing.value)
    for item in incoming.value:
        if item not in merged:
            merged.append(item)
    return FieldValue(LIST, merged)


def _merge_structured(existing: FieldValue, incoming: FieldValue) -> FieldValue:
    merged = dict(existing.value)
    for key, item in incoming.value.items():
        if key in merged:
            merged[key] = merge_field_values(FieldValue.of(merged[key]), FieldValue.of(item)).value
        else:
            merged[key] = item
    return FieldValue(STRUCTURED, merged)


_MERGERS = {
    SCALAR: _merge_scalar,
    LIST: _merge_list,
    STRUCTURED: _merge_structured,
}


def merge_field_values(existing: Optional[FieldValue], incoming: Optional[FieldValue]) -> Optional[FieldValue]:
    """Merge two values of the same kind; a change of kind takes the incoming value."""
    if existing is None:
        return incoming
    if incoming is None:
        return existing
    if existing.kind != incoming.kind:
        return incoming
    return _MERGERS[existing.kind](existing, incoming)


# Corrections -----------------------------------------------------------------

@dataclass
class Correction:
    """A clinician's edit of one extracted field, as submitted by the host."""
    field_path: str
    before_value: Any
    after_value: Any
    source_context: Optional[str] = None
    pathology: Optional[str] = None
    extraction_method: str = "unknown"
    confidence_before: float = 0.0
    created_at: Optional[datetime] = None


@dataclass
class FeatureBag:
    before_length: int = 0
    after_length: int = 0
    length_delta: int = 0
    added_tokens: List[str] = field(default_factory=list)
    removed_tokens: List[str] = field(default_factory=list)
    patterns_before: List[str] = field(default_factory=list)
    patterns_after: List[str] = field(default_factory=list)
    pattern_change: Dict[str, List[str]] = field(default_factory=dict)
    context_sections: List[str] = field(default_factory=list)
    context_keywords: List[str] = field(default_factory=list)
    has_numbers: bool = False
    has_date: bool = False
    has_medical_term: bool = False
    has_abbreviation: bool = False
    transformation_type: str = "minor_correction"
    certainty: Dict[str, List[str]] = field(default_factory=dict)
    extraction_difficulty: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureBag":
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class DiffOp:
    """One step of a token-level edit script."""
    op: str  # unchanged|addition|deletion|modification
    before: Optional[str] = None
    after: Optional[str] = None


@dataclass
class DiffResult:
    ops: List[DiffOp] = field(default_factory=list)
    change_type: str = "minor"
    change_intensity: float = 0.0
    similarity: float = 1.0
    case_only: bool = False
    punctuation_only: bool = False
    numeric_only: bool = False
    additions: List[str] = field(default_factory=list)
    deletions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiffResult":
        data = dict(data or {})
        data["ops"] = [DiffOp(**op) for op in data.get("ops", [])]
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class CorrectionRecord:
    """Persisted, anonymized correction. Never mutated after append."""
    id: str
    field_path: str
    before: FieldValue
    after: FieldValue
    source_context: Optional[str]
    pathology: str
    extraction_method: str
    confidence_before: float
    created_at: datetime
    correction_type: str
    features: FeatureBag
    diff: DiffResult
    anonymization: Dict[str, Any] = field(default_factory=dict)

    def signature(self) -> str:
        """Text used to compare corrections with each other."""
        return f"{self.before.as_text()} => {self.after.as_text()}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "field_path": self.field_path,
            "before": self.before.to_dict(),
            "after": self.after.to_dict(),
            "source_context": self.source_context,
            "pathology": self.pathology,
            "extraction_method": self.extraction_method,
            "confidence_before": self.confidence_before,
            "created_at": format_timestamp(self.created_at),
            "correction_type": self.correction_type,
            "features": self.features.to_dict(),
            "diff": self.diff.to_dict(),
            "anonymization": dict(self.anonymization),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CorrectionRecord":
        return cls(
            id=data["id"],
            field_path=data["field_path"],
            before=FieldValue.from_dict(data.get("before") or {}),
            after=FieldValue.from_dict(data.get("after") or {}),
            source_context=data.get("source_context"),
            pathology=data.get("pathology") or "unknown",
            extraction_method=data.get("extraction_method") or "unknown",
            confidence_before=float(data.get("confidence_before") or 0.0),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            correction_type=data.get("correction_type") or "modification",
            features=FeatureBag.from_dict(data.get("features") or {}),
            diff=DiffResult.from_dict(data.get("diff") or {}),
            anonymization=dict(data.get("anonymization") or {}),
        )


# Patterns --------------------------------------------------------------------

@dataclass
class MatchRule:
    """Serializable rule that finds a learned value in source text."""
    pattern: str
    rule_type: str = "regex"
    replacement: Optional[FieldValue] = None
    source_values: List[str] = field(default_factory=list)
    context_terms: List[str] = field(default_factory=list)
    signature: str = ""
    transformation_type: str = ""

    def compile(self) -> "re.Pattern":
        """Compile the rule; raises ``re.error`` for malformed patterns."""
        return re.compile(self.pattern, re.IGNORECASE)

    def extract(self, text: str) -> Optional[str]:
        if not text:
            return None
        match = self.compile().search(text)
        return match.group(0) if match else None

    def matches(self, text: str) -> bool:
        return self.extract(text) is not None

    def find_source_value(self, text: str) -> Optional[str]:
        """First pre-correction value that occurs in ``text`` as whole words."""
        if not text:
            return None
        for value in self.source_values:
            tokens = value.split()
            if not tokens:
                continue
            body = r"\s+".join(re.escape(token) for token in tokens)
            match = re.search(rf"(?<!\w){body}(?!\w)", text, re.IGNORECASE)
            if match:
                return match.group(0)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern": self.pattern,
            "rule_type": self.rule_type,
            "replacement": self.replacement.to_dict() if self.replacement else None,
            "source_values": list(self.source_values),
            "context_terms": list(self.context_terms),
            "signature": self.signature,
            "transformation_type": self.transformation_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchRule":
        replacement = data.get("replacement")
        return cls(
            pattern=data["pattern"],
            rule_type=data.get("rule_type", "regex"),
            replacement=FieldValue.from_dict(replacement) if replacement else None,
            source_values=list(data.get("source_values") or []),
            context_terms=list(data.get("context_terms") or []),
            signature=data.get("signature", ""),
            transformation_type=data.get("transformation_type", ""),
        )


@dataclass
class Pattern:
    id: str
    field_path: str
    match_rule: MatchRule
    pathology: Optional[str] = None
    confidence: float = 0.0
    success_count: int = 0
    application_count: int = 0
    enabled: bool = True
    origin_correction_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    last_applied_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        if self.application_count == 0:
            return 0.0
        return self.success_count / self.application_count

    def applies_to(self, pathology: Optional[str]) -> bool:
        return self.pathology is None or pathology is None or self.pathology == pathology

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "field_path": self.field_path,
            "pathology": self.pathology,
            "match_rule": self.match_rule.to_dict(),
            "confidence": self.confidence,
            "success_count": self.success_count,
            "application_count": self.application_count,
            "enabled": self.enabled,
            "origin_correction_ids": list(self.origin_correction_ids),
            "created_at": format_timestamp(self.created_at),
            "last_applied_at": format_timestamp(self.last_applied_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pattern":
        return cls(
            id=data["id"],
            field_path=data["field_path"],
            pathology=data.get("pathology"),
            match_rule=MatchRule.from_dict(data["match_rule"]),
            confidence=float(data.get("confidence") or 0.0),
            success_count=int(data.get("success_count") or 0),
            application_count=int(data.get("application_count") or 0),
            enabled=bool(data.get("enabled", True)),
            origin_correction_ids=list(data.get("origin_correction_ids") or []),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            last_applied_at=parse_timestamp(data.get("last_applied_at")),
        )


# Metrics ---------------------------------------------------------------------

@dataclass
class MetricsSnapshot:
    id: str
    accuracy: float
    timestamp: datetime
    partial_accuracy: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1: float = 0.0
    per_field_results: Dict[str, Any] = field(default_factory=dict)
    source: str = "extraction"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = format_timestamp(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricsSnapshot":
        return cls(
            id=data["id"],
            accuracy=float(data["accuracy"]),
            timestamp=parse_timestamp(data.get("timestamp")) or utc_now(),
            partial_accuracy=float(data.get("partial_accuracy") or 0.0),
            precision=float(data.get("precision") or 0.0),
            recall=float(data.get("recall") or 0.0),
            f1=float(data.get("f1") or 0.0),
            per_field_results=dict(data.get("per_field_results") or {}),
            source=data.get("source") or "extraction",
        )
