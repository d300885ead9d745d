"""
Correction tracking: the append-only, anonymized log of clinician edits.
Per-field counts and rolling accuracy are derived from the log plus externally supplied applications.
"""

import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from .anonymizer import Anonymizer
from .config import SNAPSHOT_VERSION
from .dao import LearningDAO
from .diff_analyzer import compute_diff
from .features import extract_features
from .schema import (
    Correction, CorrectionRecord, FieldValue, map_field_value, to_utc, utc_now,
)
from .similarity import normalized_edit_distance
from .snapshot import CorrectionPayload, CorrectionsSnapshot, validate_payload
from ..util.logging import audit_event, logger

# analyze_corrections thresholds
FIELD_ATTENTION_THRESHOLD = 5
DOMINANCE_MIN_CORRECTIONS = 5
DOMINANCE_SHARE = 0.5
LOW_CONFIDENCE = 0.5
LOW_CONFIDENCE_SHARE = 0.3
COMMON_MISTAKES_LIMIT = 10

# get_field_accuracy trend bands on corrections per month
IMPROVING_RATIO = 0.8
DECLINING_RATIO = 1.2

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

TRANSFORMATION_ADVICE = {
    "case_change": "normalize casing of extracted values",
    "abbreviation_expansion": "expand abbreviations before returning values",
    "number_extraction": "extract numeric qualifiers that are currently dropped",
    "date_formatting": "normalize date formats",
    "partial_correction": "widen extraction spans; values are partially right",
    "minor_correction": "tidy small wording differences",
    "complete_replacement": "revisit extraction rules; values are replaced outright",
}


@dataclass
class FieldAccuracy:
    field_path: str
    accuracy: float
    corrections: int
    applications: int
    trend: str
    average_confidence_before: float = 0.0
    transformation_types: Dict[str, int] = field(default_factory=dict)


@dataclass
class OverallAccuracy:
    accuracy: float
    total_corrections: int
    total_applications: int
    fields: Dict[str, float] = field(default_factory=dict)


@dataclass
class Recommendation:
    priority: str  # high|medium|low
    kind: str
    target: str
    message: str


@dataclass
class CorrectionAnalysis:
    total: int
    by_transformation_type: Dict[str, int]
    by_correction_type: Dict[str, int]
    by_field: Dict[str, int]
    by_pathology: Dict[str, int]
    by_extraction_method: Dict[str, int]
    common_mistakes: List[Dict[str, Any]]
    recurring_pairs: List[Dict[str, Any]]
    recommendations: List[Recommendation]


def classify_correction(before: str, after: str) -> str:
    """Bucket an edit by how much of the original value survived."""
    if not before.strip():
        return "addition"
    if not after.strip():
        return "deletion"
    similarity = 1 - normalized_edit_distance(before.lower(), after.lower())
    if similarity > 0.8:
        return "minor_edit"
    if similarity > 0.5:
        return "modification"
    return "replacement"


class CorrectionTracker:
    """Validates, anonymizes, annotates and appends corrections."""

    def __init__(self, dao: LearningDAO, anonymizer: Anonymizer = None):
        self.dao = dao
        self.anonymizer = anonymizer or Anonymizer()

    # Tracking ----------------------------------------------------------------

    def track(self, correction: Correction,
              reference_date: Union[date, datetime, str, None] = None) -> CorrectionRecord:
        """Append one correction to the log.

        Args:
            correction: The clinician's edit.
            reference_date: Optional admission date used to turn absolute dates into offsets.

        Returns:
            The persisted, anonymized CorrectionRecord.

        Raises:
            ValueError: If the correction has no field path or neither value.
        """
        self._validate(correction)

        counts: Counter = Counter()
        _scrub = self._scrubber(counts, reference_date)

        before = map_field_value(FieldValue.of(correction.before_value), _scrub)
        after = map_field_value(FieldValue.of(correction.after_value), _scrub)
        context = _scrub(correction.source_context) if correction.source_context else None
        if context:
            report = self.anonymizer.contains_phi(context)
            if report.has_phi:
                audit_event("privacy.residual_phi", {"field_path": correction.field_path, "types": report.types})

        before_text = before.as_text()
        after_text = after.as_text()

        record = CorrectionRecord(
            id=str(uuid.uuid4()),
            field_path=correction.field_path.strip(),
            before=before,
            after=after,
            source_context=context,
            pathology=(correction.pathology or "unknown").strip() or "unknown",
            extraction_method=correction.extraction_method or "unknown",
            confidence_before=float(correction.confidence_before or 0.0),
            created_at=to_utc(correction.created_at) if correction.created_at else utc_now(),
            correction_type=classify_correction(before_text, after_text),
            features=extract_features(before_text, after_text, context),
            diff=compute_diff(before_text, after_text),
            anonymization=dict(counts),
        )

        self.dao.append_correction(record)
        logger.log_correction_tracked(
            record.id, record.field_path, record.features.transformation_type,
            items_anonymized=counts.get("items_anonymized", 0)
        )
        return record

    def track_many(self, corrections: Iterable[Correction]) -> List[CorrectionRecord]:
        """Track a batch in order; invalid corrections are logged and skipped."""
        records = []
        for correction in corrections:
            try:
                records.append(self.track(correction))
            except ValueError as e:
                logger.warning(f"Skipping invalid correction for field '{getattr(correction, 'field_path', None)}': {e}")
        return records

    def _scrubber(self, counts: Counter, reference_date=None):
        """Anonymizer callback for string leaves; tallies replacements into ``counts``."""
        def _scrub(text: str) -> str:
            result = self.anonymizer.anonymize(text, reference_date)
            counts.update({k: v for k, v in result.metadata.to_dict().items() if k != "degraded"})
            if result.metadata.degraded:
                counts["degraded"] += 1
            return result.anonymized
        return _scrub

    @staticmethod
    def _validate(correction: Correction) -> None:
        if not isinstance(correction.field_path, str) or not correction.field_path.strip():
            raise ValueError("field_path is required")
        if correction.before_value is None and correction.after_value is None:
            raise ValueError("a correction needs a before or an after value")
        confidence = correction.confidence_before or 0.0
        if not 0.0 <= float(confidence) <= 1.0:
            raise ValueError("confidence_before must be between 0 and 1")

    def record_applications(self, field_path: str, count: int = 1) -> None:
        """Add externally observed extractions of ``field_path`` to its accuracy denominator."""
        if not field_path or not field_path.strip():
            raise ValueError("field_path is required")
        if count < 0:
            raise ValueError("count must be >= 0")
        self.dao.add_field_applications(field_path.strip(), count)

    # Queries -----------------------------------------------------------------

    def get_corrections(self, field_path: str = None, pathology: str = None,
                        start: datetime = None, end: datetime = None,
                        limit: int = None) -> List[CorrectionRecord]:
        return self.dao.list_corrections(field_path=field_path, pathology=pathology,
                                         start=start, end=end, limit=limit)

    def get_corrections_by_field(self, field_path: str) -> List[CorrectionRecord]:
        return self.dao.list_corrections(field_path=field_path)

    def get_corrections_by_pathology(self, pathology: str) -> List[CorrectionRecord]:
        return self.dao.list_corrections(pathology=pathology)

    def get_corrections_by_date_range(self, start: datetime, end: datetime) -> List[CorrectionRecord]:
        return self.dao.list_corrections(start=start, end=end)

    # Accuracy ----------------------------------------------------------------

    @staticmethod
    def _accuracy(corrections: int, applications: int) -> float:
        # Every correction implies the field was extracted at least once
        applications = max(applications, corrections)
        if applications == 0:
            return 1.0
        return max(0.0, 1.0 - corrections / applications)

    def get_field_accuracy(self, field_path: str) -> FieldAccuracy:
        stats = self.dao.get_field_stats().get(field_path, {})
        records = self.dao.list_corrections(field_path=field_path)
        corrections = len(records)
        applications = max(stats.get("applications", 0), corrections)

        average_confidence = 0.0
        if records:
            average_confidence = sum(r.confidence_before for r in records) / len(records)

        return FieldAccuracy(
            field_path=field_path,
            accuracy=self._accuracy(corrections, applications),
            corrections=corrections,
            applications=applications,
            trend=self._trend(records),
            average_confidence_before=average_confidence,
            transformation_types=dict(Counter(r.features.transformation_type for r in records)),
        )

    @staticmethod
    def _trend(records: List[CorrectionRecord]) -> str:
        """Compare early and late monthly correction counts."""
        buckets: Dict[str, int] = {}
        for record in records:
            key = record.created_at.strftime("%Y-%m")
            buckets[key] = buckets.get(key, 0) + 1
        if len(buckets) < 2:
            return "insufficient_data"

        counts = [buckets[key] for key in sorted(buckets)]
        half = len(counts) // 2
        early = sum(counts[:half]) / half
        late = sum(counts[half:]) / (len(counts) - half)
        if late < early * IMPROVING_RATIO:
            return "improving"
        if late > early * DECLINING_RATIO:
            return "declining"
        return "stable"

    def get_overall_accuracy(self) -> OverallAccuracy:
        stats = self.dao.get_field_stats()
        fields = {}
        total_corrections = 0
        total_applications = 0
        for field_path, entry in stats.items():
            corrections = entry["correction_count"]
            applications = max(entry["applications"], corrections)
            total_corrections += corrections
            total_applications += applications
            fields[field_path] = self._accuracy(corrections, applications)

        return OverallAccuracy(
            accuracy=self._accuracy(total_corrections, total_applications),
            total_corrections=total_corrections,
            total_applications=total_applications,
            fields=fields,
        )

    # Analysis ----------------------------------------------------------------

    def analyze_corrections(self, field_path: str = None) -> CorrectionAnalysis:
        """Group the log and emit prioritized recommendations."""
        records = self.dao.list_corrections(field_path=field_path)
        total = len(records)

        by_transformation = Counter(r.features.transformation_type for r in records)
        by_field = Counter(r.field_path for r in records)

        mistakes = Counter((r.field_path, r.features.transformation_type) for r in records)
        common_mistakes = [
            {"field_path": f, "transformation_type": t, "count": c}
            for (f, t), c in mistakes.most_common(COMMON_MISTAKES_LIMIT)
        ]

        pairs = Counter(
            (r.field_path, r.before.as_text(), r.after.as_text()) for r in records
        )
        recurring_pairs = [
            {"field_path": f, "before": b, "after": a, "count": c}
            for (f, b, a), c in pairs.most_common() if c > 1
        ]

        return CorrectionAnalysis(
            total=total,
            by_transformation_type=dict(by_transformation),
            by_correction_type=dict(Counter(r.correction_type for r in records)),
            by_field=dict(by_field),
            by_pathology=dict(Counter(r.pathology for r in records)),
            by_extraction_method=dict(Counter(r.extraction_method for r in records)),
            common_mistakes=common_mistakes,
            recurring_pairs=recurring_pairs,
            recommendations=self._recommendations(records, by_field, by_transformation),
        )

    @staticmethod
    def _recommendations(records: List[CorrectionRecord], by_field: Counter,
                         by_transformation: Counter) -> List[Recommendation]:
        total = len(records)
        recommendations = []

        for field_path, count in by_field.most_common():
            if count > FIELD_ATTENTION_THRESHOLD:
                recommendations.append(Recommendation(
                    "high", "pattern_refinement", field_path,
                    f"{field_path} has {count} corrections; review its extraction patterns",
                ))

        if total >= DOMINANCE_MIN_CORRECTIONS:
            top_field, field_count = by_field.most_common(1)[0]
            if len(by_field) > 1 and field_count / total >= DOMINANCE_SHARE:
                recommendations.append(Recommendation(
                    "high", "field_focus", top_field,
                    f"{top_field} accounts for {field_count} of {total} corrections",
                ))

            top_type, type_count = by_transformation.most_common(1)[0]
            if type_count / total >= DOMINANCE_SHARE:
                advice = TRANSFORMATION_ADVICE.get(top_type, "review extraction rules")
                recommendations.append(Recommendation(
                    "medium", "transformation_focus", top_type,
                    f"{type_count} of {total} corrections are {top_type}: {advice}",
                ))

        low_confidence = [r for r in records if r.confidence_before < LOW_CONFIDENCE]
        if total and len(low_confidence) / total > LOW_CONFIDENCE_SHARE:
            recommendations.append(Recommendation(
                "medium", "confidence_threshold", "extraction",
                f"{len(low_confidence)} corrections followed low-confidence extractions; "
                f"consider holding values below {LOW_CONFIDENCE} for review",
            ))

        recommendations.sort(key=lambda r: PRIORITY_ORDER[r.priority])
        return recommendations

    def get_statistics(self) -> Dict[str, Any]:
        records = self.dao.list_corrections()
        field_stats = self.dao.get_field_stats()
        return {
            "total_corrections": len(records),
            "fields": {
                name: {
                    "corrections": entry["correction_count"],
                    "applications": max(entry["applications"], entry["correction_count"]),
                    "accuracy": self._accuracy(entry["correction_count"], entry["applications"]),
                }
                for name, entry in field_stats.items()
            },
            "pathologies": dict(Counter(r.pathology for r in records)),
            "correction_types": dict(Counter(r.correction_type for r in records)),
            "oldest": records[0].created_at.isoformat() if records else None,
            "newest": records[-1].created_at.isoformat() if records else None,
        }

    # Import / export ---------------------------------------------------------

    def export_corrections(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "exported_at": utc_now().isoformat(),
            "corrections": [record.to_dict() for record in self.dao.list_corrections()],
            "field_applications": {
                name: entry["applications"] for name, entry in self.dao.get_field_stats().items()
            },
        }

    def import_corrections(self, data: Any) -> Dict[str, int]:
        """Validate an export, then append all of it in one transaction."""
        snapshot = validate_payload(CorrectionsSnapshot, data, "import.corrections")
        return self.import_validated(snapshot.corrections, snapshot.field_applications)

    def import_validated(self, corrections: List[CorrectionPayload],
                         field_applications: Dict[str, int] = None) -> Dict[str, int]:
        records = []
        for payload in corrections:
            record = CorrectionRecord.from_dict(payload.model_dump(mode="json"))
            records.append(self._rescrub(record))

        inserted = self.dao.append_corrections(records)
        if field_applications:
            self.dao.replace_field_applications(field_applications)

        counts = {"imported": inserted, "skipped": len(records) - inserted}
        logger.log_import("corrections", counts)
        return counts

    def _rescrub(self, record: CorrectionRecord) -> CorrectionRecord:
        """Anonymize an imported record and rebuild the annotations derived from its values."""
        counts: Counter = Counter()
        _scrub = self._scrubber(counts)

        before = map_field_value(record.before, _scrub)
        after = map_field_value(record.after, _scrub)
        context = _scrub(record.source_context) if record.source_context else None
        if not counts["items_anonymized"]:
            return record

        before_text = before.as_text()
        after_text = after.as_text()
        anonymization = Counter(record.anonymization)
        anonymization.update(counts)
        return replace(
            record,
            before=before,
            after=after,
            source_context=context,
            correction_type=classify_correction(before_text, after_text),
            features=extract_features(before_text, after_text, context),
            diff=compute_diff(before_text, after_text),
            anonymization=dict(anonymization),
        )

    def clear_all_corrections(self) -> int:
        removed = self.dao.clear_corrections()
        logger.log_operation("corrections.cleared", "success", {"removed": removed})
        return removed
