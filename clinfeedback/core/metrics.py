"""
Extraction accuracy history, trend and learning effectiveness.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .config import (
    EFFECTIVENESS_DELTA, EFFECTIVENESS_SAMPLE_SIZE, SNAPSHOT_VERSION, TREND_DELTA, TREND_WINDOW_DAYS,
)
from .dao import LearningDAO
from .schema import FieldValue, MetricsSnapshot, to_utc, utc_now
from .snapshot import MetricsExport, validate_payload
from ..util.logging import logger

CORRECT_SCORE = 0.95
PARTIAL_SCORE = 0.7


@dataclass
class AccuracyTrend:
    trend: str  # improving|declining|stable|insufficient_data
    first_half_mean: float
    second_half_mean: float
    change: float
    samples: int
    window_days: int


@dataclass
class LearningEffectiveness:
    status: str  # effective|moderate|minimal|insufficient_data
    improvement: float
    early_mean: float
    recent_mean: float
    samples: int


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _value_tokens(value: Any) -> set:
    return set(re.findall(r'\w+', FieldValue.of(value).as_text().lower()))


def value_similarity(predicted: Any, actual: Any) -> float:
    """Token overlap of two field values; 1.0 for equal normalized text."""
    predicted_text = " ".join(FieldValue.of(predicted).as_text().lower().split())
    actual_text = " ".join(FieldValue.of(actual).as_text().lower().split())
    if predicted_text == actual_text:
        return 1.0
    predicted_tokens = _value_tokens(predicted)
    actual_tokens = _value_tokens(actual)
    if not predicted_tokens or not actual_tokens:
        return 0.0
    return len(predicted_tokens & actual_tokens) / len(predicted_tokens | actual_tokens)


def _is_blank(value: Any) -> bool:
    return value is None or FieldValue.of(value).is_empty()


class PerformanceMetrics:
    """Appends accuracy snapshots and summarizes their history."""

    def __init__(self, dao: LearningDAO,
                 window_days: int = TREND_WINDOW_DAYS,
                 trend_delta: float = TREND_DELTA,
                 sample_size: int = EFFECTIVENESS_SAMPLE_SIZE,
                 effectiveness_delta: float = EFFECTIVENESS_DELTA):
        self.dao = dao
        self.window_days = window_days
        self.trend_delta = trend_delta
        self.sample_size = sample_size
        self.effectiveness_delta = effectiveness_delta

    # Recording ---------------------------------------------------------------

    def record_accuracy(self, accuracy: float, per_field: Dict[str, float] = None,
                        source: str = "tracker", timestamp: datetime = None) -> MetricsSnapshot:
        """Append an accuracy value computed elsewhere (e.g. by the tracker)."""
        if not 0.0 <= accuracy <= 1.0:
            raise ValueError("accuracy must be between 0 and 1")

        snapshot = MetricsSnapshot(
            id=str(uuid.uuid4()),
            accuracy=accuracy,
            timestamp=to_utc(timestamp) if timestamp else utc_now(),
            partial_accuracy=accuracy,
            per_field_results={name: {"accuracy": value} for name, value in (per_field or {}).items()},
            source=source,
        )
        self.dao.append_snapshots([snapshot])
        return snapshot

    def track_accuracy(self, predictions: Dict[str, Any], actual: Dict[str, Any],
                       timestamp: datetime = None) -> MetricsSnapshot:
        """Score predicted field values against the clinician-confirmed values.

        A field is correct at a token similarity of at least 0.95 and partial
        at 0.7. Predicted fields missing from ``actual`` count against precision.
        """
        results: Dict[str, Dict[str, Any]] = {}
        correct = partial = 0
        predicted_count = sum(1 for value in predictions.values() if not _is_blank(value))
        expected = [name for name, value in actual.items() if not _is_blank(value)]

        for name in expected:
            predicted = predictions.get(name)
            if _is_blank(predicted):
                results[name] = {"status": "missed", "score": 0.0, "accuracy": 0.0}
                continue
            score = value_similarity(predicted, actual[name])
            if score >= CORRECT_SCORE:
                status = "correct"
                correct += 1
            elif score >= PARTIAL_SCORE:
                status = "partial"
                partial += 1
            else:
                status = "incorrect"
            results[name] = {"status": status, "score": score, "accuracy": 1.0 if status == "correct" else 0.0}

        for name, value in predictions.items():
            if name not in results and not _is_blank(value):
                results[name] = {"status": "extra", "score": 0.0, "accuracy": 0.0}

        total = len(expected)
        precision = correct / predicted_count if predicted_count else 0.0
        recall = correct / total if total else 0.0
        f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0

        snapshot = MetricsSnapshot(
            id=str(uuid.uuid4()),
            accuracy=correct / total if total else 1.0,
            timestamp=to_utc(timestamp) if timestamp else utc_now(),
            partial_accuracy=(correct + partial) / total if total else 1.0,
            precision=precision,
            recall=recall,
            f1=f1,
            per_field_results=results,
            source="extraction",
        )
        self.dao.append_snapshots([snapshot])
        logger.log_operation("metrics.accuracy", "success", {
            "fields": total, "correct": correct, "partial": partial,
        })
        return snapshot

    def track_pattern_performance(self, pattern_id: str, succeeded: bool) -> None:
        self.dao.append_pattern_outcome(pattern_id, succeeded)

    # Analysis ----------------------------------------------------------------

    def get_accuracy_trend(self, window_days: int = None, now: datetime = None) -> Optional[AccuracyTrend]:
        """Compare the older and newer halves of the window.

        Returns None when the window holds no snapshots.
        """
        window_days = window_days or self.window_days
        now = to_utc(now) if now else utc_now()
        since = now - timedelta(days=window_days)
        samples = [s for s in self.dao.list_snapshots(since=since) if s.timestamp <= now]
        if not samples:
            return None
        if len(samples) < 2:
            value = samples[0].accuracy
            return AccuracyTrend("insufficient_data", value, value, 0.0, 1, window_days)

        mid = len(samples) // 2
        first = _mean([s.accuracy for s in samples[:mid]])
        second = _mean([s.accuracy for s in samples[mid:]])
        change = second - first
        if change > self.trend_delta:
            trend = "improving"
        elif change < -self.trend_delta:
            trend = "declining"
        else:
            trend = "stable"
        return AccuracyTrend(trend, first, second, change, len(samples), window_days)

    def get_learning_effectiveness(self) -> LearningEffectiveness:
        samples = [s.accuracy for s in self.dao.list_snapshots()]
        if len(samples) < self.sample_size:
            return LearningEffectiveness("insufficient_data", 0.0, 0.0, 0.0, len(samples))

        early = _mean(samples[:self.sample_size])
        recent = _mean(samples[-self.sample_size:])
        improvement = recent - early
        if improvement > self.effectiveness_delta:
            status = "effective"
        elif improvement > 0:
            status = "moderate"
        else:
            status = "minimal"
        return LearningEffectiveness(status, improvement, early, recent, len(samples))

    def get_pattern_success_rates(self) -> Dict[str, Dict[str, Any]]:
        rates: Dict[str, Dict[str, Any]] = {}
        for outcome in self.dao.list_pattern_outcomes():
            entry = rates.setdefault(outcome["pattern_id"], {"applications": 0, "successes": 0})
            entry["applications"] += 1
            if outcome["success"]:
                entry["successes"] += 1
        for entry in rates.values():
            entry["success_rate"] = entry["successes"] / entry["applications"]
        return rates

    def get_performance_by_field(self) -> Dict[str, Dict[str, Any]]:
        fields: Dict[str, Dict[str, Any]] = {}
        for snapshot in self.dao.list_snapshots():
            for name, result in snapshot.per_field_results.items():
                entry = fields.setdefault(name, {"samples": 0, "correct": 0, "partial": 0, "total_accuracy": 0.0})
                entry["samples"] += 1
                entry["total_accuracy"] += float(result.get("accuracy", 0.0))
                status = result.get("status")
                if status == "correct":
                    entry["correct"] += 1
                elif status == "partial":
                    entry["partial"] += 1

        for entry in fields.values():
            entry["accuracy"] = entry.pop("total_accuracy") / entry["samples"]
        return fields

    def get_summary_statistics(self) -> Dict[str, Any]:
        snapshots = self.dao.list_snapshots()
        accuracies = [s.accuracy for s in snapshots]
        trend = self.get_accuracy_trend()
        rates = self.get_pattern_success_rates()
        applications = sum(r["applications"] for r in rates.values())
        successes = sum(r["successes"] for r in rates.values())
        return {
            "total_snapshots": len(snapshots),
            "latest_accuracy": accuracies[-1] if accuracies else None,
            "average_accuracy": _mean(accuracies),
            "best_accuracy": max(accuracies) if accuracies else None,
            "worst_accuracy": min(accuracies) if accuracies else None,
            "trend": trend.trend if trend else None,
            "learning_effectiveness": self.get_learning_effectiveness().status,
            "pattern_applications": applications,
            "pattern_success_rate": successes / applications if applications else 0.0,
        }

    # Import / export ---------------------------------------------------------

    def export_metrics(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "exported_at": utc_now().isoformat(),
            "snapshots": [s.to_dict() for s in self.dao.list_snapshots()],
            "pattern_outcomes": [
                {**outcome, "timestamp": outcome["timestamp"].isoformat()}
                for outcome in self.dao.list_pattern_outcomes()
            ],
        }

    def import_metrics(self, data: Any) -> Dict[str, int]:
        export = validate_payload(MetricsExport, data, "import.metrics")
        return self.import_validated(export)

    def import_validated(self, export: MetricsExport) -> Dict[str, int]:
        snapshots = [MetricsSnapshot.from_dict(s.model_dump(mode="json")) for s in export.snapshots]
        counts = {
            "snapshots": self.dao.append_snapshots(snapshots),
            "pattern_outcomes": self.dao.append_pattern_outcomes(o.model_dump() for o in export.pattern_outcomes),
        }
        logger.log_import("metrics", counts)
        return counts

    def clear_metrics(self) -> int:
        removed = self.dao.clear_snapshots()
        self.dao.clear_pattern_outcomes()
        return removed
