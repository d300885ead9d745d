"""
Feedback service: the entry point a host extractor talks to.

Builds the anonymizer, tracker, embedding store, learning engine and
metrics once and shares them, so caches and the store's one-shot
initialization live on a single object instead of module globals.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .anonymizer import Anonymizer
from .config import DB_PATH, SNAPSHOT_VERSION, get_embedding_provider, get_vector_store, validate_config
from .corrections import CorrectionTracker, OverallAccuracy
from .dao import LearningDAO
from .db import health_check
from .features import extract_summary_features
from .learning import LearningEngine, LearningOutcome
from .metrics import PerformanceMetrics
from .schema import Correction, CorrectionRecord, MetricsSnapshot, Pattern, utc_now
from .snapshot import FeedbackSnapshot, validate_payload
from ..vector.embedding_store import EmbeddingStore
from ..vector.types import COLLECTIONS
from ..util.logging import audit_event, logger


@dataclass
class SubmissionResult:
    record: CorrectionRecord
    outcome: LearningOutcome
    indexed: bool = False


class FeedbackService:
    """Tracks corrections, learns patterns and serves them back."""

    def __init__(self, dao: LearningDAO, embedding_store: EmbeddingStore,
                 anonymizer: Anonymizer = None,
                 tracker: CorrectionTracker = None,
                 engine: LearningEngine = None,
                 metrics: PerformanceMetrics = None):
        self.dao = dao
        self.anonymizer = anonymizer or Anonymizer()
        self.embedding_store = embedding_store
        self.tracker = tracker or CorrectionTracker(dao, self.anonymizer)
        self.engine = engine or LearningEngine(dao, embedding_store, anonymizer=self.anonymizer)
        self.metrics = metrics or PerformanceMetrics(dao)

    async def initialize(self) -> bool:
        return await self.embedding_store.initialize()

    # Corrections -------------------------------------------------------------

    async def submit_correction(self, correction: Correction, reference_date=None) -> SubmissionResult:
        """Track a correction, index it for semantic lookup and learn from it.

        Only tracking may raise (invalid input, database errors). Indexing and
        learning failures are logged and reported as ``no_effect``.
        """
        record = self.tracker.track(correction, reference_date)
        indexed = await self._index_correction(record)

        try:
            outcome = await self.engine.learn_from_correction(record)
        except Exception as e:
            logger.log_operation("learning.failed", "degraded", {
                "correction_id": record.id, "field_path": record.field_path, "error": str(e)[:100]
            })
            outcome = LearningOutcome("no_effect", reason=f"learning failed: {type(e).__name__}")

        if outcome.action == "minted" and outcome.pattern is not None:
            await self._index_pattern(outcome.pattern)

        return SubmissionResult(record=record, outcome=outcome, indexed=indexed)

    async def _index_correction(self, record: CorrectionRecord) -> bool:
        text = record.signature()
        if record.source_context:
            text += "\n" + record.source_context
        try:
            await self.embedding_store.store_document(
                "notes", text,
                metadata={
                    "correction_id": record.id,
                    "field_path": record.field_path,
                    "pathology": record.pathology,
                    "kind": "correction",
                },
                domain_key=record.pathology,
            )
            return True
        except Exception as e:
            logger.warning(f"Correction '{record.id}' not indexed: {e}")
            return False

    async def _index_pattern(self, pattern: Pattern) -> None:
        rule = pattern.match_rule
        text = " ".join(filter(None, [pattern.field_path, rule.pattern, " ".join(rule.source_values)]))
        try:
            await self.embedding_store.store_document(
                "patterns", text,
                metadata={"pattern_id": pattern.id, "field_path": pattern.field_path},
                doc_id=pattern.id,
                domain_key=pattern.field_path,
            )
        except Exception as e:
            logger.warning(f"Pattern '{pattern.id}' not indexed: {e}")

    async def index_document(self, collection: str, text: str, metadata: Dict[str, Any] = None,
                             domain_key: str = None) -> str:
        """Store an entity or summary document for the host."""
        metadata = dict(metadata or {})
        if collection == "summaries":
            features = extract_summary_features(text)
            metadata.setdefault("word_count", features["word_count"])
            metadata.setdefault("sections", features["sections"])
            metadata.setdefault("extraction_difficulty", features["extraction_difficulty"])
        return await self.embedding_store.store_document(collection, text, metadata=metadata, domain_key=domain_key)

    def record_applications(self, field_path: str, count: int = 1) -> None:
        self.tracker.record_applications(field_path, count)

    # Patterns ----------------------------------------------------------------

    def get_enabled_patterns(self, field_path: str, pathology: str = None) -> List[Pattern]:
        return self.engine.get_enabled_patterns(field_path, pathology)

    def apply_feedback(self, pattern_id: str, succeeded: bool) -> Optional[Pattern]:
        pattern = self.engine.apply_feedback(pattern_id, succeeded)
        if pattern is not None:
            self.metrics.track_pattern_performance(pattern_id, succeeded)
        return pattern

    # Accuracy ----------------------------------------------------------------

    def get_overall_accuracy(self) -> OverallAccuracy:
        return self.tracker.get_overall_accuracy()

    def compute_accuracy_snapshot(self) -> MetricsSnapshot:
        """Append the tracker's current accuracy to the metrics history."""
        overall = self.tracker.get_overall_accuracy()
        return self.metrics.record_accuracy(overall.accuracy, per_field=overall.fields, source="tracker")

    def get_health(self) -> Dict[str, Any]:
        return {
            "database": health_check(self.dao.db_path),
            "vector_store_ready": self.embedding_store.is_ready(),
            "config_issues": validate_config(),
        }

    # Snapshots ---------------------------------------------------------------

    async def export_snapshot(self) -> Dict[str, Any]:
        corrections = self.tracker.export_corrections()
        vector_collections = {}
        if await self.embedding_store.initialize():
            for name in COLLECTIONS:
                vector_collections[name] = await self.embedding_store.export_collection(name)

        snapshot = {
            "version": SNAPSHOT_VERSION,
            "exported_at": utc_now().isoformat(),
            "learning": {"patterns": self.engine.export_learning()["patterns"]},
            "corrections": corrections["corrections"],
            "field_applications": corrections["field_applications"],
            "vector_collections": vector_collections,
            "metrics": self.metrics.export_metrics(),
        }
        audit_event("export.snapshot", {
            "patterns": len(snapshot["learning"]["patterns"]),
            "corrections": len(snapshot["corrections"]),
        })
        return snapshot

    async def import_snapshot(self, data: Any) -> Dict[str, Any]:
        """Validate the whole snapshot, then import it section by section.

        Nothing is written unless every section validates. Corrections and
        patterns each land in one transaction; vector documents are written
        one at a time.
        """
        snapshot = validate_payload(FeedbackSnapshot, data, "import.snapshot")

        validated_collections = {}
        if snapshot.vector_collections:
            await self.embedding_store.ensure_ready()
            for name, collection in snapshot.vector_collections.items():
                validated_collections[name] = self.embedding_store.validate_collection_export(
                    name, collection.model_dump(mode="json")
                )

        results: Dict[str, Any] = {}
        if snapshot.corrections is not None:
            results["corrections"] = self.tracker.import_validated(
                snapshot.corrections, snapshot.field_applications
            )
        if snapshot.learning is not None:
            results["learning"] = self.engine.import_validated(snapshot.learning.patterns)
        for name, collection in validated_collections.items():
            results[f"vector.{name}"] = await self.embedding_store.import_collection(
                name, collection.model_dump(mode="json")
            )
        if snapshot.metrics is not None:
            results["metrics"] = self.metrics.import_validated(snapshot.metrics)

        logger.log_import("snapshot", results)
        audit_event("import.snapshot", {"sections": sorted(results)})
        return results


def create_feedback_service(db_path: str = None) -> FeedbackService:
    """Build a FeedbackService from environment configuration."""
    db_path = db_path or DB_PATH
    dao = LearningDAO(db_path)
    anonymizer = Anonymizer()
    store = EmbeddingStore(get_embedding_provider(), get_vector_store(db_path), anonymizer=anonymizer)
    return FeedbackService(dao, store, anonymizer=anonymizer)
