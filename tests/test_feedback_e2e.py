"""
End-to-end feedback loop: submit corrections, learn, serve, snapshot and restore.
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, patch

from clinfeedback.core.dao import LearningDAO
from clinfeedback.core.feedback import FeedbackService, create_feedback_service
from clinfeedback.core.schema import Correction
from clinfeedback.core.snapshot import SnapshotValidationError
from clinfeedback.vector.embedding_store import EmbeddingStore
from clinfeedback.vector.embeddings import DeterministicHashEmbedding
from clinfeedback.vector.index import SimpleInMemoryVectorStore

LOCATION = "pathology.location"
CONTEXT = "Patient John Smith (MRN 1234567). CTA showed left MCA aneurysm."


class BrokenProvider(DeterministicHashEmbedding):

    def load(self):
        raise RuntimeError("model unavailable")


@pytest.fixture
def service(tmp_path):
    return create_feedback_service(str(tmp_path / "feedback.db"))


def location_fix(**overrides):
    values = dict(field_path=LOCATION, before_value="left side", after_value="left MCA",
                  source_context=CONTEXT, pathology="SAH")
    values.update(overrides)
    return Correction(**values)


async def submit_three(service):
    results = []
    for _ in range(3):
        results.append(await service.submit_correction(location_fix()))
    return results


class TestSubmission:

    def test_three_corrections_mint_servable_pattern(self, service):
        """Test that three agreeing corrections mint a servable, indexed pattern."""
        results = asyncio.run(submit_three(service))

        assert [r.outcome.action for r in results] == ["one_off", "one_off", "minted"]
        assert all(r.indexed for r in results)

        [pattern] = service.get_enabled_patterns(LOCATION)
        assert pattern.match_rule.matches("left MCA")
        assert service.engine.apply_learned_patterns("CTA: left MCA aneurysm", LOCATION).value == "left MCA"

        indexed_pattern = service.embedding_store.vector_store.get("patterns", pattern.id)
        assert indexed_pattern.metadata["field_path"] == LOCATION

    def test_indexed_text_is_anonymized(self, service):
        """Test that indexed correction text is anonymized."""
        asyncio.run(service.submit_correction(location_fix()))

        [note] = service.embedding_store.vector_store.list("notes")
        assert "John" not in note.text
        assert "1234567" not in note.text
        assert note.text.startswith("left side => left MCA")
        assert note.metadata["kind"] == "correction"
        assert note.domain_key == "SAH"

    def test_learning_failure_is_degraded_not_raised(self, service, tmp_path):
        """Test that a learning failure degrades without losing the correction."""
        with patch.object(service.engine, "learn_from_correction",
                          AsyncMock(side_effect=RuntimeError("boom"))):
            result = asyncio.run(service.submit_correction(location_fix()))

        assert result.outcome.action == "no_effect"
        assert service.dao.get_correction(result.record.id) is not None

    def test_unavailable_vector_store_still_learns(self, tmp_path):
        """Test that learning continues when the vector store is unavailable."""
        dao = LearningDAO(str(tmp_path / "feedback.db"))
        store = EmbeddingStore(BrokenProvider(dimension=16), SimpleInMemoryVectorStore())
        service = FeedbackService(dao, store)

        results = asyncio.run(submit_three(service))
        assert [r.indexed for r in results] == [False, False, False]
        assert results[-1].outcome.action == "minted"

    def test_invalid_correction_raises(self, service):
        """Test that invalid corrections raise."""
        with pytest.raises(ValueError):
            asyncio.run(service.submit_correction(Correction("", "a", "b")))

    def test_summary_documents_get_shape_metadata(self, service):
        """Test that summary documents get shape metadata."""
        doc_id = asyncio.run(service.index_document(
            "summaries", "Patient admitted with SAH. Underwent clipping. Discharged home.", domain_key="SAH"
        ))
        document = service.embedding_store.vector_store.get("summaries", doc_id)
        assert document.metadata["word_count"] == 8
        assert "procedure" in document.metadata["sections"]


class TestFeedbackAndAccuracy:

    def test_feedback_updates_pattern_and_metrics(self, service):
        """Test that feedback updates the pattern and its metrics."""
        asyncio.run(submit_three(service))
        [pattern] = service.get_enabled_patterns(LOCATION)

        updated = service.apply_feedback(pattern.id, True)
        assert updated.application_count == 1
        assert service.metrics.get_pattern_success_rates()[pattern.id]["successes"] == 1

        assert service.apply_feedback("missing", True) is None
        assert "missing" not in service.metrics.get_pattern_success_rates()

    def test_accuracy_snapshot(self, service):
        """Test recording an accuracy snapshot from the correction log."""
        asyncio.run(service.submit_correction(location_fix()))
        service.record_applications(LOCATION, 4)

        snapshot = service.compute_accuracy_snapshot()
        assert snapshot.accuracy == pytest.approx(0.75)
        assert snapshot.per_field_results == {LOCATION: {"accuracy": pytest.approx(0.75)}}
        assert service.get_overall_accuracy().accuracy == pytest.approx(0.75)

    def test_health(self, service):
        """Test service health before and after initialization."""
        health = service.get_health()
        assert health["database"] is True
        assert health["vector_store_ready"] is False

        asyncio.run(service.initialize())
        assert service.get_health()["vector_store_ready"] is True


class TestSnapshots:

    def test_full_round_trip_into_fresh_database(self, service, tmp_path):
        """Test a full snapshot round trip into a fresh database."""
        async def run():
            await submit_three(service)
            service.record_applications(LOCATION, 10)
            service.compute_accuracy_snapshot()
            exported = json.loads(json.dumps(await service.export_snapshot()))

            fresh = create_feedback_service(str(tmp_path / "fresh.db"))
            results = await fresh.import_snapshot(exported)
            return exported, fresh, results

        exported, fresh, results = asyncio.run(run())

        assert exported["version"] == "1"
        assert len(exported["corrections"]) == 3
        assert results["corrections"] == {"imported": 3, "skipped": 0}
        assert results["learning"] == {"imported": 1, "skipped": 0}
        assert results["vector.notes"] == {"imported": 3, "skipped": 0}
        assert results["vector.patterns"] == {"imported": 1, "skipped": 0}
        assert results["metrics"]["snapshots"] == 1

        assert fresh.get_overall_accuracy().accuracy == pytest.approx(service.get_overall_accuracy().accuracy)
        assert len(fresh.get_enabled_patterns(LOCATION)) == 1

    def test_learning_only_snapshot_leaves_accuracy_unchanged(self, service, tmp_path):
        """Test that a learning-only import leaves accuracy unchanged."""
        async def run():
            await submit_three(service)
            exported = await service.export_snapshot()

            target = create_feedback_service(str(tmp_path / "target.db"))
            await target.submit_correction(location_fix(before_value="right side", after_value="right PCA"))
            target.record_applications(LOCATION, 5)
            before = target.get_overall_accuracy()
            results = await target.import_snapshot({"learning": exported["learning"]})
            return target, before, results

        target, before, results = asyncio.run(run())

        assert set(results) == {"learning"}
        after = target.get_overall_accuracy()
        assert after.accuracy == before.accuracy
        assert after.total_corrections == before.total_corrections
        assert len(target.get_enabled_patterns(LOCATION)) == 1

    def test_flat_patterns_payload_accepted(self, service, tmp_path):
        """Test that a bare patterns payload is imported."""
        async def run():
            await submit_three(service)
            patterns = service.engine.export_learning()["patterns"]
            target = create_feedback_service(str(tmp_path / "target.db"))
            return target, await target.import_snapshot({"patterns": patterns})

        target, results = asyncio.run(run())
        assert results == {"learning": {"imported": 1, "skipped": 0}}

    def test_snapshot_without_learning_or_corrections_rejected(self, service):
        """Test that a snapshot without learning or corrections is rejected."""
        asyncio.run(service.submit_correction(location_fix()))
        before = service.get_overall_accuracy()

        with pytest.raises(SnapshotValidationError):
            asyncio.run(service.import_snapshot({"version": "1", "metrics": {"snapshots": []}}))

        assert service.get_overall_accuracy() == before
        assert service.dao.list_patterns() == []

    def test_invalid_vector_section_blocks_whole_import(self, service, tmp_path):
        """Test that an invalid vector section blocks the whole import."""
        async def run():
            await submit_three(service)
            exported = json.loads(json.dumps(await service.export_snapshot()))
            exported["vector_collections"]["notes"]["documents"][0]["embedding"] = [1.0, 2.0]

            target = create_feedback_service(str(tmp_path / "target.db"))
            with pytest.raises(SnapshotValidationError):
                await target.import_snapshot(exported)
            return target

        target = asyncio.run(run())
        assert target.dao.count_corrections() == 0
        assert target.dao.list_patterns() == []
