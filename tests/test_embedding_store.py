"""
Async embedding store: one-shot initialization, collection caps, search and transfer.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from clinfeedback.core.anonymizer import Anonymizer
from clinfeedback.core.snapshot import SnapshotValidationError
from clinfeedback.vector.embedding_store import (
    CollectionFullError, EmbeddingStore, StoreNotReadyError, UnknownCollectionError,
)
from clinfeedback.vector.embeddings import DeterministicHashEmbedding
from clinfeedback.vector.index import EmbeddingDimensionError, SimpleInMemoryVectorStore

BASE_TIME = datetime(2024, 3, 1, tzinfo=timezone.utc)


class CountingProvider(DeterministicHashEmbedding):
    """Hash embeddings that record how often load() ran."""

    def __init__(self, dimension=4, fail=False):
        super().__init__(dimension=dimension)
        self.loads = 0
        self.fail = fail

    def load(self):
        self.loads += 1
        time.sleep(0.01)
        if self.fail:
            raise RuntimeError("model download failed")


class SlowProvider(DeterministicHashEmbedding):

    def embed_text(self, text):
        time.sleep(0.3)
        return super().embed_text(text)


class WrongDimensionProvider(DeterministicHashEmbedding):

    def embed_text(self, text):
        return np.ones(self.dimension * 2, dtype=np.float32)


def make_store(provider=None, **kwargs):
    return EmbeddingStore(provider or CountingProvider(), SimpleInMemoryVectorStore(), **kwargs)


def vec(*values):
    return np.array(values, dtype=np.float32)


def at(minutes):
    return BASE_TIME + timedelta(minutes=minutes)


class TestInitialization:

    def test_concurrent_initialize_loads_once(self):
        """Test that concurrent initialization loads the provider once."""
        provider = CountingProvider()
        store = make_store(provider)

        async def run():
            return await asyncio.gather(*(store.initialize() for _ in range(5)))

        assert asyncio.run(run()) == [True] * 5
        assert provider.loads == 1
        assert store.is_ready()
        assert store.dimension == 4

    def test_failed_initialize_is_not_retried(self):
        """Test that a failed initialization is not retried."""
        provider = CountingProvider(fail=True)
        store = make_store(provider)

        assert asyncio.run(store.initialize()) is False
        assert asyncio.run(store.initialize()) is False
        assert provider.loads == 1
        assert not store.is_ready()

        with pytest.raises(StoreNotReadyError):
            asyncio.run(store.store_document("notes", "left MCA aneurysm"))

    def test_dimension_mismatch_leaves_store_not_ready(self):
        """Test that a dimension mismatch leaves the store not ready."""
        vector_store = SimpleInMemoryVectorStore()
        vector_store.set_meta(128, "hash-128")
        store = EmbeddingStore(CountingProvider(dimension=4), vector_store)

        assert asyncio.run(store.initialize()) is False
        with pytest.raises(StoreNotReadyError):
            asyncio.run(store.semantic_search("notes", "left MCA"))

    def test_invalid_eviction_policy(self):
        """Test that an unknown eviction policy is rejected."""
        with pytest.raises(ValueError):
            make_store(eviction_policy="drop_random")


class TestEmbedding:

    def test_empty_text_rejected(self):
        """Test that empty text is rejected."""
        store = make_store()
        with pytest.raises(ValueError):
            asyncio.run(store.generate_embedding("   "))

    def test_timeout(self):
        """Test that a slow provider times out."""
        store = make_store(SlowProvider(dimension=4), embed_timeout_sec=0.05)
        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(store.generate_embedding("left MCA aneurysm"))

    def test_provider_dimension_checked(self):
        """Test that provider output dimension is checked."""
        store = make_store(WrongDimensionProvider(dimension=4))
        with pytest.raises(EmbeddingDimensionError):
            asyncio.run(store.generate_embedding("left MCA aneurysm"))

    def test_explicit_embedding_dimension_checked(self):
        """Test that supplied embeddings are dimension checked."""
        store = make_store()
        with pytest.raises(EmbeddingDimensionError):
            asyncio.run(store.store_document("notes", "left MCA", embedding=vec(1, 0)))


class TestDocuments:

    def test_unknown_collection(self):
        """Test that unknown collections are rejected."""
        store = make_store()
        with pytest.raises(UnknownCollectionError):
            asyncio.run(store.store_document("bogus", "left MCA"))
        with pytest.raises(UnknownCollectionError):
            asyncio.run(store.semantic_search("bogus", "left MCA"))

    def test_text_is_scrubbed_before_storage(self):
        """Test that text is anonymized before storage."""
        store = make_store(anonymizer=Anonymizer())

        async def run():
            doc_id = await store.store_document("notes", "MRN 1234567 left MCA aneurysm")
            return await store.get_document("notes", doc_id)

        document = asyncio.run(run())
        assert "1234567" not in document.text
        assert "[MRN_1]" in document.text

    def test_delete_and_clear(self):
        """Test document deletion and collection clearing."""
        store = make_store()

        async def run():
            await store.store_document("notes", "a", doc_id="a", embedding=vec(1, 0, 0, 0))
            await store.store_document("notes", "b", doc_id="b", embedding=vec(0, 1, 0, 0))
            deleted = await store.delete_document("notes", "a")
            missing = await store.delete_document("notes", "a")
            cleared = await store.clear_collection("notes")
            return deleted, missing, cleared

        assert asyncio.run(run()) == (True, False, 1)

    def test_reject_policy_at_cap(self):
        """Test the reject policy at collection capacity."""
        store = make_store(max_collection_size=2, eviction_policy="reject")

        async def run():
            await store.store_document("notes", "a", doc_id="a", embedding=vec(1, 0, 0, 0), timestamp=at(0))
            await store.store_document("notes", "b", doc_id="b", embedding=vec(0, 1, 0, 0), timestamp=at(1))
            # Replacing an existing id does not need room
            await store.store_document("notes", "b2", doc_id="b", embedding=vec(0, 1, 0, 0), timestamp=at(2))
            await store.store_document("notes", "c", doc_id="c", embedding=vec(0, 0, 1, 0), timestamp=at(3))

        with pytest.raises(CollectionFullError):
            asyncio.run(run())
        assert store.vector_store.count("notes") == 2

    def test_evict_oldest_policy_at_cap(self):
        """Test the evict-oldest policy at collection capacity."""
        store = make_store(max_collection_size=2, eviction_policy="evict_oldest")

        async def run():
            await store.store_document("notes", "a", doc_id="a", embedding=vec(1, 0, 0, 0), timestamp=at(0))
            await store.store_document("notes", "b", doc_id="b", embedding=vec(0, 1, 0, 0), timestamp=at(1))
            await store.store_document("notes", "c", doc_id="c", embedding=vec(0, 0, 1, 0), timestamp=at(2))

        asyncio.run(run())
        assert [d.id for d in store.vector_store.list("notes")] == ["b", "c"]


class TestSearch:

    def test_semantic_search_with_filter(self):
        """Test semantic search with a metadata filter."""
        store = make_store(DeterministicHashEmbedding(dimension=384))

        async def run():
            await store.store_document("notes", "left MCA aneurysm clipped", doc_id="match",
                                       metadata={"field_path": "pathology.location"})
            await store.store_document("notes", "left MCA aneurysm coiled", doc_id="other-field",
                                       metadata={"field_path": "procedure.name"})
            await store.store_document("notes", "lumbar fusion hardware", doc_id="unrelated",
                                       metadata={"field_path": "pathology.location"})
            return await store.semantic_search(
                "notes", "left MCA aneurysm", min_similarity=0.5,
                filter={"field_path": "pathology.location"},
            )

        results = asyncio.run(run())
        assert [r.id for r in results] == ["match"]
        assert results[0].score > 0.5

    def test_find_similar_excludes_source(self):
        """Test that find_similar excludes the source document."""
        store = make_store()

        async def run():
            await store.store_document("notes", "a", doc_id="a", embedding=vec(1, 0, 0, 0))
            await store.store_document("notes", "b", doc_id="b", embedding=vec(0.9, 0.1, 0, 0))
            await store.store_document("notes", "c", doc_id="c", embedding=vec(0, 0, 1, 0))
            return await store.find_similar("notes", "a", min_similarity=0.5)

        results = asyncio.run(run())
        assert [r.id for r in results] == ["b"]

    def test_find_similar_unknown_document(self):
        """Test find_similar for an unknown document."""
        store = make_store()
        with pytest.raises(KeyError):
            asyncio.run(store.find_similar("notes", "missing"))

    def test_cluster_documents(self):
        """Test document clustering."""
        store = make_store()

        async def run():
            docs = [
                ("a1", vec(1, 0, 0, 0)), ("a2", vec(0.9, 0.1, 0, 0)),
                ("b1", vec(0, 0, 1, 0)), ("b2", vec(0, 0, 0.9, 0.1)),
                ("lonely", vec(0, 1, 0, 0)),
            ]
            for minute, (doc_id, embedding) in enumerate(docs):
                await store.store_document("entities", doc_id, doc_id=doc_id,
                                           embedding=embedding, timestamp=at(minute))
            return await store.cluster_documents("entities", min_cluster_size=2, similarity_threshold=0.8)

        clusters = asyncio.run(run())
        assert [c.size for c in clusters] == [2, 2]
        assert [sorted(d.id for d in c.documents) for c in clusters] == [["a1", "a2"], ["b1", "b2"]]
        assert clusters[0].centroid.shape == (4,)

    def test_statistics(self):
        """Test embedding store statistics."""
        store = make_store(max_collection_size=50)

        async def run():
            await store.store_document("patterns", "p", doc_id="p", embedding=vec(1, 0, 0, 0))
            return await store.get_statistics()

        stats = asyncio.run(run())
        assert stats["ready"] is True
        assert stats["dimension"] == 4
        assert stats["collections"]["patterns"] == 1
        assert stats["total_documents"] == 1
        assert stats["max_collection_size"] == 50


class TestTransfer:

    def test_export_then_import_skips_existing(self):
        """Test that collection import skips existing documents."""
        source = make_store()
        target = make_store()

        async def run():
            await source.store_document("notes", "first", doc_id="d1", embedding=vec(1, 0, 0, 0),
                                        metadata={"pathology": "SAH"}, domain_key="SAH", timestamp=at(0))
            await source.store_document("notes", "second", doc_id="d2", embedding=vec(0, 1, 0, 0), timestamp=at(1))
            exported = await source.export_collection("notes")

            await target.store_document("notes", "already here", doc_id="d1", embedding=vec(0, 0, 1, 0))
            counts = await target.import_collection("notes", exported)
            return exported, counts

        exported, counts = asyncio.run(run())
        assert exported["document_count"] == 2
        assert exported["dimension"] == 4
        assert counts == {"imported": 1, "skipped": 1}

        imported = target.vector_store.get("notes", "d2")
        assert imported.text == "second"
        assert imported.timestamp == at(1)
        assert target.vector_store.get("notes", "d1").text == "already here"

    def test_import_dimension_mismatch_rejected(self):
        """Test that imports with the wrong dimension are rejected."""
        source = make_store()
        target = make_store(CountingProvider(dimension=8))

        async def run():
            await source.store_document("notes", "first", doc_id="d1", embedding=vec(1, 0, 0, 0))
            exported = await source.export_collection("notes")
            return await target.import_collection("notes", exported)

        with pytest.raises(SnapshotValidationError):
            asyncio.run(run())
        assert target.vector_store.count("notes") == 0

    def test_import_invalid_document_writes_nothing(self):
        """Test that an invalid document blocks the whole import."""
        store = make_store()
        payload = {"documents": [
            {"id": "ok", "text": "fine", "embedding": [1.0, 0.0, 0.0, 0.0]},
            {"id": "bad", "text": "   "},
        ]}
        with pytest.raises(SnapshotValidationError):
            asyncio.run(store.import_collection("notes", payload))
        assert store.vector_store.count("notes") == 0
