"""
Collection-scoped vector stores: in-memory and SQLite-backed.
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from clinfeedback.core.similarity import DimensionMismatchError
from clinfeedback.vector.index import (
    EmbeddingDimensionError, IVectorStore, SimpleInMemoryVectorStore, rank_by_cosine
)
from clinfeedback.vector.sqlite_store import SqliteVectorStore
from clinfeedback.vector.types import VectorDocument

BASE_TIME = datetime(2024, 3, 1, tzinfo=timezone.utc)


def make_doc(doc_id, vector, collection="notes", offset=0, **metadata):
    return VectorDocument(
        id=doc_id,
        collection=collection,
        text=f"text for {doc_id}",
        embedding=np.asarray(vector, dtype=np.float32),
        metadata=metadata,
        domain_key=metadata.get("pathology"),
        timestamp=BASE_TIME + timedelta(minutes=offset),
    )


def add_all(store, documents):
    for document in documents:
        store.add(document)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return SimpleInMemoryVectorStore()
    return SqliteVectorStore(str(tmp_path / "vectors.db"))


def test_vector_store_interface(store):
    """Test that stores implement IVectorStore."""
    assert isinstance(store, IVectorStore)


def test_add_get_and_count(store):
    """Test adding, getting and counting documents."""
    store.add(make_doc("a", [1.0, 0.0, 0.0], pathology="SAH"))

    document = store.get("notes", "a")
    assert document is not None
    assert document.metadata == {"pathology": "SAH"}
    assert document.domain_key == "SAH"
    assert document.timestamp == BASE_TIME
    assert np.allclose(document.embedding, [1.0, 0.0, 0.0])
    assert store.count("notes") == 1
    assert store.count("patterns") == 0
    assert store.get("patterns", "a") is None


def test_add_same_id_replaces(store):
    """Test that adding an existing id replaces it."""
    store.add(make_doc("a", [1.0, 0.0, 0.0]))
    store.add(make_doc("a", [0.0, 1.0, 0.0]))
    assert store.count("notes") == 1
    assert np.allclose(store.get("notes", "a").embedding, [0.0, 1.0, 0.0])


def test_list_is_oldest_first(store):
    """Test that documents list oldest first."""
    add_all(store, [
        make_doc("newer", [1.0, 0.0], offset=10),
        make_doc("older", [0.0, 1.0], offset=0),
    ])
    assert [d.id for d in store.list("notes")] == ["older", "newer"]


def test_search_ranks_by_cosine(store):
    """Test that search ranks by cosine similarity."""
    add_all(store, [
        make_doc("x", [1.0, 0.0, 0.0]),
        make_doc("y", [0.0, 1.0, 0.0], offset=1),
        make_doc("xy", [0.7, 0.7, 0.0], offset=2),
    ])
    results = store.search("notes", np.array([1.0, 0.0, 0.0]), top_k=2)
    assert [r.id for r in results] == ["x", "xy"]
    assert results[0].score == pytest.approx(1.0)


def test_search_predicate_narrows_candidates(store):
    """Test that the predicate filters documents before ranking."""
    add_all(store, [
        make_doc("x", [1.0, 0.0], pathology="SAH"),
        make_doc("y", [0.9, 0.1], offset=1, pathology="tumor"),
    ])
    results = store.search("notes", np.array([1.0, 0.0]), top_k=5,
                           predicate=lambda doc: doc.metadata.get("pathology") == "tumor")
    assert [r.id for r in results] == ["y"]


def test_rank_by_cosine_edge_cases():
    """Test ranking with a zero query and with mismatched dimensions."""
    documents = [make_doc("x", [1.0, 0.0])]
    assert rank_by_cosine(np.zeros(2), documents, top_k=5) == []
    assert rank_by_cosine(np.array([1.0, 0.0]), [], top_k=5) == []
    with pytest.raises(DimensionMismatchError):
        rank_by_cosine(np.array([1.0, 0.0, 0.0]), documents, top_k=5)


def test_delete_and_clear(store):
    """Test deletion and clearing per collection."""
    add_all(store, [make_doc("a", [1.0, 0.0]), make_doc("b", [0.0, 1.0], offset=1)])
    store.add(make_doc("p", [1.0, 0.0], collection="patterns"))

    assert store.delete("notes", "a") is True
    assert store.delete("notes", "a") is False
    assert store.clear("notes") == 1
    assert store.count("notes") == 0
    assert store.count("patterns") == 1


class TestStoreMeta:

    def test_first_initialize_fixes_dimension(self, store):
        """Test that the first initialization fixes dimension and model."""
        store.initialize(384, "hash-384")
        assert store.get_meta() == {"embedding_dimension": "384", "embedding_model": "hash-384"}
        store.initialize(384, "hash-384")

    def test_different_dimension_rejected(self, store):
        """Test that a different dimension is rejected."""
        store.initialize(384, "hash-384")
        with pytest.raises(EmbeddingDimensionError):
            store.initialize(768, "all-mpnet-base-v2")

    def test_different_model_rejected(self, store):
        """Test that a different model is rejected."""
        store.initialize(384, "hash-384")
        with pytest.raises(EmbeddingDimensionError):
            store.initialize(384, "all-MiniLM-L6-v2")


def test_sqlite_store_persists_across_instances(tmp_path):
    """Test that the SQLite store persists across instances."""
    db_path = str(tmp_path / "vectors.db")
    SqliteVectorStore(db_path).add(make_doc("a", [0.25, 0.5, 0.25], pathology="SAH"))

    reopened = SqliteVectorStore(db_path)
    document = reopened.get("notes", "a")
    assert document.embedding.dtype == np.float32
    assert np.allclose(document.embedding, [0.25, 0.5, 0.25])


def test_sqlite_store_rejects_missing_embedding(tmp_path):
    """Test that the SQLite store rejects documents without embeddings."""
    store = SqliteVectorStore(str(tmp_path / "vectors.db"))
    document = make_doc("a", [1.0])
    document.embedding = None
    with pytest.raises(ValueError):
        store.add(document)
