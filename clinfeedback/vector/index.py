"""
Vector collection persistence interface and the in-memory implementation.
Search is a brute-force cosine scan, bounded by the configured collection size.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional
import numpy as np

from .types import COLLECTIONS, QueryResult, VectorDocument
from ..core.similarity import DimensionMismatchError


class EmbeddingDimensionError(ValueError):
    """Raised when a store fixed to one embedding dimension/model sees another."""


def rank_by_cosine(query_vector: np.ndarray, documents: List[VectorDocument], top_k: int) -> List[QueryResult]:
    """Score documents against the query and return the best ``top_k``."""
    if not documents or top_k <= 0:
        return []

    query = np.asarray(query_vector, dtype=np.float32).ravel()
    norm = np.linalg.norm(query)
    if norm == 0:
        return []
    query = query / norm

    matrix = np.vstack([doc.embedding for doc in documents]).astype(np.float32)
    if matrix.shape[1] != query.shape[0]:
        raise DimensionMismatchError(
            f"Query dimension {query.shape[0]} does not match stored dimension {matrix.shape[1]}")

    norms = np.linalg.norm(matrix, axis=1)
    norms[norms == 0] = 1.0
    scores = (matrix @ query) / norms

    order = np.argsort(-scores, kind="stable")[:top_k]
    return [QueryResult(document=documents[i], score=float(np.clip(scores[i], -1.0, 1.0))) for i in order]


class IVectorStore(ABC):
    """Abstract interface for collection-scoped vector storage."""

    def initialize(self, dimension: int, model_name: str) -> None:
        """Fix the store to one embedding dimension and model, or verify it matches."""
        meta = self.get_meta()
        stored_dimension = meta.get("embedding_dimension")
        stored_model = meta.get("embedding_model")
        if stored_dimension is None:
            self.set_meta(dimension, model_name)
            return
        if int(stored_dimension) != int(dimension) or stored_model != model_name:
            raise EmbeddingDimensionError(
                f"Store is fixed to {stored_model} ({stored_dimension} dims); "
                f"{model_name} ({dimension} dims) requires a full rebuild"
            )

    @abstractmethod
    def get_meta(self) -> Dict[str, str]:
        pass

    @abstractmethod
    def set_meta(self, dimension: int, model_name: str) -> None:
        pass

    @abstractmethod
    def add(self, document: VectorDocument) -> None:
        """Add or replace a single document."""
        pass

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[VectorDocument]:
        pass

    @abstractmethod
    def list(self, collection: str) -> List[VectorDocument]:
        """All documents of a collection, oldest first."""
        pass

    def search(self, collection: str, query_vector: np.ndarray, top_k: int = 10,
               predicate: Callable[[VectorDocument], bool] = None) -> List[QueryResult]:
        """Search for similar vectors and return ranked results.

        ``predicate`` narrows the candidates before ranking.
        """
        documents = self.list(collection)
        if predicate is not None:
            documents = [doc for doc in documents if predicate(doc)]
        return rank_by_cosine(query_vector, documents, top_k)

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document by ID; returns whether it existed."""
        pass

    @abstractmethod
    def clear(self, collection: str) -> int:
        """Clear all documents from one collection."""
        pass

    @abstractmethod
    def count(self, collection: str) -> int:
        pass


class SimpleInMemoryVectorStore(IVectorStore):
    """Simple in-memory implementation of IVectorStore using cosine similarity."""

    def __init__(self):
        self._documents: Dict[str, Dict[str, VectorDocument]] = {name: {} for name in COLLECTIONS}
        self._meta: Dict[str, str] = {}

    def get_meta(self) -> Dict[str, str]:
        return dict(self._meta)

    def set_meta(self, dimension: int, model_name: str) -> None:
        self._meta = {"embedding_dimension": str(dimension), "embedding_model": model_name}

    def add(self, document: VectorDocument) -> None:
        self._documents[document.collection][document.id] = document

    def get(self, collection: str, doc_id: str) -> Optional[VectorDocument]:
        return self._documents[collection].get(doc_id)

    def list(self, collection: str) -> List[VectorDocument]:
        return sorted(self._documents[collection].values(), key=lambda d: d.timestamp)

    def delete(self, collection: str, doc_id: str) -> bool:
        return self._documents[collection].pop(doc_id, None) is not None

    def clear(self, collection: str) -> int:
        removed = len(self._documents[collection])
        self._documents[collection].clear()
        return removed

    def count(self, collection: str) -> int:
        return len(self._documents[collection])
