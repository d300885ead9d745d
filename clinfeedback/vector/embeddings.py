"""
Embedding providers.
Sentence-transformers for real semantic recall; deterministic feature hashing for tests and development.
"""

from abc import ABC, abstractmethod
import hashlib
import re
import numpy as np
from sentence_transformers import SentenceTransformer


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    model_name = "unknown"

    def load(self) -> None:
        """Load any heavyweight resources. Called once by the store before first use."""
        return None

    @abstractmethod
    def embed_text(self, text: str) -> np.ndarray:
        """Generate a pooled, L2-normalized embedding vector for given text."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic feature-hashing embedding provider for testing purposes.

    Each lowercase token is hashed to a signed bucket and the counts are
    L2-normalized, so texts sharing words have a positive cosine and
    identical texts have cosine 1.0, without requiring a model download.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension
        self.model_name = f"hash-{dimension}"

    def embed_text(self, text: str) -> np.ndarray:
        """Generate deterministic embedding vector using hash function."""
        vector = np.zeros(self.dimension, dtype=np.float32)
        for token in re.findall(r'\w+', (text or "").lower()):
            digest = hashlib.md5(token.encode()).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using pre-trained models.

    Uses all-MiniLM-L6-v2 (mean pooling, 384 dimensions) by default.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def load(self) -> None:
        self._dimension = self.model.get_sentence_embedding_dimension()

    def embed_text(self, text: str) -> np.ndarray:
        """Generate embedding vector using sentence transformers."""
        embedding = self.model.encode(text, convert_to_numpy=True, normalize_embeddings=True)
        return np.asarray(embedding, dtype=np.float32)

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        if self._dimension is None:
            self._dimension = self.model.get_sentence_embedding_dimension()
        return self._dimension
