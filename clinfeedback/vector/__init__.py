"""
Vector collections for semantic lookup over anonymized correction context.
The SQL correction log stays canonical; vectors can always be rebuilt from it.
"""

# Package initialization for vector module
from .index import IVectorStore, SimpleInMemoryVectorStore
from .sqlite_store import SqliteVectorStore
from .types import VectorDocument, QueryResult, DocumentCluster
from .embeddings import IEmbeddingProvider, DeterministicHashEmbedding, SentenceTransformerEmbedding
from .embedding_store import EmbeddingStore

__all__ = [
    'IVectorStore',
    'SimpleInMemoryVectorStore',
    'SqliteVectorStore',
    'VectorDocument',
    'QueryResult',
    'DocumentCluster',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'SentenceTransformerEmbedding',
    'EmbeddingStore'
]
