"""
Async embedding store over named vector collections.
Wraps an embedding provider and an IVectorStore; initialization happens once per instance.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
import numpy as np

from .embeddings import IEmbeddingProvider
from .index import EmbeddingDimensionError, IVectorStore
from .types import COLLECTIONS, DocumentCluster, QueryResult, VectorDocument
from ..core.config import COLLECTION_EVICTION_POLICY, EMBED_TIMEOUT_SEC, MAX_COLLECTION_SIZE
from ..core.schema import parse_timestamp, utc_now
from ..core.similarity import cosine_similarity
from ..core.snapshot import CollectionSnapshot, SnapshotValidationError, validate_payload
from ..util.logging import logger

DocumentFilter = Union[Callable[[VectorDocument], bool], Dict[str, Any], None]


class StoreNotReadyError(RuntimeError):
    """Raised when the store failed to initialize."""


class UnknownCollectionError(ValueError):
    """Raised for a collection name outside the fixed set."""


class CollectionFullError(RuntimeError):
    """Raised when a collection is at capacity under the reject policy."""


def _matches_filter(document: VectorDocument, doc_filter: DocumentFilter) -> bool:
    if doc_filter is None:
        return True
    if callable(doc_filter):
        return bool(doc_filter(document))
    return all(document.metadata.get(key) == value for key, value in doc_filter.items())


class EmbeddingStore:
    """Semantic search, similarity and clustering over the fixed collections."""

    def __init__(self, provider: IEmbeddingProvider, vector_store: IVectorStore, anonymizer=None,
                 max_collection_size: int = MAX_COLLECTION_SIZE,
                 eviction_policy: str = COLLECTION_EVICTION_POLICY,
                 embed_timeout_sec: float = EMBED_TIMEOUT_SEC):
        if eviction_policy not in ("reject", "evict_oldest"):
            raise ValueError(f"Invalid eviction policy: {eviction_policy}")
        self.provider = provider
        self.vector_store = vector_store
        self.anonymizer = anonymizer
        self.max_collection_size = max_collection_size
        self.eviction_policy = eviction_policy
        self.embed_timeout_sec = embed_timeout_sec

        self._init_lock = asyncio.Lock()
        self._init_attempted = False
        self._ready = False
        self._init_error: Optional[BaseException] = None
        self.dimension: Optional[int] = None

    # Lifecycle ---------------------------------------------------------------

    async def initialize(self) -> bool:
        """Load the model and fix the store dimension. Safe to call concurrently.

        Only the first caller performs the work; its outcome, success or failure,
        is what every later caller observes.
        """
        async with self._init_lock:
            if self._init_attempted:
                return self._ready
            self._init_attempted = True
            try:
                await asyncio.to_thread(self.provider.load)
                dimension = self.provider.get_dimension()
                self.vector_store.initialize(dimension, self.provider.model_name)
                self.dimension = dimension
                self._ready = True
                logger.log_vector_operation("initialize", "store", {
                    "model": self.provider.model_name, "dimension": dimension
                })
            except Exception as e:
                self._init_error = e
                self._ready = False
                logger.log_vector_operation("initialize", "store", {"error": str(e)[:100]}, status="failed")
            return self._ready

    def is_ready(self) -> bool:
        return self._ready

    async def ensure_ready(self) -> None:
        if not await self.initialize():
            raise StoreNotReadyError(f"Embedding store unavailable: {self._init_error}")

    @staticmethod
    def _check_collection(collection: str) -> None:
        if collection not in COLLECTIONS:
            raise UnknownCollectionError(f"Unknown collection: {collection}")

    # Embeddings --------------------------------------------------------------

    async def generate_embedding(self, text: str) -> np.ndarray:
        """Embed ``text`` off the event loop, bounded by the configured timeout."""
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Text must be a non-empty string")
        await self.ensure_ready()

        embedding = await asyncio.wait_for(
            asyncio.to_thread(self.provider.embed_text, text),
            timeout=self.embed_timeout_sec,
        )
        embedding = np.asarray(embedding, dtype=np.float32).ravel()
        if embedding.shape[0] != self.dimension:
            raise EmbeddingDimensionError(
                f"Provider returned {embedding.shape[0]} dims, store is fixed to {self.dimension}")
        return embedding

    def _scrub(self, text: str) -> str:
        if self.anonymizer is None:
            return text
        return self.anonymizer.anonymize(text).anonymized

    # Documents ---------------------------------------------------------------

    async def store_document(self, collection: str, text: str, metadata: Dict[str, Any] = None,
                             doc_id: str = None, domain_key: str = None,
                             embedding: Optional[np.ndarray] = None,
                             timestamp: Optional[datetime] = None) -> str:
        """Embed and persist one document; returns its id."""
        self._check_collection(collection)
        await self.ensure_ready()

        text = self._scrub(text)
        if embedding is None:
            embedding = await self.generate_embedding(text)
        else:
            embedding = np.asarray(embedding, dtype=np.float32).ravel()
            if embedding.shape[0] != self.dimension:
                raise EmbeddingDimensionError(
                    f"Embedding has {embedding.shape[0]} dims, store is fixed to {self.dimension}")

        doc_id = doc_id or str(uuid.uuid4())
        if self.vector_store.get(collection, doc_id) is None:
            self._make_room(collection)

        document = VectorDocument(
            id=doc_id,
            collection=collection,
            text=text,
            embedding=embedding,
            metadata=dict(metadata or {}),
            domain_key=domain_key,
            timestamp=timestamp or utc_now(),
        )
        self.vector_store.add(document)
        logger.log_vector_operation("stored", doc_id, {"collection": collection})
        return doc_id

    def _make_room(self, collection: str) -> None:
        if self.vector_store.count(collection) < self.max_collection_size:
            return
        if self.eviction_policy == "reject":
            raise CollectionFullError(
                f"Collection '{collection}' is at its cap of {self.max_collection_size} documents")

        oldest = self.vector_store.list(collection)[0]
        self.vector_store.delete(collection, oldest.id)
        logger.log_vector_operation("evicted", oldest.id, {"collection": collection})

    async def get_document(self, collection: str, doc_id: str) -> Optional[VectorDocument]:
        self._check_collection(collection)
        await self.ensure_ready()
        return self.vector_store.get(collection, doc_id)

    async def delete_document(self, collection: str, doc_id: str) -> bool:
        self._check_collection(collection)
        await self.ensure_ready()
        deleted = self.vector_store.delete(collection, doc_id)
        if deleted:
            logger.log_vector_operation("deleted", doc_id, {"collection": collection})
        return deleted

    async def clear_collection(self, collection: str) -> int:
        self._check_collection(collection)
        await self.ensure_ready()
        removed = self.vector_store.clear(collection)
        logger.log_vector_operation("cleared", collection, {"removed": removed})
        return removed

    # Search ------------------------------------------------------------------

    async def semantic_search(self, collection: str, query: str, top_k: int = 10,
                              min_similarity: float = 0.5, filter: DocumentFilter = None) -> List[QueryResult]:
        """Rank a collection against a free-text query."""
        self._check_collection(collection)
        query_vector = await self.generate_embedding(self._scrub(query))

        ranked = self.vector_store.search(
            collection, query_vector, top_k, predicate=lambda doc: _matches_filter(doc, filter)
        )
        return [result for result in ranked if result.score >= min_similarity]

    async def find_similar(self, collection: str, doc_id: str, top_k: int = 10,
                           min_similarity: float = 0.5, filter: DocumentFilter = None) -> List[QueryResult]:
        """Documents most similar to an existing one, excluding itself."""
        self._check_collection(collection)
        await self.ensure_ready()
        source = self.vector_store.get(collection, doc_id)
        if source is None:
            raise KeyError(f"Document not found: {doc_id}")

        ranked = self.vector_store.search(
            collection, source.embedding, top_k,
            predicate=lambda doc: doc.id != doc_id and _matches_filter(doc, filter),
        )
        return [result for result in ranked if result.score >= min_similarity]

    async def cluster_documents(self, collection: str, min_cluster_size: int = 2,
                                similarity_threshold: float = 0.7) -> List[DocumentCluster]:
        """Greedy single-link clustering around seed documents, oldest first."""
        self._check_collection(collection)
        await self.ensure_ready()

        documents = self.vector_store.list(collection)
        processed = set()
        clusters = []
        for seed in documents:
            if seed.id in processed:
                continue
            processed.add(seed.id)
            members = [seed]
            for other in documents:
                if other.id in processed:
                    continue
                if cosine_similarity(seed.embedding, other.embedding) >= similarity_threshold:
                    members.append(other)
                    processed.add(other.id)

            if len(members) >= min_cluster_size:
                centroid = np.mean(np.vstack([m.embedding for m in members]), axis=0).astype(np.float32)
                clusters.append(DocumentCluster(documents=members, centroid=centroid))

        clusters.sort(key=lambda c: c.size, reverse=True)
        return clusters

    # Statistics and transfer -------------------------------------------------

    async def get_statistics(self) -> Dict[str, Any]:
        ready = await self.initialize()
        collections = {}
        if ready:
            collections = {name: self.vector_store.count(name) for name in COLLECTIONS}
        return {
            "ready": ready,
            "model": self.provider.model_name,
            "dimension": self.dimension,
            "max_collection_size": self.max_collection_size,
            "eviction_policy": self.eviction_policy,
            "collections": collections,
            "total_documents": sum(collections.values()),
        }

    async def export_collection(self, collection: str) -> Dict[str, Any]:
        self._check_collection(collection)
        await self.ensure_ready()
        documents = self.vector_store.list(collection)
        return {
            "collection": collection,
            "exported_at": utc_now().isoformat(),
            "model": self.provider.model_name,
            "dimension": self.dimension,
            "document_count": len(documents),
            "documents": [doc.to_dict() for doc in documents],
        }

    def validate_collection_export(self, collection: str, data: Any) -> CollectionSnapshot:
        """Check an exported collection before anything is written."""
        self._check_collection(collection)
        snapshot = validate_payload(CollectionSnapshot, data, f"import.{collection}")

        if snapshot.dimension is not None and self.dimension is not None and snapshot.dimension != self.dimension:
            raise SnapshotValidationError(
                f"Export dimension {snapshot.dimension} does not match store dimension {self.dimension}")
        for document in snapshot.documents:
            if document.embedding is not None and len(document.embedding) != self.dimension:
                raise SnapshotValidationError(
                    f"Document '{document.id}' has {len(document.embedding)} dims, store is fixed to {self.dimension}")
        return snapshot

    async def import_collection(self, collection: str, data: Any) -> Dict[str, int]:
        """Validate the whole export, then write documents one by one.

        Documents already present under the same id are kept. The loop is not
        atomic; a failure part-way leaves earlier documents committed.
        """
        await self.ensure_ready()
        snapshot = self.validate_collection_export(collection, data)

        counts = {"imported": 0, "skipped": 0}
        for document in snapshot.documents:
            if document.id and self.vector_store.get(collection, document.id) is not None:
                counts["skipped"] += 1
                continue
            await self.store_document(
                collection,
                document.text,
                metadata=document.metadata,
                doc_id=document.id,
                domain_key=document.domain_key,
                embedding=np.asarray(document.embedding, dtype=np.float32) if document.embedding is not None else None,
                timestamp=parse_timestamp(document.timestamp),
            )
            counts["imported"] += 1

        logger.log_import(f"vector.{collection}", counts)
        return counts
