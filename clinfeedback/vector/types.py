"""
Vector collection records.
Embedding text is always anonymized before a VectorDocument is built.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import numpy as np

from ..core.schema import format_timestamp, utc_now

# Fixed collection set; each is indexed by timestamp plus one domain key
COLLECTIONS = {
    "notes": "pathology",
    "patterns": "field_path",
    "entities": "entity_type",
    "summaries": "pathology",
}


@dataclass
class VectorDocument:
    """A document stored in one named vector collection."""

    id: str
    """Unique identifier within the collection"""

    collection: str
    """One of COLLECTIONS"""

    text: str
    """Anonymized text the embedding was generated from"""

    embedding: Optional[np.ndarray]
    """Float32 embedding; one dimension per store"""

    metadata: Dict[str, Any] = field(default_factory=dict)

    domain_key: Optional[str] = None
    """Field, entity type or pathology this document is filed under"""

    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self, include_embedding: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "text": self.text,
            "metadata": dict(self.metadata),
            "domain_key": self.domain_key,
            "timestamp": format_timestamp(self.timestamp),
        }
        if include_embedding and self.embedding is not None:
            data["embedding"] = [float(x) for x in self.embedding]
        return data


@dataclass
class QueryResult:
    """Represents a search result from a vector collection."""

    document: VectorDocument
    score: float
    """Cosine similarity of the match"""

    @property
    def id(self) -> str:
        return self.document.id

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.document.metadata


@dataclass
class DocumentCluster:
    documents: List[VectorDocument]
    centroid: np.ndarray

    @property
    def size(self) -> int:
        return len(self.documents)
