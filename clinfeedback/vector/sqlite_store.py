"""
SQLite-backed vector collections sharing the feedback database.
Embeddings are stored as float32 blobs; the store's dimension and model live in store_meta.
"""

import json
from typing import Dict, List, Optional
import numpy as np

from .index import IVectorStore
from .types import VectorDocument
from ..core.db import get_db, init_db
from ..core.schema import format_timestamp, parse_timestamp
from ..util.logging import logger


def _row_to_document(row) -> VectorDocument:
    return VectorDocument(
        id=row["id"],
        collection=row["collection"],
        text=row["text"],
        embedding=np.frombuffer(row["embedding"], dtype=np.float32).copy(),
        metadata=json.loads(row["metadata_json"] or "{}"),
        domain_key=row["domain_key"],
        timestamp=parse_timestamp(row["created_at"]),
    )


class SqliteVectorStore(IVectorStore):
    """Persistent IVectorStore over the vector_documents table."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        init_db(db_path)

    def get_meta(self) -> Dict[str, str]:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT key, value FROM store_meta")
            return {row["key"]: row["value"] for row in cursor.fetchall()}

    def set_meta(self, dimension: int, model_name: str) -> None:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.executemany(
                "INSERT OR REPLACE INTO store_meta (key, value) VALUES (?, ?)",
                [("embedding_dimension", str(dimension)), ("embedding_model", model_name)]
            )
            conn.commit()

    def add(self, document: VectorDocument) -> None:
        if document.embedding is None:
            raise ValueError(f"Document '{document.id}' has no embedding")

        embedding = np.asarray(document.embedding, dtype=np.float32)
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT OR REPLACE INTO vector_documents
                    (collection, id, text, embedding, metadata_json, domain_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (
                document.collection,
                document.id,
                document.text,
                embedding.tobytes(),
                json.dumps(document.metadata),
                document.domain_key,
                format_timestamp(document.timestamp),
            ))
            conn.commit()

    def get(self, collection: str, doc_id: str) -> Optional[VectorDocument]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT * FROM vector_documents WHERE collection = ? AND id = ?",
                    (collection, doc_id)
                )
                row = cursor.fetchone()
                return _row_to_document(row) if row else None
        except Exception as e:
            logger.error(f"Failed to get vector document '{doc_id}' from '{collection}': {e}")
            return None

    def list(self, collection: str) -> List[VectorDocument]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT * FROM vector_documents WHERE collection = ? ORDER BY created_at ASC, rowid ASC",
                    (collection,)
                )
                return [_row_to_document(row) for row in cursor.fetchall()]
        except Exception as e:
            logger.error(f"Failed to list vector collection '{collection}': {e}")
            return []

    def delete(self, collection: str, doc_id: str) -> bool:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM vector_documents WHERE collection = ? AND id = ?", (collection, doc_id))
            conn.commit()
            return cursor.rowcount > 0

    def clear(self, collection: str) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM vector_documents WHERE collection = ?", (collection,))
            conn.commit()
            return cursor.rowcount

    def count(self, collection: str) -> int:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) FROM vector_documents WHERE collection = ?", (collection,))
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error(f"Failed to count vector collection '{collection}': {e}")
            return 0
