#!/usr/bin/env python3
"""
Index Rebuild Utility
Re-embeds every vector document with the configured embedding provider.
Run after changing EMBED_PROVIDER or EMBED_MODEL_NAME; the store refuses a new model until rebuilt.
"""

import argparse
import sys

from clinfeedback.core.config import DB_PATH, get_embedding_provider, get_vector_store
from clinfeedback.core.db import init_db
from clinfeedback.vector.types import COLLECTIONS


def rebuild(db_path: str = None, vector_store=None, embedding_provider=None) -> dict:
    """Re-embed all collections; returns embedded/failed counts.

    New vectors are computed for every document first. The store is only
    switched to the new model, and the vectors written, when none failed;
    otherwise it is left exactly as it was.
    """
    init_db(db_path)
    vector_store = vector_store or get_vector_store(db_path)
    embedding_provider = embedding_provider or get_embedding_provider()
    embedding_provider.load()

    counts = {"embedded": 0, "failed": 0}
    rebuilt = []
    for collection in COLLECTIONS:
        documents = vector_store.list(collection)
        print(f"Re-embedding {len(documents)} documents in '{collection}'")
        for document in documents:
            try:
                document.embedding = embedding_provider.embed_text(document.text)
            except Exception as e:
                print(f"ERROR: Failed to embed document {document.id}: {e}")
                counts["failed"] += 1
                continue

            rebuilt.append(document)
            counts["embedded"] += 1
            if counts["embedded"] % 100 == 0:
                print(f"  ... embedded {counts['embedded']} documents")

    if counts["failed"]:
        print("Index left unchanged")
        return counts

    dimension = embedding_provider.get_dimension()
    vector_store.set_meta(dimension, embedding_provider.model_name)
    for document in rebuilt:
        vector_store.add(document)
    print(f"✓ Store fixed to {embedding_provider.model_name} ({dimension} dims)")
    return counts


def main(argv=None):
    """Rebuild vector embeddings from the stored anonymized text."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--db-path", default=DB_PATH, help="feedback database file")
    args = parser.parse_args(argv)

    print("Starting vector index rebuild...")
    counts = rebuild(args.db_path)

    if counts["failed"]:
        print(f"WARNING: {counts['failed']} documents could not be embedded; rerun the rebuild")
        sys.exit(1)

    print(f"✓ Successfully re-embedded {counts['embedded']} documents")
    print("Index rebuild complete!")


if __name__ == "__main__":
    main()
