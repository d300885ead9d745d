"""
Environment-driven configuration for the feedback loop.
Thresholds are read once at import; services take them as constructor defaults.
"""

import os
from pathlib import Path

# Database path configuration
DB_PATH = os.getenv("FEEDBACK_DB_PATH", "./data/feedback.db")

# Embedding configuration
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "hash")  # hash|sentence_transformers
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-MiniLM-L6-v2")
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))
EMBED_TIMEOUT_SEC = float(os.getenv("EMBED_TIMEOUT_SEC", "30"))

# Vector store configuration
VECTOR_PROVIDER = os.getenv("VECTOR_PROVIDER", "sqlite")  # memory|sqlite
MAX_COLLECTION_SIZE = int(os.getenv("MAX_COLLECTION_SIZE", "10000"))
COLLECTION_EVICTION_POLICY = os.getenv("COLLECTION_EVICTION_POLICY", "reject")  # reject|evict_oldest
SEMANTIC_LEARNING_ENABLED = os.getenv("SEMANTIC_LEARNING_ENABLED", "true").lower() == "true"

# Learning policy
LEARNING_SIMILARITY_THRESHOLD = float(os.getenv("LEARNING_SIMILARITY_THRESHOLD", "0.7"))
MIN_CORRECTIONS_FOR_PATTERN = int(os.getenv("MIN_CORRECTIONS_FOR_PATTERN", "3"))
MAX_PATTERN_CONFIDENCE = float(os.getenv("MAX_PATTERN_CONFIDENCE", "0.95"))
LEARNING_CANDIDATE_WINDOW = int(os.getenv("LEARNING_CANDIDATE_WINDOW", "500"))
RETIRE_MIN_APPLICATIONS = int(os.getenv("RETIRE_MIN_APPLICATIONS", "10"))
RETIRE_SUCCESS_RATE = float(os.getenv("RETIRE_SUCCESS_RATE", "0.5"))

# Similarity thresholds
DEDUP_THRESHOLD = float(os.getenv("DEDUP_THRESHOLD", "0.85"))
PATTERN_DUPLICATE_THRESHOLD = float(os.getenv("PATTERN_DUPLICATE_THRESHOLD", "0.70"))
FUZZY_MATCH_THRESHOLD = float(os.getenv("FUZZY_MATCH_THRESHOLD", "0.60"))

# Metrics policy
TREND_WINDOW_DAYS = int(os.getenv("TREND_WINDOW_DAYS", "30"))
TREND_DELTA = float(os.getenv("TREND_DELTA", "0.05"))
EFFECTIVENESS_SAMPLE_SIZE = int(os.getenv("EFFECTIVENESS_SAMPLE_SIZE", "10"))
EFFECTIVENESS_DELTA = float(os.getenv("EFFECTIVENESS_DELTA", "0.02"))

# Privacy
PRIVACY_AUDIT_LEVEL = os.getenv("PRIVACY_AUDIT_LEVEL", "standard")  # minimal|standard|verbose

SNAPSHOT_VERSION = "1"


def get_vector_store(db_path: str = None):
    """Get configured vector store implementation."""
    if VECTOR_PROVIDER == "memory":
        from clinfeedback.vector.index import SimpleInMemoryVectorStore
        return SimpleInMemoryVectorStore()

    from clinfeedback.vector.sqlite_store import SqliteVectorStore
    return SqliteVectorStore(db_path or DB_PATH)


def get_embedding_provider():
    """Get configured embedding provider implementation."""
    if EMBED_PROVIDER == "sentence_transformers":
        from clinfeedback.vector.embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(EMBED_MODEL_NAME)

    from clinfeedback.vector.embeddings import DeterministicHashEmbedding
    return DeterministicHashEmbedding(dimension=EMBED_DIM)


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def validate_config():
    """Validate feedback configuration and return any issues."""
    issues = []

    if EMBED_PROVIDER not in ["hash", "sentence_transformers"]:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    if VECTOR_PROVIDER not in ["memory", "sqlite"]:
        issues.append(f"Invalid VECTOR_PROVIDER: {VECTOR_PROVIDER}")

    if COLLECTION_EVICTION_POLICY not in ["reject", "evict_oldest"]:
        issues.append(f"Invalid COLLECTION_EVICTION_POLICY: {COLLECTION_EVICTION_POLICY}")

    if PRIVACY_AUDIT_LEVEL not in ["minimal", "standard", "verbose"]:
        issues.append(f"Invalid PRIVACY_AUDIT_LEVEL: {PRIVACY_AUDIT_LEVEL}")

    if EMBED_DIM < 1:
        issues.append("EMBED_DIM must be >= 1")

    if EMBED_TIMEOUT_SEC <= 0:
        issues.append("EMBED_TIMEOUT_SEC must be > 0")

    if MAX_COLLECTION_SIZE < 1:
        issues.append("MAX_COLLECTION_SIZE must be >= 1")

    if MIN_CORRECTIONS_FOR_PATTERN < 1:
        issues.append("MIN_CORRECTIONS_FOR_PATTERN must be >= 1")

    for name, value in [
        ("LEARNING_SIMILARITY_THRESHOLD", LEARNING_SIMILARITY_THRESHOLD),
        ("RETIRE_SUCCESS_RATE", RETIRE_SUCCESS_RATE),
        ("MAX_PATTERN_CONFIDENCE", MAX_PATTERN_CONFIDENCE),
        ("DEDUP_THRESHOLD", DEDUP_THRESHOLD),
        ("PATTERN_DUPLICATE_THRESHOLD", PATTERN_DUPLICATE_THRESHOLD),
        ("FUZZY_MATCH_THRESHOLD", FUZZY_MATCH_THRESHOLD),
    ]:
        if not 0.0 <= value <= 1.0:
            issues.append(f"{name} must be between 0 and 1")

    return issues
