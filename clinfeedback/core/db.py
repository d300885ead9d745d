"""
SQLite foundation for the feedback loop.
One database file holds the correction log, patterns, metrics history and vector collections.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator
from .config import DB_PATH, ensure_db_directory

REQUIRED_TABLES = [
    'corrections', 'field_stats', 'patterns', 'metrics_snapshots',
    'pattern_outcomes', 'vector_documents', 'store_meta',
]


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path or DB_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str = None):
    """Initialize the database with required tables."""
    ensure_db_directory(db_path)

    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # Append-only correction log
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS corrections (
                id TEXT PRIMARY KEY,
                field_path TEXT NOT NULL,
                pathology TEXT NOT NULL DEFAULT 'unknown',
                extraction_method TEXT,
                confidence_before REAL DEFAULT 0.0,
                correction_type TEXT,
                transformation_type TEXT,
                before_json TEXT,
                after_json TEXT,
                source_context TEXT,  -- anonymized before insert
                features_json TEXT,
                diff_json TEXT,
                anonymization_json TEXT,
                created_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS field_stats (
                field_path TEXT PRIMARY KEY,
                correction_count INTEGER NOT NULL DEFAULT 0,
                applications INTEGER NOT NULL DEFAULT 0,
                last_correction_at TEXT,
                updated_at TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS patterns (
                id TEXT PRIMARY KEY,
                field_path TEXT NOT NULL,
                pathology TEXT,  -- NULL applies to every pathology
                match_rule_json TEXT NOT NULL,
                confidence REAL NOT NULL DEFAULT 0.0,
                success_count INTEGER NOT NULL DEFAULT 0,
                application_count INTEGER NOT NULL DEFAULT 0,
                enabled INTEGER NOT NULL DEFAULT 1,
                origin_ids_json TEXT,
                created_at TEXT NOT NULL,
                last_applied_at TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS metrics_snapshots (
                id TEXT PRIMARY KEY,
                accuracy REAL NOT NULL,
                partial_accuracy REAL DEFAULT 0.0,
                precision_score REAL DEFAULT 0.0,
                recall REAL DEFAULT 0.0,
                f1 REAL DEFAULT 0.0,
                per_field_json TEXT,
                source TEXT,
                timestamp TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS pattern_outcomes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern_id TEXT NOT NULL,
                success INTEGER NOT NULL,
                timestamp TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS vector_documents (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                text TEXT NOT NULL,
                embedding BLOB NOT NULL,
                metadata_json TEXT,
                domain_key TEXT,
                created_at TEXT NOT NULL,
                PRIMARY KEY (collection, id)
            )
        ''')

        # Fixed embedding dimension and model name for the store
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS store_meta (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        ''')

        # Create indexes for performance
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_corrections_field_ts ON corrections(field_path, created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_corrections_pathology_ts ON corrections(pathology, created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_patterns_field ON patterns(field_path, enabled)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_patterns_created ON patterns(created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_metrics_ts ON metrics_snapshots(timestamp)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_outcomes_pattern_ts ON pattern_outcomes(pattern_id, timestamp)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_vectors_collection_ts ON vector_documents(collection, created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_vectors_domain ON vector_documents(collection, domain_key)')

        conn.commit()


def health_check(db_path: str = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
