"""
Data access for the correction log, field statistics, patterns and metrics history.
Reads log failures and return empty results; writes raise to the caller.
"""

import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .db import get_db, init_db
from .schema import (
    CorrectionRecord, FeatureBag, DiffResult, FieldValue, MatchRule, MetricsSnapshot,
    Pattern, format_timestamp, parse_timestamp, utc_now,
)
from ..util.logging import logger


def _correction_row(record: CorrectionRecord) -> tuple:
    return (
        record.id,
        record.field_path,
        record.pathology,
        record.extraction_method,
        record.confidence_before,
        record.correction_type,
        record.features.transformation_type,
        json.dumps(record.before.to_dict()),
        json.dumps(record.after.to_dict()),
        record.source_context,
        json.dumps(record.features.to_dict()),
        json.dumps(record.diff.to_dict()),
        json.dumps(record.anonymization),
        format_timestamp(record.created_at),
    )


def _row_to_correction(row: sqlite3.Row) -> CorrectionRecord:
    return CorrectionRecord(
        id=row["id"],
        field_path=row["field_path"],
        before=FieldValue.from_dict(json.loads(row["before_json"] or "{}")),
        after=FieldValue.from_dict(json.loads(row["after_json"] or "{}")),
        source_context=row["source_context"],
        pathology=row["pathology"],
        extraction_method=row["extraction_method"] or "unknown",
        confidence_before=row["confidence_before"] or 0.0,
        created_at=parse_timestamp(row["created_at"]),
        correction_type=row["correction_type"] or "modification",
        features=FeatureBag.from_dict(json.loads(row["features_json"] or "{}")),
        diff=DiffResult.from_dict(json.loads(row["diff_json"] or "{}")),
        anonymization=json.loads(row["anonymization_json"] or "{}"),
    )


def _pattern_row(pattern: Pattern) -> tuple:
    return (
        pattern.id,
        pattern.field_path,
        pattern.pathology,
        json.dumps(pattern.match_rule.to_dict()),
        pattern.confidence,
        pattern.success_count,
        pattern.application_count,
        1 if pattern.enabled else 0,
        json.dumps(pattern.origin_correction_ids),
        format_timestamp(pattern.created_at),
        format_timestamp(pattern.last_applied_at),
    )


def _row_to_pattern(row: sqlite3.Row) -> Pattern:
    return Pattern(
        id=row["id"],
        field_path=row["field_path"],
        pathology=row["pathology"],
        match_rule=MatchRule.from_dict(json.loads(row["match_rule_json"])),
        confidence=row["confidence"],
        success_count=row["success_count"],
        application_count=row["application_count"],
        enabled=bool(row["enabled"]),
        origin_correction_ids=json.loads(row["origin_ids_json"] or "[]"),
        created_at=parse_timestamp(row["created_at"]),
        last_applied_at=parse_timestamp(row["last_applied_at"]),
    )


def _row_to_snapshot(row: sqlite3.Row) -> MetricsSnapshot:
    return MetricsSnapshot(
        id=row["id"],
        accuracy=row["accuracy"],
        timestamp=parse_timestamp(row["timestamp"]),
        partial_accuracy=row["partial_accuracy"] or 0.0,
        precision=row["precision_score"] or 0.0,
        recall=row["recall"] or 0.0,
        f1=row["f1"] or 0.0,
        per_field_results=json.loads(row["per_field_json"] or "{}"),
        source=row["source"] or "extraction",
    )


INSERT_CORRECTION = '''
    INSERT INTO corrections (
        id, field_path, pathology, extraction_method, confidence_before,
        correction_type, transformation_type, before_json, after_json,
        source_context, features_json, diff_json, anonymization_json, created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
'''

INSERT_PATTERN = '''
    INSERT INTO patterns (
        id, field_path, pathology, match_rule_json, confidence, success_count,
        application_count, enabled, origin_ids_json, created_at, last_applied_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
'''

INSERT_SNAPSHOT = '''
    INSERT OR REPLACE INTO metrics_snapshots (
        id, accuracy, partial_accuracy, precision_score, recall, f1,
        per_field_json, source, timestamp
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
'''


class LearningDAO:
    """SQLite access for everything the feedback loop persists except vectors."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        init_db(db_path)

    # Corrections -------------------------------------------------------------

    def append_correction(self, record: CorrectionRecord) -> None:
        """Append one correction and bump its field counter in one transaction."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(INSERT_CORRECTION, _correction_row(record))
            self._bump_field(cursor, record.field_path, format_timestamp(record.created_at))
            conn.commit()

    def append_corrections(self, records: Iterable[CorrectionRecord], skip_existing: bool = True) -> int:
        """Append a batch atomically; returns the number of rows inserted."""
        inserted = 0
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            try:
                for record in records:
                    if skip_existing:
                        cursor.execute("SELECT 1 FROM corrections WHERE id = ?", (record.id,))
                        if cursor.fetchone():
                            continue
                    cursor.execute(INSERT_CORRECTION, _correction_row(record))
                    self._bump_field(cursor, record.field_path, format_timestamp(record.created_at))
                    inserted += 1
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        return inserted

    def get_correction(self, correction_id: str) -> Optional[CorrectionRecord]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT * FROM corrections WHERE id = ?", (correction_id,))
                row = cursor.fetchone()
                return _row_to_correction(row) if row else None
        except Exception as e:
            logger.error(f"Failed to get correction '{correction_id}': {e}")
            return None

    def get_corrections_by_ids(self, correction_ids: List[str]) -> List[CorrectionRecord]:
        if not correction_ids:
            return []
        try:
            placeholders = ",".join("?" for _ in correction_ids)
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"SELECT * FROM corrections WHERE id IN ({placeholders}) ORDER BY created_at, rowid",
                    list(correction_ids)
                )
                return [_row_to_correction(row) for row in cursor.fetchall()]
        except Exception as e:
            logger.error(f"Failed to load {len(correction_ids)} corrections: {e}")
            return []

    def list_corrections(self, field_path: str = None, pathology: str = None,
                         start: datetime = None, end: datetime = None,
                         limit: int = None, newest_first: bool = False) -> List[CorrectionRecord]:
        """List corrections filtered by field, pathology and time range."""
        clauses = []
        params: List[Any] = []
        if field_path:
            clauses.append("field_path = ?")
            params.append(field_path)
        if pathology:
            clauses.append("pathology = ?")
            params.append(pathology)
        if start:
            clauses.append("created_at >= ?")
            params.append(format_timestamp(start))
        if end:
            clauses.append("created_at <= ?")
            params.append(format_timestamp(end))

        query = "SELECT * FROM corrections"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        order = "DESC" if newest_first else "ASC"
        query += f" ORDER BY created_at {order}, rowid {order}"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))

        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(query, params)
                return [_row_to_correction(row) for row in cursor.fetchall()]
        except Exception as e:
            logger.error(f"Failed to list corrections for field '{field_path}': {e}")
            return []

    def count_corrections(self) -> int:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) FROM corrections")
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error(f"Failed to count corrections: {e}")
            return 0

    def clear_corrections(self) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM corrections")
            removed = cursor.rowcount
            cursor.execute("DELETE FROM field_stats")
            conn.commit()
            return removed

    # Field statistics --------------------------------------------------------

    @staticmethod
    def _bump_field(cursor: sqlite3.Cursor, field_path: str, timestamp: str) -> None:
        now = format_timestamp(utc_now())
        cursor.execute('''
            INSERT INTO field_stats (field_path, correction_count, applications, last_correction_at, updated_at)
            VALUES (?, 1, 0, ?, ?)
            ON CONFLICT(field_path) DO UPDATE SET
                correction_count = correction_count + 1,
                last_correction_at = MAX(COALESCE(last_correction_at, ''), excluded.last_correction_at),
                updated_at = excluded.updated_at
        ''', (field_path, timestamp, now))

    def add_field_applications(self, field_path: str, count: int) -> None:
        now = format_timestamp(utc_now())
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO field_stats (field_path, correction_count, applications, updated_at)
                VALUES (?, 0, ?, ?)
                ON CONFLICT(field_path) DO UPDATE SET
                    applications = applications + excluded.applications,
                    updated_at = excluded.updated_at
            ''', (field_path, int(count), now))
            conn.commit()

    def get_field_stats(self) -> Dict[str, Dict[str, Any]]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT * FROM field_stats ORDER BY field_path")
                return {
                    row["field_path"]: {
                        "correction_count": row["correction_count"],
                        "applications": row["applications"],
                        "last_correction_at": parse_timestamp(row["last_correction_at"]),
                    }
                    for row in cursor.fetchall()
                }
        except Exception as e:
            logger.error(f"Failed to read field statistics: {e}")
            return {}

    def replace_field_applications(self, applications: Dict[str, int]) -> None:
        now = format_timestamp(utc_now())
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            for field_path, count in applications.items():
                cursor.execute('''
                    INSERT INTO field_stats (field_path, correction_count, applications, updated_at)
                    VALUES (?, 0, ?, ?)
                    ON CONFLICT(field_path) DO UPDATE SET
                        applications = MAX(applications, excluded.applications),
                        updated_at = excluded.updated_at
                ''', (field_path, int(count), now))
            conn.commit()

    # Patterns ----------------------------------------------------------------

    def insert_pattern(self, pattern: Pattern) -> None:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(INSERT_PATTERN, _pattern_row(pattern))
            conn.commit()

    def insert_patterns(self, patterns: Iterable[Pattern]) -> Dict[str, int]:
        """Insert a batch atomically, keeping any pattern whose id already exists."""
        counts = {"imported": 0, "skipped": 0}
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            try:
                for pattern in patterns:
                    cursor.execute("SELECT 1 FROM patterns WHERE id = ?", (pattern.id,))
                    if cursor.fetchone():
                        counts["skipped"] += 1
                        continue
                    cursor.execute(INSERT_PATTERN, _pattern_row(pattern))
                    counts["imported"] += 1
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        return counts

    def update_pattern_evidence(self, pattern: Pattern) -> None:
        """Persist reinforcement: rule, confidence and origin ids. Counters are left alone."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute('''
                UPDATE patterns SET match_rule_json = ?, confidence = ?, origin_ids_json = ?
                WHERE id = ?
            ''', (
                json.dumps(pattern.match_rule.to_dict()),
                pattern.confidence,
                json.dumps(pattern.origin_correction_ids),
                pattern.id,
            ))
            conn.commit()

    def record_pattern_application(self, pattern_id: str, succeeded: bool,
                                   success_step: float, failure_step: float,
                                   retire_min_applications: int, retire_success_rate: float) -> Optional[Pattern]:
        """Count one application and retire the pattern if it keeps failing.

        The counters are updated in SQL so interleaved callers never lose an update.
        """
        now = format_timestamp(utc_now())
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute('''
                UPDATE patterns SET
                    application_count = application_count + 1,
                    success_count = success_count + ?,
                    confidence = CASE WHEN ? THEN MIN(0.99, confidence + ?) ELSE MAX(0.1, confidence - ?) END,
                    last_applied_at = ?
                WHERE id = ?
            ''', (1 if succeeded else 0, 1 if succeeded else 0, success_step, failure_step, now, pattern_id))
            if cursor.rowcount == 0:
                return None
            cursor.execute('''
                UPDATE patterns SET enabled = 0
                WHERE id = ? AND application_count >= ? AND success_count < ? * application_count
            ''', (pattern_id, retire_min_applications, retire_success_rate))
            conn.commit()
            cursor.execute("SELECT * FROM patterns WHERE id = ?", (pattern_id,))
            row = cursor.fetchone()
            return _row_to_pattern(row) if row else None

    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT * FROM patterns WHERE id = ?", (pattern_id,))
                row = cursor.fetchone()
                return _row_to_pattern(row) if row else None
        except Exception as e:
            logger.error(f"Failed to get pattern '{pattern_id}': {e}")
            return None

    def list_patterns(self, field_path: str = None, enabled_only: bool = False) -> List[Pattern]:
        """List patterns; rows whose stored rule cannot be decoded are skipped."""
        query = "SELECT * FROM patterns"
        clauses = []
        params: List[Any] = []
        if field_path:
            clauses.append("field_path = ?")
            params.append(field_path)
        if enabled_only:
            clauses.append("enabled = 1")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY confidence DESC, created_at ASC"

        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(query, params)
                rows = cursor.fetchall()
        except Exception as e:
            logger.error(f"Failed to list patterns for field '{field_path}': {e}")
            return []

        patterns = []
        for row in rows:
            try:
                patterns.append(_row_to_pattern(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping pattern '{row['id']}' with unreadable rule: {e}")
        return patterns

    def clear_patterns(self) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM patterns")
            removed = cursor.rowcount
            cursor.execute("DELETE FROM pattern_outcomes")
            conn.commit()
            return removed

    # Pattern outcomes --------------------------------------------------------

    def append_pattern_outcome(self, pattern_id: str, succeeded: bool, timestamp: datetime = None) -> None:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO pattern_outcomes (pattern_id, success, timestamp) VALUES (?, ?, ?)",
                (pattern_id, 1 if succeeded else 0, format_timestamp(timestamp or utc_now()))
            )
            conn.commit()

    def append_pattern_outcomes(self, outcomes: Iterable[Dict[str, Any]]) -> int:
        written = 0
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            try:
                for outcome in outcomes:
                    cursor.execute(
                        "INSERT INTO pattern_outcomes (pattern_id, success, timestamp) VALUES (?, ?, ?)",
                        (outcome["pattern_id"], 1 if outcome["success"] else 0,
                         format_timestamp(outcome.get("timestamp") or utc_now()))
                    )
                    written += 1
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        return written

    def clear_pattern_outcomes(self) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM pattern_outcomes")
            removed = cursor.rowcount
            conn.commit()
            return removed

    def list_pattern_outcomes(self) -> List[Dict[str, Any]]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT pattern_id, success, timestamp FROM pattern_outcomes ORDER BY timestamp, id")
                return [
                    {
                        "pattern_id": row["pattern_id"],
                        "success": bool(row["success"]),
                        "timestamp": parse_timestamp(row["timestamp"]),
                    }
                    for row in cursor.fetchall()
                ]
        except Exception as e:
            logger.error(f"Failed to list pattern outcomes: {e}")
            return []

    # Metrics snapshots -------------------------------------------------------

    def append_snapshots(self, snapshots: Iterable[MetricsSnapshot]) -> int:
        written = 0
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            try:
                for snapshot in snapshots:
                    cursor.execute(INSERT_SNAPSHOT, (
                        snapshot.id,
                        snapshot.accuracy,
                        snapshot.partial_accuracy,
                        snapshot.precision,
                        snapshot.recall,
                        snapshot.f1,
                        json.dumps(snapshot.per_field_results),
                        snapshot.source,
                        format_timestamp(snapshot.timestamp),
                    ))
                    written += 1
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        return written

    def list_snapshots(self, since: datetime = None) -> List[MetricsSnapshot]:
        query = "SELECT * FROM metrics_snapshots"
        params: List[Any] = []
        if since:
            query += " WHERE timestamp >= ?"
            params.append(format_timestamp(since))
        query += " ORDER BY timestamp ASC, rowid ASC"

        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(query, params)
                return [_row_to_snapshot(row) for row in cursor.fetchall()]
        except Exception as e:
            logger.error(f"Failed to list metrics snapshots: {e}")
            return []

    def clear_snapshots(self) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM metrics_snapshots")
            removed = cursor.rowcount
            conn.commit()
            return removed
