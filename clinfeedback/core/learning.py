"""
Pattern learning from recurring corrections.

A correction joins the evidence for a field when its signature
(``before => after``) is close to earlier corrections of the same field.
Once enough corrections agree, a Pattern is minted with a regex rule that
finds the corrected value in source text; later agreeing corrections
reinforce it. Extractor feedback moves confidence and retires patterns
that keep failing.
"""

import re
import uuid
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .config import (
    LEARNING_CANDIDATE_WINDOW, LEARNING_SIMILARITY_THRESHOLD, MAX_PATTERN_CONFIDENCE,
    MIN_CORRECTIONS_FOR_PATTERN, RETIRE_MIN_APPLICATIONS, RETIRE_SUCCESS_RATE,
    SEMANTIC_LEARNING_ENABLED, SNAPSHOT_VERSION,
)
from .anonymizer import Anonymizer
from .dao import LearningDAO
from .schema import CorrectionRecord, MatchRule, Pattern, map_field_value, merge_field_values, utc_now
from .similarity import combined_similarity
from .snapshot import LearningSnapshot, PatternPayload, validate_payload
from ..util.logging import logger

# Confidence moves on extractor feedback
SUCCESS_STEP = 0.01
FAILURE_STEP = 0.05

MAX_ALTERNATIVES = 5
CONTEXT_WINDOW_WORDS = 3
MAX_CONTEXT_TERMS = 5

_WORD = re.compile(r'\w')
_NUMERIC = re.compile(r'^[\d.,/:-]+$')


@dataclass
class LearningOutcome:
    action: str  # minted|reinforced|one_off|no_effect
    pattern: Optional[Pattern] = None
    support: int = 0
    average_similarity: float = 0.0
    reason: str = ""


@dataclass
class PatternSuggestion:
    pattern_id: str
    value: Any
    confidence: float
    matched_text: str
    strategy: str = "match"  # match|transformation


@dataclass
class _Evidence:
    record: CorrectionRecord
    similarity: float
    source: str = "lexical"  # lexical|semantic


# Rule synthesis ---------------------------------------------------------------

def _phrase_regex(tokens: Sequence[str]) -> str:
    return r"\s+".join(re.escape(token) for token in tokens)


def _bounded(body: str) -> str:
    # \b fails next to bracketed anonymization tokens, so bound on word characters instead
    return rf"(?<!\w){body}(?!\w)"


def longest_common_run(values: Sequence[str]) -> List[str]:
    """Longest contiguous token run (case-insensitive) shared by every value."""
    token_lists = [value.split() for value in values if value and value.strip()]
    if not token_lists:
        return []
    first = token_lists[0]
    others = [[token.lower() for token in tokens] for tokens in token_lists[1:]]

    for length in range(len(first), 0, -1):
        for start in range(len(first) - length + 1):
            run = first[start:start + length]
            if not any(_WORD.search(token) for token in run):
                continue
            lowered = [token.lower() for token in run]
            if all(_contains_run(tokens, lowered) for tokens in others):
                return run
    return []


def _contains_run(tokens: List[str], run: List[str]) -> bool:
    size = len(run)
    return any(tokens[i:i + size] == run for i in range(len(tokens) - size + 1))


def value_shape(text: str) -> str:
    """Coarse NUM/WORD structure of a value, e.g. ``"grade 3"`` -> ``"WORD NUM"``."""
    return " ".join("NUM" if _NUMERIC.match(token) else "WORD" for token in text.split())


def _preceding_words(context: Optional[str], value: str) -> List[str]:
    if not context or not value:
        return []
    index = context.lower().find(value.lower())
    if index < 0:
        return []
    words = re.findall(r'[a-z]{3,}', context[:index].lower())
    return words[-CONTEXT_WINDOW_WORDS:]


def synthesize_rule(records: Sequence[CorrectionRecord]) -> MatchRule:
    """Build a MatchRule from the corrected values of agreeing corrections."""
    after_texts = [record.after.as_text().strip() for record in records if not record.after.is_empty()]
    if not after_texts:
        raise ValueError("cannot synthesize a rule without corrected values")

    run = longest_common_run(after_texts)
    if run:
        pattern = _bounded(_phrase_regex(run))
    else:
        alternatives = []
        for text in after_texts:
            if text.lower() not in [a.lower() for a in alternatives]:
                alternatives.append(text)
        body = "|".join(_phrase_regex(text.split()) for text in alternatives[:MAX_ALTERNATIVES])
        pattern = _bounded(f"(?:{body})")

    replacement = None
    afters = [record.after for record in records]
    if all(value.to_dict() == afters[0].to_dict() for value in afters):
        replacement = afters[0]

    source_values = []
    for record in records:
        text = record.before.as_text().strip()
        if text and text not in source_values:
            source_values.append(text)

    term_counts: Counter = Counter()
    for record in records:
        term_counts.update(set(_preceding_words(record.source_context, record.after.as_text().strip())))
    context_terms = sorted(term for term, count in term_counts.items() if count >= 2)[:MAX_CONTEXT_TERMS]

    transformation = Counter(record.features.transformation_type for record in records).most_common(1)[0][0]

    return MatchRule(
        pattern=pattern,
        rule_type="regex",
        replacement=replacement,
        source_values=source_values,
        context_terms=context_terms,
        signature=value_shape(after_texts[0]),
        transformation_type=transformation,
    )


class LearningEngine:
    """Mints, reinforces and retires patterns from the correction log."""

    def __init__(self, dao: LearningDAO, embedding_store=None,
                 similarity_threshold: float = LEARNING_SIMILARITY_THRESHOLD,
                 min_support: int = MIN_CORRECTIONS_FOR_PATTERN,
                 max_confidence: float = MAX_PATTERN_CONFIDENCE,
                 candidate_window: int = LEARNING_CANDIDATE_WINDOW,
                 retire_min_applications: int = RETIRE_MIN_APPLICATIONS,
                 retire_success_rate: float = RETIRE_SUCCESS_RATE,
                 semantic_enabled: bool = SEMANTIC_LEARNING_ENABLED,
                 anonymizer: Anonymizer = None):
        self.dao = dao
        self.embedding_store = embedding_store
        self.anonymizer = anonymizer or Anonymizer()
        self.similarity_threshold = similarity_threshold
        self.min_support = min_support
        self.max_confidence = max_confidence
        self.candidate_window = candidate_window
        self.retire_min_applications = retire_min_applications
        self.retire_success_rate = retire_success_rate
        self.semantic_enabled = semantic_enabled

    # Learning ----------------------------------------------------------------

    async def learn_from_correction(self, record: CorrectionRecord) -> LearningOutcome:
        """Fold one tracked correction into the learned patterns.

        Args:
            record: A correction already appended by the CorrectionTracker.

        Returns:
            LearningOutcome describing whether a pattern was minted, reinforced,
            or the correction stays a one-off for now.
        """
        if record.after.is_empty():
            return LearningOutcome("no_effect", reason="deletions carry no target value")

        evidence = self._lexical_evidence(record)
        for item in await self._semantic_evidence(record):
            evidence.setdefault(item.record.id, item)

        support_records = [record] + [item.record for item in evidence.values()]
        support = len(support_records)
        average_similarity = (
            sum(item.similarity for item in evidence.values()) / len(evidence) if evidence else 0.0
        )

        if support < self.min_support:
            return LearningOutcome("one_off", support=support, average_similarity=average_similarity,
                                   reason=f"{support} of {self.min_support} agreeing corrections")

        existing = self._find_existing(record, support_records)
        if existing is not None:
            pattern = self._reinforce(existing, record, support_records, average_similarity)
            return LearningOutcome("reinforced", pattern, support, average_similarity)

        pattern = self._mint(record, support_records, average_similarity)
        return LearningOutcome("minted", pattern, support, average_similarity)

    def _lexical_evidence(self, record: CorrectionRecord) -> Dict[str, _Evidence]:
        signature = record.signature()
        evidence = {}
        candidates = self.dao.list_corrections(
            field_path=record.field_path, limit=self.candidate_window, newest_first=True
        )
        for prior in candidates:
            if prior.id == record.id or prior.after.is_empty():
                continue
            similarity = combined_similarity(signature, prior.signature())
            if similarity >= self.similarity_threshold:
                evidence[prior.id] = _Evidence(prior, similarity)
        return evidence

    async def _semantic_evidence(self, record: CorrectionRecord) -> List[_Evidence]:
        store = self.embedding_store
        if not self.semantic_enabled or store is None or not store.is_ready():
            return []

        query = record.signature()
        if record.source_context:
            query += "\n" + record.source_context
        try:
            results = await store.semantic_search(
                "notes", query, min_similarity=self.similarity_threshold,
                filter={"field_path": record.field_path, "kind": "correction"},
            )
        except Exception as e:
            logger.warning(f"Semantic neighbors unavailable, using lexical similarity only: {e}")
            return []

        scores = {}
        for result in results:
            correction_id = result.metadata.get("correction_id")
            if correction_id and correction_id != record.id:
                scores[correction_id] = max(scores.get(correction_id, 0.0), result.score)

        return [
            _Evidence(prior, scores[prior.id], "semantic")
            for prior in self.dao.get_corrections_by_ids(list(scores))
            if prior.field_path == record.field_path and not prior.after.is_empty()
        ]

    def _confidence(self, records: Sequence[CorrectionRecord], average_similarity: float) -> float:
        difficulty = sum(r.features.extraction_difficulty for r in records) / len(records)
        base = min(self.max_confidence, 0.5 + 0.1 * len(records))
        return max(0.0, min(self.max_confidence, base * average_similarity * (1 - 0.25 * difficulty)))

    @staticmethod
    def _shared_pathology(records: Sequence[CorrectionRecord]) -> Optional[str]:
        pathologies = {r.pathology for r in records}
        if len(pathologies) == 1:
            pathology = pathologies.pop()
            return None if pathology == "unknown" else pathology
        return None

    def _find_existing(self, record: CorrectionRecord,
                       support_records: Sequence[CorrectionRecord]) -> Optional[Pattern]:
        support_ids = {r.id for r in support_records}
        after_text = record.after.as_text()
        # Retired patterns are never reinforced; agreeing evidence mints a fresh one
        for pattern in self.dao.list_patterns(field_path=record.field_path, enabled_only=True):
            if support_ids & set(pattern.origin_correction_ids):
                return pattern
            try:
                if pattern.match_rule.matches(after_text):
                    return pattern
            except re.error:
                continue
        return None

    def _mint(self, record: CorrectionRecord, support_records: Sequence[CorrectionRecord],
              average_similarity: float) -> Pattern:
        pattern = Pattern(
            id=str(uuid.uuid4()),
            field_path=record.field_path,
            pathology=self._shared_pathology(support_records),
            match_rule=synthesize_rule(support_records),
            confidence=self._confidence(support_records, average_similarity),
            enabled=True,
            origin_correction_ids=[r.id for r in support_records],
            created_at=utc_now(),
        )
        self.dao.insert_pattern(pattern)
        logger.log_pattern_event("minted", pattern.id, pattern.field_path, {
            "support": len(support_records),
            "confidence": round(pattern.confidence, 3),
        })
        return pattern

    def _reinforce(self, pattern: Pattern, record: CorrectionRecord,
                   support_records: Sequence[CorrectionRecord], average_similarity: float) -> Pattern:
        origin_ids = list(pattern.origin_correction_ids)
        for r in support_records:
            if r.id not in origin_ids:
                origin_ids.append(r.id)

        pattern.origin_correction_ids = origin_ids
        pattern.confidence = max(pattern.confidence, self._confidence(support_records, average_similarity))
        if pattern.match_rule.replacement is not None:
            pattern.match_rule.replacement = merge_field_values(pattern.match_rule.replacement, record.after)
        before_text = record.before.as_text().strip()
        if before_text and before_text not in pattern.match_rule.source_values:
            pattern.match_rule.source_values.append(before_text)

        self.dao.update_pattern_evidence(pattern)
        logger.log_pattern_event("reinforced", pattern.id, pattern.field_path, {
            "support": len(origin_ids),
            "confidence": round(pattern.confidence, 3),
        })
        return pattern

    # Serving -----------------------------------------------------------------

    def get_enabled_patterns(self, field_path: str, pathology: str = None) -> List[Pattern]:
        """Enabled patterns for a field, best first; malformed rules are skipped."""
        patterns = []
        for pattern in self.dao.list_patterns(field_path=field_path, enabled_only=True):
            if not pattern.applies_to(pathology):
                continue
            try:
                pattern.match_rule.compile()
            except re.error as e:
                logger.warning(f"Skipping pattern '{pattern.id}' with malformed rule: {e}")
                continue
            patterns.append(pattern)
        patterns.sort(key=lambda p: p.confidence, reverse=True)
        return patterns

    def apply_learned_patterns(self, text: str, field_path: str,
                               pathology: str = None) -> Optional[PatternSuggestion]:
        """Run enabled patterns over ``text`` and return the best hit.

        A pattern hits when its rule finds the corrected value, or when one of
        the values clinicians corrected away from appears and the pattern has a
        single replacement to map it to.
        """
        if not text:
            return None
        for pattern in self.get_enabled_patterns(field_path, pathology):
            rule = pattern.match_rule
            matched = rule.extract(text)
            if matched is not None:
                return PatternSuggestion(
                    pattern_id=pattern.id,
                    value=rule.replacement.value if rule.replacement is not None else matched,
                    confidence=pattern.confidence,
                    matched_text=matched,
                )

            if rule.replacement is None:
                continue
            source = rule.find_source_value(text)
            if source is not None:
                return PatternSuggestion(
                    pattern_id=pattern.id,
                    value=rule.replacement.value,
                    confidence=pattern.confidence,
                    matched_text=source,
                    strategy="transformation",
                )
        return None

    def apply_feedback(self, pattern_id: str, succeeded: bool) -> Optional[Pattern]:
        """Count one application of a pattern by the extractor."""
        pattern = self.dao.record_pattern_application(
            pattern_id, succeeded,
            success_step=SUCCESS_STEP,
            failure_step=FAILURE_STEP,
            retire_min_applications=self.retire_min_applications,
            retire_success_rate=self.retire_success_rate,
        )
        if pattern is None:
            logger.warning(f"Feedback for unknown pattern '{pattern_id}' ignored")
            return None

        event = "feedback" if pattern.enabled else "disabled"
        logger.log_pattern_event(event, pattern.id, pattern.field_path, {
            "succeeded": succeeded,
            "applications": pattern.application_count,
            "success_rate": round(pattern.success_rate, 3),
        })
        return pattern

    # Statistics and transfer -------------------------------------------------

    def get_statistics(self) -> Dict[str, Any]:
        patterns = self.dao.list_patterns()
        enabled = [p for p in patterns if p.enabled]
        applications = sum(p.application_count for p in patterns)
        successes = sum(p.success_count for p in patterns)
        return {
            "total_patterns": len(patterns),
            "enabled_patterns": len(enabled),
            "disabled_patterns": len(patterns) - len(enabled),
            "by_field": dict(Counter(p.field_path for p in patterns)),
            "average_confidence": sum(p.confidence for p in patterns) / len(patterns) if patterns else 0.0,
            "total_applications": applications,
            "overall_success_rate": successes / applications if applications else 0.0,
            "top_patterns": [
                {
                    "id": p.id,
                    "field_path": p.field_path,
                    "confidence": p.confidence,
                    "success_rate": p.success_rate,
                }
                for p in sorted(enabled, key=lambda p: p.confidence, reverse=True)[:5]
            ],
        }

    def export_learning(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "exported_at": utc_now().isoformat(),
            "patterns": [pattern.to_dict() for pattern in self.dao.list_patterns()],
        }

    def import_learning(self, data: Any) -> Dict[str, int]:
        """Validate a learning export, then insert every pattern in one transaction."""
        snapshot = validate_payload(LearningSnapshot, data, "import.learning")
        return self.import_validated(snapshot.patterns)

    def import_validated(self, patterns: List[PatternPayload]) -> Dict[str, int]:
        counts = self.dao.insert_patterns(
            [self._scrub_rule(Pattern.from_dict(payload.model_dump(mode="json"))) for payload in patterns]
        )
        logger.log_import("learning", counts)
        return counts

    def _scrub_rule(self, pattern: Pattern) -> Pattern:
        """Anonymize the stored values of an imported rule."""
        def _scrub(text: str) -> str:
            return self.anonymizer.anonymize(text).anonymized

        rule = pattern.match_rule
        source_values = []
        for value in rule.source_values:
            scrubbed = _scrub(value)
            if scrubbed and scrubbed not in source_values:
                source_values.append(scrubbed)
        rule.source_values = source_values
        if rule.replacement is not None:
            rule.replacement = map_field_value(rule.replacement, _scrub)
        return pattern

    def clear_all_learning(self) -> int:
        removed = self.dao.clear_patterns()
        logger.log_operation("learning.cleared", "success", {"removed": removed})
        return removed
