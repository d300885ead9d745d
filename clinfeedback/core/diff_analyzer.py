"""
Token-level diff between an extracted value and its correction.
"""

import re
from typing import Dict, List, Optional

from .schema import DiffOp, DiffResult

# changeType boundaries on token-set similarity
MINOR_THRESHOLD = 0.9
MODERATE_THRESHOLD = 0.7
MAJOR_THRESHOLD = 0.4


def _words(text: str) -> List[str]:
    return text.split() if text else []


def _normalized_tokens(text: str) -> set:
    cleaned = re.sub(r'[^\w\s]', ' ', (text or "").lower())
    return set(cleaned.split())


def _token_similarity(before: str, after: str) -> float:
    tokens1 = _normalized_tokens(before)
    tokens2 = _normalized_tokens(after)
    if not tokens1 and not tokens2:
        return 1.0 if (before or "").strip() == (after or "").strip() else 0.0
    union = tokens1 | tokens2
    return len(tokens1 & tokens2) / len(union)


def classify_change(similarity: float) -> str:
    if similarity >= MINOR_THRESHOLD:
        return "minor"
    if similarity >= MODERATE_THRESHOLD:
        return "moderate"
    if similarity >= MAJOR_THRESHOLD:
        return "major"
    return "complete_replacement"


def change_intensity(before: str, after: str, similarity: float) -> float:
    """0.7 weight on dissimilarity, 0.3 on relative length change."""
    before = before or ""
    after = after or ""
    max_length = max(len(before), len(after), 1)
    length_delta = abs(len(after) - len(before)) / max_length
    return min(1.0, 0.7 * (1 - similarity) + 0.3 * length_delta)


def _strip_punctuation(text: str) -> str:
    return re.sub(r'\s+', ' ', re.sub(r'[^\w\s]', '', text)).strip()


def _strip_numbers(text: str) -> str:
    return re.sub(r'\d+(?:\.\d+)?', '#', text)


def walk_tokens(before_tokens: List[str], after_tokens: List[str]) -> List[DiffOp]:
    """Greedy two-pointer walk with one token of lookahead.

    A lookahead that resolves both ways (or neither way) is a substitution.
    """
    ops = []
    i = j = 0
    while i < len(before_tokens) or j < len(after_tokens):
        if i >= len(before_tokens):
            ops.append(DiffOp("addition", after=after_tokens[j]))
            j += 1
            continue
        if j >= len(after_tokens):
            ops.append(DiffOp("deletion", before=before_tokens[i]))
            i += 1
            continue

        current_before = before_tokens[i]
        current_after = after_tokens[j]
        if current_before == current_after:
            ops.append(DiffOp("unchanged", before=current_before, after=current_after))
            i += 1
            j += 1
            continue

        deletion_resolves = i + 1 < len(before_tokens) and before_tokens[i + 1] == current_after
        addition_resolves = j + 1 < len(after_tokens) and after_tokens[j + 1] == current_before

        if deletion_resolves and not addition_resolves:
            ops.append(DiffOp("deletion", before=current_before))
            i += 1
        elif addition_resolves and not deletion_resolves:
            ops.append(DiffOp("addition", after=current_after))
            j += 1
        else:
            ops.append(DiffOp("modification", before=current_before, after=current_after))
            i += 1
            j += 1
    return ops


def apply_diff(before_tokens: List[str], ops: List[DiffOp]) -> List[str]:
    """Replay an edit script over ``before_tokens`` and return the result tokens."""
    result = []
    i = 0
    for op in ops:
        if op.op == "unchanged":
            result.append(before_tokens[i])
            i += 1
        elif op.op == "deletion":
            i += 1
        elif op.op == "addition":
            result.append(op.after)
        elif op.op == "modification":
            result.append(op.after)
            i += 1
        else:
            raise ValueError(f"Unknown diff op: {op.op}")
    return result


def compute_diff(before: Optional[str], after: Optional[str]) -> DiffResult:
    """Diff two values at token level and classify the change."""
    before = before or ""
    after = after or ""

    ops = walk_tokens(_words(before), _words(after))
    similarity = _token_similarity(before, after)
    tokens_before = _normalized_tokens(before)
    tokens_after = _normalized_tokens(after)

    changed = before != after
    case_only = changed and before.lower() == after.lower()
    punctuation_only = (
        changed and not case_only
        and _strip_punctuation(before) == _strip_punctuation(after)
    )
    numbers_before = re.findall(r'\d+(?:\.\d+)?', before)
    numbers_after = re.findall(r'\d+(?:\.\d+)?', after)
    numeric_only = (
        changed and numbers_before != numbers_after
        and _strip_numbers(before) == _strip_numbers(after)
    )

    return DiffResult(
        ops=ops,
        change_type=classify_change(similarity),
        change_intensity=change_intensity(before, after, similarity),
        similarity=similarity,
        case_only=case_only,
        punctuation_only=punctuation_only,
        numeric_only=numeric_only,
        additions=sorted(tokens_after - tokens_before),
        deletions=sorted(tokens_before - tokens_after),
    )


def diff_metrics(result: DiffResult) -> Dict[str, int]:
    """Count ops by type."""
    counts = {"unchanged": 0, "addition": 0, "deletion": 0, "modification": 0}
    for op in result.ops:
        counts[op.op] = counts.get(op.op, 0) + 1
    counts["total"] = len(result.ops)
    return counts
