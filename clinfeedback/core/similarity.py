"""
Text and vector similarity metrics.
Pure functions; every text metric returns a value in [0, 1].
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Union

import numpy as np

from .config import DEDUP_THRESHOLD, FUZZY_MATCH_THRESHOLD, PATTERN_DUPLICATE_THRESHOLD


class DimensionMismatchError(ValueError):
    """Raised when two vectors of different dimension are compared."""


# Domain vocabulary for concept overlap
MEDICAL_CONCEPTS: Dict[str, List[str]] = {
    "procedures": [
        "craniotomy", "craniectomy", "laminectomy", "discectomy", "fusion",
        "clipping", "coiling", "embolization", "shunt", "evd", "drain",
        "biopsy", "resection", "decompression", "thrombectomy", "angiogram",
    ],
    "pathologies": [
        "sah", "subarachnoid", "hemorrhage", "aneurysm", "avm", "tumor",
        "glioma", "glioblastoma", "meningioma", "metastasis", "stroke",
        "hydrocephalus", "sdh", "subdural", "hematoma", "stenosis",
        "herniation", "vasospasm",
    ],
    "imaging": ["ct", "cta", "mri", "mra", "angiography", "xray", "ultrasound", "dsa"],
    "medications": [
        "nimodipine", "levetiracetam", "keppra", "dexamethasone", "mannitol",
        "heparin", "enoxaparin", "aspirin", "clopidogrel", "warfarin",
        "statin", "vancomycin", "cefazolin",
    ],
    "anatomy": [
        "mca", "aca", "pca", "ica", "basilar", "vertebral", "frontal",
        "temporal", "parietal", "occipital", "cerebellum", "brainstem",
        "lumbar", "cervical", "thoracic", "left", "right", "bilateral",
    ],
    "findings": [
        "weakness", "numbness", "headache", "seizure", "deficit", "aphasia",
        "hemiparesis", "confusion", "nausea", "vomiting", "gcs",
    ],
}

SECTION_HEADER = re.compile(r'^([A-Z][A-Z\s]+):', re.MULTILINE)


@dataclass
class SimilarityWeights:
    jaccard: float = 0.4
    edit_distance: float = 0.2
    concept_overlap: float = 0.4


DEFAULT_WEIGHTS = SimilarityWeights()


@dataclass
class SimilarityMatch:
    index: int
    text: str
    similarity: float


@dataclass
class FuzzyMatchResult:
    matched: bool
    similarity: float
    threshold: float


def tokenize(text: Optional[str]) -> List[str]:
    """Lowercase, strip punctuation, keep words longer than two characters."""
    if not text or not isinstance(text, str):
        return []
    cleaned = re.sub(r'[^\w\s]', ' ', text.lower())
    return [word for word in cleaned.split() if len(word) > 2]


def _jaccard(set1: Set[str], set2: Set[str]) -> float:
    union = set1 | set2
    if not union:
        return 0.0
    return len(set1 & set2) / len(union)


def token_set_jaccard(text1: Optional[str], text2: Optional[str]) -> float:
    if not text1 or not text2:
        return 0.0
    return _jaccard(set(tokenize(text1)), set(tokenize(text2)))


def levenshtein_distance(s1: str, s2: str) -> int:
    if s1 == s2:
        return 0
    if not s1:
        return len(s2)
    if not s2:
        return len(s1)

    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            cost = 0 if c1 == c2 else 1
            current.append(min(
                previous[j] + 1,        # deletion
                current[j - 1] + 1,     # insertion
                previous[j - 1] + cost  # substitution
            ))
        previous = current
    return previous[-1]


def normalized_edit_distance(s1: Optional[str], s2: Optional[str]) -> float:
    """Levenshtein distance divided by the longer length (0 identical, 1 disjoint)."""
    s1 = s1 or ""
    s2 = s2 or ""
    max_length = max(len(s1), len(s2))
    if max_length == 0:
        return 0.0
    return levenshtein_distance(s1, s2) / max_length


def extract_domain_concepts(text: Optional[str]) -> Set[str]:
    """Return ``category:term`` tags for every vocabulary term found in ``text``."""
    words = set(tokenize(text))
    # Two-letter terms are dropped by tokenize, look them up directly
    if text:
        words |= set(re.findall(r'\b[a-z]{2}\b', text.lower()))

    concepts = set()
    for category, terms in MEDICAL_CONCEPTS.items():
        for term in terms:
            if term in words:
                concepts.add(f"{category}:{term}")
    return concepts


def domain_concept_overlap(text1: Optional[str], text2: Optional[str]) -> float:
    if not text1 or not text2:
        return 0.0
    concepts1 = extract_domain_concepts(text1)
    concepts2 = extract_domain_concepts(text2)
    if not concepts1 and not concepts2:
        return token_set_jaccard(text1, text2)
    return _jaccard(concepts1, concepts2)


def n_gram_overlap(text1: Optional[str], text2: Optional[str], n: int = 2) -> float:
    if not text1 or not text2:
        return 0.0

    def _ngrams(text):
        tokens = tokenize(text)
        return {" ".join(tokens[i:i + n]) for i in range(len(tokens) - n + 1)}

    return _jaccard(_ngrams(text1), _ngrams(text2))


def longest_common_subsequence(seq1: Sequence, seq2: Sequence) -> List:
    m, n = len(seq1), len(seq2)
    table = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(1, m + 1):
        for j in range(1, n + 1):
            if seq1[i - 1] == seq2[j - 1]:
                table[i][j] = table[i - 1][j - 1] + 1
            else:
                table[i][j] = max(table[i - 1][j], table[i][j - 1])

    result = []
    i, j = m, n
    while i > 0 and j > 0:
        if seq1[i - 1] == seq2[j - 1]:
            result.append(seq1[i - 1])
            i -= 1
            j -= 1
        elif table[i - 1][j] >= table[i][j - 1]:
            i -= 1
        else:
            j -= 1
    result.reverse()
    return result


def longest_common_subsequence_ratio(seq1: Union[str, Sequence], seq2: Union[str, Sequence]) -> float:
    """LCS length over the longer sequence; strings are compared as token lists."""
    if isinstance(seq1, str):
        seq1 = tokenize(seq1)
    if isinstance(seq2, str):
        seq2 = tokenize(seq2)
    max_length = max(len(seq1), len(seq2))
    if max_length == 0:
        return 0.0
    return len(longest_common_subsequence(seq1, seq2)) / max_length


def extract_sections(document: Optional[str]) -> List[str]:
    if not document:
        return []
    return [match.strip().lower() for match in SECTION_HEADER.findall(document)]


def structural_similarity(doc1: Optional[str], doc2: Optional[str]) -> float:
    """Compare section-heading order and count of two documents."""
    if not doc1 or not doc2:
        return 0.0
    sections1 = extract_sections(doc1)
    sections2 = extract_sections(doc2)

    order = longest_common_subsequence_ratio(sections1, sections2)
    max_count = max(len(sections1), len(sections2))
    count = 1.0 if max_count == 0 else min(len(sections1), len(sections2)) / max_count
    return (order + count) / 2


def cosine_similarity(vec1, vec2) -> float:
    """Cosine of two vectors in [-1, 1]; 0.0 when either has zero norm."""
    a = np.asarray(vec1, dtype=np.float32).ravel()
    b = np.asarray(vec2, dtype=np.float32).ravel()
    if a.shape != b.shape:
        raise DimensionMismatchError(f"Vector dimensions must match: {a.shape[0]} != {b.shape[0]}")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), -1.0, 1.0))


def combined_similarity(text1: Optional[str], text2: Optional[str], weights: SimilarityWeights = None) -> float:
    """Weighted blend of token Jaccard, edit similarity and concept overlap."""
    if not text1 or not text2:
        return 0.0
    weights = weights or DEFAULT_WEIGHTS
    total = weights.jaccard + weights.edit_distance + weights.concept_overlap
    if total <= 0:
        return 0.0

    score = (
        weights.jaccard * token_set_jaccard(text1, text2)
        + weights.edit_distance * (1 - normalized_edit_distance(text1.lower(), text2.lower()))
        + weights.concept_overlap * domain_concept_overlap(text1, text2)
    )
    return max(0.0, min(1.0, score / total))


def is_duplicate(text1: Optional[str], text2: Optional[str], threshold: float = DEDUP_THRESHOLD) -> bool:
    return combined_similarity(text1, text2) >= threshold


def fuzzy_match(query: Optional[str], target: Optional[str], threshold: float = FUZZY_MATCH_THRESHOLD) -> FuzzyMatchResult:
    similarity = combined_similarity(query, target)
    return FuzzyMatchResult(matched=similarity >= threshold, similarity=similarity, threshold=threshold)


def find_similar_patterns(target: str, candidates: Sequence[str],
                          threshold: float = PATTERN_DUPLICATE_THRESHOLD) -> List[SimilarityMatch]:
    """Candidates whose combined similarity to ``target`` reaches ``threshold``, best first."""
    matches = []
    for index, candidate in enumerate(candidates):
        similarity = combined_similarity(target, candidate)
        if similarity >= threshold:
            matches.append(SimilarityMatch(index=index, text=candidate, similarity=similarity))
    matches.sort(key=lambda m: m.similarity, reverse=True)
    return matches


_BATCH_METHODS = {
    "combined": combined_similarity,
    "jaccard": token_set_jaccard,
    "edit": lambda a, b: 1 - normalized_edit_distance(a, b) if a and b else 0.0,
    "concept": domain_concept_overlap,
    "ngram": n_gram_overlap,
    "structural": structural_similarity,
}


def batch_similarity(target: str, candidates: Sequence[str], method: str = "combined") -> List[SimilarityMatch]:
    """Score every candidate against ``target`` and rank them."""
    if method not in _BATCH_METHODS:
        raise ValueError(f"Unknown similarity method: {method}")
    metric = _BATCH_METHODS[method]
    results = [
        SimilarityMatch(index=index, text=candidate, similarity=metric(target, candidate))
        for index, candidate in enumerate(candidates)
    ]
    results.sort(key=lambda m: m.similarity, reverse=True)
    return results
