"""
Feature extraction for corrections and summaries.
"""

import re
from typing import Any, Dict, List, Optional

from .schema import FeatureBag
from .similarity import token_set_jaccard

CONTENT_PATTERNS = {
    "number": re.compile(r'\b\d+(?:\.\d+)?\b'),
    "date": re.compile(
        r'\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b'
        r'|\b\d{4}-\d{2}-\d{2}\b'
        r'|\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?\s+\d{1,2}\b',
        re.IGNORECASE,
    ),
    "age": re.compile(r'\b\d{1,3}\s*(?:-\s*)?(?:year|yr|y)s?(?:\s*-?\s*old)?\b|\bage\s*\d{1,3}\b', re.IGNORECASE),
    "measurement": re.compile(r'\b\d+(?:\.\d+)?\s*(?:mm|cm|ml|mg|mcg|g|kg|mmhg|%)(?![a-z])', re.IGNORECASE),
    "grade": re.compile(r'\b(?:grade|hunt[\s-]*hess|fisher|wfns|gcs)\s*[:#]?\s*(?:[0-9]+|[ivx]+)\b', re.IGNORECASE),
    "procedure": re.compile(r'\b\w+(?:otomy|ectomy|plasty|scopy|graphy)\b|\b(?:clipping|coiling|embolization|shunt|fusion)\b', re.IGNORECASE),
    "medication": re.compile(r'\b\w+(?:pril|olol|statin|pine|azole|mycin|cillin|parin|tam)\b|\b(?:aspirin|heparin|keppra|dexamethasone)\b', re.IGNORECASE),
}

CONTEXT_SECTIONS = {
    "presentation": re.compile(r'\b(?:presented|presentation|chief complaint|history of present illness|hpi|admitted)\b', re.IGNORECASE),
    "procedure": re.compile(r'\b(?:underwent|procedure|operation|surgery|operative|intraoperative)\b', re.IGNORECASE),
    "evolution": re.compile(r'\b(?:hospital course|post-?operative|pod\s*#?\d+|course complicated|improved|worsened)\b', re.IGNORECASE),
    "discharge": re.compile(r'\b(?:discharged?|discharge (?:plan|instructions|medications)|follow[- ]up|disposition)\b', re.IGNORECASE),
    "temporal_reference": re.compile(r'\b(?:on admission|at discharge|prior to|following|after|before|day \d+)\b', re.IGNORECASE),
}

CONTEXT_KEYWORDS = [
    "diagnosis", "pathology", "location", "procedure", "complication",
    "medication", "imaging", "finding", "history", "plan", "outcome",
    "symptom", "exam", "grade", "score",
]

MEDICAL_TERMS = [
    "aneurysm", "hemorrhage", "subarachnoid", "subdural", "epidural",
    "hematoma", "craniotomy", "craniectomy", "hydrocephalus", "vasospasm",
    "glioma", "glioblastoma", "meningioma", "metastasis", "tumor",
    "stenosis", "herniation", "laminectomy", "fusion", "embolization",
    "coiling", "clipping", "shunt", "seizure", "hemiparesis", "aphasia",
    "infarct", "ischemia", "edema", "occlusion", "thrombosis",
]

ABBREVIATION = re.compile(r'\b[A-Z]{2,5}\b')

CERTAINTY_INDICATORS = {
    "high": ["confirmed", "definite", "diagnosed", "demonstrated", "consistent with", "positive for"],
    "medium": ["likely", "probable", "suggestive of", "suspected", "concerning for"],
    "low": ["possible", "cannot rule out", "questionable", "may represent", "unclear", "versus"],
}


def detect_content_patterns(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [name for name, pattern in CONTENT_PATTERNS.items() if pattern.search(text)]


def detect_medical_terms(text: Optional[str]) -> List[str]:
    if not text:
        return []
    lowered = text.lower()
    return [term for term in MEDICAL_TERMS if re.search(rf'\b{term}\b', lowered)]


def detect_abbreviations(text: Optional[str]) -> List[str]:
    if not text:
        return []
    seen = []
    for abbreviation in ABBREVIATION.findall(text):
        if abbreviation not in seen:
            seen.append(abbreviation)
    return seen


def detect_certainty(text: Optional[str]) -> Dict[str, List[str]]:
    lowered = (text or "").lower()
    return {
        level: [phrase for phrase in phrases if phrase in lowered]
        for level, phrases in CERTAINTY_INDICATORS.items()
    }


def classify_transformation(before: str, after: str) -> str:
    """Decide how the corrected value relates to the original, first match wins."""
    if before.lower() == after.lower():
        return "case_change"
    if before and len(after) > 1.5 * len(before) and before.lower() in after.lower():
        return "abbreviation_expansion"
    if re.search(r'\d', after) and not re.search(r'\d', before):
        return "number_extraction"
    if re.search(r'\d', before) and CONTENT_PATTERNS["date"].search(after):
        return "date_formatting"

    similarity = token_set_jaccard(before, after)
    if similarity >= 0.7:
        return "minor_correction"
    if similarity >= 0.3:
        return "partial_correction"
    return "complete_replacement"


def extraction_difficulty(context: Optional[str]) -> float:
    """Longer, term-dense, abbreviation-heavy contexts are harder to extract from."""
    if not context:
        return 0.5

    difficulty = 0.3
    if len(context) > 500:
        difficulty += 0.1
    if len(context) > 1000:
        difficulty += 0.1

    term_count = len(detect_medical_terms(context))
    if term_count > 10:
        difficulty += 0.2
    elif term_count > 5:
        difficulty += 0.1

    if len(detect_abbreviations(context)) > 5:
        difficulty += 0.1

    return min(1.0, round(difficulty, 4))


def _tokens(text: str) -> List[str]:
    return re.sub(r'[^\w\s]', ' ', text.lower()).split()


def extract_features(before: Optional[str], after: Optional[str], context: Optional[str] = None) -> FeatureBag:
    """Build the feature bag for one correction."""
    before = before or ""
    after = after or ""

    tokens_before = _tokens(before)
    tokens_after = _tokens(after)
    patterns_before = detect_content_patterns(before)
    patterns_after = detect_content_patterns(after)

    context_sections = []
    context_keywords = []
    if context:
        context_sections = [name for name, pattern in CONTEXT_SECTIONS.items() if pattern.search(context)]
        lowered = context.lower()
        context_keywords = [keyword for keyword in CONTEXT_KEYWORDS if keyword in lowered]

    combined = f"{before} {after}"
    return FeatureBag(
        before_length=len(before),
        after_length=len(after),
        length_delta=len(after) - len(before),
        added_tokens=[t for t in tokens_after if t not in tokens_before],
        removed_tokens=[t for t in tokens_before if t not in tokens_after],
        patterns_before=patterns_before,
        patterns_after=patterns_after,
        pattern_change={
            "added": [p for p in patterns_after if p not in patterns_before],
            "removed": [p for p in patterns_before if p not in patterns_after],
            "preserved": [p for p in patterns_before if p in patterns_after],
        },
        context_sections=context_sections,
        context_keywords=context_keywords,
        has_numbers=bool(re.search(r'\d', combined)),
        has_date=bool(CONTENT_PATTERNS["date"].search(combined)),
        has_medical_term=bool(detect_medical_terms(combined)),
        has_abbreviation=bool(detect_abbreviations(combined)),
        transformation_type=classify_transformation(before, after),
        certainty=detect_certainty(context),
        extraction_difficulty=extraction_difficulty(context),
    )


def extract_summary_features(summary: Optional[str]) -> Dict[str, Any]:
    """Shape statistics for a whole discharge summary."""
    if not summary:
        return {
            "length": 0, "word_count": 0, "sentence_count": 0,
            "sections": [], "medical_terms": [], "abbreviations": [],
            "content_patterns": [], "certainty": detect_certainty(None),
            "extraction_difficulty": extraction_difficulty(None),
        }

    sentences = [s for s in re.split(r'[.!?]+', summary) if s.strip()]
    return {
        "length": len(summary),
        "word_count": len(summary.split()),
        "sentence_count": len(sentences),
        "sections": [name for name, pattern in CONTEXT_SECTIONS.items() if pattern.search(summary)],
        "medical_terms": detect_medical_terms(summary),
        "abbreviations": detect_abbreviations(summary),
        "content_patterns": detect_content_patterns(summary),
        "certainty": detect_certainty(summary),
        "extraction_difficulty": extraction_difficulty(summary),
    }
