"""
PHI scrubbing for correction contexts and values.
Best-effort redaction before anything is persisted or embedded; not a compliance guarantee.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from ..util.logging import logger

PATIENT_NAME = "[PATIENT_NAME]"
PROVIDER_NAME = "[PROVIDER_NAME]"
FAMILY_MEMBER = "[FAMILY_MEMBER]"
DATE_TOKEN = "[DATE]"
ADMISSION_DATE = "[ADMISSION_DATE]"
HOSPITAL = "[HOSPITAL]"
ADDRESS = "[ADDRESS]"
LOCATION = "[LOCATION]"
ZIP = "[ZIP]"
REDACTED = "[REDACTED]"

ROLE_TOKENS = {
    "patient": PATIENT_NAME, "pt": PATIENT_NAME,
    "mr": PATIENT_NAME, "mrs": PATIENT_NAME, "ms": PATIENT_NAME, "miss": PATIENT_NAME,
    "dr": PROVIDER_NAME, "doctor": PROVIDER_NAME, "attending": PROVIDER_NAME,
    "resident": PROVIDER_NAME, "fellow": PROVIDER_NAME, "intern": PROVIDER_NAME,
    "surgeon": PROVIDER_NAME, "nurse": PROVIDER_NAME, "np": PROVIDER_NAME, "pa": PROVIDER_NAME,
    "father": FAMILY_MEMBER, "mother": FAMILY_MEMBER, "son": FAMILY_MEMBER,
    "daughter": FAMILY_MEMBER, "brother": FAMILY_MEMBER, "sister": FAMILY_MEMBER,
    "husband": FAMILY_MEMBER, "wife": FAMILY_MEMBER, "spouse": FAMILY_MEMBER,
    "partner": FAMILY_MEMBER, "family": FAMILY_MEMBER, "niece": FAMILY_MEMBER,
    "nephew": FAMILY_MEMBER, "aunt": FAMILY_MEMBER, "uncle": FAMILY_MEMBER,
}

COMMON_FIRST_NAMES = {
    "james", "john", "robert", "michael", "william", "david", "richard", "joseph",
    "thomas", "charles", "christopher", "daniel", "matthew", "anthony", "mark",
    "donald", "steven", "paul", "andrew", "joshua", "kenneth", "kevin", "brian",
    "george", "timothy", "ronald", "edward", "jason", "jeffrey", "ryan", "jacob",
    "gary", "nicholas", "eric", "jonathan", "stephen", "larry", "justin", "scott",
    "brandon", "benjamin", "samuel", "frank", "gregory", "raymond", "patrick",
    "jack", "dennis", "jerry", "peter", "henry", "carl", "arthur", "roger",
    "mary", "patricia", "jennifer", "linda", "elizabeth", "barbara", "susan",
    "jessica", "sarah", "karen", "lisa", "nancy", "betty", "margaret", "sandra",
    "ashley", "kimberly", "emily", "donna", "michelle", "carol", "amanda",
    "dorothy", "melissa", "deborah", "stephanie", "rebecca", "sharon", "laura",
    "cynthia", "kathleen", "amy", "angela", "shirley", "anna", "brenda", "pamela",
    "emma", "nicole", "helen", "samantha", "katherine", "christine", "debra",
    "rachel", "carolyn", "janet", "catherine", "maria", "heather", "diane",
    "ruth", "julie", "olivia", "joyce", "virginia", "victoria", "kelly", "lauren",
    "christina", "joan", "evelyn", "judith", "megan", "andrea", "cheryl", "hannah",
    "jose", "juan", "carlos", "luis", "miguel", "ana", "rosa", "wei", "li", "mohammed",
}

# Clinical vocabulary that must survive name and location passes
CLINICAL_ALLOW_LIST = {
    # medications
    "aspirin", "clopidogrel", "plavix", "warfarin", "coumadin", "heparin",
    "enoxaparin", "lovenox", "apixaban", "eliquis", "rivaroxaban", "xarelto",
    "nimodipine", "levetiracetam", "keppra", "phenytoin", "dilantin",
    "dexamethasone", "decadron", "mannitol", "vancomycin", "cefazolin", "ancef",
    "tylenol", "acetaminophen", "oxycodone", "morphine", "labetalol", "nicardipine",
    # procedures
    "craniotomy", "craniectomy", "cranioplasty", "laminectomy", "discectomy",
    "fusion", "clipping", "coiling", "embolization", "thrombectomy", "evd",
    "ventriculostomy", "shunt", "biopsy", "resection", "angiogram", "angiography",
    "tracheostomy", "peg",
    # pathologies and findings
    "sah", "sdh", "edh", "ich", "ivh", "avm", "tbi", "aneurysm", "hemorrhage",
    "hematoma", "glioma", "glioblastoma", "gbm", "meningioma", "metastasis",
    "hydrocephalus", "vasospasm", "stroke", "seizure", "infarct",
    # anatomy
    "mca", "aca", "pca", "ica", "pcom", "acom", "basilar", "vertebral",
    "frontal", "temporal", "parietal", "occipital", "cerebellar", "left", "right",
    # departments and units
    "neurosurgery", "neurology", "neuro", "radiology", "oncology", "emergency",
    "icu", "nicu", "neuroicu", "rehab", "rehabilitation", "physical", "therapy",
    # eponyms and scales
    "hunt", "hess", "fisher", "glasgow", "coma", "scale", "wfns", "nihss",
    "babinski", "romberg", "foley", "parkinson", "alzheimer", "chiari",
    "modified", "rankin", "karnofsky",
}

# Capitalized words that follow a role prefix without being a name
NON_NAME_WORDS = {
    "he", "she", "they", "his", "her", "their", "the", "this", "that", "was",
    "is", "has", "had", "with", "and", "who", "underwent", "presented", "denies",
    "reports", "states", "also", "then", "on", "in", "at", "of", "for", "from",
    "today", "yesterday", "history", "admitted", "discharged", "noted", "per",
    "tolerated", "remained", "returned", "continued", "will", "would", "to",
    "a", "an", "no", "not", "status", "post", "did", "does", "been", "came",
}

MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11, "december": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7, "aug": 8,
    "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_ALTERNATION = "|".join(sorted(MONTHS, key=len, reverse=True))

US_STATES = {
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA", "HI", "ID", "IL",
    "IN", "IA", "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN", "MS", "MO", "MT",
    "NE", "NV", "NH", "NJ", "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI",
    "SC", "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY", "DC",
}

FACILITY_ABBREVIATIONS = ["MGH", "BWH", "JHH", "BIDMC", "MSKCC", "UCSF", "UCLA", "NYU", "CHOP"]

# Identifier patterns
EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
RECORD_NUMBER_PATTERN = re.compile(
    r'\b(MRN|MR\s*#|Medical\s+Record(?:\s+(?:Number|No\.?))?|Account(?:\s+(?:Number|No\.?))?|Acct\.?)'
    r'(\s*[:#]?\s*)([A-Z]{0,3}\d[\d-]{3,})\b',
    re.IGNORECASE,
)
SSN_PATTERN = re.compile(r'\b\d{3}-\d{2}-\d{4}\b')
PHONE_PATTERN = re.compile(r'(?:\+?1[-.\s]?)?(?:\(\d{3}\)\s*|\b\d{3}[-.\s])\d{3}[-.\s]\d{4}\b')

# Date patterns
ISO_DATE_PATTERN = re.compile(r'\b(\d{4})-(\d{1,2})-(\d{1,2})\b')
NUMERIC_DATE_PATTERN = re.compile(r'\b(\d{1,2})[/-](\d{1,2})[/-](\d{4}|\d{2})\b')
MONTH_FIRST_PATTERN = re.compile(
    rf'\b({_MONTH_ALTERNATION})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b', re.IGNORECASE)
DAY_FIRST_PATTERN = re.compile(
    rf'\b(\d{{1,2}})(?:st|nd|rd|th)?\s+({_MONTH_ALTERNATION})\.?,?\s+(\d{{4}})\b', re.IGNORECASE)
POD_PATTERN = re.compile(r'\b(?:POD|post[-\s]?op(?:erative)?\s+day)\s*#?\s*(\d+)\b', re.IGNORECASE)
HOSPITAL_DAY_PATTERN = re.compile(r'\b(?:HD|hospital\s+day)\s*#?\s*(\d+)\b', re.IGNORECASE)

# Location patterns
FACILITY_PATTERN = re.compile(
    r"\b(?:St\.?\s+)?((?:[A-Z][a-z]+(?:'s)?\s+){1,4})"
    r"(?:Hospital|Medical\s+Cent(?:er|re)|Clinic|Health\s+Center|Healthcare|Infirmary)\b"
)
FACILITY_ABBREVIATION_PATTERN = re.compile(
    r'\b(?:' + "|".join(FACILITY_ABBREVIATIONS) + r')\b|\b(?:Mayo|Cleveland)\s+Clinic\b')
ADDRESS_PATTERN = re.compile(
    r'\b\d{1,6}\s+(?:[A-Z][a-z]+\s+){1,3}'
    r'(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Drive|Dr|Lane|Ln|Way|Court|Ct|Place|Pl|Terrace)\b\.?'
)
CITY_STATE_PATTERN = re.compile(r'\b([A-Z][a-z]+(?:\s[A-Z][a-z]+)?),\s+([A-Z]{2})(?:\s+(\d{5}(?:-\d{4})?))?\b')
LABELLED_ZIP_PATTERN = re.compile(r'\b(zip(?:\s*code)?|postal\s+code)(\s*:?\s*)\d{5}(?:-\d{4})?\b', re.IGNORECASE)

# Name patterns
_NAME_WORD = r"[A-Z][a-z]+(?:[-'][A-Z][a-z]+)?"
PREFIX_NAME_PATTERN = re.compile(
    r'\b(?i:(' + "|".join(sorted(ROLE_TOKENS, key=len, reverse=True)) + r'))(\.?\s+)'
    r'(' + _NAME_WORD + r')(?:(\s+)(' + _NAME_WORD + r'))?\b'
)
POSSESSIVE_PATTERN = re.compile(r"\b([A-Z][a-z]+)(['’]s)\b")
SENTENCE_START_PATTERN = re.compile(r'(^|[.!?]\s+)([A-Z][a-z]+)\s+([A-Z][a-z]+)\b', re.MULTILINE)


@dataclass
class AnonymizationStats:
    items_anonymized: int = 0
    names_replaced: int = 0
    dates_replaced: int = 0
    ids_replaced: int = 0
    locations_replaced: int = 0
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AnonymizationResult:
    anonymized: str
    metadata: AnonymizationStats = field(default_factory=AnonymizationStats)


@dataclass
class PhiReport:
    has_phi: bool
    types: List[str] = field(default_factory=list)


def _is_allowed(word: str) -> bool:
    return word.lower() in CLINICAL_ALLOW_LIST


def _coerce_reference(reference_date: Union[date, datetime, str, None]) -> Optional[date]:
    if reference_date is None:
        return None
    if isinstance(reference_date, datetime):
        return reference_date.date()
    if isinstance(reference_date, date):
        return reference_date
    return datetime.fromisoformat(str(reference_date)).date()


def _expand_year(year: int) -> int:
    if year >= 100:
        return year
    return 2000 + year if year < 50 else 1900 + year


class Anonymizer:
    """Session-scoped PHI scrubber.

    Raw identifiers, dates and names are cached per instance so that the
    same raw value maps to the same token across mentions. Call
    ``clear_caches()`` between unrelated patients.
    """

    def __init__(self):
        self._id_cache: Dict[str, str] = {}
        self._id_counters: Dict[str, int] = {}
        self._date_cache: Dict[str, str] = {}
        self._name_cache: Dict[str, str] = {}

    def anonymize(self, text: Any, reference_date: Union[date, datetime, str, None] = None) -> AnonymizationResult:
        """Scrub ``text``; never raises.

        Args:
            text: Free text to scrub. Non-string or empty input gives an empty result.
            reference_date: Optional admission date; absolute dates become signed day offsets from it.

        Returns:
            AnonymizationResult with the scrubbed text and replacement counts.
        """
        if not isinstance(text, str) or not text:
            return AnonymizationResult(anonymized="")

        stats = AnonymizationStats()
        try:
            reference = _coerce_reference(reference_date)
            result = self._replace_identifiers(text, stats)
            result = self._replace_dates(result, reference, stats)
            result = self._replace_locations(result, stats)
            result = self._replace_names(result, stats)
        except Exception as e:
            # Fall back to redacting the whole text rather than leaking it
            degraded = AnonymizationStats(items_anonymized=1, degraded=True)
            logger.log_anonymization({**degraded.to_dict(), "error": type(e).__name__})
            return AnonymizationResult(anonymized=REDACTED, metadata=degraded)

        stats.items_anonymized = (
            stats.names_replaced + stats.dates_replaced + stats.ids_replaced + stats.locations_replaced
        )
        return AnonymizationResult(anonymized=result, metadata=stats)

    def contains_phi(self, text: Any) -> PhiReport:
        """Report which PHI categories appear in ``text`` without modifying it."""
        if not isinstance(text, str) or not text:
            return PhiReport(has_phi=False)

        types = []
        if any(p.search(text) for p in (ISO_DATE_PATTERN, NUMERIC_DATE_PATTERN, MONTH_FIRST_PATTERN, DAY_FIRST_PATTERN)):
            types.append("dates")
        if PHONE_PATTERN.search(text):
            types.append("phone")
        if EMAIL_PATTERN.search(text):
            types.append("email")
        if SSN_PATTERN.search(text):
            types.append("ssn")
        if RECORD_NUMBER_PATTERN.search(text):
            types.append("mrn")
        if self._has_name(text):
            types.append("names")
        if self._has_location(text):
            types.append("locations")
        return PhiReport(has_phi=bool(types), types=types)

    def clear_caches(self):
        self._id_cache.clear()
        self._id_counters.clear()
        self._date_cache.clear()
        self._name_cache.clear()

    def get_stats(self) -> Dict[str, int]:
        return {
            "ids_cached": len(self._id_cache),
            "dates_cached": len(self._date_cache),
            "names_cached": len(self._name_cache),
        }

    # Identifier pass ---------------------------------------------------------

    def _id_token(self, category: str, raw: str) -> str:
        key = f"{category}:{raw.strip().lower()}"
        if key not in self._id_cache:
            self._id_counters[category] = self._id_counters.get(category, 0) + 1
            self._id_cache[key] = f"[{category}_{self._id_counters[category]}]"
        return self._id_cache[key]

    def _replace_identifiers(self, text: str, stats: AnonymizationStats) -> str:
        def _email(match):
            stats.ids_replaced += 1
            return self._id_token("EMAIL", match.group(0))

        def _record(match):
            stats.ids_replaced += 1
            category = "ACCOUNT" if match.group(1).lower().startswith("acc") else "MRN"
            return f"{match.group(1)}{match.group(2)}{self._id_token(category, match.group(3))}"

        def _ssn(match):
            stats.ids_replaced += 1
            return self._id_token("SSN", match.group(0))

        def _phone(match):
            stats.ids_replaced += 1
            digits = re.sub(r'\D', '', match.group(0))[-10:]
            return self._id_token("PHONE", digits)

        text = EMAIL_PATTERN.sub(_email, text)
        text = RECORD_NUMBER_PATTERN.sub(_record, text)
        text = SSN_PATTERN.sub(_ssn, text)
        return PHONE_PATTERN.sub(_phone, text)

    # Date pass ---------------------------------------------------------------

    def _date_token(self, raw: str, year: int, month: int, day: int, reference: Optional[date]) -> str:
        cache_key = f"{raw.lower()}|{reference}"
        if cache_key in self._date_cache:
            return self._date_cache[cache_key]

        try:
            parsed = date(_expand_year(year), month, day)
        except ValueError:
            parsed = None

        if parsed is None or reference is None:
            token = DATE_TOKEN
        else:
            offset = (parsed - reference).days
            token = ADMISSION_DATE if offset == 0 else f"[ADMISSION_DATE{offset:+d}]"

        self._date_cache[cache_key] = token
        return token

    def _replace_dates(self, text: str, reference: Optional[date], stats: AnonymizationStats) -> str:
        def _iso(match):
            stats.dates_replaced += 1
            return self._date_token(match.group(0), int(match.group(1)), int(match.group(2)), int(match.group(3)), reference)

        def _numeric(match):
            stats.dates_replaced += 1
            return self._date_token(match.group(0), int(match.group(3)), int(match.group(1)), int(match.group(2)), reference)

        def _month_first(match):
            stats.dates_replaced += 1
            month = MONTHS[match.group(1).lower()]
            return self._date_token(match.group(0), int(match.group(3)), month, int(match.group(2)), reference)

        def _day_first(match):
            stats.dates_replaced += 1
            month = MONTHS[match.group(2).lower()]
            return self._date_token(match.group(0), int(match.group(3)), month, int(match.group(1)), reference)

        text = ISO_DATE_PATTERN.sub(_iso, text)
        text = NUMERIC_DATE_PATTERN.sub(_numeric, text)
        text = MONTH_FIRST_PATTERN.sub(_month_first, text)
        text = DAY_FIRST_PATTERN.sub(_day_first, text)

        # Relative mentions stay relative, only their format is normalized
        text = POD_PATTERN.sub(lambda m: f"POD #{int(m.group(1))}", text)
        return HOSPITAL_DAY_PATTERN.sub(lambda m: f"HD #{int(m.group(1))}", text)

    # Location pass -----------------------------------------------------------

    def _replace_locations(self, text: str, stats: AnonymizationStats) -> str:
        def _facility(match):
            words = re.findall(r"[A-Za-z]+", match.group(1))
            if any(_is_allowed(word) for word in words):
                return match.group(0)
            stats.locations_replaced += 1
            return HOSPITAL

        def _facility_abbreviation(match):
            stats.locations_replaced += 1
            return HOSPITAL

        def _address(match):
            stats.locations_replaced += 1
            return ADDRESS

        def _city_state(match):
            if match.group(2) not in US_STATES or any(_is_allowed(w) for w in match.group(1).split()):
                return match.group(0)
            stats.locations_replaced += 1
            if match.group(3):
                stats.locations_replaced += 1
                return f"{LOCATION} {ZIP}"
            return LOCATION

        def _labelled_zip(match):
            stats.locations_replaced += 1
            return f"{match.group(1)}{match.group(2)}{ZIP}"

        text = FACILITY_ABBREVIATION_PATTERN.sub(_facility_abbreviation, text)
        text = FACILITY_PATTERN.sub(_facility, text)
        text = ADDRESS_PATTERN.sub(_address, text)
        text = CITY_STATE_PATTERN.sub(_city_state, text)
        return LABELLED_ZIP_PATTERN.sub(_labelled_zip, text)

    def _has_location(self, text: str) -> bool:
        if FACILITY_ABBREVIATION_PATTERN.search(text) or ADDRESS_PATTERN.search(text):
            return True
        for match in FACILITY_PATTERN.finditer(text):
            if not any(_is_allowed(w) for w in re.findall(r"[A-Za-z]+", match.group(1))):
                return True
        return any(m.group(2) in US_STATES for m in CITY_STATE_PATTERN.finditer(text))

    # Name pass ---------------------------------------------------------------

    def _name_token(self, name: str, role_token: str) -> str:
        key = name.lower()
        if key not in self._name_cache:
            self._name_cache[key] = role_token
        return self._name_cache[key]

    @staticmethod
    def _is_name_word(word: str) -> bool:
        return word.lower() not in NON_NAME_WORDS and not _is_allowed(word)

    def _replace_names(self, text: str, stats: AnonymizationStats) -> str:
        def _prefixed(match):
            prefix, separator, first, gap, last = match.groups()
            if not self._is_name_word(first):
                return match.group(0)
            role_token = ROLE_TOKENS[prefix.lower()]
            stats.names_replaced += 1
            if last and self._is_name_word(last):
                return f"{prefix}{separator}{self._name_token(f'{first} {last}', role_token)}"
            token = self._name_token(first, role_token)
            return f"{prefix}{separator}{token}{gap or ''}{last or ''}"

        def _possessive(match):
            name = match.group(1)
            if name.lower() not in COMMON_FIRST_NAMES or _is_allowed(name):
                return match.group(0)
            stats.names_replaced += 1
            return f"{self._name_token(name, PATIENT_NAME)}{match.group(2)}"

        def _sentence_start(match):
            lead, first, second = match.groups()
            if first.lower() not in COMMON_FIRST_NAMES or _is_allowed(first):
                return match.group(0)
            stats.names_replaced += 1
            if self._is_name_word(second):
                return f"{lead}{self._name_token(f'{first} {second}', PATIENT_NAME)}"
            return f"{lead}{self._name_token(first, PATIENT_NAME)} {second}"

        text = PREFIX_NAME_PATTERN.sub(_prefixed, text)
        text = POSSESSIVE_PATTERN.sub(_possessive, text)
        text = SENTENCE_START_PATTERN.sub(_sentence_start, text)
        return self._replace_cached_names(text, stats)

    def _replace_cached_names(self, text: str, stats: AnonymizationStats) -> str:
        """Replace later bare mentions of names already seen this session."""
        candidates = {}
        for name, token in self._name_cache.items():
            candidates[name] = token
            for part in name.split():
                if len(part) > 2 and self._is_name_word(part):
                    candidates.setdefault(part, token)

        for name in sorted(candidates, key=len, reverse=True):
            pattern = re.compile(r'\b' + r'\s+'.join(re.escape(w.capitalize()) for w in name.split()) + r'\b')
            text, count = pattern.subn(candidates[name], text)
            stats.names_replaced += count
        return text

    def _has_name(self, text: str) -> bool:
        for match in PREFIX_NAME_PATTERN.finditer(text):
            if self._is_name_word(match.group(3)):
                return True
        for match in POSSESSIVE_PATTERN.finditer(text):
            if match.group(1).lower() in COMMON_FIRST_NAMES:
                return True
        return any(m.group(2).lower() in COMMON_FIRST_NAMES for m in SENTENCE_START_PATTERN.finditer(text))
