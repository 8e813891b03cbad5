"""
Temporal & Entity Extraction for ChartRecall

Parses a free-text query into a structured EntitySet:
- MRN and patient name mentions
- explicit dates and ranges (ISO, US, written)
- relative phrases normalized to absolute ranges against a reference date
- condition/content terms, document and encounter type mentions
- requested structured fields ("date of birth", "how many visits")

Relative phrases are never guessed: anything that cannot be mapped
deterministically raises AmbiguousTemporalExpression.
"""

import calendar
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date, timedelta

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from chartrecall.core.errors import AmbiguousTemporalExpression
from chartrecall.core.types import DateRange, DocumentType, EncounterType

logger = logging.getLogger(__name__)

# Default window for "recently"/"lately"; unset means those phrases are ambiguous
_recent_window = os.environ.get("RECENT_WINDOW_MONTHS", "").strip()
RECENT_WINDOW_MONTHS: int | None = int(_recent_window) if _recent_window else None

# ============================================
# Vocabulary
# ============================================

NUMBER_WORDS: dict[str, int] = {
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
    "eleven": 11,
    "twelve": 12,
    "eighteen": 18,
    "twenty-four": 24,
}

MEDICAL_ABBREVIATIONS: dict[str, str] = {
    "MI": "myocardial infarction",
    "CHF": "congestive heart failure",
    "DVT": "deep vein thrombosis",
    "PE": "pulmonary embolism",
    "COPD": "chronic obstructive pulmonary disease",
    "HTN": "hypertension",
    "DM": "diabetes mellitus",
    "CAD": "coronary artery disease",
    "CABG": "coronary artery bypass graft",
    "CVA": "cerebrovascular accident",
    "TIA": "transient ischemic attack",
    "AFib": "atrial fibrillation",
    "CKD": "chronic kidney disease",
    "AKI": "acute kidney injury",
    "UTI": "urinary tract infection",
    "CBC": "complete blood count",
    "ECG": "electrocardiogram",
    "EKG": "electrocardiogram",
    "CXR": "chest x-ray",
    "A1C": "hemoglobin a1c",
}

# Conditions, procedures, findings and generic content words that signal the
# answer lives in document content rather than in structured fields
CLINICAL_TERMS: tuple[str, ...] = (
    "allergy",
    "allergies",
    "anemia",
    "angina",
    "asthma",
    "atrial fibrillation",
    "biopsy",
    "blood pressure",
    "cancer",
    "chest pain",
    "colonoscopy",
    "complication",
    "complications",
    "copd",
    "diabetes",
    "diagnosis",
    "diagnoses",
    "dyspnea",
    "echocardiogram",
    "endoscopy",
    "fever",
    "findings",
    "follow-up",
    "fracture",
    "heart failure",
    "hypertension",
    "imaging",
    "infection",
    "injury",
    "medication",
    "medications",
    "pain",
    "plan",
    "pneumonia",
    "prescription",
    "prescriptions",
    "procedure",
    "procedures",
    "result",
    "results",
    "sepsis",
    "stroke",
    "surgery",
    "symptom",
    "symptoms",
    "treatment",
    "tumor",
    "vaccination",
)

DOCUMENT_TYPE_PHRASES: dict[DocumentType, str] = {
    DocumentType.DISCHARGE_SUMMARY: r"discharge (?:summary|summaries|notes?)",
    DocumentType.PROGRESS_NOTE: r"progress notes?",
    DocumentType.PROCEDURE_NOTE: r"(?:procedure|operative|op) notes?",
    DocumentType.LAB_REPORT: r"lab(?:oratory)? reports?|labs",
    DocumentType.RADIOLOGY_REPORT: r"(?:radiology|imaging) reports?",
    DocumentType.CONSULT_NOTE: r"consult(?:ation)? notes?",
    DocumentType.MEDICATION_LIST: r"med(?:ication)? lists?",
}

ENCOUNTER_TYPE_PHRASES: dict[EncounterType, str] = {
    EncounterType.INPATIENT: r"inpatient|admissions?|hospitali[sz]ations?",
    EncounterType.OUTPATIENT: r"outpatient|clinic visits?|office visits?",
    EncounterType.EMERGENCY: r"emergency|er visits?|ed visits?",
    EncounterType.FOLLOW_UP: r"follow-?up (?:visits?|appointments?)",
    EncounterType.TELEHEALTH: r"telehealth|video visits?|virtual visits?",
}

# Structured fields answerable without touching document content
FIELD_PATTERNS: dict[str, str] = {
    "patient.date_of_birth": r"date of birth|dob|birth ?date|birthday|how old|\bage\b",
    "patient.sex": r"\bsex\b|\bgender\b",
    "patient.name": r"patient'?s name|full name|name of (?:the|this) patient|what is (?:the )?name",
    "encounter.count": r"how many (?:visits|encounters|admissions|appointments|hospitali[sz]ations)",
    "encounter.dates": (
        r"admission dates?|discharge dates?|visit dates?|encounter dates?|"
        r"when was (?:the |her |his |their )?(?:last |latest |most recent |first )?"
        r"(?:visit|admission|encounter|appointment)"
    ),
    "encounter.list": r"list (?:all |the )?(?:visits|encounters|admissions)|which (?:visits|encounters)",
    "encounter.status": (
        r"encounter status|status of (?:the |her |his |their )?(?:visit|encounter|admission)|"
        r"still admitted"
    ),
    "document.list": (
        r"list (?:all |the )?(?:documents|notes|reports)|"
        r"(?:what|which) documents|how many (?:documents|notes|reports)"
    ),
}

# ============================================
# Compiled Patterns
# ============================================

MRN_PATTERN = re.compile(
    r"\b(?:MRN|medical record(?: number)?)\s*(?:#|no\.?|number)?\s*[:#]?\s*([^\s,;?!]+)",
    re.IGNORECASE,
)
POSSESSIVE_SUFFIX = re.compile(r"['’]s?$", re.IGNORECASE)
PATIENT_NAME_PATTERN = re.compile(
    r"\b(?:[Pp]atient|[Pp]t\.?)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+){0,2})"
)

DATE_ISO = re.compile(r"\b\d{4}-\d{1,2}-\d{1,2}\b")
DATE_US = re.compile(r"\b\d{1,2}/\d{1,2}/\d{4}\b")
DATE_WRITTEN = re.compile(
    r"\b(?:January|February|March|April|May|June|July|August|September|October|"
    r"November|December|Jan|Feb|Mar|Apr|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec)\.?\s+"
    r"\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}\b",
    re.IGNORECASE,
)
SINCE_PATTERN = re.compile(r"\bsince\s*$", re.IGNORECASE)

_NUMBER = r"(\d+|" + "|".join(NUMBER_WORDS) + r")"
LAST_N_UNITS = re.compile(
    r"\b(?:last|past|previous|prior)\s+" + _NUMBER + r"\s+(day|week|month|year)s?\b",
    re.IGNORECASE,
)
LAST_CALENDAR_UNIT = re.compile(
    r"\b(?:last|previous|prior)\s+(week|month|quarter|year)\b", re.IGNORECASE
)
PAST_UNIT = re.compile(r"\b(?:past)\s+(week|month|quarter|year)\b", re.IGNORECASE)
THIS_UNIT = re.compile(
    r"\b(?:this|current)\s+(month|quarter|year)\b|\byear[- ]to[- ]date\b|\bytd\b",
    re.IGNORECASE,
)
TODAY_PATTERN = re.compile(r"\b(today|yesterday)\b", re.IGNORECASE)

RECENT_PATTERN = re.compile(r"(?<!most )\b(recently|lately|recent)\b", re.IGNORECASE)
VAGUE_PATTERN = re.compile(
    r"\b(a while ago|some time ago|a few (?:days|weeks|months|years) ago|"
    r"long ago|in the past(?!\s+(?:\d+|" + "|".join(NUMBER_WORDS) + r")\b))",
    re.IGNORECASE,
)

SINGLE_SCOPE_PATTERN = re.compile(
    r"\b(?:last|latest|most recent|previous|this|current|that)\s+"
    r"(?:visit|encounter|admission|appointment|hospitali[sz]ation|stay)\b",
    re.IGNORECASE,
)

_COMPILED_ABBREVIATIONS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b" + re.escape(abbr) + r"\b"), expansion)
    for abbr, expansion in MEDICAL_ABBREVIATIONS.items()
]
_COMPILED_TERMS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b" + re.escape(term) + r"\b", re.IGNORECASE), term)
    for term in CLINICAL_TERMS
]
DRUG_PATTERN = re.compile(
    r"\b[A-Za-z]+(?:mycin|cillin|olol|pril|sartan|statin|azole|prazole|mab|tinib|formin)\b",
    re.IGNORECASE,
)
_COMPILED_DOCUMENT_TYPES = [
    (re.compile(r"\b(?:" + phrase + r")\b", re.IGNORECASE), doc_type)
    for doc_type, phrase in DOCUMENT_TYPE_PHRASES.items()
]
_COMPILED_ENCOUNTER_TYPES = [
    (re.compile(r"\b(?:" + phrase + r")\b", re.IGNORECASE), enc_type)
    for enc_type, phrase in ENCOUNTER_TYPE_PHRASES.items()
]
_COMPILED_FIELDS = [
    (re.compile(r"\b(?:" + pattern + r")\b", re.IGNORECASE), name)
    for name, pattern in FIELD_PATTERNS.items()
]


# ============================================
# EntitySet
# ============================================


@dataclass
class EntitySet:
    """Structured view of one query."""

    text: str
    mrn: str | None = None
    patient_name: str | None = None
    explicit_date: date | None = None
    date_range: DateRange | None = None
    temporal_phrase: str | None = None
    condition_terms: set[str] = field(default_factory=set)
    document_types: set[DocumentType] = field(default_factory=set)
    encounter_types: set[EncounterType] = field(default_factory=set)
    requested_fields: set[str] = field(default_factory=set)
    single_encounter_scope: bool = False

    @property
    def has_temporal_range(self) -> bool:
        return self.date_range is not None

    @property
    def has_content_terms(self) -> bool:
        return bool(self.condition_terms or self.document_types)


# ============================================
# Date Arithmetic
# ============================================


def quarter_of(day: date) -> int:
    """Calendar quarter 1-4."""
    return (day.month - 1) // 3 + 1


def quarter_range(year: int, quarter: int) -> DateRange:
    first_month = 3 * (quarter - 1) + 1
    last_month = first_month + 2
    last_day = calendar.monthrange(year, last_month)[1]
    return DateRange(date(year, first_month, 1), date(year, last_month, last_day))


def previous_quarter(day: date) -> tuple[int, int]:
    """(year, quarter) of the calendar quarter before the one containing day."""
    quarter = quarter_of(day)
    if quarter == 1:
        return day.year - 1, 4
    return day.year, quarter - 1


def year_range(year: int) -> DateRange:
    return DateRange(date(year, 1, 1), date(year, 12, 31))


def find_mrn(text: str) -> str | None:
    """The MRN mentioned in text, unvalidated."""
    match = MRN_PATTERN.search(text)
    if not match:
        return None
    token = match.group(1).rstrip(".):")
    return POSSESSIVE_SUFFIX.sub("", token)


def _parse_number(token: str) -> int:
    token = token.lower()
    if token.isdigit():
        return int(token)
    return NUMBER_WORDS[token]


# ============================================
# Extractor
# ============================================


class EntityExtractor:
    """Extracts entities and absolute date ranges from query text."""

    def __init__(self, recent_window_months: int | None = RECENT_WINDOW_MONTHS):
        self.recent_window_months = recent_window_months

    def extract(self, text: str, reference_date: date) -> EntitySet:
        """
        Extract the entity set for a query.

        Args:
            text: Raw query text.
            reference_date: Date that relative phrases are evaluated against.

        Raises:
            AmbiguousTemporalExpression: For relative phrases with no
                deterministic mapping.
        """
        entities = EntitySet(text=text)
        entities.mrn = find_mrn(text)
        entities.patient_name = self._extract_patient_name(text)

        relative = self._resolve_relative(text, reference_date)
        explicit = self._extract_explicit_dates(text)
        if len(explicit) == 1:
            entities.explicit_date = explicit[0]

        if relative is not None:
            entities.temporal_phrase, entities.date_range = relative
        elif len(explicit) >= 2:
            entities.date_range = DateRange(min(explicit), max(explicit))
        elif entities.explicit_date is not None:
            day = entities.explicit_date
            if self._is_since(text):
                entities.date_range = DateRange(day, max(day, reference_date))
            else:
                entities.date_range = DateRange(day, day)

        entities.condition_terms = self._extract_condition_terms(text)
        entities.document_types = {
            doc_type for pattern, doc_type in _COMPILED_DOCUMENT_TYPES if pattern.search(text)
        }
        entities.encounter_types = {
            enc_type for pattern, enc_type in _COMPILED_ENCOUNTER_TYPES if pattern.search(text)
        }
        entities.requested_fields = {
            name for pattern, name in _COMPILED_FIELDS if pattern.search(text)
        }
        entities.single_encounter_scope = bool(SINGLE_SCOPE_PATTERN.search(text))

        logger.debug(
            "Extracted entities: mrn=%s range=%s terms=%s fields=%s",
            entities.mrn,
            entities.date_range,
            sorted(entities.condition_terms),
            sorted(entities.requested_fields),
        )
        return entities

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_patient_name(text: str) -> str | None:
        match = PATIENT_NAME_PATTERN.search(text)
        return match.group(1) if match else None

    # ------------------------------------------------------------------
    # Dates
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_explicit_dates(text: str) -> list[date]:
        found: list[tuple[int, date]] = []
        for pattern in (DATE_ISO, DATE_US, DATE_WRITTEN):
            for match in pattern.finditer(text):
                try:
                    parsed = date_parser.parse(match.group(0), fuzzy=False).date()
                except (ValueError, OverflowError):
                    logger.debug("Ignoring unparseable date '%s'", match.group(0))
                    continue
                found.append((match.start(), parsed))
        found.sort()
        return [d for _, d in found]

    @staticmethod
    def _is_since(text: str) -> bool:
        """True if the date is introduced by 'since'."""
        for pattern in (DATE_ISO, DATE_US, DATE_WRITTEN):
            match = pattern.search(text)
            if match and SINCE_PATTERN.search(text[: match.start()]):
                return True
        return False

    def _resolve_relative(
        self, text: str, reference: date
    ) -> tuple[str, DateRange] | None:
        match = LAST_N_UNITS.search(text)
        if match:
            n = _parse_number(match.group(1))
            unit = match.group(2).lower()
            start = reference - relativedelta(**{f"{unit}s": n})
            return match.group(0), DateRange(start, reference)

        match = LAST_CALENDAR_UNIT.search(text)
        if match:
            return match.group(0), self._previous_calendar_unit(match.group(1).lower(), reference)

        match = PAST_UNIT.search(text)
        if match:
            unit = match.group(1).lower()
            delta = relativedelta(months=3) if unit == "quarter" else relativedelta(**{f"{unit}s": 1})
            return match.group(0), DateRange(reference - delta, reference)

        match = THIS_UNIT.search(text)
        if match:
            unit = (match.group(1) or "year").lower()
            if unit == "month":
                start = reference.replace(day=1)
            elif unit == "quarter":
                start = quarter_range(reference.year, quarter_of(reference)).start
            else:
                start = date(reference.year, 1, 1)
            return match.group(0), DateRange(start, reference)

        match = TODAY_PATTERN.search(text)
        if match:
            day = reference if match.group(1).lower() == "today" else reference - timedelta(days=1)
            return match.group(0), DateRange(day, day)

        match = VAGUE_PATTERN.search(text)
        if match:
            raise AmbiguousTemporalExpression(match.group(0))

        match = RECENT_PATTERN.search(text)
        if match:
            if self.recent_window_months is None:
                raise AmbiguousTemporalExpression(match.group(0))
            start = reference - relativedelta(months=self.recent_window_months)
            return match.group(0), DateRange(start, reference)

        return None

    @staticmethod
    def _previous_calendar_unit(unit: str, reference: date) -> DateRange:
        if unit == "year":
            return year_range(reference.year - 1)
        if unit == "quarter":
            return quarter_range(*previous_quarter(reference))
        if unit == "month":
            last_day_prev = reference.replace(day=1) - timedelta(days=1)
            return DateRange(last_day_prev.replace(day=1), last_day_prev)
        # week: Monday-Sunday of the previous ISO week
        this_monday = reference - timedelta(days=reference.weekday())
        return DateRange(this_monday - timedelta(days=7), this_monday - timedelta(days=1))

    # ------------------------------------------------------------------
    # Content terms
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_condition_terms(text: str) -> set[str]:
        terms: set[str] = set()
        for pattern, expansion in _COMPILED_ABBREVIATIONS:
            if pattern.search(text):
                terms.add(expansion)
        for pattern, term in _COMPILED_TERMS:
            if pattern.search(text):
                terms.add(term)
        for match in DRUG_PATTERN.finditer(text):
            terms.add(match.group(0).lower())
        return terms
