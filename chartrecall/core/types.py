"""
ChartRecall Domain Types

Read-only views of the structured store (patients, encounters, documents),
summary records, and the small value objects passed between the extractor,
classifier, identifier chain, retrieval selector and summarization engine.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from chartrecall.core.errors import IsolationViolation

# ============================================
# Enumerations
# ============================================


class EncounterType(str, Enum):
    INPATIENT = "inpatient"
    OUTPATIENT = "outpatient"
    EMERGENCY = "emergency"
    FOLLOW_UP = "follow_up"
    PROCEDURE = "procedure"
    TELEHEALTH = "telehealth"


class EncounterStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class DocumentType(str, Enum):
    DISCHARGE_SUMMARY = "discharge_summary"
    PROGRESS_NOTE = "progress_note"
    PROCEDURE_NOTE = "procedure_note"
    LAB_REPORT = "lab_report"
    RADIOLOGY_REPORT = "radiology_report"
    CONSULT_NOTE = "consult_note"
    MEDICATION_LIST = "medication_list"


class SummaryTier(str, Enum):
    ENCOUNTER = "encounter"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


# Coarsest first: coverage prefers annual, then quarterly, then encounter
TIERS_COARSEST_FIRST = (SummaryTier.ANNUAL, SummaryTier.QUARTERLY, SummaryTier.ENCOUNTER)


class QueryType(str, Enum):
    """Closed set of classification outcomes."""

    RDBMS_ONLY = "rdbms_only"
    SEMANTIC = "semantic"
    SUMMARY = "summary"
    HYBRID = "hybrid"


# ============================================
# Date Range
# ============================================


@dataclass(frozen=True, order=True)
class DateRange:
    """Inclusive day range."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Range end {self.end} precedes start {self.start}")

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def covers(self, other: "DateRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def overlaps(self, other: "DateRange") -> bool:
        return self.start <= other.end and other.start <= self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def __str__(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


# ============================================
# Structured Store Records
# ============================================


@dataclass(frozen=True)
class PatientRecord:
    id: str
    mrn: str
    full_name: str | None = None
    date_of_birth: date | None = None
    sex: str | None = None


@dataclass(frozen=True)
class EncounterRecord:
    id: str
    patient_id: str
    encounter_type: EncounterType
    start_date: datetime
    end_date: datetime | None
    status: EncounterStatus

    @property
    def start_day(self) -> date:
        return self.start_date.date()

    @property
    def end_day(self) -> date:
        return (self.end_date or self.start_date).date()

    @property
    def period(self) -> DateRange:
        return DateRange(self.start_day, self.end_day)

    @property
    def is_closed(self) -> bool:
        return self.status == EncounterStatus.CLOSED


@dataclass(frozen=True)
class DocumentRecord:
    id: str
    encounter_id: str
    patient_id: str
    document_type: DocumentType
    document_date: datetime
    storage_path: str
    size_bytes: int | None = None
    title: str | None = None


@dataclass(frozen=True)
class SummaryRecord:
    """A precomputed summary for one tier and period.

    Encounter-tier records reference exactly one encounter; quarterly and
    annual records are aggregates and reference none.
    """

    patient_id: str
    tier: SummaryTier
    period_start: date
    period_end: date
    summary_text: str
    encounter_id: str | None = None
    encounter_count: int = 0
    id: str | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.period_end < self.period_start:
            raise ValueError("period_end must not precede period_start")
        if self.tier == SummaryTier.ENCOUNTER and not self.encounter_id:
            raise ValueError("encounter-tier summaries must reference an encounter")
        if self.tier != SummaryTier.ENCOUNTER and self.encounter_id:
            raise ValueError(f"{self.tier.value} summaries cannot reference an encounter")

    @property
    def period(self) -> DateRange:
        return DateRange(self.period_start, self.period_end)

    @property
    def key(self) -> tuple:
        """
        Idempotency key for persistence.

        Encounter-tier records are keyed by their encounter, so encounters
        sharing a start day each keep their own record. Aggregate tiers are
        keyed by period.
        """
        if self.tier == SummaryTier.ENCOUNTER:
            return (self.patient_id, self.tier, self.encounter_id)
        return (self.patient_id, self.tier, self.period_start, self.period_end)


# ============================================
# Lookup Filters
# ============================================


@dataclass(frozen=True)
class EncounterFilter:
    """Optional constraints for encounter lookups. Empty sets mean 'any'."""

    encounter_types: frozenset[EncounterType] = frozenset()
    statuses: frozenset[EncounterStatus] = frozenset()
    date_range: DateRange | None = None


@dataclass(frozen=True)
class DocumentFilter:
    document_types: frozenset[DocumentType] = frozenset()


# ============================================
# Retrieval Filter
# ============================================


@dataclass(frozen=True)
class RetrievalFilter:
    """Exact-match constraints that accompany every semantic-index query.

    patient_id is always required. Below patient level the filter carries
    encounter_id, and document_id whenever a single document is in scope.
    """

    patient_id: str | None
    encounter_id: str | None = None
    document_id: str | None = None
    section_type: str | None = None

    @classmethod
    def for_document(cls, document: "DocumentRecord", section_type: str | None = None):
        return cls(
            patient_id=document.patient_id,
            encounter_id=document.encounter_id,
            document_id=document.id,
            section_type=section_type,
        )

    def validate(self) -> None:
        """Raise IsolationViolation unless the filter is patient-scoped."""
        if not self.patient_id:
            raise IsolationViolation("Semantic query issued without patient_id")
        if self.document_id and not self.encounter_id:
            raise IsolationViolation("Document-scoped query issued without encounter_id")

    def admits(self, hit: "SearchHit") -> bool:
        """True if a hit lies inside every constraint this filter carries."""
        if hit.patient_id != self.patient_id:
            return False
        if self.encounter_id and hit.encounter_id != self.encounter_id:
            return False
        if self.document_id and hit.document_id != self.document_id:
            return False
        if self.section_type and hit.section_type != self.section_type:
            return False
        return True


# ============================================
# Semantic Index Hits
# ============================================


@dataclass
class SearchHit:
    """A chunk returned by the semantic index, with its scoping columns."""

    chunk_text: str
    document_id: str
    section_type: str | None
    score: float
    encounter_id: str | None = None
    patient_id: str | None = None


# ============================================
# Conversation Context
# ============================================


@dataclass
class ConversationTurn:
    query_text: str
    answer_text: str
    query_type: str


@dataclass
class ConversationContext:
    """Caller-owned conversation memory threaded through answer_query.

    Holds prior turns and the MRN of the patient under discussion so that a
    follow-up like "and her last discharge summary?" stays on the same
    patient. The internal patient id is kept only to detect a switch; every
    turn re-resolves the MRN through the identifier chain.
    """

    mrn: str | None = None
    patient_id: str | None = None
    turns: list[ConversationTurn] = field(default_factory=list)
    max_turns: int = 10

    def remember(self, turn: ConversationTurn) -> None:
        self.turns.append(turn)
        if len(self.turns) > self.max_turns:
            del self.turns[: len(self.turns) - self.max_turns]
