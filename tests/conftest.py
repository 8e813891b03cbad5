"""
ChartRecall Test Configuration

Pytest fixtures and in-memory stand-ins for the four external capabilities
(structured store, semantic index, object store, language model).
"""

import uuid
from collections.abc import Generator
from datetime import date, datetime, time, timezone

import pytest
from fastapi.testclient import TestClient

from chartrecall.core.errors import ObjectNotFound, SummaryAlreadyExists
from chartrecall.core.types import (
    DateRange,
    DocumentFilter,
    DocumentRecord,
    DocumentType,
    EncounterFilter,
    EncounterRecord,
    EncounterStatus,
    EncounterType,
    PatientRecord,
    RetrievalFilter,
    SearchHit,
    SummaryRecord,
    SummaryTier,
)
from chartrecall.db.store import ORDER_CHRONOLOGICAL
from chartrecall.observability.metrics import reset_metrics
from chartrecall.pipelines.clinical import QueryPipeline
from chartrecall.query.extractor import EntityExtractor

# ============================================
# Fake Capabilities
# ============================================


def _at(day: date, hour: int = 9) -> datetime:
    return datetime.combine(day, time(hour), tzinfo=timezone.utc)


class InMemoryStore:
    """StructuredStore over plain dicts, with the same filter semantics as SQL."""

    def __init__(self):
        self.patients: dict[str, PatientRecord] = {}
        self.encounters: dict[str, EncounterRecord] = {}
        self.documents: dict[str, DocumentRecord] = {}
        self.summaries: list[SummaryRecord] = []
        self.mrn_lookups: list[str] = []

    async def get_patient_by_mrn(self, mrn: str) -> PatientRecord | None:
        self.mrn_lookups.append(mrn)
        return self.patients.get(mrn)

    async def get_encounter(self, encounter_id: str) -> EncounterRecord | None:
        return self.encounters.get(encounter_id)

    async def list_encounters(
        self,
        patient_id: str,
        filters: EncounterFilter | None = None,
        order: str = "desc",
    ) -> list[EncounterRecord]:
        filters = filters or EncounterFilter()
        found = []
        for encounter in self.encounters.values():
            if encounter.patient_id != patient_id:
                continue
            if filters.encounter_types and encounter.encounter_type not in filters.encounter_types:
                continue
            if filters.statuses and encounter.status not in filters.statuses:
                continue
            if filters.date_range and not filters.date_range.contains(encounter.start_day):
                continue
            found.append(encounter)
        return sorted(
            found,
            key=lambda e: (e.start_date, e.id),
            reverse=order != ORDER_CHRONOLOGICAL,
        )

    async def list_documents(
        self,
        encounter_ids: list[str],
        filters: DocumentFilter | None = None,
    ) -> list[DocumentRecord]:
        filters = filters or DocumentFilter()
        found = [
            d
            for d in self.documents.values()
            if d.encounter_id in encounter_ids
            and (not filters.document_types or d.document_type in filters.document_types)
        ]
        return sorted(found, key=lambda d: (d.document_date, d.id), reverse=True)

    async def get_summary_records(
        self,
        patient_id: str,
        tier: SummaryTier,
        date_range: DateRange,
    ) -> list[SummaryRecord]:
        found = [
            r
            for r in self.summaries
            if r.patient_id == patient_id and r.tier == tier and r.period.overlaps(date_range)
        ]
        return sorted(found, key=lambda r: r.period_start)

    async def put_summary_record(self, record: SummaryRecord) -> SummaryRecord:
        if any(r.key == record.key for r in self.summaries):
            raise SummaryAlreadyExists(f"{record.tier.value} summary exists")
        stored = SummaryRecord(
            id=str(uuid.uuid4()),
            patient_id=record.patient_id,
            tier=record.tier,
            period_start=record.period_start,
            period_end=record.period_end,
            summary_text=record.summary_text,
            encounter_id=record.encounter_id,
            encounter_count=record.encounter_count,
            created_at=datetime.now(timezone.utc),
        )
        self.summaries.append(stored)
        return stored


class StubSemanticIndex:
    """Semantic index that honours the filter and logs every call.

    Setting ``leak`` makes every search return that hit instead, to
    exercise the isolation guard.
    """

    def __init__(self):
        self.chunks: list[SearchHit] = []
        self.calls: list[tuple[str, RetrievalFilter, int]] = []
        self.leak: SearchHit | None = None

    def add_chunk(self, document: DocumentRecord, text: str, score: float = 0.8) -> None:
        self.chunks.append(
            SearchHit(
                chunk_text=text,
                document_id=document.id,
                section_type=None,
                score=score,
                encounter_id=document.encounter_id,
                patient_id=document.patient_id,
            )
        )

    async def search(
        self, query_text: str, retrieval_filter: RetrievalFilter, top_k: int = 5
    ) -> list[SearchHit]:
        self.calls.append((query_text, retrieval_filter, top_k))
        if self.leak is not None:
            return [self.leak]
        hits = [hit for hit in self.chunks if retrieval_filter.admits(hit)]
        return sorted(hits, key=lambda h: h.score, reverse=True)[:top_k]


class StubObjectStore:
    """Object store over a dict; logs every read."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.reads: list[str] = []

    async def get_object(self, path: str) -> bytes:
        self.reads.append(path)
        if path not in self.objects:
            raise ObjectNotFound(path)
        return self.objects[path]


class StubLLM:
    """Deterministic model keyed on the context sections it receives.

    Queued ``responses`` are returned first, in order.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.responses: list[str] = []

    async def complete(self, prompt: str, context: dict[str, str] | None = None) -> str:
        context = dict(context or {})
        self.calls.append((prompt, context))
        if self.responses:
            return self.responses.pop(0)
        if "evidence" in context:
            return "The procedure was a colonoscopy with no complications [Doc 1].\nConfidence: 0.90"
        if "running summary" in context:
            return f"Merged summary #{len(self.calls)}"
        if "documents" in context:
            return "Encounter summary: stable, follow up in 3 months."
        if "summary" in context:
            return "Focused summary."
        return ""

    def calls_with(self, section: str) -> list[tuple[str, dict[str, str]]]:
        return [call for call in self.calls if section in call[1]]


# ============================================
# Chart Builder
# ============================================


class FakeChart:
    """Builds patient records across the four fake capabilities."""

    def __init__(self):
        self.store = InMemoryStore()
        self.index = StubSemanticIndex()
        self.objects = StubObjectStore()
        self.llm = StubLLM()

    def patient(
        self,
        mrn: str,
        full_name: str | None = None,
        date_of_birth: date | None = None,
        sex: str | None = None,
    ) -> PatientRecord:
        record = PatientRecord(
            id=str(uuid.uuid4()),
            mrn=mrn,
            full_name=full_name,
            date_of_birth=date_of_birth,
            sex=sex,
        )
        self.store.patients[mrn] = record
        return record

    def encounter(
        self,
        patient: PatientRecord,
        start: date,
        end: date | None = None,
        encounter_type: EncounterType = EncounterType.OUTPATIENT,
        status: EncounterStatus = EncounterStatus.CLOSED,
    ) -> EncounterRecord:
        record = EncounterRecord(
            id=str(uuid.uuid4()),
            patient_id=patient.id,
            encounter_type=encounter_type,
            start_date=_at(start),
            end_date=_at(end or start, 17) if status == EncounterStatus.CLOSED else None,
            status=status,
        )
        self.store.encounters[record.id] = record
        return record

    def document(
        self,
        encounter: EncounterRecord,
        text: str,
        document_type: DocumentType = DocumentType.PROGRESS_NOTE,
        size_bytes: int | None = None,
        stored: bool = True,
        chunks: list[str] | None = None,
    ) -> DocumentRecord:
        doc_id = str(uuid.uuid4())
        record = DocumentRecord(
            id=doc_id,
            encounter_id=encounter.id,
            patient_id=encounter.patient_id,
            document_type=document_type,
            document_date=encounter.start_date,
            storage_path=f"{encounter.patient_id}/{doc_id}.txt",
            size_bytes=len(text.encode()) if size_bytes is None else size_bytes,
        )
        self.store.documents[doc_id] = record
        if stored:
            self.objects.objects[record.storage_path] = text.encode()
        for chunk in chunks or []:
            self.index.add_chunk(record, chunk)
        return record

    def summary(
        self,
        patient: PatientRecord,
        tier: SummaryTier,
        period: DateRange,
        text: str,
        encounter: EncounterRecord | None = None,
        encounter_count: int = 0,
    ) -> SummaryRecord:
        record = SummaryRecord(
            id=str(uuid.uuid4()),
            patient_id=patient.id,
            tier=tier,
            period_start=period.start,
            period_end=period.end,
            summary_text=text,
            encounter_id=encounter.id if encounter else None,
            encounter_count=encounter_count,
        )
        self.store.summaries.append(record)
        return record

    def pipeline(self, **selector_options) -> QueryPipeline:
        return QueryPipeline(
            store=self.store,
            index=self.index,
            object_store=self.objects,
            llm=self.llm,
            extractor=EntityExtractor(recent_window_months=None),
            **selector_options,
        )


# ============================================
# Fixtures
# ============================================


@pytest.fixture(autouse=True)
def clean_metrics() -> Generator[None, None, None]:
    """Reset in-process metrics before each test."""
    reset_metrics()
    yield


@pytest.fixture
def chart() -> FakeChart:
    """An empty chart."""
    return FakeChart()


@pytest.fixture
def two_patient_chart(chart: FakeChart) -> FakeChart:
    """MRN 12345 and MRN 1234, one follow-up procedure note each."""
    chart.p12345 = chart.patient("12345", "Ana Cruz", date(1970, 5, 1), "F")
    chart.e12345 = chart.encounter(chart.p12345, date(2025, 1, 10), encounter_type=EncounterType.FOLLOW_UP)
    chart.d12345 = chart.document(
        chart.e12345,
        "Follow-up colonoscopy performed. No complications. Plan: repeat in 5 years.",
        DocumentType.PROCEDURE_NOTE,
        chunks=["Follow-up colonoscopy performed. No complications."],
    )

    chart.p1234 = chart.patient("1234", "Ben Reyes", date(1962, 11, 20), "M")
    chart.e1234 = chart.encounter(chart.p1234, date(2025, 1, 11), encounter_type=EncounterType.FOLLOW_UP)
    chart.d1234 = chart.document(
        chart.e1234,
        "Follow-up cardiac catheterization. Stent placed in the LAD.",
        DocumentType.PROCEDURE_NOTE,
        chunks=["Follow-up cardiac catheterization. Stent placed in the LAD."],
    )
    return chart


@pytest.fixture
def quarter_boundary_chart(chart: FakeChart) -> FakeChart:
    """Patient 55501 with a stored Q4 2024 summary and two January 2025 visits."""
    patient = chart.patient("55501", "Carla Diaz", date(1958, 3, 2), "F")
    chart.patient_55501 = patient
    chart.q4_encounter = chart.encounter(patient, date(2024, 11, 3))
    chart.document(chart.q4_encounter, "Routine visit, blood pressure controlled.")
    chart.q4_summary = chart.summary(
        patient,
        SummaryTier.QUARTERLY,
        DateRange(date(2024, 10, 1), date(2024, 12, 31)),
        "Q4 2024: hypertension well controlled on lisinopril.",
        encounter_count=1,
    )
    chart.jan_encounters = [
        chart.encounter(patient, date(2025, 1, 5)),
        chart.encounter(patient, date(2025, 1, 12), encounter_type=EncounterType.EMERGENCY),
    ]
    chart.document(chart.jan_encounters[0], "Cough for two weeks. Chest x-ray clear.")
    chart.document(chart.jan_encounters[1], "Chest pain, troponin negative, discharged.")
    return chart


@pytest.fixture
def client(two_patient_chart: FakeChart) -> Generator[TestClient, None, None]:
    """Test client wired to the fake chart; lifespan is not run."""
    from chartrecall.main import app

    app.state.pipeline = two_patient_chart.pipeline()
    yield TestClient(app)
    app.state.pipeline = None
