"""
Tests for ChartRecall retrieval strategy selection and the isolation guard.
"""

from datetime import date

import pytest

from chartrecall.core.errors import IsolationViolation, UpstreamTimeout, UpstreamUnavailable
from chartrecall.core.types import (
    DocumentType,
    EncounterType,
    QueryType,
    RetrievalFilter,
    SearchHit,
)
from chartrecall.observability.metrics import get_metric
from chartrecall.query.extractor import EntityExtractor
from chartrecall.query.retrieval import (
    STRATEGY_DIRECT,
    STRATEGY_MIXED,
    STRATEGY_SEMANTIC,
    STRATEGY_STRUCTURED,
    STRATEGY_SUMMARY,
    GuardedSemanticIndex,
    estimate_tokens,
)

REFERENCE = date(2025, 3, 15)


async def _resolve(chart, question: str, query_type: QueryType, mrn: str, **options):
    pipeline = chart.pipeline(**options)
    entities = EntityExtractor(recent_window_months=None).extract(question, REFERENCE)
    patient = await pipeline.chain.resolve_patient(mrn)
    return await pipeline.selector.resolve(query_type, question, entities, patient)


class TestGuardedSemanticIndex:
    """Every semantic query is patient-scoped and every hit re-checked."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_patient_id_never_reaches_index(self, chart):
        guard = GuardedSemanticIndex(chart.index)
        with pytest.raises(IsolationViolation):
            await guard.search("colonoscopy", RetrievalFilter(patient_id=None))
        assert chart.index.calls == []
        assert get_metric("isolation_violations_total") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_document_without_encounter_is_rejected(self, chart):
        guard = GuardedSemanticIndex(chart.index)
        with pytest.raises(IsolationViolation):
            await guard.search(
                "colonoscopy", RetrievalFilter(patient_id="p-1", document_id="d-1")
            )
        assert chart.index.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_hit_outside_filter_is_violation(self, two_patient_chart):
        chart = two_patient_chart
        chart.index.leak = SearchHit(
            chunk_text="Stent placed in the LAD.",
            document_id=chart.d1234.id,
            section_type=None,
            score=0.99,
            encounter_id=chart.e1234.id,
            patient_id=chart.p1234.id,
        )
        guard = GuardedSemanticIndex(chart.index)
        with pytest.raises(IsolationViolation):
            await guard.search("procedure", RetrievalFilter.for_document(chart.d12345))
        assert get_metric("isolation_violations_total") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_scoped_hits_pass(self, two_patient_chart):
        chart = two_patient_chart
        guard = GuardedSemanticIndex(chart.index)
        hits = await guard.search("procedure", RetrievalFilter.for_document(chart.d12345))
        assert [h.document_id for h in hits] == [chart.d12345.id]
        _, sent_filter, _ = chart.index.calls[0]
        assert sent_filter.patient_id == chart.p12345.id
        assert sent_filter.encounter_id == chart.e12345.id
        assert sent_filter.document_id == chart.d12345.id


class TestStructuredLookup:
    """rdbms_only answers come from structured fields only."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_date_of_birth(self, two_patient_chart):
        outcome = await _resolve(
            two_patient_chart,
            "What is the date of birth for MRN 12345?",
            QueryType.RDBMS_ONLY,
            "12345",
        )
        assert outcome.strategy_used == STRATEGY_STRUCTURED
        assert "Date of birth: 1970-05-01" in outcome.answer_text
        assert outcome.confidence == 1.0
        assert [c.source_type for c in outcome.citations] == ["patient"]
        assert two_patient_chart.objects.reads == []
        assert two_patient_chart.index.calls == []
        assert two_patient_chart.llm.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_encounter_count(self, chart):
        patient = chart.patient("88001")
        for month in (1, 4, 8):
            chart.encounter(patient, date(2024, month, 2))
        outcome = await _resolve(
            chart, "How many visits did MRN 88001 have?", QueryType.RDBMS_ONLY, "88001"
        )
        assert "Encounters: 3" in outcome.answer_text
        assert len(outcome.citations) == 3


class TestHybridRetrieval:
    """Per document: load whole if small, otherwise filtered search."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_small_document_is_loaded_directly(self, two_patient_chart):
        chart = two_patient_chart
        outcome = await _resolve(
            chart, "What was the follow-up procedure for MRN 12345?", QueryType.HYBRID, "12345"
        )
        assert outcome.strategy_used == STRATEGY_DIRECT
        assert chart.objects.reads == [chart.d12345.storage_path]
        assert chart.index.calls == []
        assert [c.source_id for c in outcome.citations] == [chart.d12345.id]
        assert outcome.confidence == pytest.approx(0.9)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_large_document_uses_filtered_search(self, chart):
        patient = chart.patient("88002")
        encounter = chart.encounter(patient, date(2025, 1, 3))
        document = chart.document(
            encounter,
            "long operative note",
            DocumentType.PROCEDURE_NOTE,
            size_bytes=40_000,
            chunks=["Laparoscopic cholecystectomy, uncomplicated."],
        )
        outcome = await _resolve(
            chart, "What procedure was done for MRN 88002?", QueryType.HYBRID, "88002"
        )
        assert outcome.strategy_used == STRATEGY_SEMANTIC
        assert chart.objects.reads == []
        _, sent_filter, _ = chart.index.calls[0]
        assert sent_filter == RetrievalFilter.for_document(document)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_object_falls_back_to_search(self, chart):
        patient = chart.patient("88003")
        encounter = chart.encounter(patient, date(2025, 1, 3))
        document = chart.document(
            encounter,
            "short note",
            stored=False,
            chunks=["Pneumonia resolved on amoxicillin."],
        )
        outcome = await _resolve(
            chart, "Any pneumonia treatment for MRN 88003?", QueryType.HYBRID, "88003"
        )
        assert chart.objects.reads == [document.storage_path]
        assert len(chart.index.calls) == 1
        assert outcome.strategy_used == STRATEGY_SEMANTIC
        assert [c.source_id for c in outcome.citations] == [document.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mixed_strategy(self, chart):
        patient = chart.patient("88004")
        small_enc = chart.encounter(patient, date(2025, 1, 3))
        large_enc = chart.encounter(patient, date(2025, 2, 3))
        chart.document(small_enc, "Plan: start metformin.")
        chart.document(large_enc, "x", size_bytes=50_000, chunks=["Metformin continued."])
        outcome = await _resolve(
            chart, "What was the diabetes plan for MRN 88004?", QueryType.HYBRID, "88004"
        )
        assert outcome.strategy_used == STRATEGY_MIXED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_documents_capped_most_recent_first(self, chart):
        patient = chart.patient("88005")
        documents = [
            chart.document(chart.encounter(patient, date(2024, month, 1)), f"note {month}")
            for month in range(1, 9)
        ]
        chart.llm.responses = ["Summary of notes [Doc 1] [Doc 2]\nConfidence: 0.7"]
        await _resolve(
            chart,
            "Any medication changes for MRN 88005?",
            QueryType.HYBRID,
            "88005",
            hybrid_max_documents=3,
        )
        newest = [d.storage_path for d in reversed(documents)][:3]
        assert chart.objects.reads == newest

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_documents(self, chart):
        chart.patient("88006")
        outcome = await _resolve(
            chart, "Any fracture for MRN 88006?", QueryType.HYBRID, "88006"
        )
        assert outcome.citations == []
        assert chart.llm.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_model_output_returns_excerpts(self, two_patient_chart):
        chart = two_patient_chart
        chart.llm.responses = [""]
        outcome = await _resolve(
            chart, "What was the follow-up procedure for MRN 12345?", QueryType.HYBRID, "12345"
        )
        assert outcome.answer_text.startswith("Answer synthesis unavailable")
        assert outcome.confidence == 0.0
        assert len(outcome.citations) == 1


class TestSemanticRetrieval:
    """Semantic queries search per document and escalate when needed."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_last_visit_is_searched(self, two_patient_chart):
        chart = two_patient_chart
        outcome = await _resolve(
            chart,
            "What procedure was done at the last visit for MRN 12345?",
            QueryType.SEMANTIC,
            "12345",
        )
        assert outcome.strategy_used == STRATEGY_SEMANTIC
        assert outcome.escalated is False
        assert all(f.patient_id == chart.p12345.id for _, f, _ in chart.index.calls)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_too_many_documents_escalates(self, chart):
        patient = chart.patient("88007")
        encounter = chart.encounter(patient, date(2025, 1, 3))
        for n in range(4):
            chart.document(encounter, f"Progress note {n}: wound healing well.")
        outcome = await _resolve(
            chart,
            "How is the wound healing at the last visit for MRN 88007?",
            QueryType.SEMANTIC,
            "88007",
        )
        assert outcome.escalated is True
        assert outcome.strategy_used == STRATEGY_DIRECT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_hits_escalates(self, chart):
        patient = chart.patient("88008")
        encounter = chart.encounter(
            patient, date(2025, 1, 3), date(2025, 1, 6), encounter_type=EncounterType.INPATIENT
        )
        chart.document(encounter, "Discharged home on lisinopril.", DocumentType.DISCHARGE_SUMMARY)
        outcome = await _resolve(
            chart,
            "What does the discharge summary of the last admission say for MRN 88008?",
            QueryType.SEMANTIC,
            "88008",
        )
        assert outcome.escalated is True
        assert len(chart.objects.reads) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_index_timeout_becomes_warning(self, two_patient_chart, mocker):
        chart = two_patient_chart
        mocker.patch.object(
            chart.index, "search", mocker.AsyncMock(side_effect=UpstreamTimeout("semantic_index"))
        )
        outcome = await _resolve(
            chart,
            "What procedure was done at the last visit for MRN 12345?",
            QueryType.SEMANTIC,
            "12345",
        )
        # Escalated to direct load after the search gave nothing
        assert outcome.escalated is True
        assert [kind for kind, _ in outcome.warnings] == ["upstream_timeout"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_index_database_failure_becomes_warning(self, two_patient_chart, mocker):
        chart = two_patient_chart
        mocker.patch.object(
            chart.index,
            "search",
            mocker.AsyncMock(side_effect=UpstreamUnavailable("semantic_index", "connection reset")),
        )
        outcome = await _resolve(
            chart,
            "What procedure was done at the last visit for MRN 12345?",
            QueryType.SEMANTIC,
            "12345",
        )
        assert outcome.escalated is True
        assert [kind for kind, _ in outcome.warnings] == ["upstream_unavailable"]
        assert outcome.partial_results("q")[0].kind == "upstream_unavailable"


class TestSummaryDelegation:
    """summary classification is delegated to the summarization engine."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_summary_strategy(self, quarter_boundary_chart):
        outcome = await _resolve(
            quarter_boundary_chart,
            "Summarize MRN 55501 from 2024-10-01 to 2024-12-31",
            QueryType.SUMMARY,
            "55501",
        )
        assert outcome.strategy_used == STRATEGY_SUMMARY
        assert "hypertension well controlled" in outcome.answer_text
        assert outcome.confidence == 1.0
        assert get_metric("summaries_from_cache") == 1


class TestTokenEstimate:
    @pytest.mark.unit
    def test_estimate(self, two_patient_chart):
        document = two_patient_chart.d12345
        assert estimate_tokens(document) == document.size_bytes // 4
