"""
Clinical Query Pipeline for ChartRecall

The two operations the core exposes to its callers:

- answer_query(query_text, reference_date, context=None)
    split -> extract -> classify -> resolve MRN -> retrieve -> assemble
- summarize(mrn, start, end, condition_filter=None)
    resolve MRN -> tiered summarization

Sub-queries of a multi-part question run concurrently and are merged in
their original order. A non-fatal error in one sub-query becomes a partial
result; an IsolationViolation anywhere aborts the whole request and no
content is returned.
"""

import asyncio
import logging
import time
from datetime import date

from chartrecall.core.errors import (
    ChartRecallError,
    IsolationViolation,
    MissingPatientIdentifier,
)
from chartrecall.core.types import (
    ConversationContext,
    ConversationTurn,
    DateRange,
    EncounterRecord,
    PatientRecord,
    QueryType,
    SummaryRecord,
)
from chartrecall.db.store import StructuredStore
from chartrecall.observability import metrics
from chartrecall.query.assembler import PartialResult, QueryAnswer, SubAnswer, assemble
from chartrecall.query.classifier import classify, split_sub_queries
from chartrecall.query.extractor import EntityExtractor, find_mrn
from chartrecall.query.identifiers import IdentifierResolutionChain
from chartrecall.query.retrieval import GuardedSemanticIndex, RetrievalStrategySelector
from chartrecall.storage.object_store import ObjectStore
from chartrecall.summarization.aggregation import SummaryPersistence
from chartrecall.summarization.engine import SummarizationEngine, SummaryResult

logger = logging.getLogger(__name__)

UNCLASSIFIED = "unclassified"
NO_STRATEGY = "none"
INTERNAL_ERROR_KIND = "internal_error"


class QueryPipeline:
    """Wires the core components over the four external capabilities."""

    def __init__(
        self,
        store: StructuredStore,
        index,
        object_store: ObjectStore,
        llm,
        extractor: EntityExtractor | None = None,
        **selector_options,
    ):
        self.store = store
        self.chain = IdentifierResolutionChain(store)
        self.extractor = extractor or EntityExtractor()
        self.summarizer = SummarizationEngine(store, self.chain, object_store, llm)
        self.persistence = SummaryPersistence(store, self.chain, object_store, llm)
        self.selector = RetrievalStrategySelector(
            self.chain,
            GuardedSemanticIndex(index),
            object_store,
            llm,
            self.summarizer,
            **selector_options,
        )

    # ============================================
    # answer_query
    # ============================================

    async def answer_query(
        self,
        query_text: str,
        reference_date: date,
        context: ConversationContext | None = None,
    ) -> QueryAnswer:
        """
        Answer a natural-language question about one patient's record.

        The MRN comes from the question itself, else from the conversation
        context. Each sub-query may name its own MRN.

        Raises:
            IsolationViolation: Never recovered; no partial content is returned.
        """
        start_time = time.time()
        sub_queries = split_sub_queries(query_text)
        inherited_mrn = find_mrn(query_text) or (context.mrn if context else None)

        results = await asyncio.gather(
            *(
                self._answer_sub_query(sub_query, reference_date, inherited_mrn)
                for sub_query in sub_queries
            ),
            return_exceptions=True,
        )

        for result in results:
            if isinstance(result, IsolationViolation):
                logger.critical("Aborting request after isolation violation: %s", result.message)
                metrics.record_query(
                    latency_ms=(time.time() - start_time) * 1000, success=False
                )
                raise result
        for result in results:
            if isinstance(result, BaseException):
                raise result

        sub_answers = [sub_answer for sub_answer, _ in results]
        answer = assemble(sub_answers)

        metrics.record_query(
            latency_ms=(time.time() - start_time) * 1000,
            success=not all(sub.failed for sub in sub_answers),
            degraded=answer.partial,
            strategies=[sub.query_type for sub in sub_answers if not sub.failed],
        )

        if context is not None:
            self._update_context(context, [patient for _, patient in results], answer, query_text)

        logger.info(
            "Answered %d sub-quer%s: type=%s strategy=%s partial=%s",
            len(sub_answers),
            "y" if len(sub_answers) == 1 else "ies",
            answer.query_type,
            answer.strategy_used,
            answer.partial,
        )
        return answer

    async def _answer_sub_query(
        self,
        sub_query: str,
        reference_date: date,
        inherited_mrn: str | None,
    ) -> tuple[SubAnswer, PatientRecord | None]:
        query_type = None
        try:
            entities = self.extractor.extract(sub_query, reference_date)
            query_type = classify(entities)
            mrn = entities.mrn or inherited_mrn
            if not mrn:
                raise MissingPatientIdentifier(
                    "No MRN in the question or the conversation; name the patient's MRN"
                )
            patient = await self.chain.resolve_patient(mrn)
            outcome = await self.selector.resolve(query_type, sub_query, entities, patient)
        except IsolationViolation:
            raise
        except ChartRecallError as e:
            logger.warning("Sub-query failed (%s): %s", e.kind, e.message)
            return self._failed(sub_query, query_type, PartialResult.from_error(sub_query, e))
        except Exception as e:
            logger.exception("Unexpected error answering sub-query: %s", e)
            return self._failed(
                sub_query,
                query_type,
                PartialResult(
                    sub_query=sub_query,
                    kind=INTERNAL_ERROR_KIND,
                    reason="This part could not be answered because of an internal error",
                ),
            )

        return (
            SubAnswer(
                sub_query=sub_query,
                query_type=query_type.value,
                strategy_used=outcome.strategy_used,
                answer_text=outcome.answer_text,
                citations=outcome.citations,
                confidence=outcome.confidence,
                warnings=outcome.partial_results(sub_query),
            ),
            patient,
        )

    @staticmethod
    def _failed(
        sub_query: str, query_type: QueryType | None, error: PartialResult
    ) -> tuple[SubAnswer, None]:
        return (
            SubAnswer(
                sub_query=sub_query,
                query_type=query_type.value if query_type else UNCLASSIFIED,
                strategy_used=NO_STRATEGY,
                error=error,
            ),
            None,
        )

    @staticmethod
    def _update_context(
        context: ConversationContext,
        patients: list[PatientRecord | None],
        answer: QueryAnswer,
        query_text: str,
    ) -> None:
        resolved = [p for p in patients if p is not None]
        if resolved:
            latest = resolved[-1]
            if context.patient_id and context.patient_id != latest.id:
                logger.info("Conversation switched patient")
            context.mrn = latest.mrn
            context.patient_id = latest.id
        context.remember(
            ConversationTurn(
                query_text=query_text,
                answer_text=answer.answer_text,
                query_type=answer.query_type,
            )
        )

    # ============================================
    # summarize
    # ============================================

    async def summarize(
        self,
        mrn: str,
        start: date,
        end: date,
        condition_filter: str | None = None,
    ) -> SummaryResult:
        """
        Summarize one patient's record over [start, end].

        Raises:
            InvalidIdentifierFormat / PatientNotFound: From MRN resolution.
            ValueError: If end precedes start.
        """
        date_range = DateRange(start, end)
        patient = await self.chain.resolve_patient(mrn)
        result = await self.summarizer.summarize(patient, date_range, condition_filter)
        metrics.record_summary(result.source)
        return result

    # ============================================
    # Persistence triggers
    # ============================================

    async def on_encounter_closed(self, encounter_id: str) -> SummaryRecord | None:
        encounter: EncounterRecord | None = await self.store.get_encounter(encounter_id)
        if encounter is None:
            logger.warning("Encounter %s not found; nothing to summarize", encounter_id)
            return None
        return await self.persistence.on_encounter_closed(encounter)

    async def run_aggregations(self, mrn: str, reference_date: date) -> list[SummaryRecord]:
        patient = await self.chain.resolve_patient(mrn)
        return await self.persistence.run_due_aggregations(patient, reference_date)


def create_pipeline() -> QueryPipeline:
    """Production wiring: PostgreSQL, pgvector, local object store, Ollama."""
    from chartrecall.db.postgres import get_session_maker
    from chartrecall.db.store import SqlStructuredStore
    from chartrecall.llm.ollama_client import OllamaClient
    from chartrecall.rag.retriever import PgVectorIndex
    from chartrecall.storage.object_store import LocalObjectStore

    session_maker = get_session_maker()
    return QueryPipeline(
        store=SqlStructuredStore(session_maker),
        index=PgVectorIndex(session_maker),
        object_store=LocalObjectStore(),
        llm=OllamaClient(),
    )
