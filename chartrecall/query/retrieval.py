"""
Retrieval Strategy Selection for ChartRecall

Closed dispatch from a query classification to one handler:

    rdbms_only -> _handle_rdbms      structured fields, no content access
    semantic   -> _handle_semantic   filtered semantic search per document
    summary    -> _handle_summary    delegated to the summarization engine
    hybrid     -> _handle_hybrid     per document: direct load or filtered search

Every semantic-index query goes through GuardedSemanticIndex, which refuses
filters without patient_id and re-checks every hit against its filter.
Every external call goes through call_upstream (timeout + one retry).
"""

import logging
import os
from dataclasses import dataclass, field

from chartrecall.core.boundary import call_upstream
from chartrecall.core.errors import (
    IsolationViolation,
    ObjectNotFound,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from chartrecall.core.types import (
    DocumentFilter,
    DocumentRecord,
    EncounterFilter,
    EncounterRecord,
    PatientRecord,
    QueryType,
    RetrievalFilter,
    SearchHit,
)
from chartrecall.llm.prompts import build_answer_prompt
from chartrecall.llm.response_parser import DEFAULT_CONFIDENCE, ResponseParser
from chartrecall.observability import metrics
from chartrecall.query.assembler import Citation, PartialResult
from chartrecall.query.extractor import EntitySet
from chartrecall.query.identifiers import IdentifierResolutionChain
from chartrecall.storage.object_store import ObjectStore, decode_content
from chartrecall.summarization.engine import SOURCE_CACHE, SOURCE_EMPTY, SummarizationEngine

logger = logging.getLogger(__name__)

# Documents estimated below this many tokens are loaded whole
DIRECT_LOAD_TOKEN_THRESHOLD = int(os.environ.get("DIRECT_LOAD_TOKEN_THRESHOLD", "2000"))
BYTES_PER_TOKEN = 4
SEMANTIC_TOP_K = int(os.environ.get("SEMANTIC_TOP_K", "5"))
# A semantic query over more documents than this is escalated to hybrid
SEMANTIC_MAX_DOCUMENTS = int(os.environ.get("SEMANTIC_MAX_DOCUMENTS", "3"))
HYBRID_MAX_DOCUMENTS = int(os.environ.get("HYBRID_MAX_DOCUMENTS", "5"))
EXCERPT_CHARS = 300

STRATEGY_STRUCTURED = "structured_lookup"
STRATEGY_SEMANTIC = "filtered_semantic"
STRATEGY_DIRECT = "direct_load"
STRATEGY_MIXED = "direct_load+filtered_semantic"
STRATEGY_SUMMARY = "tiered_summary"

METHOD_DIRECT = "direct"
METHOD_SEMANTIC = "semantic"

STRUCTURED_CONFIDENCE = 1.0


def estimate_tokens(document: DocumentRecord) -> int | None:
    """Rough token estimate from stored size; None when size is unknown."""
    if document.size_bytes is None:
        return None
    return document.size_bytes // BYTES_PER_TOKEN


def document_citation(document: DocumentRecord) -> Citation:
    return Citation(
        source_type="document",
        source_id=document.id,
        encounter_id=document.encounter_id,
        date=document.document_date.date().isoformat(),
        detail=document.document_type.value,
    )


def encounter_filter_for(entities: EntitySet) -> EncounterFilter:
    return EncounterFilter(
        encounter_types=frozenset(entities.encounter_types),
        date_range=entities.date_range,
    )


# ============================================
# Isolation Guard
# ============================================


class GuardedSemanticIndex:
    """Wraps the semantic index with the mandatory filter checks.

    A filter without patient_id, or a hit outside the filter, is an
    IsolationViolation: logged at CRITICAL, counted, and raised. Never
    caught below the request boundary.
    """

    def __init__(self, index):
        self._index = index

    def _violation(self, message: str, retrieval_filter: RetrievalFilter) -> IsolationViolation:
        logger.critical(
            "ISOLATION VIOLATION: %s (filter patient=%s encounter=%s document=%s)",
            message,
            retrieval_filter.patient_id,
            retrieval_filter.encounter_id,
            retrieval_filter.document_id,
        )
        metrics.record_isolation_violation()
        return IsolationViolation(message)

    async def search(
        self,
        query_text: str,
        retrieval_filter: RetrievalFilter,
        top_k: int = SEMANTIC_TOP_K,
    ) -> list[SearchHit]:
        try:
            retrieval_filter.validate()
        except IsolationViolation as e:
            raise self._violation(e.message, retrieval_filter) from e

        hits = await call_upstream(
            "semantic_index",
            lambda: self._index.search(query_text, retrieval_filter, top_k),
        )
        for hit in hits:
            if not retrieval_filter.admits(hit):
                raise self._violation(
                    f"Semantic index returned chunk of document {hit.document_id} "
                    "outside the requested scope",
                    retrieval_filter,
                )
        return hits


# ============================================
# Outcomes
# ============================================


@dataclass
class Evidence:
    """A block of content shown to the model, labelled [Doc N]."""

    document: DocumentRecord
    text: str
    method: str
    score: float = 1.0


@dataclass
class RetrievalOutcome:
    answer_text: str
    strategy_used: str
    citations: list[Citation] = field(default_factory=list)
    confidence: float = 0.0
    escalated: bool = False
    warnings: list[tuple[str, str]] = field(default_factory=list)

    def warn(self, kind: str, reason: str) -> None:
        self.warnings.append((kind, reason))

    def partial_results(self, sub_query: str) -> list[PartialResult]:
        return [
            PartialResult(sub_query=sub_query, kind=kind, reason=reason)
            for kind, reason in self.warnings
        ]


def render_evidence(evidence: list[Evidence]) -> str:
    blocks = []
    for label, item in enumerate(evidence, start=1):
        doc = item.document
        blocks.append(
            f"[Doc {label}] {doc.document_type.value} dated "
            f"{doc.document_date.date().isoformat()}\n{item.text.strip()}"
        )
    return "\n\n".join(blocks)


# ============================================
# Strategy Selector
# ============================================


class RetrievalStrategySelector:
    """Applies the fixed per-classification retrieval policy."""

    def __init__(
        self,
        chain: IdentifierResolutionChain,
        index: GuardedSemanticIndex,
        object_store: ObjectStore,
        llm,
        summarizer: SummarizationEngine,
        token_threshold: int = DIRECT_LOAD_TOKEN_THRESHOLD,
        top_k: int = SEMANTIC_TOP_K,
        semantic_max_documents: int = SEMANTIC_MAX_DOCUMENTS,
        hybrid_max_documents: int = HYBRID_MAX_DOCUMENTS,
    ):
        self._chain = chain
        self._index = index
        self._object_store = object_store
        self._llm = llm
        self._summarizer = summarizer
        self._parser = ResponseParser()
        self.token_threshold = token_threshold
        self.top_k = top_k
        self.semantic_max_documents = semantic_max_documents
        self.hybrid_max_documents = hybrid_max_documents

    async def resolve(
        self,
        query_type: QueryType,
        question: str,
        entities: EntitySet,
        patient: PatientRecord,
    ) -> RetrievalOutcome:
        """Dispatch to the handler for query_type."""
        if query_type == QueryType.RDBMS_ONLY:
            return await self._handle_rdbms(entities, patient)
        elif query_type == QueryType.SEMANTIC:
            return await self._handle_semantic(question, entities, patient)
        elif query_type == QueryType.SUMMARY:
            return await self._handle_summary(entities, patient)
        elif query_type == QueryType.HYBRID:
            return await self._handle_hybrid(question, entities, patient)
        raise ValueError(f"Unhandled query type: {query_type}")

    # ------------------------------------------------------------------
    # rdbms_only
    # ------------------------------------------------------------------

    async def _handle_rdbms(self, entities: EntitySet, patient: PatientRecord) -> RetrievalOutcome:
        lines: list[str] = []
        citations: list[Citation] = []
        fields = entities.requested_fields

        if fields & {"patient.date_of_birth", "patient.sex", "patient.name"}:
            citations.append(Citation(source_type="patient", source_id=patient.id))
            if "patient.name" in fields:
                lines.append(f"Name: {patient.full_name or 'not recorded'}")
            if "patient.date_of_birth" in fields:
                dob = patient.date_of_birth.isoformat() if patient.date_of_birth else "not recorded"
                lines.append(f"Date of birth: {dob}")
            if "patient.sex" in fields:
                lines.append(f"Sex: {patient.sex or 'not recorded'}")

        encounter_fields = {f for f in fields if f.startswith("encounter.")}
        needs_documents = "document.list" in fields
        if encounter_fields or needs_documents:
            encounters = await self._chain.resolve_encounters(patient, encounter_filter_for(entities))
            if entities.single_encounter_scope:
                encounters = encounters[:1]

            if "encounter.count" in fields:
                lines.append(f"Encounters: {len(encounters)}")
            if encounter_fields - {"encounter.count"}:
                if not encounters:
                    lines.append("No matching encounters.")
                for encounter in encounters:
                    lines.append(self._describe_encounter(encounter))
            citations.extend(
                Citation(
                    source_type="encounter",
                    source_id=e.id,
                    encounter_id=e.id,
                    date=e.start_day.isoformat(),
                    detail=e.encounter_type.value,
                )
                for e in encounters
            )

            if needs_documents:
                documents = await self._chain.resolve_documents(
                    encounters, DocumentFilter(frozenset(entities.document_types))
                )
                lines.append(f"Documents: {len(documents)}")
                for document in documents:
                    lines.append(
                        f"- {document.document_type.value} "
                        f"{document.document_date.date().isoformat()}"
                        + (f" ({document.title})" if document.title else "")
                    )
                citations.extend(document_citation(d) for d in documents)

        return RetrievalOutcome(
            answer_text="\n".join(lines) or "No structured fields matched the question.",
            strategy_used=STRATEGY_STRUCTURED,
            citations=citations,
            confidence=STRUCTURED_CONFIDENCE,
        )

    @staticmethod
    def _describe_encounter(encounter: EncounterRecord) -> str:
        end = encounter.end_date.date().isoformat() if encounter.end_date else "ongoing"
        return (
            f"- {encounter.encounter_type.value}: {encounter.start_day.isoformat()} "
            f"to {end} ({encounter.status.value})"
        )

    # ------------------------------------------------------------------
    # semantic
    # ------------------------------------------------------------------

    async def _handle_semantic(
        self, question: str, entities: EntitySet, patient: PatientRecord
    ) -> RetrievalOutcome:
        documents = await self._scoped_documents(entities, patient)
        if not documents:
            return self._no_documents()

        if len(documents) > self.semantic_max_documents:
            logger.info(
                "Semantic scope has %d documents (max %d); escalating to hybrid",
                len(documents),
                self.semantic_max_documents,
            )
            return await self._escalate(question, documents)

        outcome = RetrievalOutcome(answer_text="", strategy_used=STRATEGY_SEMANTIC)
        evidence: list[Evidence] = []
        for document in documents:
            evidence.extend(await self._search_document(question, document, outcome))

        if not evidence:
            logger.info("No semantic hits for %d document(s); escalating to hybrid", len(documents))
            return await self._escalate(question, documents, outcome.warnings)

        evidence.sort(key=lambda e: e.score, reverse=True)
        await self._synthesize(question, evidence[: self.top_k], "semantic", outcome)
        return outcome

    async def _escalate(
        self,
        question: str,
        documents: list[DocumentRecord],
        warnings: list[tuple[str, str]] | None = None,
    ) -> RetrievalOutcome:
        outcome = await self._answer_from_documents(question, documents)
        outcome.escalated = True
        outcome.warnings[:0] = warnings or []
        return outcome

    # ------------------------------------------------------------------
    # summary
    # ------------------------------------------------------------------

    async def _handle_summary(self, entities: EntitySet, patient: PatientRecord) -> RetrievalOutcome:
        result = await self._summarizer.summarize(patient, entities.date_range)
        metrics.record_summary(result.source)
        if result.source in (SOURCE_CACHE, SOURCE_EMPTY):
            confidence = STRUCTURED_CONFIDENCE
        else:
            confidence = DEFAULT_CONFIDENCE
        return RetrievalOutcome(
            answer_text=result.summary_text,
            strategy_used=STRATEGY_SUMMARY,
            citations=list(result.citations),
            confidence=confidence,
        )

    # ------------------------------------------------------------------
    # hybrid
    # ------------------------------------------------------------------

    async def _handle_hybrid(
        self, question: str, entities: EntitySet, patient: PatientRecord
    ) -> RetrievalOutcome:
        documents = await self._scoped_documents(entities, patient)
        if not documents:
            return self._no_documents()
        return await self._answer_from_documents(question, documents)

    async def _answer_from_documents(
        self, question: str, documents: list[DocumentRecord]
    ) -> RetrievalOutcome:
        """Per document: load whole if small enough, else filtered search."""
        if len(documents) > self.hybrid_max_documents:
            logger.info(
                "Limiting hybrid retrieval to the %d most recent of %d documents",
                self.hybrid_max_documents,
                len(documents),
            )
            documents = documents[: self.hybrid_max_documents]

        outcome = RetrievalOutcome(answer_text="", strategy_used=STRATEGY_DIRECT)
        evidence: list[Evidence] = []
        methods: set[str] = set()

        for document in documents:
            tokens = estimate_tokens(document)
            if tokens is not None and tokens < self.token_threshold:
                loaded = await self._load_document(document, outcome)
                if loaded is not None:
                    evidence.append(loaded)
                    methods.add(METHOD_DIRECT)
                    continue
            hits = await self._search_document(question, document, outcome)
            if hits:
                evidence.extend(hits)
                methods.add(METHOD_SEMANTIC)

        if methods == {METHOD_SEMANTIC}:
            outcome.strategy_used = STRATEGY_SEMANTIC
        elif len(methods) > 1:
            outcome.strategy_used = STRATEGY_MIXED

        if not evidence:
            outcome.answer_text = "No relevant content was found in the resolved documents."
            return outcome

        await self._synthesize(question, evidence, "hybrid", outcome)
        return outcome

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _scoped_documents(
        self, entities: EntitySet, patient: PatientRecord
    ) -> list[DocumentRecord]:
        """Identifier chain: patient -> encounters -> documents."""
        encounters = await self._chain.resolve_encounters(patient, encounter_filter_for(entities))
        if entities.single_encounter_scope:
            encounters = encounters[:1]
        return await self._chain.resolve_documents(
            encounters, DocumentFilter(frozenset(entities.document_types))
        )

    @staticmethod
    def _no_documents() -> RetrievalOutcome:
        return RetrievalOutcome(
            answer_text="No documents match the question for this patient.",
            strategy_used=STRATEGY_STRUCTURED,
        )

    async def _load_document(
        self, document: DocumentRecord, outcome: RetrievalOutcome
    ) -> Evidence | None:
        """Direct load; None tells the caller to fall back to filtered search."""
        try:
            data = await call_upstream(
                "object_store", lambda: self._object_store.get_object(document.storage_path)
            )
        except ObjectNotFound:
            logger.warning(
                "Document %s not in object store; falling back to filtered search", document.id
            )
            return None
        except UpstreamTimeout as e:
            outcome.warn(e.kind, f"Loading document {document.id}: {e.message}")
            return None
        return Evidence(document=document, text=decode_content(data), method=METHOD_DIRECT)

    async def _search_document(
        self, question: str, document: DocumentRecord, outcome: RetrievalOutcome
    ) -> list[Evidence]:
        try:
            hits = await self._index.search(
                question, RetrievalFilter.for_document(document), self.top_k
            )
        except (UpstreamTimeout, UpstreamUnavailable) as e:
            outcome.warn(e.kind, f"Searching document {document.id}: {e.message}")
            return []
        return [
            Evidence(document=document, text=hit.chunk_text, method=METHOD_SEMANTIC, score=hit.score)
            for hit in hits
        ]

    async def _synthesize(
        self,
        question: str,
        evidence: list[Evidence],
        strategy_key: str,
        outcome: RetrievalOutcome,
    ) -> None:
        prompt = build_answer_prompt(question, strategy_key)
        context = {"evidence": render_evidence(evidence)}
        try:
            raw = await call_upstream("llm", lambda: self._llm.complete(prompt, context))
        except UpstreamTimeout as e:
            outcome.warn(e.kind, f"Answer synthesis: {e.message}")
            raw = ""

        parsed = self._parser.parse(raw)
        if not parsed.answer:
            outcome.answer_text = self._excerpts(evidence)
            outcome.citations = self._cite(evidence, [])
            outcome.confidence = 0.0
            return

        outcome.answer_text = parsed.answer
        outcome.citations = self._cite(evidence, parsed.cited_labels)
        outcome.confidence = parsed.confidence

    @staticmethod
    def _cite(evidence: list[Evidence], labels: list[int]) -> list[Citation]:
        """Documents behind the cited labels, or every evidence document."""
        chosen = [evidence[n - 1] for n in labels if 1 <= n <= len(evidence)] or evidence
        citations: list[Citation] = []
        seen: set[str] = set()
        for item in chosen:
            if item.document.id not in seen:
                seen.add(item.document.id)
                citations.append(document_citation(item.document))
        return citations

    @staticmethod
    def _excerpts(evidence: list[Evidence]) -> str:
        lines = ["Answer synthesis unavailable; relevant excerpts:"]
        for label, item in enumerate(evidence, start=1):
            excerpt = " ".join(item.text.split())[:EXCERPT_CHARS]
            lines.append(f"[Doc {label}] {excerpt}")
        return "\n".join(lines)
