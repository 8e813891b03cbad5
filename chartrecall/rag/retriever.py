"""
Filtered Hybrid Retrieval for ChartRecall

The semantic-index capability: pgvector cosine similarity over the chunks
that pass an exact-match RetrievalFilter, re-scored with BM25 over that same
candidate set using a weighted fusion: 0.4 * BM25 + 0.6 * cosine.

Scoping columns (patient_id, encounter_id, document_id, section_type) are
only ever compared with equality predicates. The candidate pool is drawn
after filtering, never before, so a similar chunk from another patient can
never enter the ranking.
"""

import logging
import os
import re
from dataclasses import dataclass

from rank_bm25 import BM25Okapi
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chartrecall.core.errors import UpstreamUnavailable
from chartrecall.core.types import RetrievalFilter, SearchHit
from chartrecall.query.extractor import MEDICAL_ABBREVIATIONS
from chartrecall.rag.embedding import EmbeddingGenerator

logger = logging.getLogger(__name__)

BM25_WEIGHT = 0.4
VECTOR_WEIGHT = 0.6
CANDIDATE_POOL_SIZE = int(os.environ.get("SEMANTIC_CANDIDATE_POOL", "50"))

STOP_WORDS: set[str] = {
    "a",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "by",
    "did",
    "do",
    "does",
    "for",
    "from",
    "had",
    "has",
    "have",
    "he",
    "her",
    "his",
    "how",
    "in",
    "is",
    "it",
    "of",
    "on",
    "or",
    "she",
    "that",
    "the",
    "their",
    "they",
    "this",
    "to",
    "was",
    "were",
    "what",
    "when",
    "which",
    "who",
    "with",
}

_COMPILED_ABBREVIATION_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b" + re.escape(abbr) + r"\b"), expansion)
    for abbr, expansion in MEDICAL_ABBREVIATIONS.items()
]
_TOKEN_PATTERN = re.compile(r"[a-z0-9]+(?:-[a-z0-9]+)*")


# ============================================
# QueryPreprocessor
# ============================================


class QueryPreprocessor:
    """Abbreviation expansion, lowercasing and stop-word removal for BM25."""

    def preprocess(self, query: str) -> str:
        for pattern, expansion in _COMPILED_ABBREVIATION_PATTERNS:
            query = pattern.sub(expansion, query)
        return query.lower()

    def tokenize(self, query: str) -> list[str]:
        tokens = _TOKEN_PATTERN.findall(self.preprocess(query))
        return [t for t in tokens if t not in STOP_WORDS]


# ============================================
# Candidate rows
# ============================================


@dataclass
class CandidateChunk:
    """A filtered chunk with its cosine similarity to the query."""

    chunk_id: str
    chunk_text: str
    document_id: str
    encounter_id: str
    patient_id: str
    section_type: str | None
    similarity: float


def build_filter_clause(retrieval_filter: RetrievalFilter) -> tuple[str, dict]:
    """Equality predicates for every constraint the filter carries."""
    clauses = ["patient_id = CAST(:patient_id AS uuid)"]
    params: dict = {"patient_id": retrieval_filter.patient_id}
    if retrieval_filter.encounter_id:
        clauses.append("encounter_id = CAST(:encounter_id AS uuid)")
        params["encounter_id"] = retrieval_filter.encounter_id
    if retrieval_filter.document_id:
        clauses.append("document_id = CAST(:document_id AS uuid)")
        params["document_id"] = retrieval_filter.document_id
    if retrieval_filter.section_type:
        clauses.append("section_type = :section_type")
        params["section_type"] = retrieval_filter.section_type
    return " AND ".join(clauses), params


def fuse_scores(
    query: str,
    candidates: list[CandidateChunk],
    preprocessor: QueryPreprocessor | None = None,
) -> list[tuple[CandidateChunk, float]]:
    """
    Re-score candidates: final_score = 0.4 * bm25 + 0.6 * cosine.

    BM25 is built over the candidate texts only and normalized to 0.0-1.0.
    Returns (candidate, score) pairs sorted by score descending.
    """
    if not candidates:
        return []

    preprocessor = preprocessor or QueryPreprocessor()
    query_tokens = preprocessor.tokenize(query)
    corpus = [preprocessor.tokenize(c.chunk_text) for c in candidates]

    bm25_scores = [0.0] * len(candidates)
    if query_tokens and any(corpus):
        raw = BM25Okapi(corpus).get_scores(query_tokens)
        max_score = max(raw) if max(raw) > 0 else 1.0
        bm25_scores = [max(s, 0.0) / max_score for s in raw]

    fused = [
        (candidate, BM25_WEIGHT * bm25 + VECTOR_WEIGHT * candidate.similarity)
        for candidate, bm25 in zip(candidates, bm25_scores, strict=True)
    ]
    fused.sort(key=lambda pair: pair[1], reverse=True)
    return fused


# ============================================
# PgVectorIndex
# ============================================


class PgVectorIndex:
    """Semantic index over document_chunks with mandatory exact filtering."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        embedder: EmbeddingGenerator | None = None,
        candidate_pool: int = CANDIDATE_POOL_SIZE,
    ):
        self._session_maker = session_maker
        self._embedder = embedder or EmbeddingGenerator()
        self._candidate_pool = candidate_pool
        self._preprocessor = QueryPreprocessor()

    async def search(
        self,
        query_text: str,
        retrieval_filter: RetrievalFilter,
        top_k: int = 5,
    ) -> list[SearchHit]:
        """
        Filtered hybrid search.

        Raises:
            IsolationViolation: If the filter is not patient-scoped. The SQL
                is never built for such a filter.
            UpstreamUnavailable: If the database query fails.
        """
        retrieval_filter.validate()

        embeddings = await self._embedder.generate_embeddings([query_text], is_query=True)
        if not embeddings:
            logger.warning("No query embedding produced; returning no hits")
            return []

        candidates = await self._fetch_candidates(embeddings[0], retrieval_filter)
        fused = fuse_scores(query_text, candidates, self._preprocessor)

        return [
            SearchHit(
                chunk_text=candidate.chunk_text,
                document_id=candidate.document_id,
                section_type=candidate.section_type,
                score=score,
                encounter_id=candidate.encounter_id,
                patient_id=candidate.patient_id,
            )
            for candidate, score in fused[:top_k]
        ]

    async def _fetch_candidates(
        self, query_embedding: list[float], retrieval_filter: RetrievalFilter
    ) -> list[CandidateChunk]:
        where, params = build_filter_clause(retrieval_filter)
        # Format vector as pgvector literal: '[1.0,2.0,3.0]'::vector
        params["query_vector"] = "[" + ",".join(str(v) for v in query_embedding) + "]"
        params["pool"] = self._candidate_pool

        sql = text(
            "SELECT id, chunk_text, document_id, encounter_id, patient_id, section_type, "
            "1 - (embedding <=> CAST(:query_vector AS vector)) AS similarity "
            "FROM document_chunks "
            f"WHERE embedding IS NOT NULL AND {where} "
            "ORDER BY embedding <=> CAST(:query_vector AS vector) "
            "LIMIT :pool"
        )
        try:
            async with self._session_maker() as session:
                result = await session.execute(sql, params)
                rows = result.fetchall()
        except SQLAlchemyError as e:
            logger.error(
                "Vector search failed: %s (query_vector dim=%d)",
                str(e),
                len(query_embedding),
                exc_info=True,
            )
            raise UpstreamUnavailable("semantic_index", "vector search failed") from e

        return [
            CandidateChunk(
                chunk_id=str(row.id),
                chunk_text=row.chunk_text,
                document_id=str(row.document_id),
                encounter_id=str(row.encounter_id),
                patient_id=str(row.patient_id),
                section_type=row.section_type,
                similarity=float(row.similarity),
            )
            for row in rows
        ]
