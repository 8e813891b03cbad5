"""
Query Classification for ChartRecall

Deterministic classification of an extracted entity set into one of four
strategies. Decision order, first match wins:

1. temporal range and no condition/document terms -> SUMMARY
2. asks for a directly stored field, no condition terms -> RDBMS_ONLY
3. content terms, no temporal range, single-encounter scope -> SEMANTIC
4. otherwise -> HYBRID

Multi-part queries are split into sub-queries first; each is classified
on its own.
"""

import logging
import re

from chartrecall.core.types import QueryType
from chartrecall.query.extractor import EntitySet

logger = logging.getLogger(__name__)

MAX_SUB_QUERIES = 4

# Conjunctions joining distinct asks. A plain "and" is not split on since it
# usually joins terms inside one ask ("diabetes and hypertension").
SUB_QUERY_SEPARATORS = re.compile(
    r"\?\s+(?=\S)|;\s*|\s+and also\s+|\s+as well as\s+|\s+and then\s+",
    re.IGNORECASE,
)
LEADING_FILLER = re.compile(r"^(?:also|and|plus|then)[,\s]+", re.IGNORECASE)
MIN_SUB_QUERY_LENGTH = 3


def split_sub_queries(text: str) -> list[str]:
    """Split a multi-part query into independently answerable sub-queries.

    Returns the original text as a single sub-query when there is nothing
    to split. Order is preserved; at most MAX_SUB_QUERIES parts are kept.
    """
    parts = []
    for part in SUB_QUERY_SEPARATORS.split(text.strip()):
        cleaned = LEADING_FILLER.sub("", part.strip()).strip()
        if len(cleaned) >= MIN_SUB_QUERY_LENGTH:
            parts.append(cleaned)

    if not parts:
        return [text.strip()]
    if len(parts) > MAX_SUB_QUERIES:
        logger.info(
            "Query has %d parts; keeping the first %d", len(parts), MAX_SUB_QUERIES
        )
        parts = parts[:MAX_SUB_QUERIES]
    return parts


def classify(entities: EntitySet) -> QueryType:
    """Classify an entity set. Pure and deterministic."""
    if entities.has_temporal_range and not entities.has_content_terms:
        return QueryType.SUMMARY

    if entities.requested_fields and not entities.condition_terms:
        return QueryType.RDBMS_ONLY

    if (
        entities.has_content_terms
        and not entities.has_temporal_range
        and entities.single_encounter_scope
    ):
        return QueryType.SEMANTIC

    return QueryType.HYBRID
