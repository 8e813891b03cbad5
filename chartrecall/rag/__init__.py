"""
ChartRecall RAG Module

Semantic index over embedded document chunks: embedding generation,
embedding cache and the filtered hybrid (BM25 + vector) search.
"""

from chartrecall.rag.cache import CacheManager
from chartrecall.rag.embedding import EmbeddingGenerator
from chartrecall.rag.retriever import PgVectorIndex, build_filter_clause, fuse_scores

__all__ = [
    # Embedding
    "EmbeddingGenerator",
    # Cache
    "CacheManager",
    # Search
    "PgVectorIndex",
    "build_filter_clause",
    "fuse_scores",
]
