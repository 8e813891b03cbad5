import asyncio
import logging
import os
from functools import lru_cache

from chartrecall.rag.cache import CacheManager

logger = logging.getLogger(__name__)

# nomic-embed-text uses task-type prefixes for optimal retrieval.
QUERY_PREFIX = "search_query: "
DOCUMENT_PREFIX = "search_document: "

DEFAULT_EMBEDDING_MODEL = os.environ.get(
    "EMBEDDING_MODEL_HF", "nomic-ai/nomic-embed-text-v1.5"
)
EMBEDDING_BATCH_SIZE = int(os.environ.get("EMBEDDING_BATCH_SIZE", "16"))


@lru_cache(maxsize=1)
def _load_st_model(model_name: str):
    """Load the sentence-transformers model once and cache it."""
    from sentence_transformers import SentenceTransformer

    logger.info("Loading sentence-transformers model: %s", model_name)
    model = SentenceTransformer(model_name, trust_remote_code=True)
    logger.info("Model loaded, dimension: %d", model.get_sentence_embedding_dimension())
    return model


def _encode_sync(model, texts: list[str], batch_size: int) -> list[list[float]]:
    """Run model.encode synchronously; called via to_thread."""
    all_embeddings: list[list[float]] = []
    for start in range(0, len(texts), batch_size):
        batch = texts[start : start + batch_size]
        batch_np = model.encode(batch, batch_size=batch_size, show_progress_bar=False)
        all_embeddings.extend(emb.tolist() for emb in batch_np)
    return all_embeddings


class EmbeddingGenerator:
    def __init__(self, model_name: str | None = None, cache: CacheManager | None = None):
        self.model_name = model_name or DEFAULT_EMBEDDING_MODEL
        self.cache = cache or CacheManager()
        self._st_model = None

    def _get_model(self):
        """Lazy-load the sentence-transformers model."""
        if self._st_model is None:
            self._st_model = _load_st_model(self.model_name)
        return self._st_model

    async def generate_embeddings(
        self, texts: list[str], is_query: bool = False
    ) -> list[list[float]]:
        """Embed texts, serving query embeddings from the cache when present.

        The CPU-bound encode runs in a thread pool so it doesn't block the
        event loop.
        """
        prefix = QUERY_PREFIX if is_query else DOCUMENT_PREFIX
        hashes = [self.cache.compute_hash(prefix + t) for t in texts]

        results: list[list[float] | None] = [None] * len(texts)
        if is_query:
            for idx, text_hash in enumerate(hashes):
                results[idx] = await self.cache.get_embedding(text_hash)

        missing = [idx for idx, emb in enumerate(results) if emb is None]
        if missing:
            model = self._get_model()
            generated = await asyncio.to_thread(
                _encode_sync,
                model,
                [prefix + texts[idx] for idx in missing],
                EMBEDDING_BATCH_SIZE,
            )
            for idx, emb in zip(missing, generated, strict=True):
                results[idx] = emb
                if is_query:
                    await self.cache.set_embedding(hashes[idx], emb)

        return [emb for emb in results if emb is not None]
