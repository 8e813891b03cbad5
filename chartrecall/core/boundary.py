"""
Upstream Call Boundary for ChartRecall

Every call that leaves the process (object store read, semantic index query,
language model completion) goes through call_upstream, which applies:
- a per-call timeout
- one retry with backoff on timeout
- UpstreamTimeout once the retry is exhausted

Other exceptions propagate unchanged so callers can apply their own recovery
(e.g. ObjectNotFound falls back to filtered semantic search).
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from typing import TypeVar

from chartrecall.core.errors import UpstreamTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = float(os.environ.get("UPSTREAM_TIMEOUT_SECONDS", "60"))
TIMEOUT_RETRIES = int(os.environ.get("UPSTREAM_TIMEOUT_RETRIES", "1"))
RETRY_BACKOFF_SECONDS = float(os.environ.get("UPSTREAM_RETRY_BACKOFF_SECONDS", "0.5"))


async def call_upstream(
    name: str,
    factory: Callable[[], Awaitable[T]],
    timeout: float | None = None,
    retries: int = TIMEOUT_RETRIES,
    backoff: float = RETRY_BACKOFF_SECONDS,
) -> T:
    """Await factory() under a timeout, retrying on timeout with backoff.

    Args:
        name: Upstream name for logs and the raised error.
        factory: Zero-argument callable producing a fresh awaitable per attempt.
        timeout: Per-attempt timeout in seconds.
        retries: Extra attempts after the first timeout.
        backoff: Base backoff in seconds, doubled per attempt.

    Raises:
        UpstreamTimeout: When every attempt timed out.
    """
    limit = timeout if timeout is not None else DEFAULT_TIMEOUT_SECONDS
    attempts = retries + 1

    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(factory(), timeout=limit)
        except (asyncio.TimeoutError, UpstreamTimeout):
            logger.warning(
                "%s timed out after %.1fs (attempt %d/%d)",
                name,
                limit,
                attempt + 1,
                attempts,
            )
        if attempt < attempts - 1:
            wait = backoff * (2**attempt)
            logger.info("Retrying %s in %.2fs...", name, wait)
            await asyncio.sleep(wait)

    raise UpstreamTimeout(name, limit)
