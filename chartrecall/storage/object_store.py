"""
Object Store for ChartRecall

Document content lives outside the structured store; documents carry a
storage path relative to the store root. The local implementation reads
from disk in a worker thread so the event loop is never blocked.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Protocol

from chartrecall.core.errors import ObjectNotFound

logger = logging.getLogger(__name__)

DEFAULT_ROOT = Path(os.environ.get("OBJECT_STORE_ROOT", "data/documents"))


class ObjectStore(Protocol):
    async def get_object(self, path: str) -> bytes: ...


class LocalObjectStore:
    """Object store rooted at a local directory."""

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root or DEFAULT_ROOT).resolve()

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path.lstrip("/")).resolve()
        # Storage paths are relative keys; anything escaping the root is not an object
        if not candidate.is_relative_to(self.root):
            logger.warning("Rejected storage path outside root: %s", path)
            raise ObjectNotFound(path)
        return candidate

    async def get_object(self, path: str) -> bytes:
        """Read the object at path.

        Raises:
            ObjectNotFound: If nothing is stored at path.
        """
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except (FileNotFoundError, IsADirectoryError) as e:
            raise ObjectNotFound(path) from e


def decode_content(data: bytes) -> str:
    """Decode stored document bytes as text."""
    return data.decode("utf-8", errors="replace")
