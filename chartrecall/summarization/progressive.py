"""
Progressive Merge for ChartRecall

Building blocks shared by on-the-fly summarization and the persistence
triggers:

- EncounterContentLoader: raw document text of one encounter, resolved
  through the identifier chain and read from the object store
- ProgressiveMerger: folds pieces into a running summary one at a time

Each fold sends the model only the running summary and the next piece,
never the full history, so context cost per step stays bounded by the
summary word budget plus one piece.
"""

import logging
import os

from chartrecall.core.boundary import call_upstream
from chartrecall.core.errors import ObjectNotFound
from chartrecall.core.types import EncounterRecord
from chartrecall.llm.prompts import (
    FOCUS_PROMPT,
    build_encounter_prompt,
    build_merge_prompt,
)
from chartrecall.query.identifiers import IdentifierResolutionChain
from chartrecall.storage.object_store import ObjectStore, decode_content

logger = logging.getLogger(__name__)

# Cap on raw text folded for a single encounter
MAX_ENCOUNTER_CHARS = int(os.environ.get("MAX_ENCOUNTER_CHARS", "12000"))

NO_RUNNING_SUMMARY = "(none yet)"
NO_RELEVANT_FINDINGS = "No relevant findings."


def encounter_heading(encounter: EncounterRecord) -> str:
    label = encounter.encounter_type.value.replace("_", " ")
    if encounter.end_day != encounter.start_day:
        return f"{label} encounter {encounter.start_day} to {encounter.end_day}"
    return f"{label} encounter on {encounter.start_day}"


class EncounterContentLoader:
    """Loads an encounter's document text, oldest document first."""

    def __init__(
        self,
        chain: IdentifierResolutionChain,
        object_store: ObjectStore,
        max_chars: int = MAX_ENCOUNTER_CHARS,
    ):
        self._chain = chain
        self._object_store = object_store
        self._max_chars = max_chars

    async def load(self, encounter: EncounterRecord) -> str:
        documents = await self._chain.resolve_documents([encounter], chronological=True)
        blocks = []
        for document in documents:
            try:
                data = await call_upstream(
                    "object_store",
                    lambda path=document.storage_path: self._object_store.get_object(path),
                )
            except ObjectNotFound:
                logger.warning(
                    "Document %s of encounter %s missing from object store; skipped",
                    document.id,
                    encounter.id,
                )
                continue
            blocks.append(
                f"## {document.document_type.value} ({document.document_date.date()})\n"
                f"{decode_content(data).strip()}"
            )

        content = "\n\n".join(blocks)
        if len(content) > self._max_chars:
            logger.info(
                "Encounter %s content truncated from %d to %d chars",
                encounter.id,
                len(content),
                self._max_chars,
            )
            content = content[: self._max_chars]
        return content


class ProgressiveMerger:
    """Model-backed fold, encounter summary and focus operations."""

    def __init__(self, llm):
        self._llm = llm

    async def _complete(self, prompt: str, context: dict[str, str]) -> str:
        text = await call_upstream("llm", lambda: self._llm.complete(prompt, context))
        return (text or "").strip()

    async def fold(
        self,
        period_label: str,
        pieces: list[tuple[str, str]],
        condition: str | None = None,
    ) -> str:
        """
        Fold (heading, text) pieces, in the order given, into one summary.

        One model call per piece. If the model returns nothing for a piece
        the running summary is kept and the piece is noted as unavailable.
        """
        running = ""
        prompt = build_merge_prompt(period_label, condition)
        for heading, text in pieces:
            merged = await self._complete(
                prompt,
                {
                    "running summary": running or NO_RUNNING_SUMMARY,
                    "new content": f"{heading}\n{text}",
                },
            )
            if merged:
                running = merged
            else:
                logger.warning("Empty merge result for %s; keeping running summary", heading)
                running = f"{running}\n{heading}: summary unavailable.".strip()
        return running

    async def summarize_encounter(self, encounter: EncounterRecord, content: str) -> str:
        prompt = build_encounter_prompt(
            encounter.encounter_type.value,
            str(encounter.start_day),
            str(encounter.end_day),
        )
        return await self._complete(prompt, {"documents": content or "(no documents)"})

    async def focus(self, text: str, condition: str) -> str:
        """Keep only the parts of a stored summary that relate to condition."""
        focused = await self._complete(
            FOCUS_PROMPT.format(condition=condition), {"summary": text}
        )
        return focused or NO_RELEVANT_FINDINGS
