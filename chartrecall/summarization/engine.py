"""
Tiered Summarization Engine for ChartRecall

Answers "summarize this patient's record for [start, end]" by reusing
stored summaries wherever possible and generating only what is missing:

1. Coverage: pick non-overlapping stored records contained in the range,
   coarsest tier first (annual, quarterly, encounter).
2. Gaps: the inclusive day ranges left uncovered.
3. Progressive generation: for each gap, fold its closed encounters in
   chronological order into a running summary. An encounter contributes
   its stored encounter-tier summary if one exists, else its raw documents.
4. Assembly: segments ordered oldest to newest; citations are the closed
   encounters in range.

No stored records and no encounters in range is an explicit empty summary,
not an error. Nothing here writes summaries; persistence happens in the
aggregation triggers.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from chartrecall.core.types import (
    TIERS_COARSEST_FIRST,
    DateRange,
    EncounterFilter,
    EncounterRecord,
    EncounterStatus,
    PatientRecord,
    SummaryRecord,
    SummaryTier,
)
from chartrecall.db.store import StructuredStore
from chartrecall.llm.prompts import EMPTY_PERIOD_TEXT
from chartrecall.query.assembler import Citation
from chartrecall.query.identifiers import IdentifierResolutionChain
from chartrecall.storage.object_store import ObjectStore
from chartrecall.summarization.progressive import (
    EncounterContentLoader,
    ProgressiveMerger,
    encounter_heading,
)

logger = logging.getLogger(__name__)

SOURCE_CACHE = "cache"
SOURCE_GENERATED = "generated"
SOURCE_MIXED = "mixed"
SOURCE_EMPTY = "empty"


@dataclass
class SummarySegment:
    """One chronological piece of an assembled summary."""

    period: DateRange
    text: str
    source: str
    tier: SummaryTier | None = None
    encounter_ids: list[str] = field(default_factory=list)


@dataclass
class SummaryResult:
    summary_text: str
    encounter_count: int
    period: DateRange
    source: str
    segments: list[SummarySegment] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "summary_text": self.summary_text,
            "encounter_count": self.encounter_count,
            "period": {
                "start": self.period.start.isoformat(),
                "end": self.period.end.isoformat(),
            },
            "source": self.source,
            "segments": [
                {
                    "start": s.period.start.isoformat(),
                    "end": s.period.end.isoformat(),
                    "source": s.source,
                    "tier": s.tier.value if s.tier else None,
                }
                for s in self.segments
            ],
            "citations": [c.to_dict() for c in self.citations],
        }


# ============================================
# Coverage & Gaps
# ============================================


def select_coverage(
    date_range: DateRange,
    records_by_tier: dict[SummaryTier, list[SummaryRecord]],
    encounters: list[EncounterRecord] | None = None,
) -> list[SummaryRecord]:
    """
    Non-overlapping records contained in date_range, coarsest tier first.

    Within a tier, earlier records win ties. Returned in chronological order.

    When the closed encounters are given, an encounter-tier record only
    covers its period if no other closed encounter starts inside it.
    """
    chosen: list[SummaryRecord] = []
    for tier in TIERS_COARSEST_FIRST:
        for record in sorted(records_by_tier.get(tier, []), key=lambda r: r.period_start):
            period = record.period
            if not date_range.covers(period):
                continue
            if tier == SummaryTier.ENCOUNTER and encounters is not None and any(
                period.contains(e.start_day) and e.id != record.encounter_id
                for e in encounters
            ):
                continue
            if any(period.overlaps(c.period) for c in chosen):
                continue
            chosen.append(record)
    return sorted(chosen, key=lambda r: r.period_start)


def compute_gaps(date_range: DateRange, covered: list[DateRange]) -> list[DateRange]:
    """Inclusive day ranges of date_range not inside any covered period."""
    gaps = []
    cursor = date_range.start
    for period in sorted(covered):
        if period.start > cursor:
            gaps.append(DateRange(cursor, period.start - timedelta(days=1)))
        cursor = max(cursor, period.end + timedelta(days=1))
    if cursor <= date_range.end:
        gaps.append(DateRange(cursor, date_range.end))
    return gaps


def encounter_citation(encounter: EncounterRecord) -> Citation:
    return Citation(
        source_type="encounter",
        source_id=encounter.id,
        encounter_id=encounter.id,
        date=encounter.start_day.isoformat(),
        detail=encounter.encounter_type.value,
    )


def render_segments(segments: list[SummarySegment]) -> str:
    return "\n\n".join(f"{segment.period}:\n{segment.text}" for segment in segments)


# ============================================
# Engine
# ============================================


class SummarizationEngine:
    """Coverage, gap and progressive-merge summarization over stored tiers."""

    def __init__(
        self,
        store: StructuredStore,
        chain: IdentifierResolutionChain,
        object_store: ObjectStore,
        llm,
    ):
        self._store = store
        self._chain = chain
        self._loader = EncounterContentLoader(chain, object_store)
        self._merger = ProgressiveMerger(llm)

    async def summarize(
        self,
        patient: PatientRecord,
        date_range: DateRange,
        condition_filter: str | None = None,
    ) -> SummaryResult:
        records_by_tier = {
            tier: await self._store.get_summary_records(patient.id, tier, date_range)
            for tier in TIERS_COARSEST_FIRST
        }
        encounters = await self._closed_encounters(patient, date_range)
        coverage = select_coverage(date_range, records_by_tier, encounters)
        gaps = compute_gaps(date_range, [record.period for record in coverage])

        encounter_summaries = {
            record.encounter_id: record
            for record in records_by_tier.get(SummaryTier.ENCOUNTER, [])
        }

        logger.info(
            "Summarizing patient %s over %s: %d stored segment(s), %d gap(s), %d encounter(s)",
            patient.id,
            date_range,
            len(coverage),
            len(gaps),
            len(encounters),
        )

        segments: list[SummarySegment] = []
        for record in coverage:
            text = record.summary_text
            if condition_filter:
                text = await self._merger.focus(text, condition_filter)
            segments.append(
                SummarySegment(
                    period=record.period,
                    text=text,
                    source=SOURCE_CACHE,
                    tier=record.tier,
                    encounter_ids=[
                        e.id for e in encounters if record.period.contains(e.start_day)
                    ],
                )
            )

        for gap in gaps:
            gap_encounters = [e for e in encounters if gap.contains(e.start_day)]
            if not gap_encounters:
                continue
            text = await self._generate_gap(gap, gap_encounters, encounter_summaries, condition_filter)
            segments.append(
                SummarySegment(
                    period=gap,
                    text=text,
                    source=SOURCE_GENERATED,
                    encounter_ids=[e.id for e in gap_encounters],
                )
            )

        segments.sort(key=lambda s: s.period.start)
        return SummaryResult(
            summary_text=render_segments(segments) if segments else EMPTY_PERIOD_TEXT,
            encounter_count=len(encounters),
            period=date_range,
            source=self._source_of(segments),
            segments=segments,
            citations=[encounter_citation(e) for e in encounters],
        )

    async def _closed_encounters(
        self, patient: PatientRecord, date_range: DateRange
    ) -> list[EncounterRecord]:
        """Closed encounters starting inside date_range, oldest first."""
        encounters = await self._chain.resolve_encounters(
            patient,
            EncounterFilter(
                statuses=frozenset({EncounterStatus.CLOSED}), date_range=date_range
            ),
            chronological=True,
        )
        return [e for e in encounters if e.is_closed and date_range.contains(e.start_day)]

    async def _generate_gap(
        self,
        gap: DateRange,
        encounters: list[EncounterRecord],
        encounter_summaries: dict[str, SummaryRecord],
        condition_filter: str | None,
    ) -> str:
        pieces = []
        for encounter in encounters:
            stored = encounter_summaries.get(encounter.id)
            if stored is not None:
                text = stored.summary_text
            else:
                text = await self._loader.load(encounter)
            pieces.append((encounter_heading(encounter), text))
        return await self._merger.fold(str(gap), pieces, condition_filter)

    @staticmethod
    def _source_of(segments: list[SummarySegment]) -> str:
        sources = {segment.source for segment in segments}
        if not sources:
            return SOURCE_EMPTY
        if sources == {SOURCE_CACHE}:
            return SOURCE_CACHE
        if sources == {SOURCE_GENERATED}:
            return SOURCE_GENERATED
        return SOURCE_MIXED
