"""
Summary Persistence Triggers for ChartRecall

The only write path in the system. Driven by external events, never by
the query path:

- encounter closed   -> encounter-tier summary from the encounter's documents
- quarter has passed -> quarterly summary folded from encounter summaries
- year has passed    -> annual summary folded from the four quarterlies

Aggregation reads only prior-tier summaries, never raw documents. Every
trigger is idempotent: an existing record for the same encounter, or for
the same (patient, tier, period) in the aggregate tiers, is returned as-is,
and SummaryAlreadyExists from a concurrent writer is treated as success.
"""

import logging
from datetime import date

from chartrecall.core.errors import (
    EncounterNotClosed,
    SummaryAlreadyExists,
    SummaryNotReady,
)
from chartrecall.core.types import (
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
from chartrecall.query.extractor import quarter_of, quarter_range, year_range
from chartrecall.query.identifiers import IdentifierResolutionChain
from chartrecall.storage.object_store import ObjectStore
from chartrecall.summarization.progressive import (
    EncounterContentLoader,
    ProgressiveMerger,
    encounter_heading,
)

logger = logging.getLogger(__name__)

QUARTERS = (1, 2, 3, 4)


class SummaryPersistence:
    """Generates and stores encounter, quarterly and annual summaries."""

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

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _existing(
        self,
        patient_id: str,
        tier: SummaryTier,
        period: DateRange,
        encounter_id: str | None = None,
    ) -> SummaryRecord | None:
        """The stored record for an encounter, or for an aggregate period."""
        for record in await self._store.get_summary_records(patient_id, tier, period):
            if tier == SummaryTier.ENCOUNTER:
                if record.encounter_id == encounter_id:
                    return record
            elif record.period == period:
                return record
        return None

    async def _persist(self, record: SummaryRecord) -> SummaryRecord:
        try:
            stored = await self._store.put_summary_record(record)
        except SummaryAlreadyExists:
            logger.info(
                "Concurrent %s summary for %s; keeping the stored one",
                record.tier.value,
                record.period,
            )
            existing = await self._existing(
                record.patient_id, record.tier, record.period, record.encounter_id
            )
            return existing or record
        logger.info(
            "Stored %s summary for patient %s, %s",
            record.tier.value,
            record.patient_id,
            record.period,
        )
        return stored

    async def _closed_encounters(
        self, patient: PatientRecord, period: DateRange
    ) -> list[EncounterRecord]:
        encounters = await self._chain.resolve_encounters(
            patient,
            EncounterFilter(statuses=frozenset({EncounterStatus.CLOSED}), date_range=period),
            chronological=True,
        )
        return [e for e in encounters if e.is_closed and period.contains(e.start_day)]

    # ------------------------------------------------------------------
    # Encounter tier
    # ------------------------------------------------------------------

    async def on_encounter_closed(self, encounter: EncounterRecord) -> SummaryRecord:
        """
        Generate the encounter-tier summary for a closed encounter.

        Raises:
            EncounterNotClosed: If the encounter is active or cancelled.
        """
        if not encounter.is_closed:
            raise EncounterNotClosed(
                f"Encounter {encounter.id} is {encounter.status.value}, not closed"
            )

        existing = await self._existing(
            encounter.patient_id, SummaryTier.ENCOUNTER, encounter.period, encounter.id
        )
        if existing is not None:
            return existing

        content = await self._loader.load(encounter)
        text = await self._merger.summarize_encounter(encounter, content)
        return await self._persist(
            SummaryRecord(
                patient_id=encounter.patient_id,
                tier=SummaryTier.ENCOUNTER,
                period_start=encounter.start_day,
                period_end=encounter.end_day,
                summary_text=text,
                encounter_id=encounter.id,
                encounter_count=1,
            )
        )

    # ------------------------------------------------------------------
    # Quarterly tier
    # ------------------------------------------------------------------

    async def aggregate_quarter(
        self, patient: PatientRecord, year: int, quarter: int
    ) -> SummaryRecord:
        """
        Fold a quarter's encounter summaries into a quarterly summary.

        A quarter with no closed encounters gets an explicit empty record.

        Raises:
            SummaryNotReady: If a closed encounter in the quarter has no
                encounter-tier summary yet.
        """
        period = quarter_range(year, quarter)
        existing = await self._existing(patient.id, SummaryTier.QUARTERLY, period)
        if existing is not None:
            return existing

        encounters = await self._closed_encounters(patient, period)
        stored = {
            record.encounter_id: record
            for record in await self._store.get_summary_records(
                patient.id, SummaryTier.ENCOUNTER, period
            )
        }
        missing = [e.id for e in encounters if e.id not in stored]
        if missing:
            raise SummaryNotReady(
                f"Q{quarter} {year}: {len(missing)} closed encounter(s) not yet summarized"
            )

        if encounters:
            pieces = [
                (encounter_heading(e), stored[e.id].summary_text) for e in encounters
            ]
            text = await self._merger.fold(f"Q{quarter} {year}", pieces)
        else:
            text = EMPTY_PERIOD_TEXT

        return await self._persist(
            SummaryRecord(
                patient_id=patient.id,
                tier=SummaryTier.QUARTERLY,
                period_start=period.start,
                period_end=period.end,
                summary_text=text,
                encounter_count=len(encounters),
            )
        )

    # ------------------------------------------------------------------
    # Annual tier
    # ------------------------------------------------------------------

    async def aggregate_year(self, patient: PatientRecord, year: int) -> SummaryRecord:
        """
        Fold four quarterly summaries into an annual summary.

        Raises:
            SummaryNotReady: If any of the four quarterly records is missing.
        """
        period = year_range(year)
        existing = await self._existing(patient.id, SummaryTier.ANNUAL, period)
        if existing is not None:
            return existing

        quarterlies = {
            record.period: record
            for record in await self._store.get_summary_records(
                patient.id, SummaryTier.QUARTERLY, period
            )
        }
        ordered = [quarterlies.get(quarter_range(year, q)) for q in QUARTERS]
        missing = [q for q, record in zip(QUARTERS, ordered, strict=True) if record is None]
        if missing:
            raise SummaryNotReady(
                f"{year}: quarterly summaries missing for Q{', Q'.join(map(str, missing))}"
            )

        encounter_count = sum(record.encounter_count for record in ordered)
        pieces = [
            (f"Q{q} {year}", record.summary_text)
            for q, record in zip(QUARTERS, ordered, strict=True)
            if record.encounter_count > 0
        ]
        if pieces:
            text = await self._merger.fold(str(year), pieces)
        else:
            text = EMPTY_PERIOD_TEXT

        return await self._persist(
            SummaryRecord(
                patient_id=patient.id,
                tier=SummaryTier.ANNUAL,
                period_start=period.start,
                period_end=period.end,
                summary_text=text,
                encounter_count=encounter_count,
            )
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def run_due_aggregations(
        self,
        patient: PatientRecord,
        reference_date: date,
        backfill_encounters: bool = True,
    ) -> list[SummaryRecord]:
        """
        Aggregate every quarter and year that ended before reference_date.

        Starts at the quarter of the patient's first encounter. With
        backfill_encounters, closed encounters in passed quarters that never
        got an encounter-tier summary are summarized first. Periods that are
        still not ready are skipped and retried on the next run.
        """
        encounters = await self._chain.resolve_encounters(patient, chronological=True)
        if not encounters:
            return []

        records: list[SummaryRecord] = []
        first = encounters[0].start_day
        year, quarter = first.year, quarter_of(first)

        while quarter_range(year, quarter).end < reference_date:
            period = quarter_range(year, quarter)
            if backfill_encounters:
                for encounter in encounters:
                    if encounter.is_closed and period.contains(encounter.start_day):
                        await self.on_encounter_closed(encounter)
            try:
                records.append(await self.aggregate_quarter(patient, year, quarter))
            except SummaryNotReady as e:
                logger.info("Skipping quarterly aggregation: %s", e.message)

            if quarter == 4:
                try:
                    records.append(await self.aggregate_year(patient, year))
                except SummaryNotReady as e:
                    logger.info("Skipping annual aggregation: %s", e.message)
                year, quarter = year + 1, 1
            else:
                quarter += 1

        return records
