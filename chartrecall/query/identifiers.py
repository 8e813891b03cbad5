"""
Identifier Resolution Chain for ChartRecall

The only path from an external identifier to document ids:

    MRN -> patient_id -> encounter_id(s) -> document_id(s)

Every step is an exact-match structured lookup. Nothing here performs
similarity search, and no component may query the semantic index with an
identifier that did not come out of this chain.

Ordering: encounters and documents come back most-recent-first unless the
caller asks for chronological order (summarization does).
"""

import logging
import os
import re

from chartrecall.core.errors import (
    InvalidIdentifierFormat,
    IsolationViolation,
    PatientNotFound,
)
from chartrecall.core.types import (
    DocumentFilter,
    DocumentRecord,
    EncounterFilter,
    EncounterRecord,
    PatientRecord,
)
from chartrecall.db.store import ORDER_CHRONOLOGICAL, ORDER_RECENT_FIRST, StructuredStore

logger = logging.getLogger(__name__)

MRN_FORMAT = re.compile(
    os.environ.get("MRN_FORMAT", r"^[A-Za-z0-9][A-Za-z0-9-]{2,19}$")
)


def validate_mrn(mrn: str | None) -> str:
    """Return the MRN unchanged if it passes the format check."""
    if not mrn or not MRN_FORMAT.fullmatch(mrn):
        raise InvalidIdentifierFormat(f"'{mrn}' is not a valid MRN")
    return mrn


def _encounter_sort_key(encounter: EncounterRecord) -> tuple:
    return (encounter.start_date, encounter.id)


def _document_sort_key(document: DocumentRecord) -> tuple:
    return (document.document_date, document.id)


class IdentifierResolutionChain:
    """Exact-match resolution of patient, encounter and document identifiers."""

    def __init__(self, store: StructuredStore):
        self._store = store

    async def resolve_patient(self, mrn: str) -> PatientRecord:
        """
        Resolve an MRN to its patient.

        Raises:
            InvalidIdentifierFormat: MRN fails the format check (no lookup made).
            PatientNotFound: No patient has exactly this MRN.
        """
        validate_mrn(mrn)
        patient = await self._store.get_patient_by_mrn(mrn)
        if patient is None:
            raise PatientNotFound("No patient matches the given MRN")
        if patient.mrn != mrn:
            logger.critical(
                "Store returned patient %s for a different MRN; refusing to continue",
                patient.id,
            )
            raise IsolationViolation("Structured store returned a non-exact MRN match")
        return patient

    async def resolve_encounters(
        self,
        patient: PatientRecord,
        filters: EncounterFilter | None = None,
        chronological: bool = False,
    ) -> list[EncounterRecord]:
        """
        Encounters of one patient matching an optional type/status/date filter.

        An empty list is a valid result. Order is strictly by start date,
        most recent first unless chronological is requested.
        """
        order = ORDER_CHRONOLOGICAL if chronological else ORDER_RECENT_FIRST
        encounters = await self._store.list_encounters(patient.id, filters, order)

        for encounter in encounters:
            if encounter.patient_id != patient.id:
                logger.critical(
                    "Encounter %s does not belong to patient %s", encounter.id, patient.id
                )
                raise IsolationViolation("Encounter lookup returned another patient's encounter")

        return sorted(encounters, key=_encounter_sort_key, reverse=not chronological)

    async def resolve_documents(
        self,
        encounters: list[EncounterRecord],
        filters: DocumentFilter | None = None,
        chronological: bool = False,
    ) -> list[DocumentRecord]:
        """
        Documents belonging to the given (already resolved) encounters.

        Order is by document date, most recent first unless chronological.
        """
        if not encounters:
            return []

        owners = {encounter.id: encounter.patient_id for encounter in encounters}
        documents = await self._store.list_documents(list(owners), filters)

        for document in documents:
            owner = owners.get(document.encounter_id)
            if owner is None or owner != document.patient_id:
                logger.critical(
                    "Document %s is outside the resolved encounter scope", document.id
                )
                raise IsolationViolation("Document lookup returned a document outside scope")

        return sorted(documents, key=_document_sort_key, reverse=not chronological)
