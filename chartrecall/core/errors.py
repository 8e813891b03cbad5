"""
ChartRecall Error Taxonomy

Every failure the core can surface derives from ChartRecallError and carries:
- kind: stable machine-readable name attached to partial results
- fatal: True only for errors that must abort the whole request

Non-fatal errors are attached to responses as partial results. Fatal errors
(IsolationViolation) abort without returning any content.
"""


class ChartRecallError(Exception):
    """Base class for all ChartRecall errors."""

    kind = "internal_error"
    fatal = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class InvalidIdentifierFormat(ChartRecallError):
    """An identifier failed its format check before any lookup."""

    kind = "invalid_identifier_format"


class PatientNotFound(ChartRecallError):
    """No patient matches the MRN exactly."""

    kind = "patient_not_found"


class MissingPatientIdentifier(ChartRecallError):
    """The query carries no MRN and the conversation has none either."""

    kind = "missing_patient_identifier"


class AmbiguousTemporalExpression(ChartRecallError):
    """A relative temporal phrase cannot be mapped to an absolute range."""

    kind = "ambiguous_temporal_expression"

    def __init__(self, phrase: str) -> None:
        super().__init__(
            f"Cannot map '{phrase}' to a date range; give explicit dates "
            "or a phrase such as 'last 6 months'"
        )
        self.phrase = phrase


class IsolationViolation(ChartRecallError):
    """A semantic query escaped its patient scope. Never recovered."""

    kind = "isolation_violation"
    fatal = True


class UpstreamTimeout(ChartRecallError):
    """An external call exceeded its timeout after the allowed retry."""

    kind = "upstream_timeout"

    def __init__(self, upstream: str, timeout: float | None = None) -> None:
        detail = f" after {timeout:.1f}s" if timeout is not None else ""
        super().__init__(f"{upstream} did not respond{detail}")
        self.upstream = upstream


class UpstreamUnavailable(ChartRecallError):
    """An external dependency failed outright, as opposed to timing out."""

    kind = "upstream_unavailable"

    def __init__(self, upstream: str, detail: str | None = None) -> None:
        super().__init__(f"{upstream} is unavailable" + (f": {detail}" if detail else ""))
        self.upstream = upstream


class ObjectNotFound(ChartRecallError):
    """The object store has nothing at the requested path."""

    kind = "object_not_found"

    def __init__(self, path: str) -> None:
        super().__init__(f"No object at '{path}'")
        self.path = path


class SummaryAlreadyExists(ChartRecallError):
    """A summary for the same (patient, tier, period) is already stored."""

    kind = "summary_already_exists"


class SummaryNotReady(ChartRecallError):
    """An aggregate tier is missing some of its constituent summaries."""

    kind = "summary_not_ready"


class EncounterNotClosed(ChartRecallError):
    """Summaries are only generated for closed encounters."""

    kind = "encounter_not_closed"
