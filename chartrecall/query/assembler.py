"""
Result Assembly for ChartRecall

Merges per-sub-query answers into one response. Sub-answers keep their own
citations and are merged in original sub-query order. Non-fatal failures
become PartialResult entries instead of failing the whole response.
"""

from dataclasses import asdict, dataclass, field

from chartrecall.core.errors import ChartRecallError

MULTI_PART_QUERY_TYPE = "multi_part"


@dataclass(frozen=True)
class Citation:
    """A record an answer draws on: a document, an encounter or the patient."""

    source_type: str
    source_id: str
    encounter_id: str | None = None
    date: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PartialResult:
    """Human-readable reason a sub-query was not (fully) answered."""

    sub_query: str
    kind: str
    reason: str

    @classmethod
    def from_error(cls, sub_query: str, error: ChartRecallError) -> "PartialResult":
        return cls(sub_query=sub_query, kind=error.kind, reason=error.message)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SubAnswer:
    sub_query: str
    query_type: str
    strategy_used: str
    answer_text: str = ""
    citations: list[Citation] = field(default_factory=list)
    confidence: float = 0.0
    warnings: list[PartialResult] = field(default_factory=list)
    error: PartialResult | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        return {
            "sub_query": self.sub_query,
            "query_type": self.query_type,
            "strategy_used": self.strategy_used,
            "answer_text": self.answer_text,
            "citations": [c.to_dict() for c in self.citations],
            "confidence": round(self.confidence, 4),
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class QueryAnswer:
    answer_text: str
    citations: list[Citation]
    query_type: str
    strategy_used: str
    confidence: float
    partial: bool = False
    errors: list[PartialResult] = field(default_factory=list)
    sub_answers: list[SubAnswer] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "answer_text": self.answer_text,
            "citations": [c.to_dict() for c in self.citations],
            "query_type": self.query_type,
            "strategy_used": self.strategy_used,
            "confidence": round(self.confidence, 4),
            "partial": self.partial,
            "errors": [e.to_dict() for e in self.errors],
            "sub_answers": [s.to_dict() for s in self.sub_answers],
        }


def _answer_body(sub: SubAnswer) -> str:
    if sub.failed:
        return f"Could not answer: {sub.error.reason}"
    return sub.answer_text


def _dedupe(citations: list[Citation]) -> list[Citation]:
    seen: set[tuple[str, str]] = set()
    unique = []
    for citation in citations:
        key = (citation.source_type, citation.source_id)
        if key not in seen:
            seen.add(key)
            unique.append(citation)
    return unique


def assemble(sub_answers: list[SubAnswer]) -> QueryAnswer:
    """
    Merge sub-answers, already in original sub-query order.

    A single sub-answer passes through with its own query type. Several are
    merged as a "multi_part" answer whose confidence is the mean over parts,
    counting failed parts as zero.
    """
    errors = [sub.error for sub in sub_answers if sub.error]
    for sub in sub_answers:
        errors.extend(sub.warnings)

    if len(sub_answers) == 1:
        only = sub_answers[0]
        return QueryAnswer(
            answer_text=_answer_body(only),
            citations=list(only.citations),
            query_type=only.query_type,
            strategy_used=only.strategy_used,
            confidence=0.0 if only.failed else only.confidence,
            partial=bool(errors),
            errors=errors,
            sub_answers=list(sub_answers),
        )

    sections = []
    strategies: list[str] = []
    citations: list[Citation] = []
    for index, sub in enumerate(sub_answers, start=1):
        sections.append(f"{index}. {sub.sub_query}\n{_answer_body(sub)}")
        citations.extend(sub.citations)
        if not sub.failed and sub.strategy_used not in strategies:
            strategies.append(sub.strategy_used)

    confidence = sum(0.0 if sub.failed else sub.confidence for sub in sub_answers)
    confidence = confidence / len(sub_answers) if sub_answers else 0.0

    return QueryAnswer(
        answer_text="\n\n".join(sections),
        citations=_dedupe(citations),
        query_type=MULTI_PART_QUERY_TYPE,
        strategy_used="+".join(strategies) or "none",
        confidence=confidence,
        partial=bool(errors),
        errors=errors,
        sub_answers=list(sub_answers),
    )
