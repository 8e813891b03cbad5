"""
Response Parser for ChartRecall

Parses model output to extract:
- Answer text (without the confidence line)
- Confidence score (0.0-1.0)
- Evidence labels cited as [Doc N]
"""

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Matches "Confidence: 0.92", "**Confidence:** 0.85", "Confidence Score: 0.8"
CONFIDENCE_PATTERN = re.compile(
    r"\*{0,2}[Cc]onfidence(?:\s+(?:[Ss]core|[Ll]evel))?\*{0,2}[:\s]+([\d.]+)",
    re.IGNORECASE,
)

# Evidence labels: [Doc 1], [Doc 2, Doc 3]
DOC_LABEL_PATTERN = re.compile(r"Doc\s+(\d+)", re.IGNORECASE)
BRACKET_PATTERN = re.compile(r"\[([^\[\]]+)\]")

DEFAULT_CONFIDENCE = 0.50


@dataclass
class ParsedResponse:
    """Structured output from parsing a model response."""

    answer: str
    confidence: float
    cited_labels: list[int] = field(default_factory=list)


class ResponseParser:
    """Parses raw model text into answer, confidence and cited labels."""

    def parse(
        self,
        raw_text: str,
        fallback_confidence: float | None = None,
    ) -> ParsedResponse:
        """
        Parse raw model output.

        Args:
            raw_text: Raw text from the model.
            fallback_confidence: Used when the model does not state one.
                Falls back to DEFAULT_CONFIDENCE if not provided.
        """
        if not raw_text:
            return ParsedResponse(
                answer="",
                confidence=fallback_confidence if fallback_confidence is not None else 0.0,
            )

        confidence = self._extract_confidence(raw_text)
        if confidence is None:
            confidence = (
                fallback_confidence if fallback_confidence is not None else DEFAULT_CONFIDENCE
            )

        return ParsedResponse(
            answer=self._extract_answer(raw_text),
            confidence=confidence,
            cited_labels=self._extract_labels(raw_text),
        )

    def _extract_confidence(self, text: str) -> float | None:
        """Extract confidence score from text, clamped to [0.0, 1.0]."""
        match = CONFIDENCE_PATTERN.search(text)
        if match:
            try:
                value = float(match.group(1).rstrip("."))
                return max(0.0, min(1.0, value))
            except ValueError:
                logger.debug("Unparseable confidence value: %s", match.group(1))
        return None

    def _extract_answer(self, text: str) -> str:
        """Strip confidence metadata and blank lines."""
        text = CONFIDENCE_PATTERN.sub("", text)
        lines = [line for line in text.strip().split("\n") if line.strip()]
        return "\n".join(lines).strip()

    def _extract_labels(self, text: str) -> list[int]:
        """Evidence label numbers in first-cited order, deduplicated."""
        labels: list[int] = []
        for bracket in BRACKET_PATTERN.finditer(text):
            for match in DOC_LABEL_PATTERN.finditer(bracket.group(1)):
                label = int(match.group(1))
                if label not in labels:
                    labels.append(label)
        return labels
