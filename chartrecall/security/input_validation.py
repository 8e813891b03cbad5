"""
Input Validation for ChartRecall

Request models for the HTTP surface and a pattern-based safety check for
free-text questions:
- script / markup injection
- SQL comment and function-call fragments
- query and condition length limits
"""

import logging
import re
from datetime import date

from pydantic import BaseModel, field_validator, model_validator

logger = logging.getLogger(__name__)

# Dangerous patterns. Plain SQL keywords are not checked: "drop", "update"
# and "create" occur in ordinary clinical questions and every query is
# parameterized.
SQL_INJECTION_PATTERNS = [
    re.compile(r"(/\*|\*/|@@|char\(|nchar\(|varchar\(|exec\()", re.IGNORECASE),
    re.compile(r"(\bOR\b\s+\d+\s*=\s*\d+)", re.IGNORECASE),
    re.compile(r"('\s*(OR|AND)\s+')", re.IGNORECASE),
]

XSS_PATTERNS = [
    re.compile(r"<\s*script", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"<\s*iframe", re.IGNORECASE),
    re.compile(r"<\s*object", re.IGNORECASE),
    re.compile(r"<\s*embed", re.IGNORECASE),
]

MIN_QUERY_LENGTH = 5
MAX_QUERY_LENGTH = 1000
MAX_CONDITION_LENGTH = 100
MAX_SUMMARY_DAYS = 366 * 10


class QueryRequest(BaseModel):
    """Validated answer_query request.

    mrn carries the caller-held conversation patient, used when the question
    itself names none.
    """

    question: str
    reference_date: date | None = None
    mrn: str | None = None

    @field_validator("question")
    @classmethod
    def validate_question(cls, v: str) -> str:
        v = v.strip()
        if len(v) < MIN_QUERY_LENGTH:
            raise ValueError(f"Query must be at least {MIN_QUERY_LENGTH} characters")
        if len(v) > MAX_QUERY_LENGTH:
            raise ValueError(f"Query must be at most {MAX_QUERY_LENGTH} characters")
        return v

    @field_validator("mrn")
    @classmethod
    def strip_mrn(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None


class SummarizeRequest(BaseModel):
    """Validated summarize request."""

    mrn: str
    start: date
    end: date
    condition_filter: str | None = None

    @field_validator("mrn")
    @classmethod
    def strip_mrn(cls, v: str) -> str:
        return v.strip()

    @field_validator("condition_filter")
    @classmethod
    def validate_condition(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if len(v) > MAX_CONDITION_LENGTH:
            raise ValueError(f"condition_filter must be at most {MAX_CONDITION_LENGTH} characters")
        return v or None

    @model_validator(mode="after")
    def validate_period(self) -> "SummarizeRequest":
        if self.end < self.start:
            raise ValueError("end must not precede start")
        if (self.end - self.start).days > MAX_SUMMARY_DAYS:
            raise ValueError("summary period must not exceed ten years")
        return self


class InputValidator:
    """Validates input against injection patterns."""

    def check_sql_injection(self, text: str) -> bool:
        """Return True if SQL injection pattern detected."""
        for pattern in SQL_INJECTION_PATTERNS:
            if pattern.search(text):
                logger.warning("SQL injection pattern detected: %s", text[:100])
                return True
        return False

    def check_xss(self, text: str) -> bool:
        """Return True if XSS pattern detected."""
        for pattern in XSS_PATTERNS:
            if pattern.search(text):
                logger.warning("XSS pattern detected: %s", text[:100])
                return True
        return False

    def is_safe(self, text: str) -> bool:
        """Return True if input passes all safety checks."""
        return not self.check_sql_injection(text) and not self.check_xss(text)

    def sanitize(self, text: str) -> str:
        """Strip potentially dangerous characters from input."""
        # Remove null bytes
        text = text.replace("\x00", "")
        # Remove control characters except newlines and tabs
        text = re.sub(r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)
        return text.strip()
