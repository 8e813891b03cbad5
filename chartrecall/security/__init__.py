"""
ChartRecall Security Module

Security components:
- Request validation and sanitization
"""

from chartrecall.security.input_validation import (
    InputValidator,
    QueryRequest,
    SummarizeRequest,
)

__all__ = [
    "InputValidator",
    "QueryRequest",
    "SummarizeRequest",
]
