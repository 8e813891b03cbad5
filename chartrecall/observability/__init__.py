"""
ChartRecall Observability Module

Monitoring components:
- Prometheus metrics
"""

from chartrecall.observability.metrics import (
    get_metrics_text,
    record_isolation_violation,
    record_query,
    record_summary,
)

__all__ = [
    "get_metrics_text",
    "record_isolation_violation",
    "record_query",
    "record_summary",
]
