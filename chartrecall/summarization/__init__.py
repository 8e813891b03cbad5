"""
ChartRecall Summarization Module

Tiered summaries (encounter, quarter, year), progressive merging and the
persistence triggers that populate the tiers.
"""

from chartrecall.summarization.aggregation import SummaryPersistence
from chartrecall.summarization.engine import SummarizationEngine, SummaryResult

__all__ = [
    "SummarizationEngine",
    "SummaryPersistence",
    "SummaryResult",
]
