"""
ChartRecall - Patient-Scoped Clinical Query Resolution

Answers natural-language questions about one patient's longitudinal record
and summarizes any date range of it.

Features:
- Rule-based query classification (structured / semantic / summary / hybrid)
- Exact-match patient scoping on every semantic search
- Tiered summaries (encounter, quarter, year) with progressive merging
- Multi-part questions answered concurrently with partial results
"""

__version__ = "0.1.0"
__author__ = "ChartRecall Team"
