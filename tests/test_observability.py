"""
Tests for ChartRecall Observability
"""

import pytest

from chartrecall.observability.metrics import (
    get_metric,
    get_metrics_text,
    record_isolation_violation,
    record_query,
    record_summary,
)


class TestMetrics:
    """Tests for Prometheus metrics."""

    @pytest.mark.unit
    def test_get_metrics_text_returns_string(self):
        text = get_metrics_text()
        assert isinstance(text, str)
        assert "queries_total 0" in text
        assert 'query_latency_seconds{le="0.5"} 0' in text

    @pytest.mark.unit
    def test_record_query_counts_outcome(self):
        record_query(latency_ms=150.0, success=True)
        record_query(latency_ms=300.0, success=False)
        record_query(latency_ms=90.0, success=True, degraded=True)
        assert get_metric("queries_total") == 3
        assert get_metric("queries_successful") == 2
        assert get_metric("queries_failed") == 1
        assert get_metric("queries_degraded") == 1

    @pytest.mark.unit
    def test_strategy_counters(self):
        record_query(latency_ms=10.0, strategies=["hybrid", "rdbms_only"])
        record_query(latency_ms=10.0, strategies=["hybrid"])
        text = get_metrics_text()
        assert 'queries_by_strategy{strategy="hybrid"} 2' in text
        assert 'queries_by_strategy{strategy="rdbms_only"} 1' in text
        assert 'queries_by_strategy{strategy="summary"} 0' in text

    @pytest.mark.unit
    def test_metrics_contains_latency_percentiles(self):
        for i in range(10):
            record_query(latency_ms=100.0 + i * 100)
        text = get_metrics_text()
        assert 'query_latency_seconds{le="0.5"} 5' in text
        assert "query_latency_seconds_p95 1.0000" in text

    @pytest.mark.unit
    def test_summary_sources(self):
        record_summary("cache")
        record_summary("generated")
        record_summary("mixed")
        record_summary("empty")
        assert get_metric("summaries_from_cache") == 1
        assert get_metric("summaries_generated") == 2

    @pytest.mark.unit
    def test_isolation_violations(self):
        record_isolation_violation()
        assert "isolation_violations_total 1" in get_metrics_text()
