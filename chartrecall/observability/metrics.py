"""
Prometheus Metrics for ChartRecall

Tracks:
- queries_total / queries_successful / queries_failed / queries_degraded
- queries_by_strategy: Counter per retrieval strategy
- query_latency_seconds: Histogram of query response times
- summaries_generated / summaries_from_cache
- isolation_violations_total: must stay at zero
"""

import logging
import threading

from chartrecall.core.types import QueryType

logger = logging.getLogger(__name__)

# Thread-safe metrics storage
_lock = threading.Lock()

_metrics: dict[str, float] = {
    "queries_total": 0,
    "queries_successful": 0,
    "queries_failed": 0,
    "queries_degraded": 0,
    "summaries_generated": 0,
    "summaries_from_cache": 0,
    "isolation_violations_total": 0,
}

_strategies: dict[str, int] = {query_type.value: 0 for query_type in QueryType}

_latencies: list[float] = []


def record_query(
    latency_ms: float,
    success: bool = True,
    degraded: bool = False,
    strategies: list[str] | None = None,
) -> None:
    """Record metrics for a processed query."""
    with _lock:
        _metrics["queries_total"] += 1
        if success:
            _metrics["queries_successful"] += 1
        else:
            _metrics["queries_failed"] += 1
        if degraded:
            _metrics["queries_degraded"] += 1
        for strategy in strategies or []:
            _strategies[strategy] = _strategies.get(strategy, 0) + 1
        _latencies.append(latency_ms)


def record_summary(source: str) -> None:
    """Record a summarize() result by where its text came from."""
    with _lock:
        if source == "cache":
            _metrics["summaries_from_cache"] += 1
        elif source != "empty":
            _metrics["summaries_generated"] += 1


def record_isolation_violation() -> None:
    with _lock:
        _metrics["isolation_violations_total"] += 1


def get_metric(name: str) -> float:
    with _lock:
        if name in _strategies:
            return _strategies[name]
        return _metrics[name]


def get_metrics_text() -> str:
    """Generate Prometheus-compatible metrics text."""
    with _lock:
        # Compute percentile buckets
        sorted_latencies = sorted(_latencies)
        p50 = _percentile(sorted_latencies, 50)
        p95 = _percentile(sorted_latencies, 95)
        p99 = _percentile(sorted_latencies, 99)

        lines = [
            "# HELP queries_total Total number of queries processed",
            "# TYPE queries_total counter",
            f'queries_total {int(_metrics["queries_total"])}',
            "",
            "# HELP queries_successful Total successful queries",
            "# TYPE queries_successful counter",
            f'queries_successful {int(_metrics["queries_successful"])}',
            "",
            "# HELP queries_failed Total failed queries",
            "# TYPE queries_failed counter",
            f'queries_failed {int(_metrics["queries_failed"])}',
            "",
            "# HELP queries_degraded Queries answered with partial results",
            "# TYPE queries_degraded counter",
            f'queries_degraded {int(_metrics["queries_degraded"])}',
            "",
            "# HELP queries_by_strategy Sub-queries handled per retrieval strategy",
            "# TYPE queries_by_strategy counter",
        ]
        for strategy, count in sorted(_strategies.items()):
            lines.append(f'queries_by_strategy{{strategy="{strategy}"}} {count}')
        lines += [
            "",
            "# HELP query_latency_seconds Query response time histogram",
            "# TYPE query_latency_seconds histogram",
            f'query_latency_seconds{{le="0.5"}} {_count_below(sorted_latencies, 500)}',
            f'query_latency_seconds{{le="1.0"}} {_count_below(sorted_latencies, 1000)}',
            f'query_latency_seconds{{le="2.0"}} {_count_below(sorted_latencies, 2000)}',
            f'query_latency_seconds{{le="5.0"}} {_count_below(sorted_latencies, 5000)}',
            f"query_latency_seconds_p50 {p50 / 1000:.4f}",
            f"query_latency_seconds_p95 {p95 / 1000:.4f}",
            f"query_latency_seconds_p99 {p99 / 1000:.4f}",
            "",
            "# HELP summaries_generated Summaries that required generation",
            "# TYPE summaries_generated counter",
            f'summaries_generated {int(_metrics["summaries_generated"])}',
            "",
            "# HELP summaries_from_cache Summaries served entirely from stored tiers",
            "# TYPE summaries_from_cache counter",
            f'summaries_from_cache {int(_metrics["summaries_from_cache"])}',
            "",
            "# HELP isolation_violations_total Aborted requests that escaped patient scope",
            "# TYPE isolation_violations_total counter",
            f'isolation_violations_total {int(_metrics["isolation_violations_total"])}',
        ]

        return "\n".join(lines) + "\n"


def reset_metrics() -> None:
    """Reset all metrics to zero."""
    with _lock:
        for key in _metrics:
            _metrics[key] = 0
        for key in _strategies:
            _strategies[key] = 0
        _latencies.clear()


def _percentile(sorted_data: list[float], percentile: int) -> float:
    """Compute the given percentile from sorted data."""
    if not sorted_data:
        return 0.0
    idx = int(len(sorted_data) * percentile / 100)
    idx = min(idx, len(sorted_data) - 1)
    return sorted_data[idx]


def _count_below(sorted_data: list[float], threshold_ms: float) -> int:
    """Count values below threshold in sorted data."""
    count = 0
    for v in sorted_data:
        if v <= threshold_ms:
            count += 1
        else:
            break
    return count
