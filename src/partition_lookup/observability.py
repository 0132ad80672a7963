"""
Observability for the data-access layer.

Provides:
- OpenTelemetry spans around lookups
- Per-operation metrics with percentile latencies
- Prometheus text export
"""

import time
import logging
import statistics
from typing import Any, Optional
from collections import defaultdict, deque
from contextlib import asynccontextmanager

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

logger = logging.getLogger(__name__)


# ============================================================================
# OpenTelemetry Tracing
# ============================================================================

class Tracer:
    """
    Thin wrapper over an OpenTelemetry tracer.

    Reuses an already-installed tracer provider; otherwise installs one that
    exports spans to the console. When disabled, ``span`` is a no-op.
    """

    def __init__(self, service_name: str = "partition-lookup", enabled: bool = True):
        self.service_name = service_name
        self.enabled = enabled
        self._tracer = None

        if enabled:
            self._initialize_opentelemetry()

    def _initialize_opentelemetry(self):
        """Initialize OpenTelemetry tracing."""
        if not isinstance(trace.get_tracer_provider(), TracerProvider):
            provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: self.service_name}))
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            trace.set_tracer_provider(provider)
            logger.info(f"OpenTelemetry tracing initialized for {self.service_name}")
        else:
            logger.info("Using existing OpenTelemetry tracer provider")

        self._tracer = trace.get_tracer(__name__)

    @asynccontextmanager
    async def span(self, name: str, attributes: Optional[dict[str, Any]] = None):
        """
        Create a traced span for an operation.

        Args:
            name: Span name (e.g., "cql.search", "cql.find_by_id")
            attributes: Span attributes (metadata)

        Yields:
            The active span, or None when tracing is disabled
        """
        if not self.enabled or self._tracer is None:
            yield None
            return

        with self._tracer.start_as_current_span(name) as span:
            if attributes:
                for key, value in attributes.items():
                    # OpenTelemetry only accepts primitive attribute values
                    span.set_attribute(key, value if isinstance(value, (str, int, float, bool)) else str(value))

            try:
                yield span
                span.set_status(trace.Status(trace.StatusCode.OK))
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                span.record_exception(e)
                raise


# ============================================================================
# Metrics
# ============================================================================

class PercentileTracker:
    """
    Track percentile latencies (p50, p95, p99) efficiently.

    Uses a sliding window to avoid unbounded memory growth.
    """

    def __init__(self, window_size: int = 1000, percentiles: list[float] = None):
        self.window_size = window_size
        self.percentiles = percentiles or [0.5, 0.95, 0.99]
        self.samples = deque(maxlen=window_size)

    def record(self, value: float):
        """Record a sample."""
        self.samples.append(value)

    def get_percentiles(self) -> dict[str, float]:
        """
        Calculate percentile values.

        Returns:
            Dictionary with keys like "p50", "p95", "p99"
        """
        if not self.samples:
            return {f"p{int(p*100)}": 0.0 for p in self.percentiles}

        if len(self.samples) == 1:
            return {f"p{int(p*100)}": self.samples[0] for p in self.percentiles}

        cuts = statistics.quantiles(sorted(self.samples), n=100, method='inclusive')
        return {f"p{int(p*100)}": cuts[int(p * 100) - 1] for p in self.percentiles}

    def get_stats(self) -> dict[str, Any]:
        if not self.samples:
            return {
                "count": 0,
                "avg": 0.0,
                "min": 0.0,
                "max": 0.0,
                **{f"p{int(p*100)}": 0.0 for p in self.percentiles}
            }

        return {
            "count": len(self.samples),
            "avg": statistics.mean(self.samples),
            "min": min(self.samples),
            "max": max(self.samples),
            **self.get_percentiles()
        }


class QueryMetrics:
    """
    Per-operation query metrics.

    Tracks:
    - Latency percentiles (p50, p95, p99)
    - Operation and error counts
    - Error types
    - Retries and rows returned
    """

    def __init__(self, service_name: str = "partition_lookup", percentiles: list[float] = None):
        self.service_name = service_name
        self.percentiles = percentiles or [0.5, 0.95, 0.99]

        self.latencies: dict[str, PercentileTracker] = defaultdict(
            lambda: PercentileTracker(percentiles=self.percentiles)
        )
        self.operation_counts: dict[str, int] = defaultdict(int)
        self.error_counts: dict[str, int] = defaultdict(int)
        self.error_types: dict[str, int] = defaultdict(int)
        self.retry_counts: dict[str, int] = defaultdict(int)
        self.row_counts: dict[str, int] = defaultdict(int)

        self.start_time = time.time()

    def record_query(
        self,
        operation: str,
        latency_ms: float,
        success: bool = True,
        error_type: str | None = None,
        rows: int = 0,
    ):
        """
        Record a query execution.

        Args:
            operation: Operation type (e.g., 'search', 'find_by_id', 'seed')
            latency_ms: Query latency in milliseconds
            success: Whether the query succeeded
            error_type: Type of error if query failed
            rows: Rows returned or written
        """
        self.latencies[operation].record(latency_ms)
        self.operation_counts[operation] += 1
        self.row_counts[operation] += rows
        if not success:
            self.error_counts[operation] += 1
            if error_type:
                self.error_types[error_type] += 1

    def record_retry(self, operation: str):
        self.retry_counts[operation] += 1

    def get_stats(self) -> dict[str, Any]:
        """
        Get aggregate stats.

        Returns:
            Dictionary with totals, error rate and per-operation breakdowns
        """
        total_operations = sum(self.operation_counts.values())
        total_errors = sum(self.error_counts.values())

        return {
            "uptime_seconds": time.time() - self.start_time,
            "total_queries": total_operations,
            "total_errors": total_errors,
            "error_rate": total_errors / total_operations if total_operations > 0 else 0.0,
            "operations": dict(self.operation_counts),
            "errors": dict(self.error_counts),
            "error_types": dict(self.error_types),
            "retries": dict(self.retry_counts),
            "rows": dict(self.row_counts),
            "latencies": {
                operation: tracker.get_stats()
                for operation, tracker in self.latencies.items()
            },
        }

    def reset(self):
        """Reset all metrics counters."""
        self.latencies.clear()
        self.operation_counts.clear()
        self.error_counts.clear()
        self.error_types.clear()
        self.retry_counts.clear()
        self.row_counts.clear()
        self.start_time = time.time()

    def export_prometheus(self) -> str:
        """
        Export metrics in Prometheus text exposition format.

        Returns:
            Prometheus-formatted metrics string
        """
        prefix = self.service_name
        stats = self.get_stats()
        lines = []

        lines.append(f"# HELP {prefix}_queries_total Total number of queries executed")
        lines.append(f"# TYPE {prefix}_queries_total counter")
        for operation, count in stats["operations"].items():
            lines.append(f'{prefix}_queries_total{{operation="{operation}"}} {count}')

        lines.append(f"# HELP {prefix}_errors_total Total number of failed queries")
        lines.append(f"# TYPE {prefix}_errors_total counter")
        for operation, count in stats["errors"].items():
            lines.append(f'{prefix}_errors_total{{operation="{operation}"}} {count}')

        lines.append(f"# HELP {prefix}_errors_by_type_total Failed queries by error type")
        lines.append(f"# TYPE {prefix}_errors_by_type_total counter")
        for error_type, count in stats["error_types"].items():
            lines.append(f'{prefix}_errors_by_type_total{{error_type="{error_type}"}} {count}')

        lines.append(f"# HELP {prefix}_retries_total Read retries after transient failures")
        lines.append(f"# TYPE {prefix}_retries_total counter")
        for operation, count in stats["retries"].items():
            lines.append(f'{prefix}_retries_total{{operation="{operation}"}} {count}')

        lines.append(f"# HELP {prefix}_rows_total Rows returned or written")
        lines.append(f"# TYPE {prefix}_rows_total counter")
        for operation, count in stats["rows"].items():
            lines.append(f'{prefix}_rows_total{{operation="{operation}"}} {count}')

        lines.append(f"# HELP {prefix}_latency_ms Query latency percentiles in milliseconds")
        lines.append(f"# TYPE {prefix}_latency_ms gauge")
        for operation, latency_stats in stats["latencies"].items():
            for name, value in latency_stats.items():
                if name.startswith('p'):
                    lines.append(
                        f'{prefix}_latency_ms{{operation="{operation}",percentile="{name}"}} {value:.3f}'
                    )

        return "\n".join(lines) + "\n"
