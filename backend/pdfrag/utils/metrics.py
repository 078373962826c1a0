"""Prometheus metrics and in-process query performance tracking."""

from prometheus_client import Counter, Histogram

from backend.pdfrag.models.answer import PerformanceSnapshot

rag_query_latency_ms = Histogram(
    "rag_query_latency_ms",
    "End-to-end query latency in milliseconds",
    ["category", "outcome"],
    buckets=[100, 250, 500, 1000, 2000, 4000, 8000, 16000, 32000],
)

rag_queries_total = Counter(
    "rag_queries_total",
    "Total queries answered",
    ["category", "outcome"],
)

rag_retry_attempts_total = Counter(
    "rag_retry_attempts_total",
    "Retries of transient provider failures",
    ["operation", "reason"],
)

rag_embedding_fallbacks_total = Counter(
    "rag_embedding_fallbacks_total",
    "Inputs replaced by a zero vector after exhausting retries",
)

rag_dimension_adjustments_total = Counter(
    "rag_dimension_adjustments_total",
    "Embeddings padded or truncated to the configured dimension",
    ["kind"],
)

rag_search_strategy_total = Counter(
    "rag_search_strategy_total",
    "Searches answered per strategy",
    ["strategy"],
)

rag_ingested_chunks_total = Counter(
    "rag_ingested_chunks_total",
    "Chunks embedded and stored",
)


class RagMetrics:
    """No-op metrics interface."""

    def inc_retry(self, operation: str, reason: str) -> None:
        pass

    def inc_embedding_fallback(self, count: int = 1) -> None:
        pass

    def inc_dimension_adjustment(self, kind: str) -> None:
        pass

    def inc_search_strategy(self, strategy: str) -> None:
        pass

    def inc_ingested_chunks(self, count: int) -> None:
        pass

    def record_query(self, category: str, outcome: str, latency_ms: float) -> None:
        pass


class PrometheusRagMetrics(RagMetrics):
    """Prometheus-based metrics implementation."""

    def inc_retry(self, operation: str, reason: str) -> None:
        rag_retry_attempts_total.labels(operation=operation, reason=reason).inc()

    def inc_embedding_fallback(self, count: int = 1) -> None:
        rag_embedding_fallbacks_total.inc(count)

    def inc_dimension_adjustment(self, kind: str) -> None:
        rag_dimension_adjustments_total.labels(kind=kind).inc()

    def inc_search_strategy(self, strategy: str) -> None:
        rag_search_strategy_total.labels(strategy=strategy).inc()

    def inc_ingested_chunks(self, count: int) -> None:
        rag_ingested_chunks_total.inc(count)

    def record_query(self, category: str, outcome: str, latency_ms: float) -> None:
        rag_queries_total.labels(category=category, outcome=outcome).inc()
        rag_query_latency_ms.labels(category=category, outcome=outcome).observe(latency_ms)


class PerformanceTracker:
    """Running query counters for one service, mirrored to RagMetrics."""

    def __init__(self, metrics: RagMetrics | None = None) -> None:
        self._metrics = metrics or RagMetrics()
        self._snapshot = PerformanceSnapshot()

    def record_query(
        self, *, category: str, latency_ms: float, success: bool, citations: int = 0
    ) -> None:
        """Record one finished query, successful or not."""
        snap = self._snapshot
        snap.queries += 1
        snap.total_response_time_ms += latency_ms
        snap.average_response_time_ms = snap.total_response_time_ms / snap.queries
        if success:
            snap.successful_queries += 1
            snap.document_citations += citations
        else:
            snap.failed_queries += 1
        snap.query_types[category] = snap.query_types.get(category, 0) + 1

        self._metrics.record_query(category, "success" if success else "error", latency_ms)

    def snapshot(self) -> PerformanceSnapshot:
        return self._snapshot.model_copy(deep=True)

    def reset(self) -> None:
        self._snapshot = PerformanceSnapshot()
