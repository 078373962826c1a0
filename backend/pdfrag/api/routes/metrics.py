"""Prometheus metrics endpoint."""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint.

    Exposes all registered Prometheus metrics including:
    - rag_query_latency_ms{category, outcome}
    - rag_retry_attempts_total{operation, reason}
    - rag_search_strategy_total{strategy}
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
