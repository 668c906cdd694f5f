"""
Metrics tracking utilities
"""
from typing import Any, Dict, Optional

from prometheus_client import Counter, Histogram, Gauge
import structlog

logger = structlog.get_logger()

# HTTP metrics
request_counter = Counter(
    'field_copilot_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'field_copilot_request_duration_seconds',
    'HTTP request duration',
    ['method', 'endpoint']
)

active_connections = Gauge(
    'field_copilot_active_connections',
    'Number of active connections'
)

# Orchestration metrics
orchestration_counter = Counter(
    'field_copilot_orchestrations_total',
    'Orchestration attempts by outcome',
    ['outcome']
)

orchestration_latency = Histogram(
    'field_copilot_orchestration_latency_seconds',
    'Time from prompt build to parsed answer',
    buckets=[0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 20.0, 30.0]
)

citation_count = Histogram(
    'field_copilot_citations_per_answer',
    'Number of citations returned per answer',
    buckets=[0, 1, 2, 3, 5, 8, 13]
)

stream_delta_counter = Counter(
    'field_copilot_stream_deltas_total',
    'Delta frames sent to streaming clients'
)

token_counter = Counter(
    'field_copilot_model_tokens_total',
    'Model token usage',
    ['model', 'kind']
)


def track_orchestration(outcome: str, latency_ms: Optional[float] = None):
    """Track a finished orchestration"""
    orchestration_counter.labels(outcome=outcome).inc()
    if latency_ms is not None:
        orchestration_latency.observe(latency_ms / 1000.0)


def track_citations(count: int):
    """Track citations attached to an answer"""
    citation_count.observe(count)


def track_token_usage(usage: Optional[Dict[str, Any]], model: str = "unknown"):
    """Track token usage reported by the model backend"""
    if not usage:
        return
    for kind in ("prompt_tokens", "completion_tokens"):
        tokens = usage.get(kind)
        if isinstance(tokens, int) and tokens > 0:
            token_counter.labels(model=model, kind=kind).inc(tokens)
    logger.debug("Tokens used", model=model, usage=usage)


def track_stream_delta():
    """Track one delta frame sent to a client"""
    stream_delta_counter.inc()
