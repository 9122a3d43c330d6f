"""
Prometheus metrics for triage throughput, stage latency and degradation.

Counters that carry a `reason` or `outcome` label are the ones to alert on:
a rising `llm_fallbacks_total` means replies are being templated.
"""
import asyncio
import time
from functools import wraps
from typing import Any, Callable, Optional, Sequence

from prometheus_client import Counter, Gauge, Histogram, Info, REGISTRY

from inbox_triage.config import settings


def get_or_create_metric(metric_type, name: str, documentation: str, labels: Sequence[str] = (), **kwargs):
    """Register a metric, replacing any collector left from a module reload."""
    existing = getattr(REGISTRY, "_names_to_collectors", {}).get(name)
    if existing is not None:
        REGISTRY.unregister(existing)
    return metric_type(name, documentation, list(labels), **kwargs)


def _counter(name: str, documentation: str, *labels: str) -> Counter:
    return get_or_create_metric(Counter, name, documentation, labels)


def _histogram(name: str, documentation: str, *labels: str, buckets=Histogram.DEFAULT_BUCKETS) -> Histogram:
    return get_or_create_metric(Histogram, name, documentation, labels, buckets=buckets)


def _gauge(name: str, documentation: str, *labels: str) -> Gauge:
    return get_or_create_metric(Gauge, name, documentation, labels)


LLM_BUCKETS = (0.25, 0.5, 1, 2, 4, 8, 16, 32)

app_info = get_or_create_metric(Info, "inbox_triage", "Inbox triage build information")
app_info.info({
    "version": "1.0.0",
    "environment": settings.environment,
    "model_provider": settings.model_provider,
})

# --- HTTP ---
http_requests_total = _counter("http_requests_total", "HTTP requests", "method", "endpoint", "status_code")
http_request_duration_seconds = _histogram("http_request_duration_seconds", "HTTP latency", "method", "endpoint")
active_requests = _gauge("active_requests", "Requests in flight")

# --- Triage runs ---
# status: completed, failed, filtered, duplicate
triage_runs_total = _counter("triage_runs_total", "Triage runs by outcome", "status")
triage_duration_seconds = _histogram(
    "triage_duration_seconds", "End-to-end triage latency", "status", buckets=LLM_BUCKETS
)
emails_classified_total = _counter("emails_classified_total", "Classified emails", "priority", "category")
prefilter_decisions_total = _counter("prefilter_decisions_total", "Pre-filter verdicts", "category", "should_process")
dedup_hits_total = _counter("dedup_hits_total", "Emails skipped as recently processed")

# --- Graph nodes ---
graph_node_duration_seconds = _histogram("graph_node_duration_seconds", "Node latency", "node_name")
graph_node_executions_total = _counter("graph_node_executions_total", "Node executions", "node_name")

# --- Agents ---
llm_requests_total = _counter("llm_requests_total", "Chat model calls", "agent", "provider")
# reason: error, parse, unavailable
llm_fallbacks_total = _counter("llm_fallbacks_total", "Agent outputs replaced by a fallback", "agent", "reason")

# --- Retrieval ---
retrieval_queries_total = _counter("retrieval_queries_total", "Vector queries", "namespace")
retrieval_failures_total = _counter("retrieval_failures_total", "Vector queries that raised", "namespace")
retrieval_duration_seconds = _histogram("retrieval_duration_seconds", "Vector query latency")
# outcome: stored, failed
pattern_writes_total = _counter("pattern_writes_total", "Documents written to the index", "namespace", "outcome")

# --- Events and snoozes ---
events_published_total = _counter("events_published_total", "Events published", "event")
event_handler_errors_total = _counter("event_handler_errors_total", "Event handlers that raised", "event")
active_snoozes = _gauge("active_snoozes", "Emails currently snoozed")


def track_time(metric: Histogram, labels: Optional[dict[str, str]] = None):
    """Observe the wall time of a sync or async callable on `metric`."""
    target = metric.labels(**labels) if labels else metric

    def decorator(func: Callable) -> Callable:
        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs) -> Any:
                start = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    target.observe(time.perf_counter() - start)
            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                target.observe(time.perf_counter() - start)
        return sync_wrapper

    return decorator
