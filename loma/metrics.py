"""Prometheus counters for API, cache and mutation activity."""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


API_FAILURES = _get_or_create_metric(
    Counter,
    "loma_api_failures_total",
    "API calls that failed or returned a non-success status",
    ("reason",),
)

QUERY_CACHE_EVENTS = _get_or_create_metric(
    Counter,
    "loma_query_cache_events_total",
    "Query cache hits, misses, shared in-flight reads and discarded results",
    ("event",),
)

MUTATIONS = _get_or_create_metric(
    Counter,
    "loma_mutations_total",
    "Workflow mutations by outcome",
    ("mutation", "outcome"),
)


__all__ = ["API_FAILURES", "QUERY_CACHE_EVENTS", "MUTATIONS"]
