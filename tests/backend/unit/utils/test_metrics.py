"""Tests for Prometheus metrics module.

Tests metric creation, labeling, and observation.
"""

from __future__ import annotations

from prometheus_client import REGISTRY

from utils.metrics import (
    NAMESPACE,
    cache_evictions_total,
    cache_expired_total,
    completion_requests_total,
    completion_tokens_total,
    rate_limit_rejections_total,
    streams_active,
    upstream_call_duration_seconds,
)


class TestMetricsNamespace:
    """Test namespace configuration."""

    def test_namespace(self) -> None:
        assert NAMESPACE == "agentworkbench"


class TestCompletionMetrics:
    """Test agent test run metrics."""

    def test_labels(self) -> None:
        assert completion_tokens_total._labelnames == ("model", "type")
        assert completion_requests_total._labelnames == ("mode", "outcome")
        assert upstream_call_duration_seconds._labelnames == ("mode",)

    def test_tokens_can_increment(self) -> None:
        labels = {"model": "gpt-4o-mini", "type": "prompt"}
        before = REGISTRY.get_sample_value(f"{NAMESPACE}_completion_tokens_total", labels) or 0.0

        completion_tokens_total.labels(**labels).inc(12)

        assert REGISTRY.get_sample_value(f"{NAMESPACE}_completion_tokens_total", labels) == before + 12

    def test_upstream_duration_can_observe(self) -> None:
        upstream_call_duration_seconds.labels(mode="stream").observe(0.25)

    def test_streams_active_gauge(self) -> None:
        before = REGISTRY.get_sample_value(f"{NAMESPACE}_streams_active") or 0.0

        streams_active.inc()
        assert REGISTRY.get_sample_value(f"{NAMESPACE}_streams_active") == before + 1
        streams_active.dec()
        assert REGISTRY.get_sample_value(f"{NAMESPACE}_streams_active") == before


class TestRateLimitAndCacheMetrics:
    def test_rejections_labelled_by_identity_kind(self) -> None:
        assert rate_limit_rejections_total._labelnames == ("identity_kind",)
        rate_limit_rejections_total.labels(identity_kind="ip").inc()

    def test_cache_counters(self) -> None:
        assert cache_evictions_total._labelnames == ("cache",)
        assert cache_expired_total._labelnames == ("cache",)
        cache_evictions_total.labels(cache="agent").inc()
        cache_expired_total.labels(cache="agent").inc(3)
