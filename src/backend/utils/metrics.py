"""
Prometheus metrics configuration for Agent Workbench.

Defines custom metrics and instrumentation logic.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Use standard Prometheus naming conventions: namespace_subsystem_name_unit
NAMESPACE = "agentworkbench"

# ============================================================================
# Completion Metrics
# ============================================================================

completion_tokens_total = Counter(
    f"{NAMESPACE}_completion_tokens_total",
    "Total tokens consumed by agent test runs",
    ["model", "type"],  # type values: "prompt", "completion"
)

completion_requests_total = Counter(
    f"{NAMESPACE}_completion_requests_total",
    "Agent test runs by mode and outcome",
    ["mode", "outcome"],  # mode: "stream", "complete"; outcome: terminal state or error kind
)

upstream_call_duration_seconds = Histogram(
    f"{NAMESPACE}_upstream_call_duration_seconds",
    "Upstream completion call duration in seconds",
    ["mode"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

streams_active = Gauge(
    f"{NAMESPACE}_streams_active",
    "Number of streaming relays currently open",
)


# ============================================================================
# Rate Limit Metrics
# ============================================================================

rate_limit_rejections_total = Counter(
    f"{NAMESPACE}_rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["identity_kind"],  # "user" or "ip"
)


# ============================================================================
# Cache Metrics
# ============================================================================

cache_evictions_total = Counter(
    f"{NAMESPACE}_cache_evictions_total",
    "Entries evicted from bounded caches",
    ["cache"],
)

cache_expired_total = Counter(
    f"{NAMESPACE}_cache_expired_total",
    "Entries removed by background expiry sweeps",
    ["cache"],
)
