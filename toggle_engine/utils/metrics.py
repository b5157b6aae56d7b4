"""Prometheus metrics for the feature toggle engine.

All metric objects are defined at import time. None of them are touched on
the ``is_feature_enabled`` read path.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

feature_toggle_updates_total = Counter(
    "feature_toggle_updates_total",
    "Published feature updates",
    ["source"],
)
feature_toggle_refresh_total = Counter(
    "feature_toggle_refresh_total",
    "Remote configuration refresh attempts",
    ["status"],
)
feature_toggle_refresh_duration_seconds = Histogram(
    "feature_toggle_refresh_duration_seconds",
    "Remote configuration fetch and merge duration",
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0],
)
feature_toggle_subscriber_drops_total = Counter(
    "feature_toggle_subscriber_drops_total",
    "Feature updates dropped because a subscriber buffer was full",
)
feature_toggle_dependency_cycles_total = Counter(
    "feature_toggle_dependency_cycles_total",
    "Distinct dependency cycles detected during evaluation",
)
feature_toggle_usage_events_total = Counter(
    "feature_toggle_usage_events_total",
    "Feature usage events forwarded to analytics",
    ["status"],
)
