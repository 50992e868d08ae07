"""
Prometheus Metrics Definitions

This module defines all application metrics.
Import metrics from here to use them in other modules.
Separated from routers to avoid circular imports.
"""
from prometheus_client import Counter, Histogram, Gauge

# =============================================================================
# Ingestion Metrics
# =============================================================================

ALERTS_RECEIVED = Counter(
    'alert_engine_alerts_received_total',
    'Total number of normalized alert events received',
    ['source', 'severity']
)

ALERTS_DEDUPLICATED = Counter(
    'alert_engine_alerts_deduplicated_total',
    'Alert events by dedup outcome',
    ['outcome']  # created, merged, reopened, duplicate
)

INGEST_DURATION = Histogram(
    'alert_engine_ingest_duration_seconds',
    'Time spent processing one alert event end to end',
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
)

INGEST_ERRORS = Counter(
    'alert_engine_ingest_errors_total',
    'Alert events that failed processing',
    ['stage']  # validation, dedup, routing, dispatch, escalation
)

# =============================================================================
# Routing Metrics
# =============================================================================

ALERTS_ROUTED = Counter(
    'alert_engine_alerts_routed_total',
    'Alert groups by routing outcome',
    ['status']  # routed, unrouted
)

RULE_EVALUATION_DURATION = Histogram(
    'alert_engine_rule_evaluation_duration_seconds',
    'Time spent evaluating a workspace rule set against one alert',
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1]
)

RULE_CACHE_EVENTS = Counter(
    'alert_engine_rule_cache_events_total',
    'Rule cache lookups and invalidations',
    ['event']  # hit, miss, invalidate
)

CONDITION_EVALUATION_ERRORS = Counter(
    'alert_engine_condition_evaluation_errors_total',
    'Conditions that failed closed during evaluation',
    ['reason']  # invalid_regex, not_numeric, unknown_field, unknown_operator
)

# =============================================================================
# Correlation Metrics
# =============================================================================

CORRELATIONS_RECORDED = Counter(
    'alert_engine_correlations_recorded_total',
    'Correlation links recorded',
    ['root_cause']  # yes, no
)

CORRELATION_FAILURES = Counter(
    'alert_engine_correlation_failures_total',
    'Correlation runs that failed and were ignored'
)

# =============================================================================
# Notification & Escalation Metrics
# =============================================================================

NOTIFICATIONS_DISPATCHED = Counter(
    'alert_engine_notifications_dispatched_total',
    'Notification dispatch attempts',
    ['kind', 'status']  # kind: initial, escalation; status: success, failed
)

DISPATCH_DURATION = Histogram(
    'alert_engine_dispatch_duration_seconds',
    'Time spent in notification adapters',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

ESCALATIONS = Counter(
    'alert_engine_escalations_total',
    'Escalation job transitions',
    ['transition']  # scheduled, fired, cancelled, superseded, deferred
)

PENDING_ESCALATIONS = Gauge(
    'alert_engine_pending_escalations',
    'Escalation jobs currently scheduled to fire'
)

AUTO_CLOSED = Counter(
    'alert_engine_auto_closed_total',
    'Alert groups resolved by the inactivity sweep'
)
