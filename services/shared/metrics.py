"""
Prometheus metrics for the payment service.

Exposed by the /metrics route via prometheus_client.generate_latest().
"""

from prometheus_client import Counter, Gauge, Histogram

# Webhooks
webhook_events_total = Counter(
    "payments_webhook_events_total",
    "Webhook events received",
    ["event_type", "result"],  # processed | duplicate | failed | ignored | rejected
)

webhook_processing_seconds = Histogram(
    "payments_webhook_processing_seconds",
    "Time spent handling a verified webhook event",
    ["event_type"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

dedup_cache_size = Gauge(
    "payments_dedup_cache_size",
    "Event ids currently held by the dedup cache",
)

# Side effects
provisioning_failures_total = Counter(
    "payments_provisioning_failures_total",
    "Project provisioning calls that failed after the invoice was paid",
    ["shape"],  # modules | legacy_modules | single
)

notification_failures_total = Counter(
    "payments_notification_failures_total",
    "Best-effort calls that raised and were swallowed",
    ["label"],
)

# HTTP request metrics
http_request_duration_seconds = Histogram(
    "payments_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path_template", "status_code"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

http_requests_total = Counter(
    "payments_http_requests_total",
    "Total HTTP requests",
    ["method", "path_template", "status_code"],
)
