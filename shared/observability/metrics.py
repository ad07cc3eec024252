from prometheus_client import Counter, Histogram

# Business Metrics
ecomm_orders_created_total = Counter(
    "ecomm_orders_created_total",
    "Order intake attempts",
    ["status"]  # Labels: 'created', 'rejected'
)

ecomm_checkout_duration_seconds = Histogram(
    "ecomm_checkout_duration_seconds",
    "Order intake duration in seconds"
)

ecomm_payment_sessions_total = Counter(
    "ecomm_payment_sessions_total",
    "Payment sessions requested",
    ["outcome"]  # Labels: 'created', 'reused', 'failed'
)

ecomm_payment_verifications_total = Counter(
    "ecomm_payment_verifications_total",
    "Payment reconciliation outcomes",
    ["source", "outcome"]  # source='client'|'webhook'
)

ecomm_webhook_events_total = Counter(
    "ecomm_webhook_events_total",
    "Verified webhook events received",
    ["event_type"]
)

ecomm_gateway_retries_total = Counter(
    "ecomm_gateway_retries_total",
    "Retried payment gateway calls"
)

ecomm_security_events_total = Counter(
    "ecomm_security_events_total",
    "Security events recorded",
    ["severity"]
)
