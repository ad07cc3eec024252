from .setup import setup_observability, configure_logging
from .metrics import (
    ecomm_orders_created_total,
    ecomm_checkout_duration_seconds,
    ecomm_payment_sessions_total,
    ecomm_payment_verifications_total,
    ecomm_webhook_events_total,
    ecomm_gateway_retries_total,
    ecomm_security_events_total,
)
