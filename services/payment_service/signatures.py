"""Gateway signature checks, delegated to the Razorpay SDK."""
import hashlib
from functools import lru_cache

import razorpay

# compare_digest raises TypeError for non-ASCII input; that is a mismatch too
_REJECTED = (razorpay.errors.SignatureVerificationError, TypeError)


@lru_cache(maxsize=8)
def _utility(secret: str):
    # The SDK signs payment callbacks with the secret half of the client's auth pair
    return razorpay.Client(auth=("", secret)).utility


def verify_payment_signature(
    gateway_order_id: str, gateway_payment_id: str, signature: str | None, secret: str
) -> bool:
    if not signature:
        return False
    try:
        return bool(
            _utility(secret).verify_payment_signature(
                {
                    "razorpay_order_id": gateway_order_id,
                    "razorpay_payment_id": gateway_payment_id,
                    "razorpay_signature": signature,
                }
            )
        )
    except _REJECTED:
        return False


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Checks the header against the raw, unparsed request body."""
    if not signature:
        return False
    try:
        body = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return False
    try:
        return bool(_utility(secret).verify_webhook_signature(body, signature, secret))
    except _REJECTED:
        return False


def idempotency_key(user_id: str, order_id: int, amount, timestamp_ms: int) -> str:
    return hashlib.sha256(f"{user_id}-{order_id}-{amount}-{timestamp_ms}".encode("utf-8")).hexdigest()
