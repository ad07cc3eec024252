"""
Runtime configuration for the checkout and payment flow.

Everything is read from the environment (a local .env is honoured through
python-dotenv). Values are resolved once at import time, the same way the
database and JWT settings are.
"""
import os
from dataclasses import dataclass
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    razorpay_key_id: str
    razorpay_key_secret: str
    razorpay_webhook_secret: str
    razorpay_base_url: str
    razorpay_timeout: float
    currency: str
    min_amount: Decimal
    max_amount: Decimal
    max_retry_attempts: int
    retry_delay_seconds: float
    session_rate_limit: str
    tax_cache_ttl_seconds: float

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
            razorpay_base_url=os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com"),
            razorpay_timeout=float(os.getenv("RAZORPAY_TIMEOUT", "10.0")),
            currency=os.getenv("PAYMENT_CURRENCY", "INR"),
            min_amount=Decimal(os.getenv("PAYMENT_MIN_AMOUNT", "1")),
            max_amount=Decimal(os.getenv("PAYMENT_MAX_AMOUNT", "500000")),
            max_retry_attempts=int(os.getenv("PAYMENT_MAX_RETRY_ATTEMPTS", "3")),
            retry_delay_seconds=float(os.getenv("PAYMENT_RETRY_DELAY_SECONDS", "1.0")),
            session_rate_limit=os.getenv("PAYMENT_SESSION_RATE_LIMIT", "5/minute"),
            tax_cache_ttl_seconds=float(os.getenv("TAX_CACHE_TTL_SECONDS", "300")),
        )

    def validate_gateway(self) -> None:
        """Raises RuntimeError when the gateway credentials are unusable."""
        missing = [
            name
            for name, value in (
                ("RAZORPAY_KEY_ID", self.razorpay_key_id),
                ("RAZORPAY_KEY_SECRET", self.razorpay_key_secret),
                ("RAZORPAY_WEBHOOK_SECRET", self.razorpay_webhook_secret),
            )
            if not value
        ]
        if missing:
            raise RuntimeError(f"Missing payment configuration: {', '.join(missing)}")
        if not self.razorpay_key_id.startswith("rzp_"):
            raise RuntimeError("RAZORPAY_KEY_ID must start with 'rzp_'")


settings = Settings.from_env()
