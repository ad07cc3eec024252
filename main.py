from contextlib import asynccontextmanager

import structlog
from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI
from slowapi.errors import RateLimitExceeded

from shared.config.database import create_all
from shared.config.settings import settings
from shared.observability import setup_observability
from shared.security import limiter, rate_limit_exceeded_handler

# IMPORTANT: import models so they register with Base
from services.product_service import models as product_models  # noqa: F401
from services.cart_service import models as cart_models  # noqa: F401
from services.order_service import models as order_models  # noqa: F401
from services.payment_service import models as payment_models  # noqa: F401
from shared.security import audit  # noqa: F401

from services.product_service.router import router as product_router, public_router as product_public_router
from services.cart_service.router import router as cart_router
from services.order_service.router import router as order_router
from services.payment_service.router import router as payment_router
from services.payment_service.gateway import RazorpayGateway

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_gateway()
    await create_all()
    app.state.gateway = RazorpayGateway.from_settings(settings)
    logger.info("service_started", currency=settings.currency)
    yield
    await app.state.gateway.aclose()


def create_app() -> FastAPI:
    app = FastAPI(title="Ecommerce Checkout", version="1.0.0", lifespan=lifespan)

    # --- OBSERVABILITY BOOTSTRAP ---
    setup_observability(app, "checkout_service")

    # --- SECURITY SETUP ---
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.get("/health", include_in_schema=False)
    async def health_check():
        return {"service": "checkout", "status": "running"}

    app.include_router(product_public_router, prefix="/products", tags=["products"])
    app.include_router(product_router, prefix="/products", tags=["products"])
    app.include_router(cart_router, prefix="/cart", tags=["cart"])
    app.include_router(order_router, prefix="/orders", tags=["orders"])
    app.include_router(payment_router, prefix="/payments", tags=["payments"])
    return app


app = create_app()
