"""
WhatsApp Order Bot - FastAPI application

Routes: the WhatsApp webhook (``/api/whatsapp/webhook``), the order admin API
(``/api/whatsapp/orders...``) and ``/health``. Periodic work (abandoned cart
reminders, webhook table cleanup) runs in Celery, see ``order_bot.workers``.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from order_bot.api.routes import router as api_router
from order_bot.core.config import settings
from order_bot.core.logging import get_logger, setup_logging
from order_bot.core.middleware import setup_exception_handlers, setup_middleware
from order_bot.db.database import engine, init_db

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME,
)

logger = get_logger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Conversational ordering over WhatsApp: catalog, cart, checkout, tracking and ratings.",
    openapi_tags=[
        {"name": "Webhooks", "description": "WhatsApp Cloud API webhook: verification and inbound messages."},
        {"name": "Orders", "description": "Order administration, statistics and quick-order links."},
        {"name": "Health", "description": "Liveness probe."},
    ],
)

setup_middleware(app)
setup_exception_handlers(app)

# ריק = בלי CORS בכלל (ה-webhook לא צריך, רק פאנל ניהול חיצוני)
_cors_origins = [origin.strip() for origin in settings.ALLOWED_ORIGINS.split(",") if origin.strip()]
if _cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    logger.info(
        "Order bot starting",
        extra_data={"whatsapp_provider": settings.WHATSAPP_PROVIDER, "currency": settings.CURRENCY},
    )
    await init_db()


@app.on_event("shutdown")
async def shutdown() -> None:
    from order_bot.core.redis_client import close_redis

    await close_redis()
    # שחרור ה-connection pool של ה-DB
    await engine.dispose()
    logger.info("Order bot stopped")


@app.get("/health", summary="Liveness probe", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Process is up. Does not touch the database or Redis."""
    return {"status": "healthy"}
