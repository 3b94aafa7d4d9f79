"""
API Routes
"""
from fastapi import APIRouter

from order_bot.api.routes.orders import router as orders_router
from order_bot.api.webhooks.whatsapp import router as whatsapp_webhook_router

router = APIRouter()

router.include_router(whatsapp_webhook_router, prefix="/whatsapp", tags=["Webhooks"])
router.include_router(orders_router, prefix="/whatsapp", tags=["Orders"])

# Backwards-compatible webhook endpoint
router.include_router(
    whatsapp_webhook_router,
    prefix="/webhooks/whatsapp",
    tags=["Webhooks"],
    include_in_schema=False
)
