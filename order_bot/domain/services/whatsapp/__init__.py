"""
WhatsApp Provider Abstraction Layer

שכבת הפשטה לשליחת הודעות WhatsApp.
מאפשרת מעבר בין ספקים (Cloud API / WPPConnect) ללא שינוי בלוגיקת השיחה.
"""
from order_bot.domain.services.whatsapp.base_provider import BaseWhatsAppProvider
from order_bot.domain.services.whatsapp.dispatcher import OutboundDispatcher
from order_bot.domain.services.whatsapp.provider_factory import (
    get_whatsapp_provider,
    get_whatsapp_notifications_provider,
)

__all__ = [
    "BaseWhatsAppProvider",
    "OutboundDispatcher",
    "get_whatsapp_provider",
    "get_whatsapp_notifications_provider",
]
