"""
Provider Factory - יצירת ספק WhatsApp לפי הגדרות.

מספק שתי נקודות גישה:
- get_whatsapp_provider() - הודעות שיחה ללקוח
- get_whatsapp_notifications_provider() - התראות סטטוס ותזכורות עגלה (circuit breaker נפרד)
"""
from __future__ import annotations

import threading

from order_bot.core.circuit_breaker import (
    CircuitBreaker,
    get_whatsapp_circuit_breaker,
    get_whatsapp_notifications_circuit_breaker,
)
from order_bot.core.config import settings
from order_bot.core.logging import get_logger
from order_bot.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)

_provider: BaseWhatsAppProvider | None = None
_notifications_provider: BaseWhatsAppProvider | None = None
_lock = threading.Lock()


def _create_provider(provider_type: str, circuit_breaker: CircuitBreaker) -> BaseWhatsAppProvider:
    """יצירת ספק לפי סוג."""
    if provider_type == "wppconnect":
        from order_bot.domain.services.whatsapp.wppconnect_provider import WPPConnectProvider

        return WPPConnectProvider(circuit_breaker=circuit_breaker)

    if provider_type == "pywa":
        from order_bot.domain.services.whatsapp.pywa_provider import PyWaProvider

        return PyWaProvider(circuit_breaker=circuit_breaker)

    raise ValueError(f"Unknown WhatsApp provider type: {provider_type}")


def get_whatsapp_provider() -> BaseWhatsAppProvider:
    """ספק WhatsApp להודעות שיחה."""
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:
                _provider = _create_provider(
                    settings.WHATSAPP_PROVIDER, get_whatsapp_circuit_breaker()
                )
                logger.info(
                    "ספק WhatsApp אותחל",
                    extra_data={"provider": _provider.provider_name, "context": "conversation"},
                )
    return _provider


def get_whatsapp_notifications_provider() -> BaseWhatsAppProvider:
    """ספק WhatsApp להתראות - אותו סוג ספק, circuit breaker נפרד.

    גל של כשלונות בהתראות לא פותח את ה-circuit של השיחות החיות.
    """
    global _notifications_provider
    if _notifications_provider is None:
        with _lock:
            if _notifications_provider is None:
                _notifications_provider = _create_provider(
                    settings.WHATSAPP_PROVIDER, get_whatsapp_notifications_circuit_breaker()
                )
                logger.info(
                    "ספק WhatsApp אותחל",
                    extra_data={
                        "provider": _notifications_provider.provider_name,
                        "context": "notifications",
                    },
                )
    return _notifications_provider


def reset_providers() -> None:
    """איפוס ספקים - לשימוש בבדיקות בלבד."""
    global _provider, _notifications_provider
    with _lock:
        _provider = None
        _notifications_provider = None
