"""
WPPConnect Provider - מימוש ממשק BaseWhatsAppProvider מעל WPPConnect Gateway.

הגטוויי לא תומך בהודעות אינטראקטיביות, לכן כפתורים ורשימות
מומרים לטקסט ממוספר. הלקוח עונה במספר או ב-id של האפשרות.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Sequence

import httpx

from order_bot.conversation.messages import Button, ListSection
from order_bot.core.circuit_breaker import CircuitBreaker
from order_bot.core.config import settings
from order_bot.core.exceptions import WhatsAppError
from order_bot.core.logging import get_logger
from order_bot.core.validation import PhoneNumberValidator
from order_bot.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)


def buttons_as_text(body: str, buttons: Sequence[Button]) -> str:
    lines = [body, ""]
    for index, button in enumerate(buttons, start=1):
        lines.append(f"{index}. {button.title} ({button.id})")
    lines.append("\nReply with the option id.")
    return "\n".join(lines)


def list_as_text(
    body: str,
    sections: Sequence[ListSection],
    header: Optional[str] = None,
    footer: Optional[str] = None,
) -> str:
    lines = []
    if header:
        lines.append(f"*{header}*\n")
    lines.append(body)
    index = 1
    for section in sections:
        lines.append("")
        if section.title:
            lines.append(f"*{section.title}*")
        for row in section.rows:
            entry = f"{index}. {row.title} ({row.id})"
            if row.description:
                entry += f"\n   {row.description}"
            lines.append(entry)
            index += 1
    if footer:
        lines.append(f"\n_{footer}_")
    lines.append("\nReply with the option id.")
    return "\n".join(lines)


class WPPConnectProvider(BaseWhatsAppProvider):
    """
    מימוש ספק WhatsApp מעל WPPConnect Gateway.

    הגטוויי רץ כ-Node.js service ומספק:
    - POST /send - שליחת טקסט
    - POST /send-media - שליחת מדיה (תמונה)
    """

    def __init__(self, circuit_breaker: CircuitBreaker) -> None:
        self._circuit_breaker = circuit_breaker
        self._gateway_url = settings.WHATSAPP_GATEWAY_URL
        self._max_retries = settings.WHATSAPP_MAX_RETRIES
        self._transient_status_codes = {
            int(code.strip())
            for code in settings.WHATSAPP_TRANSIENT_STATUS_CODES.split(",")
            if code.strip()
        }

    # ── ממשק ציבורי ──

    @property
    def provider_name(self) -> str:
        return "wppconnect"

    def normalize_phone(self, phone: str) -> str:
        if PhoneNumberValidator.validate(phone):
            return PhoneNumberValidator.normalize(phone)
        return phone

    # ── retry helper פנימי ──

    async def _request_with_retry(
        self,
        endpoint: str,
        payload: dict,
        operation_name: str,
    ) -> None:
        """שליחת בקשה לגטוויי עם retry ו-exponential backoff.

        זורק WhatsAppError אם כל הניסיונות נכשלו.
        """
        phone_masked = PhoneNumberValidator.mask(payload.get("phone", ""))

        async with httpx.AsyncClient(timeout=30.0) as client:
            for attempt in range(self._max_retries):
                try:
                    response = await client.post(
                        f"{self._gateway_url}/{endpoint}",
                        json=payload,
                    )
                    if response.status_code == 200:
                        return

                    if (
                        response.status_code in self._transient_status_codes
                        and attempt < self._max_retries - 1
                    ):
                        backoff = 2 ** attempt
                        logger.warning(
                            f"שגיאה זמנית ב-{operation_name}, מנסה שוב",
                            extra_data={
                                "phone": phone_masked,
                                "status_code": response.status_code,
                                "attempt": attempt + 1,
                                "max_retries": self._max_retries,
                                "backoff_seconds": backoff,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue

                    raise WhatsAppError.from_response(
                        endpoint,
                        response,
                        message=f"gateway /{endpoint} returned status {response.status_code}",
                    )
                except httpx.TimeoutException:
                    if attempt < self._max_retries - 1:
                        backoff = 2 ** attempt
                        logger.warning(
                            f"{operation_name} timeout, מנסה שוב",
                            extra_data={
                                "phone": phone_masked,
                                "attempt": attempt + 1,
                                "backoff_seconds": backoff,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise WhatsAppError(
                        message=f"gateway /{endpoint} timeout after retries",
                        details={"timeout": True, "attempts": self._max_retries},
                    )
                except httpx.RequestError as exc:
                    if attempt < self._max_retries - 1:
                        backoff = 2 ** attempt
                        logger.warning(
                            f"שגיאת רשת ב-{operation_name}, מנסה שוב",
                            extra_data={
                                "phone": phone_masked,
                                "error": str(exc),
                                "attempt": attempt + 1,
                                "backoff_seconds": backoff,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise WhatsAppError(
                        message=f"gateway /{endpoint} network error: {str(exc)}",
                        details={"network_error": True, "attempts": self._max_retries},
                    )

    async def _post(self, endpoint: str, payload: dict, operation_name: str) -> None:
        async def _send() -> None:
            await self._request_with_retry(endpoint, payload, operation_name)

        await self._circuit_breaker.execute(_send)

    # ── שליחת הודעות ──

    async def send_text(self, to: str, body: str) -> None:
        payload = {"phone": self.normalize_phone(to), "message": body}
        await self._post("send", payload, "שליחת WhatsApp")

    async def send_buttons(self, to: str, body: str, buttons: Sequence[Button]) -> None:
        await self.send_text(to, buttons_as_text(body, buttons))

    async def send_list(
        self,
        to: str,
        body: str,
        button_text: str,
        sections: Sequence[ListSection],
        header: Optional[str] = None,
        footer: Optional[str] = None,
    ) -> None:
        await self.send_text(to, list_as_text(body, sections, header, footer))

    async def send_image(self, to: str, url: str, caption: Optional[str] = None) -> None:
        if not url:
            raise WhatsAppError(
                message="No image url to send",
                details={"phone": PhoneNumberValidator.mask(to)},
            )

        payload: dict = {
            "phone": self.normalize_phone(to),
            "media_url": url,
            "media_type": "image",
        }
        if caption:
            payload["caption"] = caption
        await self._post("send-media", payload, "שליחת מדיה WhatsApp")

    async def mark_read(self, message_id: str) -> None:
        # הגטוויי מסמן הודעות כנקראו בעצמו
        logger.debug(
            "mark_read not supported by gateway, skipping",
            extra_data={"message_id": message_id},
        )
