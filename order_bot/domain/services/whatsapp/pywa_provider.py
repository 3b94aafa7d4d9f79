"""
PyWa Provider - מימוש ממשק BaseWhatsAppProvider מעל Cloud API (Meta).

משתמש בספריית pywa לשליחת הודעות דרך WhatsApp Cloud API.
תומך בכפתורי reply, רשימות בחירה, תמונות, ו-retry עם circuit breaker.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Sequence

from order_bot.conversation.messages import Button, ListSection
from order_bot.core.circuit_breaker import CircuitBreaker
from order_bot.core.config import settings
from order_bot.core.exceptions import WhatsAppError
from order_bot.core.logging import get_logger
from order_bot.core.validation import PhoneNumberValidator
from order_bot.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)

# מגבלות Cloud API
BUTTON_TITLE_MAX = 20
ROW_TITLE_MAX = 24
ROW_DESCRIPTION_MAX = 72
SECTION_TITLE_MAX = 24
LIST_BUTTON_MAX = 20
HEADER_MAX = 60
FOOTER_MAX = 60
CAPTION_MAX = 1024
CALLBACK_DATA_MAX = 200


def _clip(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    return text if len(text) <= limit else text[: limit - 1] + "…"


class PyWaProvider(BaseWhatsAppProvider):
    """
    מימוש ספק WhatsApp מעל Cloud API (Meta) באמצעות ספריית pywa.

    כל שליחה עוברת retry עם exponential backoff בתוך circuit breaker.
    """

    def __init__(self, circuit_breaker: CircuitBreaker) -> None:
        self._circuit_breaker = circuit_breaker
        self._max_retries = settings.WHATSAPP_MAX_RETRIES

        # אתחול עצלן - נטען רק כשנדרש, מונע import errors בבדיקות
        self._client = None

    def _get_client(self):
        """אתחול עצלן של pywa client."""
        if self._client is None:
            from pywa_async import WhatsApp as PyWaClient

            self._client = PyWaClient(
                phone_id=settings.WHATSAPP_CLOUD_API_PHONE_ID,
                token=settings.WHATSAPP_CLOUD_API_TOKEN,
            )
        return self._client

    # ── ממשק ציבורי ──

    @property
    def provider_name(self) -> str:
        return "pywa"

    def normalize_phone(self, phone: str) -> str:
        """Cloud API רוצה 255712345678 ולא +255712345678"""
        if PhoneNumberValidator.validate(phone):
            return PhoneNumberValidator.normalize(phone)
        return phone

    # ── retry helper פנימי ──

    async def _execute_with_retry(self, operation: str, phone_masked: str, func) -> None:
        """הרצה עם retry ו-exponential backoff.

        זורק WhatsAppError אם כל הניסיונות נכשלו.
        """
        last_error: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                await func()
                return
            except Exception as exc:
                last_error = exc
                if attempt < self._max_retries - 1:
                    backoff = 2 ** attempt
                    logger.warning(
                        f"שגיאה ב-{operation}, מנסה שוב",
                        extra_data={
                            "phone": phone_masked,
                            "error": str(exc),
                            "attempt": attempt + 1,
                            "max_retries": self._max_retries,
                            "backoff_seconds": backoff,
                        },
                    )
                    await asyncio.sleep(backoff)

        raise WhatsAppError(
            message=f"Cloud API {operation} failed after {self._max_retries} attempts",
            details={
                "phone": phone_masked,
                "error": str(last_error),
                "attempts": self._max_retries,
            },
        )

    async def _send(self, operation: str, to: str, send_single) -> None:
        phone_masked = PhoneNumberValidator.mask(to)

        async def _send_with_retry() -> None:
            await self._execute_with_retry(operation, phone_masked, send_single)

        await self._circuit_breaker.execute(_send_with_retry)

    # ── בניית אובייקטי pywa ──

    @staticmethod
    def _build_buttons(buttons: Sequence[Button]):
        from pywa import types as pywa_types

        return [
            pywa_types.Button(
                title=_clip(button.title, BUTTON_TITLE_MAX),
                callback_data=button.id[:CALLBACK_DATA_MAX],
            )
            for button in buttons
        ]

    @staticmethod
    def _build_section_list(button_text: str, sections: Sequence[ListSection]):
        from pywa import types as pywa_types

        return pywa_types.SectionList(
            button_title=_clip(button_text, LIST_BUTTON_MAX),
            sections=[
                pywa_types.Section(
                    title=_clip(section.title or "Options", SECTION_TITLE_MAX),
                    rows=[
                        pywa_types.SectionRow(
                            title=_clip(row.title, ROW_TITLE_MAX),
                            callback_data=row.id[:CALLBACK_DATA_MAX],
                            description=_clip(row.description, ROW_DESCRIPTION_MAX) or None,
                        )
                        for row in section.rows
                    ],
                )
                for section in sections
            ],
        )

    # ── שליחת הודעות ──

    async def send_text(self, to: str, body: str) -> None:
        to = self.normalize_phone(to)
        client = self._get_client()

        async def _send_single() -> None:
            await client.send_message(to=to, text=body)

        await self._send("send_text", to, _send_single)

    async def send_buttons(self, to: str, body: str, buttons: Sequence[Button]) -> None:
        to = self.normalize_phone(to)
        client = self._get_client()
        pywa_buttons = self._build_buttons(buttons)

        async def _send_single() -> None:
            await client.send_message(to=to, text=body, buttons=pywa_buttons)

        await self._send("send_buttons", to, _send_single)

    async def send_list(
        self,
        to: str,
        body: str,
        button_text: str,
        sections: Sequence[ListSection],
        header: Optional[str] = None,
        footer: Optional[str] = None,
    ) -> None:
        to = self.normalize_phone(to)
        client = self._get_client()
        section_list = self._build_section_list(button_text, sections)

        async def _send_single() -> None:
            await client.send_message(
                to=to,
                text=body,
                header=_clip(header, HEADER_MAX),
                footer=_clip(footer, FOOTER_MAX),
                buttons=section_list,
            )

        await self._send("send_list", to, _send_single)

    async def send_image(self, to: str, url: str, caption: Optional[str] = None) -> None:
        """זורק WhatsAppError בכשלון - הקורא אחראי על טיפול בשגיאות."""
        if not url:
            raise WhatsAppError(
                message="No image url to send",
                details={"phone": PhoneNumberValidator.mask(to)},
            )

        to = self.normalize_phone(to)
        client = self._get_client()
        clipped_caption = _clip(caption, CAPTION_MAX)

        async def _send_single() -> None:
            await client.send_image(to=to, image=url, caption=clipped_caption)

        await self._send("send_image", to, _send_single)

    async def mark_read(self, message_id: str) -> None:
        client = self._get_client()

        async def _mark() -> None:
            await client.mark_message_as_read(message_id=message_id)

        # קבלת קריאה - ניסיון יחיד, בלי retry
        await self._circuit_breaker.execute(_mark)
