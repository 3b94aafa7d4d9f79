"""
Outbound Dispatcher - turns dialogue effects into provider calls.

Sends are best-effort: the session and any order were already committed
before anything here runs, so a failed send is logged and the remaining
messages are still attempted.
"""
from __future__ import annotations

from typing import Iterable

from order_bot.conversation.messages import (
    ButtonMessage,
    ImageMessage,
    ListMessage,
    OutboundMessage,
    TextMessage,
)
from order_bot.core.exceptions import TransientSendFailure
from order_bot.core.logging import get_logger
from order_bot.core.validation import PhoneNumberValidator
from order_bot.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)


class OutboundDispatcher:
    def __init__(self, provider: BaseWhatsAppProvider):
        self.provider = provider

    async def send(self, phone: str, message: OutboundMessage) -> None:
        """Send a single effect. Raises TransientSendFailure on failure."""
        if isinstance(message, TextMessage):
            await self.provider.send_text(phone, message.body)
        elif isinstance(message, ButtonMessage):
            await self.provider.send_buttons(phone, message.body, message.buttons)
        elif isinstance(message, ListMessage):
            await self.provider.send_list(
                phone,
                message.body,
                message.button_text,
                message.sections,
                header=message.header,
                footer=message.footer,
            )
        elif isinstance(message, ImageMessage):
            await self.provider.send_image(phone, message.url, message.caption or None)
        else:
            raise TypeError(f"Unsupported outbound message: {type(message).__name__}")

    async def deliver(self, phone: str, messages: Iterable[OutboundMessage]) -> int:
        """Send effects in order. Returns how many went out."""
        sent = 0
        for message in messages:
            try:
                await self.send(phone, message)
                sent += 1
            except TransientSendFailure as e:
                logger.error(
                    "Failed to deliver WhatsApp message",
                    extra_data={
                        "phone": PhoneNumberValidator.mask(phone),
                        "message_type": type(message).__name__,
                        "provider": self.provider.provider_name,
                        "error": e.message,
                    },
                )
        return sent

    async def mark_read(self, message_id: str) -> bool:
        try:
            await self.provider.mark_read(message_id)
            return True
        except TransientSendFailure as e:
            logger.warning(
                "Failed to mark message as read",
                extra_data={"message_id": message_id, "error": e.message},
            )
            return False
