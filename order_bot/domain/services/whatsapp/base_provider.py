"""
ממשק בסיסי לספק WhatsApp - Dependency Inversion.

כל ספק (Cloud API/pywa, WPPConnect) חייב לממש את הממשק הזה.
מנוע השיחה ושירות ההתראות תלויים רק בממשק ולא במימוש ספציפי.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from order_bot.conversation.messages import Button, ListSection


class BaseWhatsAppProvider(ABC):
    """
    ממשק אחיד לשליחת הודעות WhatsApp.

    כל מימוש אחראי על:
    - שליחת HTTP / SDK
    - retry + circuit breaker
    - נרמול טלפון לפורמט הנדרש ע"י הספק
    - הורדת כפתורים/רשימות לטקסט כשהספק לא תומך בהם
    """

    # ── שליחת הודעות ──

    @abstractmethod
    async def send_text(self, to: str, body: str) -> None:
        """
        שליחת הודעת טקסט.

        Raises:
            WhatsAppError: בכשלון שליחה.
            CircuitBreakerOpenError: כשה-circuit פתוח.
        """

    @abstractmethod
    async def send_buttons(self, to: str, body: str, buttons: Sequence[Button]) -> None:
        """
        שליחת הודעה עם עד 3 כפתורי תשובה.

        Args:
            to: מספר טלפון.
            body: גוף ההודעה.
            buttons: הכפתורים. ה-id חוזר אלינו ב-webhook כשהלקוח לוחץ.
        """

    @abstractmethod
    async def send_list(
        self,
        to: str,
        body: str,
        button_text: str,
        sections: Sequence[ListSection],
        header: Optional[str] = None,
        footer: Optional[str] = None,
    ) -> None:
        """
        שליחת רשימת בחירה (עד 10 שורות בסך הכל).

        Args:
            button_text: הטקסט על הכפתור שפותח את הרשימה.
            sections: קבוצות שורות. id של שורה חוזר ב-webhook.
        """

    @abstractmethod
    async def send_image(self, to: str, url: str, caption: Optional[str] = None) -> None:
        """
        שליחת תמונה מ-URL ציבורי עם כיתוב אופציונלי.

        Raises:
            WhatsAppError: בכשלון שליחה או כש-url ריק.
        """

    @abstractmethod
    async def mark_read(self, message_id: str) -> None:
        """סימון הודעה נכנסת כנקראה (וי כחול)."""

    # ── נרמול טלפון ──

    @abstractmethod
    def normalize_phone(self, phone: str) -> str:
        """
        נרמול מספר טלפון לפורמט הנדרש ע"י הספק.

        לדוגמה: "0712345678" → "255712345678"
        """

    # ── זיהוי ספק ──

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק לשימוש בלוגים ודיאגנוסטיקה."""
