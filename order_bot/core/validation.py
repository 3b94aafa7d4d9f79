"""
Input Validation Utilities

Phone number normalization/masking and sanitization of free text typed by
customers (search queries, delivery addresses, feedback).
"""
import re


class ValidationPatterns:
    """Regex patterns for validation"""

    # WhatsApp wa_id: ספרות בלבד, קוד מדינה בלי +
    WA_ID = re.compile(r"^[1-9]\d{6,14}$")

    # Tanzania local format: 0XXXXXXXXX
    PHONE_TANZANIA_LOCAL = re.compile(r"^0[67]\d{8}$")

    # Script injection patterns
    XSS_PATTERNS = [
        re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
        re.compile(r"javascript:", re.IGNORECASE),
        re.compile(r"\bon\w+=", re.IGNORECASE),
        re.compile(r"<iframe", re.IGNORECASE),
    ]


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    DEFAULT_COUNTRY_CODE = "255"

    @staticmethod
    def validate(phone: str) -> bool:
        """True if the value normalizes to a plausible WhatsApp id."""
        if not phone:
            return False
        return bool(ValidationPatterns.WA_ID.match(PhoneNumberValidator.normalize(phone)))

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Normalize phone number to the WhatsApp wa_id format (digits only,
        country code included, no leading +).

        Local Tanzanian numbers (07XXXXXXXX / 06XXXXXXXX) get the 255 prefix.
        """
        if not phone:
            return ""
        cleaned = re.sub(r"\D", "", phone)
        if cleaned.startswith("00"):
            cleaned = cleaned[2:]
        if ValidationPatterns.PHONE_TANZANIA_LOCAL.match(cleaned):
            cleaned = PhoneNumberValidator.DEFAULT_COUNTRY_CODE + cleaned[1:]
        return cleaned

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., 25571234****)
        """
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    """Text sanitization for security"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Sanitize text input for safe storage.

        Trims whitespace, enforces max length, removes null bytes and control
        characters, collapses repeated spaces. Does not HTML-escape.
        """
        if not text:
            return ""

        sanitized = TextSanitizer.remove_control_characters(text.strip())
        sanitized = sanitized.replace("\x00", "")
        sanitized = re.sub(r" +", " ", sanitized)
        return sanitized[:max_length].strip()

    @staticmethod
    def check_for_injection(text: str) -> tuple[bool, str | None]:
        """
        Check text for script injection.

        Returns:
            Tuple of (is_safe, detected_pattern)
        """
        if not text:
            return True, None

        for pattern in ValidationPatterns.XSS_PATTERNS:
            if pattern.search(text):
                return False, "XSS pattern detected"

        return True, None

    @staticmethod
    def remove_control_characters(text: str) -> str:
        """Keep newlines and tabs, remove other control chars"""
        if not text:
            return ""

        return "".join(
            char for char in text
            if char >= " " or char in "\n\r\t"
        )


class AddressValidator:
    """Delivery address cleanup"""

    MAX_LENGTH = 500

    @staticmethod
    def normalize(address: str) -> str:
        """ניקוי כתובת - שורות מרובות מתאחדות לשורה אחת"""
        if not address:
            return ""
        cleaned = TextSanitizer.sanitize(address, max_length=AddressValidator.MAX_LENGTH * 2)
        cleaned = re.sub(r"\s*\n\s*", ", ", cleaned)
        cleaned = re.sub(r",\s*,", ",", cleaned)
        return cleaned[:AddressValidator.MAX_LENGTH].strip(" ,")


def parse_positive_int(token: str) -> int | None:
    """Parse a customer-typed quantity/choice. None when not a positive integer."""
    if not token:
        return None
    token = token.strip()
    # isdigit() מקבל גם ספרות Unicode כמו ³ ש-int() דוחה
    if not (token.isascii() and token.isdigit()):
        return None
    value = int(token)
    return value if value > 0 else None
