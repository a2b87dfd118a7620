"""
Input Validation Utilities

Sanitizing of inbound chat text and masking of user channel ids for logs.
"""
import re

MAX_MESSAGE_LENGTH = 4096  # WhatsApp text body limit

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_DIGITS_ONLY = re.compile(r"[^\d]")


class TextSanitizer:
    """Text sanitization for message storage"""

    @staticmethod
    def sanitize(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
        """
        Trim, cap the length and drop control characters (newlines and tabs
        are kept). Does NOT HTML escape; rendering is the client's concern.
        """
        if not text:
            return ""

        sanitized = _CONTROL_CHARS.sub("", text).strip()
        sanitized = re.sub(r" +", " ", sanitized)
        return sanitized[:max_length]


class UserChannelId:
    """Helpers for channel-level user identifiers (phone numbers, visitor ids)"""

    @staticmethod
    def normalize_whatsapp(wa_id: str) -> str:
        """Cloud API sends bare digits; store them as E.164 with a leading +"""
        digits = _DIGITS_ONLY.sub("", wa_id or "")
        return f"+{digits}" if digits else ""

    @staticmethod
    def mask(value: str) -> str:
        """
        Mask an identifier for logging (privacy).

        +15551234567 -> +1555123****
        """
        if not value or len(value) < 4:
            return "****"
        return value[:-4] + "****"
