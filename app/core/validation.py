"""
Input Validation Utilities

Contact number normalization for WhatsApp chat ids and text sanitization
for bot prompts and agent messages.
"""
import re
import html

from app.core.config import settings


class ValidationPatterns:
    """Regex patterns for validation"""

    # E.164 בלי '+': קידומת מדינה + מספר, 8 עד 15 ספרות
    PHONE_DIGITS = re.compile(r"^[1-9]\d{7,14}$")

    # chat id של WhatsApp: מספר@c.us (פרטי) או מזהה@g.us (קבוצה)
    CHAT_ID = re.compile(r"^(?P<user>[\w\-]+)@(?P<server>c\.us|g\.us|s\.whatsapp\.net|lid)$")


class PhoneNumberValidator:
    """Contact number validation and normalization"""

    @staticmethod
    def split_chat_id(chat_id: str) -> tuple[str, str | None]:
        """
        Split a WhatsApp chat id into (user, server).

        A bare number returns (number, None).
        """
        if not chat_id:
            return "", None
        match = ValidationPatterns.CHAT_ID.match(chat_id.strip())
        if not match:
            return chat_id.strip(), None
        return match.group("user"), match.group("server")

    @staticmethod
    def is_group(chat_id: str) -> bool:
        """קבוצות מסתיימות ב-@g.us"""
        return PhoneNumberValidator.split_chat_id(chat_id)[1] == "g.us"

    @staticmethod
    def validate(phone: str) -> bool:
        """True אם המספר (אחרי נרמול) הוא E.164 תקין בלי '+'"""
        if not phone:
            return False
        return bool(ValidationPatterns.PHONE_DIGITS.match(PhoneNumberValidator.normalize(phone)))

    @staticmethod
    def normalize(phone: str, default_country_code: str | None = None) -> str:
        """
        Normalize a contact number to digits only, with country code.

        Accepts chat ids ("5511999999999@c.us"), "+55 11 99999-9999" and local
        numbers with a leading 0, which get the default country code.
        """
        user, _ = PhoneNumberValidator.split_chat_id(phone)
        cleaned = re.sub(r"\D", "", user)
        country_code = default_country_code or settings.WHATSAPP_DEFAULT_COUNTRY_CODE

        if cleaned.startswith("00"):
            cleaned = cleaned[2:]
        elif cleaned.startswith("0") and country_code:
            cleaned = country_code + cleaned.lstrip("0")

        return cleaned

    @staticmethod
    def to_chat_id(phone: str) -> str:
        """מספר מנורמל → chat id לשליחה"""
        if "@" in phone:
            return phone
        return f"{PhoneNumberValidator.normalize(phone)}@c.us"

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., 55119999****)
        """
        user, _ = PhoneNumberValidator.split_chat_id(phone or "")
        if len(user) < 4:
            return "****"
        return user[:-4] + "****"


class TextSanitizer:
    """Text sanitization for messages"""

    # גבול ההודעה של WhatsApp
    MAX_MESSAGE_LENGTH = 4096

    @staticmethod
    def sanitize(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
        """
        Sanitize text for storage and sending.

        Trims, enforces max length and strips null bytes and control characters.
        Newlines are kept since bot menus are multi-line.
        """
        if not text:
            return ""

        sanitized = TextSanitizer.remove_control_characters(text.strip())
        sanitized = sanitized.replace("\x00", "")
        sanitized = re.sub(r"[ \t]+", " ", sanitized)
        return sanitized[:max_length]

    @staticmethod
    def sanitize_for_html(text: str) -> str:
        """Escape text for the dashboard"""
        if not text:
            return ""
        return html.escape(text)

    @staticmethod
    def remove_control_characters(text: str) -> str:
        """Keep newlines and tabs, remove other control chars"""
        if not text:
            return ""
        return "".join(
            char for char in text
            if char >= " " or char in "\n\r\t"
        )


def message_text_validator(v: str | None) -> str | None:
    """Pydantic field validator for outbound message bodies"""
    if v is None:
        return None
    cleaned = TextSanitizer.sanitize(v)
    if not cleaned:
        raise ValueError("Message body must not be empty")
    return cleaned


def convert_html_to_whatsapp(text: str) -> str:
    """
    ממיר תגי HTML מהדשבורד לפורמט וואטסאפ.

    - Bold: *text*
    - Italic: _text_
    - Strikethrough: ~text~
    - Monospace: ```text```
    """
    if not text:
        return ""

    result = re.sub(r"<(b|strong)>(.*?)</\1>", r"*\2*", text, flags=re.DOTALL)
    result = re.sub(r"<(i|em)>(.*?)</\1>", r"_\2_", result, flags=re.DOTALL)
    result = re.sub(r"<(s|strike|del)>(.*?)</\1>", r"~\2~", result, flags=re.DOTALL)
    result = re.sub(r"<(code|pre)>(.*?)</\1>", r"```\2```", result, flags=re.DOTALL)

    # תגים לא נתמכים (<a>, <p> וכו') נמחקים; <br> הופך לשורה חדשה
    result = re.sub(r"<br\s*/?>", "\n", result, flags=re.IGNORECASE)
    result = re.sub(r"</p>\s*", "\n", result, flags=re.IGNORECASE)
    result = re.sub(r"<[^>]+>", "", result)

    return html.unescape(result).strip()
