import re
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class TextValidator:
    """Whitespace normalisation for free-text fields."""

    @staticmethod
    def normalize(text: Optional[str], collapse_whitespace: bool = True) -> Optional[str]:
        """Strip and, unless told otherwise, collapse runs of whitespace; blank input becomes None."""
        if text is None:
            return None
        cleaned = str(text).strip()
        if collapse_whitespace:
            cleaned = re.sub(r"\s+", " ", cleaned)
        return cleaned or None


class EmailValidator:

    @staticmethod
    def normalize_email(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return raw.strip().lower()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(_EMAIL_RE.match(EmailValidator.normalize_email(email)))
