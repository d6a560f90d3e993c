import re

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SEARCH_STRIP_RE = re.compile(r"[%_,()*\\'\"]")
_HEX_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

SEARCH_MAX_LENGTH = 80


def clean_text(value: str | None, max_length: int | None = None) -> str | None:
    text = (value or "").strip()
    if not text:
        return None
    if max_length is not None:
        text = text[:max_length]
    return text


def is_valid_email(value: str | None) -> bool:
    return bool(value and _EMAIL_RE.match(value.strip()))


def normalize_email(value: str | None) -> str | None:
    email = (value or "").strip().lower()
    if not email:
        return None
    if not _EMAIL_RE.match(email):
        raise ValueError("Invalid email address")
    return email


def normalize_phone(value: str | None) -> str | None:
    """UK-first E.164 normalisation: 07700 900123 -> +447700900123."""
    raw = (value or "").strip()
    if not raw:
        return None
    has_plus = raw.startswith("+")
    digits = re.sub(r"\D", "", raw)
    if not digits:
        raise ValueError("Invalid mobile number")
    if has_plus:
        normalized = "+" + digits
    elif digits.startswith("00"):
        normalized = "+" + digits[2:]
    elif digits.startswith("0"):
        normalized = "+44" + digits[1:]
    elif digits.startswith("44"):
        normalized = "+" + digits
    else:
        normalized = "+" + digits
    if not 10 <= len(normalized) - 1 <= 15:
        raise ValueError("Invalid mobile number")
    return normalized


def sanitize_search(value: str | None) -> str | None:
    text = _SEARCH_STRIP_RE.sub(" ", value or "")
    text = " ".join(text.split())[:SEARCH_MAX_LENGTH].strip()
    return text or None


def validate_hex_color(value: str) -> str:
    if not _HEX_COLOR_RE.match(value or ""):
        raise ValueError("Color must be a hex value like #6B7280")
    return value.upper()
