import re
from typing import Optional

CPF_PATTERN = re.compile(r"^\d{3}\.\d{3}\.\d{3}-\d{2}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

COUNTDOWN_PLACEHOLDER = "--:--"


def format_cpf(value: str) -> str:
    """Punctuate CPF digits progressively as the user types.

    Non-digits are dropped and input is capped at 11 digits, so
    ``"12345678901"`` becomes ``"123.456.789-01"`` and ``"123"`` stays ``"123"``.
    """
    digits = re.sub(r"\D", "", value or "")[:11]
    if len(digits) <= 3:
        return digits
    if len(digits) <= 6:
        return f"{digits[:3]}.{digits[3:]}"
    if len(digits) <= 9:
        return f"{digits[:3]}.{digits[3:6]}.{digits[6:]}"
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"


def is_valid_cpf_format(value: str) -> bool:
    return bool(CPF_PATTERN.match(value or ""))


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value or ""))


def format_countdown(remaining_seconds: Optional[float]) -> str:
    if remaining_seconds is None:
        return COUNTDOWN_PLACEHOLDER
    total = max(int(remaining_seconds), 0)
    minutes, seconds = divmod(total, 60)
    return f"{minutes:02d}:{seconds:02d}"


def format_price(amount: float) -> str:
    # R$ 1.234,56
    whole, cents = f"{amount:,.2f}".split(".")
    return f"R$ {whole.replace(',', '.')},{cents}"
