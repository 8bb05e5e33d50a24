"""
Answer validators for input and lead capture nodes.

Digit-count checks only; CPF checksums are not verified.
"""
from __future__ import annotations

import re
from datetime import datetime

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_DATE_FORMATS = ("%d/%m/%Y", "%d/%m/%y", "%d-%m-%Y", "%Y/%m/%d")


def digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def is_email(value: str) -> bool:
    return bool(EMAIL_RE.match(value.strip()))


def is_cpf(value: str) -> bool:
    return len(digits(value)) == 11


def is_phone(value: str) -> bool:
    return 10 <= len(digits(value)) <= 11


def is_number(value: str) -> bool:
    try:
        float(value.strip().replace(",", "."))
        return True
    except ValueError:
        return False


def is_date(value: str) -> bool:
    text = value.strip()
    if not text:
        return False
    try:
        datetime.fromisoformat(text)
        return True
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            datetime.strptime(text, fmt)
            return True
        except ValueError:
            continue
    return False


def is_full_name(value: str) -> bool:
    text = value.strip()
    return len(text) >= 2 and " " in text


def not_empty(value: str) -> bool:
    return bool(value.strip())


INPUT_VALIDATORS = {
    "text": not_empty,
    "email": is_email,
    "cpf": is_cpf,
    "phone": is_phone,
    "number": is_number,
    "date": is_date,
}

LEAD_FIELD_VALIDATORS = {
    "nome": is_full_name,
    "cpf": is_cpf,
    "email": is_email,
    "celular": is_phone,
    "telefone": is_phone,
}


def normalize_lookup_value(identify_by: str, value: str) -> str:
    """Canonical form of a contract lookup key."""
    if identify_by in ("cpf", "phone"):
        return digits(value)
    return (value or "").strip().lower()


def validate_input(value: str, validation_type: str, pattern: str = "") -> bool:
    """Validate an answer for an input node. Unknown types only require text."""
    if validation_type == "custom" and pattern:
        try:
            return re.fullmatch(pattern, value.strip()) is not None
        except re.error:
            return False
    return INPUT_VALIDATORS.get(validation_type, not_empty)(value)


def validate_lead_field(value: str, field: str) -> bool:
    return LEAD_FIELD_VALIDATORS.get(field, not_empty)(value)
