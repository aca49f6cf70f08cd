"""Input normalization shared by the authenticators and the account manager."""

from __future__ import annotations

import re
import unicodedata

from sesame.service.errors import ValidationError

MAX_EMAIL_LENGTH = 254
MAX_NAME_LENGTH = 100

_E164 = re.compile(r"^\+[0-9]{7,15}$")


def normalize_email(value: str) -> str:
    return unicodedata.normalize("NFKC", value.strip()).lower()


def is_valid_email(email: str) -> bool:
    """Structural check: one '@', non-empty local part, dotted domain.

    The domain must contain a '.' that is neither its first nor last character.
    """
    if len(email) < 3 or len(email) > MAX_EMAIL_LENGTH:
        return False
    if email.count("@") != 1:
        return False
    local, _, domain = email.partition("@")
    if not local or not domain:
        return False
    if any(ch.isspace() for ch in email):
        return False
    return "." in domain and not domain.startswith(".") and not domain.endswith(".")


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValidationError("email must be a string")
    normalized = normalize_email(value)
    if not is_valid_email(normalized):
        raise ValidationError("invalid email address", detail={"field": "email"})
    return normalized


def name_from_email(email: str) -> str:
    local = email.partition("@")[0]
    return local[:MAX_NAME_LENGTH] or email


def validate_display_name(value: str) -> str:
    name = value.strip()
    if not name:
        raise ValidationError("name cannot be empty", detail={"field": "name"})
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"name must be at most {MAX_NAME_LENGTH} characters", detail={"field": "name"}
        )
    return name


def clean_phone_number(value: str) -> str:
    """Normalize a phone number to E.164.

    Formatting characters are dropped. Ten bare digits are treated as a North
    American number, eleven digits starting with 1 get a '+' prefix.
    """
    raw = value.strip()
    has_plus = raw.startswith("+")
    digits = "".join(ch for ch in raw if ch.isdigit())

    if len(digits) < 7:
        raise ValidationError("phone number too short", detail={"field": "phone"})
    if len(digits) > 15:
        raise ValidationError("phone number too long", detail={"field": "phone"})

    if has_plus:
        cleaned = f"+{digits}"
    elif len(digits) == 10:
        cleaned = f"+1{digits}"
    else:
        cleaned = f"+{digits}"

    if not _E164.match(cleaned):
        raise ValidationError("invalid phone number", detail={"field": "phone"})
    return cleaned
