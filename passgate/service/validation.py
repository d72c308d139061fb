"""Input normalization and validation shared by the engine and the HTTP schemas.

Validators raise ``ValueError`` so they plug straight into pydantic field
validators; the auth engine converts the error into ``ValidationError``.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 256

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_password_strength(value: str) -> str:
    """New passwords: 8-128 chars with a lowercase letter, an uppercase letter and a digit."""
    if not isinstance(value, str):
        raise ValueError("password must be a string")
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an uppercase letter")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    return value


def validate_password_input(value: str) -> str:
    """Presented (login) passwords are only bounded, never strength-checked."""
    if not isinstance(value, str) or not value:
        raise ValueError("password is required")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def normalize_full_name(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("full name must be a string")
    normalized = " ".join(normalize_unicode(value).split())
    if len(normalized) < 2:
        raise ValueError("full name must be at least 2 characters")
    if len(normalized) > 255:
        raise ValueError("full name must be at most 255 characters")
    return normalized


def normalize_currency_code(value: Optional[str], default: str = "USD") -> str:
    if value is None:
        return default
    code = value.strip().upper()
    if not _CURRENCY_CODE.match(code):
        raise ValueError("currency code must be three letters")
    return code


def validate_opaque_token(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("token must be a string")
    token = value.strip()
    if not token:
        raise ValueError("token is required")
    if len(token) > MAX_TOKEN_LENGTH:
        raise ValueError("token too long")
    return token
