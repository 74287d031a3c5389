"""General Utility Functions."""

from __future__ import annotations

import re
from typing import Optional

__all__ = ["is_plausible_email", "mask_email", "normalize_email"]


_EMAIL_RE: re.Pattern[str] = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)


def is_plausible_email(email: Optional[str]) -> bool:
    """``True`` when *email* is non-blank and looks like ``local@domain.tld``."""
    if not email or not email.strip():
        return False
    return _EMAIL_RE.match(email.strip()) is not None


def normalize_email(email: str) -> str:
    """Strip surrounding whitespace and lowercase."""
    return email.strip().lower()


def mask_email(email: Optional[str]) -> str:
    """Mask the local part of an email for logs: ``alice@x.com`` -> ``a***@x.com``."""
    if not email:
        return "<none>"
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"
