"""Auth response normalization.

Goals:
1. Accept every response shape the backend produces (token vs
   accessToken, user vs data vs top-level fields) and resolve it into
   one ``AuthPayload`` through explicit, ordered precedence lists.
2. Tolerate unknown extra fields.
3. Turn error bodies into a single human-readable message.

This runs once, at the Auth Client boundary; nothing downstream ever
looks at raw JSON.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

from pydantic import ValidationError

from authclient.models.auth_models import (
    GENERIC_REJECTION_MESSAGE,
    STATUS_MESSAGES,
    AuthPayload,
)
from authclient.models.user import UserProfile

# Ordered precedence lists
TOKEN_KEYS: tuple[str, ...] = ("token", "accessToken", "access_token")
USER_KEYS: tuple[str, ...] = ("user", "data")
ERROR_MESSAGE_KEYS: tuple[str, ...] = ("message", "error")

# Keys whose presence at the top level means the body *is* the user record
_USER_MARKER_KEYS: tuple[str, ...] = ("_id", "id", "prenom", "nom", "tel", "role")

_MESSAGE_RE: re.Pattern[str] = re.compile(r'"message"\s*:\s*"([^"]+)"')


def parse_json_body(text: str) -> Any:
    """Decode a response body.

    Raises
    ------
    ValueError
        If *text* is blank or not valid JSON.
    """
    if not text or not text.strip():
        raise ValueError("Empty response body")
    return json.loads(text)


def _first_text(data: Dict[str, Any], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _resolve_user(data: Dict[str, Any]) -> Optional[UserProfile]:
    for key in USER_KEYS:
        candidate = data.get(key)
        if isinstance(candidate, dict) and candidate:
            try:
                return UserProfile.model_validate(candidate)
            except ValidationError:
                continue
    if any(key in data for key in _USER_MARKER_KEYS):
        try:
            return UserProfile.model_validate(data)
        except ValidationError:
            return None
    return None


def normalize_auth_response(raw: Any) -> AuthPayload:
    """Convert a decoded auth response into the canonical ``AuthPayload``.

    Precedence:
        - token:   ``token`` > ``accessToken`` > ``access_token``
        - user:    ``user`` > ``data`` > top-level fields
        - email:   top-level ``email`` > user record ``email``
        - message: top-level ``message``

    Raises
    ------
    ValueError
        If *raw* is not a JSON object.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Expected a JSON object, got {type(raw).__name__}")

    user = _resolve_user(raw)
    email = _first_text(raw, ("email",))
    if email is None and user is not None and user.email:
        email = user.email.strip() or None

    return AuthPayload(
        token=_first_text(raw, TOKEN_KEYS),
        user=user,
        email=email,
        message=_first_text(raw, ("message",)),
    )


def maybe_normalize_user(raw: Any) -> Optional[UserProfile]:
    """Return the user record from a get-user response, or ``None``."""
    if not isinstance(raw, dict):
        return None
    return _resolve_user(raw)


def extract_error_message(body: Optional[str], status_code: Optional[int] = None) -> str:
    """Best human-readable message for a rejected request.

    Order: JSON ``message`` / ``error`` field, then a regex pick of
    ``"message": "..."`` from non-JSON text, then the raw body, then the
    status default, then a generic message.
    """
    text = (body or "").strip()
    if text:
        try:
            decoded = json.loads(text)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            found = _first_text(decoded, ERROR_MESSAGE_KEYS)
            if found:
                return found
            # Validation errors sometimes arrive as a list of messages
            listed = decoded.get("message")
            if isinstance(listed, list) and listed:
                return "; ".join(str(item) for item in listed)
        match = _MESSAGE_RE.search(text)
        if match:
            return match.group(1)
        if decoded is None:
            return text
    if status_code is not None and status_code in STATUS_MESSAGES:
        return STATUS_MESSAGES[status_code]
    return GENERIC_REJECTION_MESSAGE
