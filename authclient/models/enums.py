"""
Shared Enumerations for auth client models.

All string enumerations for type-safe field constraints.  ``StrEnum``
values compare equal to their string equivalents, so log lines and
JSON payloads can carry them without conversion.
"""

from __future__ import annotations
from enum import StrEnum


class ErrorKind(StrEnum):
    """Exhaustive taxonomy of failure kinds surfaced to the UI.

    ``IO_ERROR`` only ever appears on ``TransportError``; the Auth Client
    folds it into ``UNKNOWN`` before it reaches an ``AuthResult``.
    """

    TIMEOUT = "timeout"
    CONNECTION_UNAVAILABLE = "connection_unavailable"
    CANCELLED = "cancelled"
    IO_ERROR = "io_error"
    SERVER_REJECTED = "server_rejected"
    MALFORMED_RESPONSE = "malformed_response"
    INVALID_INPUT = "invalid_input"
    UNKNOWN = "unknown"


class AuthStage(StrEnum):
    """States of the auth state machine."""

    UNAUTHENTICATED = "UNAUTHENTICATED"
    AUTHENTICATING = "AUTHENTICATING"
    AUTHENTICATED = "AUTHENTICATED"
    AWAITING_VERIFICATION = "AWAITING_VERIFICATION"
    AWAITING_RESET_CODE = "AWAITING_RESET_CODE"
    AWAITING_PASSWORD_RESET = "AWAITING_PASSWORD_RESET"


class UserRole(StrEnum):
    """Roles the events backend assigns at signup."""

    PARTICIPANT = "participant"
    ORGANIZER = "organizer"
    ADMIN = "admin"
