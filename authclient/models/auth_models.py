"""
Authentication Pipeline Models.

Pydantic models for the contracts between ``AuthClient``, the
``AuthStateMachine`` and the UI layer.

Every auth operation returns a structured, inspectable ``AuthResult``
rather than raising; the UI never sees a raw exception.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from authclient.models.enums import ErrorKind
from authclient.models.user import UserProfile


# ---------------------------------------------------------------------------
# Status-code defaults
# ---------------------------------------------------------------------------

STATUS_MESSAGES: dict[int, str] = {
    400: "Invalid request. Please check your input.",
    401: "Authentication failed. Please check your credentials.",
    403: "Access denied. You don't have permission to perform this action.",
    404: "Resource not found.",
    409: "This email is already registered. Please use a different email or try logging in.",
    500: "Server error. Please try again later.",
}
"""Fallback messages for rejected requests whose body carries no message."""

GENERIC_REJECTION_MESSAGE: str = "An error occurred. Please try again."

REGISTRATION_PENDING_MESSAGE: str = (
    "Account created successfully. Please check your email for the verification link."
)
REGISTRATION_AUTHENTICATED_MESSAGE: str = "Registration successful! You are now logged in."
EMAIL_NOT_FOUND_MESSAGE: str = "Email address not found. Please register again."
RESET_EMAIL_NOT_FOUND_MESSAGE: str = (
    "Email address not found. Please restart the forgot password flow."
)
RESET_CONTEXT_MISSING_MESSAGE: str = "Reset context missing. Please request a new code."
INVALID_EMAIL_MESSAGE: str = (
    "Invalid email address format. Please check your email and try again."
)


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Result of a single client-side field validation check."""

    is_valid: bool
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class RegistrationData(BaseModel):
    """Signup form payload.

    Serialised with the backend's field names (``by_alias=True``):
    ``prenom``, ``nom``, ``tel`` and ``age`` (the birth date as
    ``YYYY-MM-DD``).
    """

    first_name: str = Field(serialization_alias="prenom")
    last_name: str = Field(serialization_alias="nom")
    email: str
    phone_number: str = Field(serialization_alias="tel")
    birth_date: str = Field(serialization_alias="age")
    role: str
    password: str = Field(repr=False)


# ---------------------------------------------------------------------------
# Canonical response
# ---------------------------------------------------------------------------

class AuthPayload(BaseModel):
    """Canonical shape of any auth API response.

    Produced once by ``normalize_auth_response``; nothing downstream of
    the Auth Client looks at raw JSON.

    Attributes
    ----------
    token:
        Bearer token, or ``None`` when the server issued none.
    user:
        The user record, wherever the server put it.
    email:
        Best email for the account: server-echoed top-level field, then
        the user record's email.
    message:
        Free-text server message, if any.
    """

    token: Optional[str] = None
    user: Optional[UserProfile] = None
    email: Optional[str] = None
    message: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user is not None else None


# ---------------------------------------------------------------------------
# Unified auth response
# ---------------------------------------------------------------------------

class AuthResult(BaseModel):
    """Unified response for every auth operation.

    Attributes
    ----------
    success:
        ``True`` when the operation completed without error.
    error_kind:
        Taxonomy kind of the failure (``None`` on success).
    error_message:
        Human-readable failure description (``None`` on success).
    status_code:
        HTTP status of the final response, when one was received.
    message:
        Human-readable success / informational text.
    token:
        Session token obtained by this call, if any.
    user:
        Canonical user record, if the server returned one.
    email:
        Email the operation concerns (the address to verify after a
        tokenless registration, the address a code was sent to, ...).
    requires_verification:
        ``True`` after a registration that created the account but
        issued no token.
    tokenless:
        ``True`` after a login the server accepted without issuing a
        token in the body (possibly cookie-based auth).  No session is
        persisted in that case.
    """

    success: bool
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    status_code: Optional[int] = None
    message: Optional[str] = None
    token: Optional[str] = None
    user: Optional[UserProfile] = None
    email: Optional[str] = None
    requires_verification: bool = False
    tokenless: bool = False

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
    ) -> "AuthResult":
        return cls(
            success=False,
            error_kind=kind,
            error_message=message,
            status_code=status_code,
        )

    @classmethod
    def invalid_input(cls, message: str) -> "AuthResult":
        return cls.failure(ErrorKind.INVALID_INPUT, message)
