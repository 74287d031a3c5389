from __future__ import annotations

"""
Data Models Package.

Re-exports all Pydantic models for short imports:
    from authclient.models import AuthResult, UserProfile, Session
    from authclient.models import ErrorKind, AuthStage
"""

from authclient.models.auth_models import (
    AuthPayload,
    AuthResult,
    RegistrationData,
    ValidationResult,
)
from authclient.models.enums import AuthStage, ErrorKind, UserRole
from authclient.models.session_models import (
    AuthUiState,
    ForgotPasswordContext,
    PendingVerification,
    Session,
)
from authclient.models.user import UserProfile

__all__ = [
    "AuthPayload",
    "AuthResult",
    "AuthStage",
    "AuthUiState",
    "ErrorKind",
    "ForgotPasswordContext",
    "PendingVerification",
    "RegistrationData",
    "Session",
    "UserProfile",
    "UserRole",
    "ValidationResult",
]
