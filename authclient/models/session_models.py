"""
Session & Flow Models.

Persistent records owned by the ``SessionStore`` and the in-memory
``AuthUiState`` the state machine publishes to observers.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from authclient.models.enums import AuthStage
from authclient.models.user import UserProfile


class Session(BaseModel):
    """Persisted login session.

    ``remember_me=True`` with no token is an inconsistent state; the
    state machine repairs it on cold start by clearing the flag.
    """

    token: Optional[str] = None
    remember_me: bool = False

    @property
    def has_token(self) -> bool:
        return bool(self.token)


class PendingVerification(BaseModel):
    """Account created (or reset requested) but email not yet confirmed.

    ``for_password_reset`` tells the two flows apart after a restart.
    """

    email: str
    for_password_reset: bool = False


class ForgotPasswordContext(BaseModel):
    """The (email, code) pair produced by reset-code verification."""

    email: str
    code: str


class AuthUiState(BaseModel):
    """Immutable snapshot of what the UI renders.

    Never persisted; rebuilt from the ``Session`` and the latest server
    response.  ``error_message`` carries failures only; success and
    informational text goes to ``info_message``.
    """

    stage: AuthStage = AuthStage.UNAUTHENTICATED
    is_loading: bool = False
    is_authenticated: bool = False
    error_message: Optional[str] = None
    info_message: Optional[str] = None
    user: Optional[UserProfile] = None
    pending_verification_email: Optional[str] = None
    pending_is_for_password_reset: bool = False
    forgot_password_context: Optional[ForgotPasswordContext] = None
    # Last address confirmed in this process; a repeat verify is a no-op.
    verified_email: Optional[str] = None

    model_config = {"frozen": True}
