"""
Auth State Machine.

Owns the UI-observable ``AuthUiState`` and orchestrates the two
multi-step flows:

- registration -> email verification;
- forgot password -> verify reset code -> reset password.

Transitions are driven only by ``AuthResult`` values from the
``AuthClient``.  A failure leaves the stage unchanged and surfaces
``error_message``; nothing is retried automatically.  Flow context
(pending email, reset code) is persisted through the ``SessionStore``
so either flow resumes after a process restart.

Each public operation is guarded by ``single_flight``: a second call of
the same operation while the first is in flight is ignored and returns
``None``.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

from authclient.guards import InFlightTracker, single_flight
from authclient.logger import StructuredLogger
from authclient.models.auth_models import AuthResult, RegistrationData
from authclient.models.enums import AuthStage
from authclient.models.session_models import AuthUiState, ForgotPasswordContext
from authclient.models.user import UserProfile
from authclient.services.auth_client import CANCELLED_MESSAGE, AuthClient
from authclient.services.session_store import SessionStore
from authclient.state import AuthStateContainer, StateObserver

ALREADY_VERIFIED_MESSAGE: str = "Email already verified."

_FLOW_STAGES: frozenset[AuthStage] = frozenset({
    AuthStage.AWAITING_VERIFICATION,
    AuthStage.AWAITING_RESET_CODE,
    AuthStage.AWAITING_PASSWORD_RESET,
})


class AuthStateMachine:
    """Client-side auth session and flow orchestrator.

    Parameters
    ----------
    client:
        Auth Client issuing the network calls.
    session_store:
        Persistence for remember-me and resumable flow context.
    logger:
        Structured JSON logger.
    container:
        State container to publish into.  A fresh one is created when
        omitted.
    """

    def __init__(
        self,
        client: AuthClient,
        session_store: SessionStore,
        logger: StructuredLogger,
        container: Optional[AuthStateContainer] = None,
    ) -> None:
        self._client: AuthClient = client
        self._session_store: SessionStore = session_store
        self._logger: StructuredLogger = logger
        self._container: AuthStateContainer = container or AuthStateContainer(logger=logger)
        self.in_flight: InFlightTracker = InFlightTracker(logger)

    # ==================================================================
    # Observation
    # ==================================================================

    @property
    def state(self) -> AuthUiState:
        return self._container.state

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        """Register *observer* for every state change; returns an unsubscribe function."""
        return self._container.subscribe(observer)

    def clear_error(self) -> None:
        self._container.update(error_message=None)

    # ==================================================================
    # Cold start
    # ==================================================================

    @single_flight("check_auth_state")
    async def check_auth_state(self) -> AuthUiState:
        """Re-derive the state from the Session Store.

        - remember-me with a token: authenticated;
        - remember-me without a token: unauthenticated, and the stale
          flag is cleared;
        - otherwise unauthenticated.

        Persisted flow context is loaded back regardless of the session,
        and determines the stage when present.
        """
        session = await self._session_store.load_session()
        is_authenticated = False
        if session.remember_me and session.has_token:
            is_authenticated = True
        elif session.remember_me:
            self._logger.warning(
                "Remember-me is set but no token is stored; clearing the flag.",
                extra={"event": "SESSION_REPAIRED"},
            )
            await self._persist(self._session_store.clear_remember_me(), "remember-me flag")

        pending = await self._session_store.get_pending_verification()
        context = await self._session_store.get_forgot_password_context()

        stage = AuthStage.AUTHENTICATED if is_authenticated else AuthStage.UNAUTHENTICATED
        if context is not None:
            stage = AuthStage.AWAITING_PASSWORD_RESET
        elif pending is not None:
            stage = (
                AuthStage.AWAITING_RESET_CODE
                if pending.for_password_reset
                else AuthStage.AWAITING_VERIFICATION
            )

        state = self._container.replace(AuthUiState(
            stage=stage,
            is_authenticated=is_authenticated,
            pending_verification_email=(
                pending.email if pending is not None
                else (context.email if context is not None else None)
            ),
            pending_is_for_password_reset=(
                pending.for_password_reset if pending is not None else context is not None
            ),
            forgot_password_context=context,
        ))
        self._logger.info(
            "Auth state restored: stage=%s, authenticated=%s.",
            state.stage, state.is_authenticated,
            extra={"event": "AUTH_STATE_RESTORED"},
        )
        return state

    async def load_pending_verification_email(self) -> Optional[str]:
        """Load the persisted pending email into the state and return it."""
        pending = await self._session_store.get_pending_verification()
        if pending is None:
            return None
        changes: dict[str, object] = {
            "pending_verification_email": pending.email,
            "pending_is_for_password_reset": pending.for_password_reset,
        }
        if self.state.stage not in _FLOW_STAGES:
            changes["stage"] = (
                AuthStage.AWAITING_RESET_CODE
                if pending.for_password_reset
                else AuthStage.AWAITING_VERIFICATION
            )
        self._container.update(**changes)
        return pending.email

    # ==================================================================
    # Login / registration
    # ==================================================================

    @single_flight("login")
    async def login(self, email: str, password: str, remember_me: bool = False) -> AuthResult:
        """Log in; remember-me is persisted only when a token was issued."""
        async with self._loading(AuthStage.AUTHENTICATING) as previous:
            result = await self._client.login(email, password)
            if not result.success:
                return self._fail(result, previous)

            if result.token:
                if remember_me:
                    await self._persist(
                        self._session_store.set_remember_me(True), "remember-me flag",
                    )
                else:
                    await self._persist(
                        self._session_store.clear_remember_me(), "remember-me flag",
                    )

            self._container.update(
                is_loading=False,
                is_authenticated=True,
                stage=AuthStage.AUTHENTICATED,
                user=result.user,
                info_message=result.message,
            )
            return result

    @single_flight("register")
    async def register(self, data: RegistrationData) -> AuthResult:
        """Create an account; without a token the flow awaits verification."""
        async with self._loading() as previous:
            result = await self._client.register(data)
            if not result.success:
                return self._fail(result, previous)

            if result.token and not result.requires_verification:
                self._container.update(
                    is_loading=False,
                    is_authenticated=True,
                    stage=AuthStage.AUTHENTICATED,
                    user=result.user,
                    info_message=result.message,
                )
                return result

            email = result.email or data.email.strip()
            await self._persist(
                self._session_store.set_pending_verification_email(email),
                "pending verification email",
            )
            self._container.update(
                is_loading=False,
                is_authenticated=False,
                stage=AuthStage.AWAITING_VERIFICATION,
                user=result.user,
                pending_verification_email=email,
                pending_is_for_password_reset=False,
                info_message=result.message,
            )
            return result

    # ==================================================================
    # Email verification
    # ==================================================================

    @single_flight("resend_verification_email")
    async def resend_verification_email(self, email: Optional[str] = None) -> AuthResult:
        """Resend the verification email; the stage never changes."""
        async with self._loading() as previous:
            target = (
                email
                or self.state.pending_verification_email
                or await self._session_store.get_pending_verification_email()
            )
            result = await self._client.resend_verification(target or "")
            if not result.success:
                return self._fail(result, previous)
            self._container.update(is_loading=False, info_message=result.message)
            return result

    @single_flight("verify_email")
    async def verify_email(self, code: str) -> AuthResult:
        """Verify the pending email with *code*.

        The address comes from the in-memory pending email, then the
        current user record, then the persisted pending email.  Once the
        email is verified and no pending email remains, further calls
        are no-op successes.
        """
        current = self.state
        persisted = await self._session_store.get_pending_verification_email()
        if (
            current.pending_verification_email is None
            and persisted is None
            and self._already_verified(current)
        ):
            return AuthResult(
                success=True,
                message=ALREADY_VERIFIED_MESSAGE,
                user=current.user,
                email=current.verified_email
                or (current.user.email if current.user is not None else None),
            )

        async with self._loading() as previous:
            email = (
                current.pending_verification_email
                or (current.user.email if current.user is not None else None)
                or persisted
            )
            result = await self._client.verify_email(code, email)
            if not result.success:
                return self._fail(result, previous)

            merged = self._merge_user(self.state.user, result.user)
            await self._persist(
                self._session_store.clear_pending_verification_email(),
                "pending verification email",
            )
            authenticated = bool(result.token) or self.state.is_authenticated
            self._container.update(
                is_loading=False,
                is_authenticated=authenticated,
                stage=AuthStage.AUTHENTICATED if authenticated else AuthStage.UNAUTHENTICATED,
                user=merged.mark_verified() if merged is not None else None,
                verified_email=result.email or email,
                pending_verification_email=None,
                pending_is_for_password_reset=False,
                info_message=result.message,
            )
            return result

    # ==================================================================
    # Forgot password
    # ==================================================================

    @single_flight("forgot_password")
    async def forgot_password(self, email: str) -> AuthResult:
        """Step 1: request a reset code and await it."""
        async with self._loading() as previous:
            result = await self._client.forgot_password(email)
            if not result.success:
                return self._fail(result, previous)

            target = result.email or email.strip()
            await self._persist(
                self._session_store.set_pending_verification_email(
                    target, for_password_reset=True,
                ),
                "pending reset email",
            )
            await self._persist(
                self._session_store.clear_forgot_password_context(),
                "forgot-password context",
            )
            self._container.update(
                is_loading=False,
                stage=AuthStage.AWAITING_RESET_CODE,
                pending_verification_email=target,
                pending_is_for_password_reset=True,
                forgot_password_context=None,
                info_message=result.message,
            )
            return result

    @single_flight("verify_forgot_password_code")
    async def verify_forgot_password_code(self, code: str) -> AuthResult:
        """Step 2: verify the code; the (email, code) pair is kept for step 3."""
        async with self._loading() as previous:
            email = (
                self.state.pending_verification_email
                or await self._session_store.get_pending_verification_email()
            )
            result = await self._client.verify_reset_code(code, email)
            if not result.success:
                return self._fail(result, previous)

            context = ForgotPasswordContext(email=result.email or email or "", code=code.strip())
            await self._persist(
                self._session_store.set_forgot_password_context(context.email, context.code),
                "forgot-password context",
            )
            self._container.update(
                is_loading=False,
                stage=AuthStage.AWAITING_PASSWORD_RESET,
                pending_verification_email=context.email,
                pending_is_for_password_reset=True,
                forgot_password_context=context,
                info_message=result.message,
            )
            return result

    @single_flight("reset_password")
    async def reset_password(self, new_password: str, confirm_password: str) -> AuthResult:
        """Step 3: set the new password.

        On success all flow context is cleared and so is the stored
        session: the user must log in again with the new password.
        """
        async with self._loading() as previous:
            context = (
                self.state.forgot_password_context
                or await self._session_store.get_forgot_password_context()
            )
            result = await self._client.reset_password(
                context.email if context is not None else None,
                context.code if context is not None else None,
                new_password,
                confirm_password,
            )
            if not result.success:
                return self._fail(result, previous)

            await self._persist(self._session_store.clear_flow_context(), "flow context")
            await self._persist(self._session_store.clear_session(), "session")
            self._container.update(
                is_loading=False,
                is_authenticated=False,
                stage=AuthStage.UNAUTHENTICATED,
                user=None,
                pending_verification_email=None,
                pending_is_for_password_reset=False,
                forgot_password_context=None,
                info_message=result.message,
            )
            return result

    async def abandon_password_reset(self) -> None:
        """Drop any forgot-password progress, in memory and on disk."""
        current = self.state
        await self._persist(
            self._session_store.clear_forgot_password_context(), "forgot-password context",
        )
        changes: dict[str, object] = {"forgot_password_context": None}
        if current.pending_is_for_password_reset:
            await self._persist(
                self._session_store.clear_pending_verification_email(),
                "pending reset email",
            )
            changes.update(pending_verification_email=None, pending_is_for_password_reset=False)
        if current.stage in (AuthStage.AWAITING_RESET_CODE, AuthStage.AWAITING_PASSWORD_RESET):
            changes["stage"] = (
                AuthStage.AUTHENTICATED if current.is_authenticated else AuthStage.UNAUTHENTICATED
            )
        self._container.update(**changes)
        self._logger.info("Password reset abandoned.", extra={"event": "PASSWORD_RESET_ABANDONED"})

    # ==================================================================
    # Session
    # ==================================================================

    @single_flight("logout")
    async def logout(self) -> None:
        """Clear the session and any flow context, then reset the state."""
        await self._client.logout()
        await self._persist(self._session_store.clear_flow_context(), "flow context")
        self._container.reset()

    @single_flight("fetch_user")
    async def fetch_and_set_user_by_id(self, user_id: str) -> Optional[UserProfile]:
        """Refresh the user record; the state is untouched on failure."""
        user = await self._client.fetch_user_by_id(user_id)
        if user is not None:
            self._container.update(user=user)
        else:
            self._logger.warning(
                "Could not refresh user %s; keeping the current record.", user_id,
                extra={"event": "USER_REFRESH_FAILED"},
            )
        return user

    # ==================================================================
    # Private helpers
    # ==================================================================

    @asynccontextmanager
    async def _loading(self, stage: Optional[AuthStage] = None) -> AsyncIterator[AuthStage]:
        """Mark the state loading; yields the stage to restore on failure."""
        previous = self.state.stage
        changes: dict[str, object] = {
            "is_loading": True,
            "error_message": None,
            "info_message": None,
        }
        if stage is not None:
            changes["stage"] = stage
        self._container.update(**changes)
        try:
            yield previous
        except asyncio.CancelledError:
            self._container.update(
                is_loading=False, stage=previous, error_message=CANCELLED_MESSAGE,
            )
            raise
        except Exception as exc:
            self._logger.exception(
                "Unexpected error while the operation was in flight: %s", exc,
                extra={"event": "STATE_MACHINE_ERROR"},
            )
            self._container.update(
                is_loading=False,
                stage=previous,
                error_message="An unexpected error occurred. Please try again.",
            )
            raise

    @staticmethod
    def _already_verified(state: AuthUiState) -> bool:
        if state.verified_email is not None:
            return True
        if state.user is not None:
            return bool(state.user.is_verified or state.user.email_verified)
        return state.is_authenticated

    def _fail(self, result: AuthResult, previous: AuthStage) -> AuthResult:
        self._container.update(
            is_loading=False,
            stage=previous,
            error_message=result.error_message,
        )
        return result

    async def _persist(self, operation: Awaitable[None], what: str) -> None:
        """Await a store write; failures are logged, never turned into auth errors."""
        try:
            await operation
        except Exception as exc:
            self._logger.error(
                "Failed to update %s: %s", what, exc,
                extra={"event": "SESSION_STORE_WRITE_FAILED"},
            )

    @staticmethod
    def _merge_user(
        current: Optional[UserProfile],
        incoming: Optional[UserProfile],
    ) -> Optional[UserProfile]:
        """Overlay the non-null fields of *incoming* on *current*."""
        if current is None:
            return incoming
        if incoming is None:
            return current
        return current.model_copy(update=incoming.model_dump(exclude_none=True))
