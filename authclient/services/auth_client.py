"""
Auth Client.

Translates domain auth operations into ``HttpTransport`` calls and
normalizes every outcome into an ``AuthResult``:

- transport failures map 1:1 onto the ``ErrorKind`` taxonomy
  (``IO_ERROR`` surfaces as ``UNKNOWN`` with the I/O message);
- non-2xx responses become ``SERVER_REJECTED`` with the best message
  the error body offers;
- 2xx responses whose body cannot be decoded become
  ``MALFORMED_RESPONSE``, except on ``register`` where the account was
  created and the caller is told to check their email;
- local validation failures become ``INVALID_INPUT`` without a network
  round trip.

The client persists the session token on success.  Flow context
(pending email, reset code) and the remember-me flag belong to the
``AuthStateMachine``.
"""

from __future__ import annotations

import re
from typing import Optional, Union

from authclient.config import AppConfig
from authclient.logger import StructuredLogger
from authclient.models.auth_models import (
    EMAIL_NOT_FOUND_MESSAGE,
    INVALID_EMAIL_MESSAGE,
    REGISTRATION_AUTHENTICATED_MESSAGE,
    REGISTRATION_PENDING_MESSAGE,
    RESET_CONTEXT_MISSING_MESSAGE,
    RESET_EMAIL_NOT_FOUND_MESSAGE,
    AuthPayload,
    AuthResult,
    RegistrationData,
    ValidationResult,
)
from authclient.models.enums import ErrorKind
from authclient.models.user import UserProfile
from authclient.services.normalization import (
    extract_error_message,
    maybe_normalize_user,
    normalize_auth_response,
    parse_json_body,
)
from authclient.services.session_store import SessionStore
from authclient.services.transport import (
    HttpRequest,
    HttpResponse,
    HttpTransport,
    TransportError,
)
from authclient.utils.general import is_plausible_email, mask_email, normalize_email


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_PHONE_RE: re.Pattern[str] = re.compile(r"^\+?\d+$")

LOGIN_TIMEOUT_MESSAGE: str = (
    "The server is taking too long to respond. If it has been idle, the "
    "first request can take 30-60 seconds. Please try again in a moment."
)
REGISTER_TIMEOUT_MESSAGE: str = (
    "Request timed out. The server is taking too long to respond. "
    "Please check your internet connection and try again."
)
DEFAULT_TIMEOUT_MESSAGE: str = (
    "Request timed out. The server is taking too long to respond. "
    "Please try again later."
)
CONNECTION_UNAVAILABLE_MESSAGE: str = (
    "Unable to reach the server. Check your internet connection; the "
    "server may also be waking up. Please try again in a moment."
)
CANCELLED_MESSAGE: str = "The request was cancelled."
MALFORMED_RESPONSE_MESSAGE: str = (
    "Failed to parse the server response. The response format may have changed."
)

REGISTRATION_REQUIRED_FIELDS_MESSAGE: str = (
    "All fields (Name, Email, Phone, Birth Date, Password) are required."
)
INVALID_PHONE_MESSAGE: str = "Phone number must be a valid number."
CREDENTIALS_REQUIRED_MESSAGE: str = "Email and password are required."
CODE_REQUIRED_MESSAGE: str = "Verification code is required."
NEW_PASSWORD_REQUIRED_MESSAGE: str = "New password is required."
PASSWORD_MISMATCH_MESSAGE: str = "Passwords do not match."

RESEND_SUCCESS_MESSAGE: str = "Verification email re-sent successfully. Check your inbox."
VERIFY_SUCCESS_MESSAGE: str = "Verification successful."
FORGOT_PASSWORD_SUCCESS_MESSAGE: str = "Code sent to email"
VERIFY_CODE_SUCCESS_MESSAGE: str = "Code verified"
RESET_SUCCESS_MESSAGE: str = "Password changed successfully"

_OPERATION_LABELS: dict[str, str] = {
    "login": "Login failed",
    "register": "Registration failed",
    "resend_verification": "Resending verification email failed",
    "verify_email": "Email verification failed",
    "forgot_password": "Password reset request failed",
    "verify_reset_code": "Code verification failed",
    "reset_password": "Password reset failed",
    "user_by_id": "Fetching user failed",
}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class AuthClient:
    """Auth API operations returning structured ``AuthResult`` values.

    Parameters
    ----------
    transport:
        HTTP transport (deadline + retry).
    session_store:
        Where a newly issued token is persisted.
    config:
        Endpoint paths and per-operation deadlines.
    logger:
        Structured JSON logger for audit-grade logging.
    """

    def __init__(
        self,
        transport: HttpTransport,
        session_store: SessionStore,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        self._transport: HttpTransport = transport
        self._session_store: SessionStore = session_store
        self._config: AppConfig = config
        self._logger: StructuredLogger = logger

    # ==================================================================
    # Validation helpers
    # ==================================================================

    @staticmethod
    def validate_email(email: Optional[str]) -> ValidationResult:
        """Reject blank or syntactically implausible addresses."""
        if not is_plausible_email(email):
            return ValidationResult(is_valid=False, error_message=INVALID_EMAIL_MESSAGE)
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_registration(data: RegistrationData) -> ValidationResult:
        """Pre-flight checks run before the register call.

        Every field must be non-blank, the email must be plausible and
        the phone number must be numeric (an optional leading ``+`` is
        accepted).
        """
        fields = (
            data.first_name, data.last_name, data.email,
            data.phone_number, data.birth_date, data.password,
        )
        if any(not value or not value.strip() for value in fields):
            return ValidationResult(
                is_valid=False,
                error_message=REGISTRATION_REQUIRED_FIELDS_MESSAGE,
            )
        if not is_plausible_email(data.email):
            return ValidationResult(is_valid=False, error_message=INVALID_EMAIL_MESSAGE)
        phone = data.phone_number.strip().replace(" ", "")
        if not _PHONE_RE.match(phone):
            return ValidationResult(is_valid=False, error_message=INVALID_PHONE_MESSAGE)
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_password_reset(
        email: Optional[str],
        code: Optional[str],
        new_password: str,
        confirm_password: str,
    ) -> ValidationResult:
        if not email or not email.strip() or not code or not code.strip():
            return ValidationResult(
                is_valid=False,
                error_message=RESET_CONTEXT_MISSING_MESSAGE,
            )
        if not new_password or not new_password.strip():
            return ValidationResult(
                is_valid=False,
                error_message=NEW_PASSWORD_REQUIRED_MESSAGE,
            )
        if new_password != confirm_password:
            return ValidationResult(
                is_valid=False,
                error_message=PASSWORD_MISMATCH_MESSAGE,
            )
        return ValidationResult(is_valid=True)

    # ==================================================================
    # Login
    # ==================================================================

    async def login(self, email: str, password: str) -> AuthResult:
        """Authenticate with email and password.

        A token is read from ``token``, then ``accessToken`` /
        ``access_token``.  When the server accepts the credentials but
        issues no token the result is still a success, flagged
        ``tokenless=True``; nothing is persisted in that case.  With a
        token, the full profile is fetched by id on a best-effort basis.

        Returns
        -------
        AuthResult
        """
        if not email or not email.strip() or not password:
            return AuthResult.invalid_input(CREDENTIALS_REQUIRED_MESSAGE)
        email = normalize_email(email)

        outcome = await self._exchange(
            "login",
            HttpRequest(
                method="POST",
                path=self._config.endpoint("login"),
                json_body={"email": email, "password": password},
            ),
            self._config.LOGIN_DEADLINE_S,
        )
        if isinstance(outcome, AuthResult):
            return outcome
        payload = self._decode("login", outcome)
        if isinstance(payload, AuthResult):
            return payload

        if payload.token is None:
            self._logger.warning(
                "Login accepted for %s but no token was issued; the server may "
                "rely on cookie auth. No session will be persisted.",
                mask_email(email),
                extra={"event": "LOGIN_TOKENLESS", "status": outcome.status_code},
            )
            return AuthResult(
                success=True,
                status_code=outcome.status_code,
                message=payload.message,
                user=payload.user,
                email=payload.email or email,
                tokenless=True,
            )

        await self._persist_token(payload.token)

        user: Optional[UserProfile] = payload.user
        if payload.user_id:
            fetched = await self.fetch_user_by_id(payload.user_id, token=payload.token)
            if fetched is not None:
                user = fetched
            else:
                self._logger.info(
                    "Falling back to the login response's user record.",
                    extra={"event": "USER_FETCH_FALLBACK"},
                )

        self._logger.info(
            "User authenticated: %s",
            mask_email(email),
            extra={
                "event": "LOGIN",
                "user_id": payload.user_id,
                "attempts": outcome.attempts,
            },
        )
        return AuthResult(
            success=True,
            status_code=outcome.status_code,
            message=payload.message,
            token=payload.token,
            user=user,
            email=(user.email if user is not None and user.email else None) or email,
        )

    # ==================================================================
    # Registration
    # ==================================================================

    async def register(self, data: RegistrationData) -> AuthResult:
        """Create an account.

        Success with a token means immediate authentication.  Success
        without one sets ``requires_verification`` and ``email`` to the
        address to verify: the server-echoed email, then the user
        record's, then the one submitted.  A 2xx whose body cannot be
        decoded is still a successful registration.

        Returns
        -------
        AuthResult
        """
        check = self.validate_registration(data)
        if not check.is_valid:
            return AuthResult.invalid_input(check.error_message or REGISTRATION_REQUIRED_FIELDS_MESSAGE)

        submitted = data.model_copy(update={
            "first_name": data.first_name.strip(),
            "last_name": data.last_name.strip(),
            "email": normalize_email(data.email),
            "phone_number": data.phone_number.strip().replace(" ", ""),
            "birth_date": data.birth_date.strip(),
        })

        outcome = await self._exchange(
            "register",
            HttpRequest(
                method="POST",
                path=self._config.endpoint("register"),
                json_body=submitted.model_dump(by_alias=True),
            ),
            self._config.REGISTER_DEADLINE_S,
        )
        if isinstance(outcome, AuthResult):
            return outcome
        if not outcome.is_success:
            return self._rejected("register", outcome)

        try:
            payload = normalize_auth_response(parse_json_body(outcome.text))
        except ValueError as exc:
            self._logger.warning(
                "Registration returned HTTP %d with an undecodable body (%s); "
                "treating as created.",
                outcome.status_code, exc,
                extra={"event": "REGISTER_UNPARSEABLE_BODY"},
            )
            return self._registration_pending(submitted.email, outcome.status_code, None)

        if payload.token:
            await self._persist_token(payload.token)
            self._logger.info(
                "User registered and authenticated: %s",
                mask_email(submitted.email),
                extra={"event": "REGISTER", "user_id": payload.user_id},
            )
            return AuthResult(
                success=True,
                status_code=outcome.status_code,
                message=payload.message or REGISTRATION_AUTHENTICATED_MESSAGE,
                token=payload.token,
                user=payload.user,
                email=payload.email or submitted.email,
            )

        return self._registration_pending(
            payload.email or submitted.email,
            outcome.status_code,
            payload,
        )

    def _registration_pending(
        self,
        email: str,
        status_code: int,
        payload: Optional[AuthPayload],
    ) -> AuthResult:
        self._logger.info(
            "Account created for %s; awaiting email verification.",
            mask_email(email),
            extra={"event": "REGISTER_PENDING_VERIFICATION"},
        )
        return AuthResult(
            success=True,
            status_code=status_code,
            message=(payload.message if payload else None) or REGISTRATION_PENDING_MESSAGE,
            user=payload.user if payload else None,
            email=email,
            requires_verification=True,
        )

    # ==================================================================
    # Email verification
    # ==================================================================

    async def resend_verification(self, email: str) -> AuthResult:
        """Ask the server to send the verification email again."""
        check = self.validate_email(email)
        if not check.is_valid:
            return AuthResult.invalid_input(INVALID_EMAIL_MESSAGE)
        email = normalize_email(email)

        outcome = await self._exchange(
            "resend_verification",
            HttpRequest(
                method="POST",
                path=self._config.endpoint("resend_verification"),
                json_body={"email": email},
            ),
            self._config.RESEND_DEADLINE_S,
        )
        if isinstance(outcome, AuthResult):
            return outcome
        payload = self._decode("resend_verification", outcome)
        if isinstance(payload, AuthResult):
            return payload

        self._logger.info(
            "Verification email re-sent to %s.", mask_email(email),
            extra={"event": "RESEND_VERIFICATION"},
        )
        return AuthResult(
            success=True,
            status_code=outcome.status_code,
            message=payload.message or RESEND_SUCCESS_MESSAGE,
            email=email,
        )

    async def verify_email(self, code: str, email: Optional[str]) -> AuthResult:
        """Confirm an address with the emailed code.

        A blank *email* fails locally with the "email not found" error.
        A token returned by the server is persisted.
        """
        if not email or not email.strip():
            self._logger.warning(
                "Verify email called without an email address.",
                extra={"event": "VERIFY_EMAIL_NO_ADDRESS"},
            )
            return AuthResult.invalid_input(EMAIL_NOT_FOUND_MESSAGE)
        if not code or not code.strip():
            return AuthResult.invalid_input(CODE_REQUIRED_MESSAGE)
        email = normalize_email(email)

        outcome = await self._exchange(
            "verify_email",
            HttpRequest(
                method="POST",
                path=self._config.endpoint("verify_email"),
                json_body={"code": code.strip(), "email": email},
            ),
            self._config.DEFAULT_DEADLINE_S,
        )
        if isinstance(outcome, AuthResult):
            return outcome
        payload = self._decode("verify_email", outcome)
        if isinstance(payload, AuthResult):
            return payload

        if payload.token:
            await self._persist_token(payload.token)
        self._logger.info(
            "Email verified: %s", mask_email(email),
            extra={"event": "VERIFY_EMAIL", "token_issued": payload.token is not None},
        )
        return AuthResult(
            success=True,
            status_code=outcome.status_code,
            message=payload.message or VERIFY_SUCCESS_MESSAGE,
            token=payload.token,
            user=payload.user,
            email=email,
        )

    # ==================================================================
    # Forgot password
    # ==================================================================

    async def forgot_password(self, email: str) -> AuthResult:
        """Step 1: request a reset code for *email*."""
        check = self.validate_email(email)
        if not check.is_valid:
            return AuthResult.invalid_input(INVALID_EMAIL_MESSAGE)
        email = normalize_email(email)

        outcome = await self._exchange(
            "forgot_password",
            HttpRequest(
                method="POST",
                path=self._config.endpoint("forgot_password"),
                json_body={"email": email},
            ),
            self._config.DEFAULT_DEADLINE_S,
        )
        if isinstance(outcome, AuthResult):
            return outcome
        payload = self._decode("forgot_password", outcome)
        if isinstance(payload, AuthResult):
            return payload

        self._logger.info(
            "Password reset code requested for %s.", mask_email(email),
            extra={"event": "FORGOT_PASSWORD"},
        )
        return AuthResult(
            success=True,
            status_code=outcome.status_code,
            message=payload.message or FORGOT_PASSWORD_SUCCESS_MESSAGE,
            email=email,
        )

    async def verify_reset_code(self, code: str, email: Optional[str]) -> AuthResult:
        """Step 2: check the emailed reset code."""
        if not email or not email.strip():
            return AuthResult.invalid_input(RESET_EMAIL_NOT_FOUND_MESSAGE)
        if not code or not code.strip():
            return AuthResult.invalid_input(CODE_REQUIRED_MESSAGE)
        email = normalize_email(email)

        outcome = await self._exchange(
            "verify_reset_code",
            HttpRequest(
                method="POST",
                path=self._config.endpoint("verify_reset_code"),
                json_body={"code": code.strip(), "email": email},
            ),
            self._config.DEFAULT_DEADLINE_S,
        )
        if isinstance(outcome, AuthResult):
            return outcome
        payload = self._decode("verify_reset_code", outcome)
        if isinstance(payload, AuthResult):
            return payload

        self._logger.info(
            "Reset code verified for %s.", mask_email(email),
            extra={"event": "VERIFY_RESET_CODE"},
        )
        return AuthResult(
            success=True,
            status_code=outcome.status_code,
            message=payload.message or VERIFY_CODE_SUCCESS_MESSAGE,
            email=email,
        )

    async def reset_password(
        self,
        email: Optional[str],
        code: Optional[str],
        new_password: str,
        confirm_password: str,
    ) -> AuthResult:
        """Step 3: set a new password using the verified (email, code) pair."""
        check = self.validate_password_reset(email, code, new_password, confirm_password)
        if not check.is_valid:
            return AuthResult.invalid_input(check.error_message or RESET_CONTEXT_MISSING_MESSAGE)
        email = normalize_email(email or "")

        outcome = await self._exchange(
            "reset_password",
            HttpRequest(
                method="POST",
                path=self._config.endpoint("reset_password"),
                json_body={
                    "email": email,
                    "code": (code or "").strip(),
                    "newPassword": new_password,
                    "confirmPassword": confirm_password,
                },
            ),
            self._config.DEFAULT_DEADLINE_S,
        )
        if isinstance(outcome, AuthResult):
            return outcome
        payload = self._decode("reset_password", outcome)
        if isinstance(payload, AuthResult):
            return payload

        self._logger.info(
            "Password reset for %s.", mask_email(email),
            extra={"event": "PASSWORD_RESET"},
        )
        return AuthResult(
            success=True,
            status_code=outcome.status_code,
            message=payload.message or RESET_SUCCESS_MESSAGE,
            email=email,
        )

    # ==================================================================
    # User lookup / logout
    # ==================================================================

    async def fetch_user_by_id(
        self,
        user_id: str,
        token: Optional[str] = None,
    ) -> Optional[UserProfile]:
        """Best-effort profile fetch.  Returns ``None`` on any failure."""
        if not user_id:
            return None
        bearer = token or await self._session_store.get_token()
        headers = {"Authorization": f"Bearer {bearer}"} if bearer else {}

        outcome = await self._exchange(
            "user_by_id",
            HttpRequest(
                method="GET",
                path=self._config.endpoint("user_by_id", user_id=user_id),
                headers=headers,
            ),
            self._config.DEFAULT_DEADLINE_S,
        )
        if isinstance(outcome, AuthResult):
            return None
        if not outcome.is_success:
            self._logger.warning(
                "Fetching user %s returned HTTP %d.", user_id, outcome.status_code,
                extra={"event": "USER_FETCH_FAILED"},
            )
            return None
        try:
            return maybe_normalize_user(parse_json_body(outcome.text))
        except ValueError as exc:
            self._logger.warning(
                "User %s response could not be decoded: %s", user_id, exc,
                extra={"event": "USER_FETCH_FAILED"},
            )
            return None

    async def logout(self) -> None:
        """Forget the persisted token and remember-me flag."""
        try:
            await self._session_store.clear_session()
        except Exception as exc:
            self._logger.error(
                "Failed to clear the stored session: %s", exc,
                extra={"event": "LOGOUT_CLEAR_FAILED"},
            )
        self._logger.info("User logged out.", extra={"event": "LOGOUT"})

    # ==================================================================
    # Private helpers
    # ==================================================================

    async def _exchange(
        self,
        operation: str,
        request: HttpRequest,
        deadline_s: float,
    ) -> Union[HttpResponse, AuthResult]:
        """Run *request*; a failure comes back as a classified ``AuthResult``."""
        try:
            return await self._transport.execute(request, deadline_s=deadline_s)
        except TransportError as exc:
            return self._classify_transport_error(operation, exc)
        except Exception as exc:
            self._logger.exception(
                "Unexpected error during %s: %s", operation, exc,
                extra={"event": "AUTH_UNEXPECTED_ERROR", "operation": operation},
            )
            return AuthResult.failure(
                ErrorKind.UNKNOWN,
                f"{_OPERATION_LABELS.get(operation, 'Request failed')}: "
                f"{exc or type(exc).__name__}",
            )

    def _decode(
        self,
        operation: str,
        response: HttpResponse,
    ) -> Union[AuthPayload, AuthResult]:
        """Status check, then body decode for every endpoint but register."""
        if not response.is_success:
            return self._rejected(operation, response)
        try:
            return normalize_auth_response(parse_json_body(response.text))
        except ValueError as exc:
            self._logger.warning(
                "%s returned HTTP %d with an undecodable body: %s",
                operation, response.status_code, exc,
                extra={"event": "MALFORMED_RESPONSE", "operation": operation},
            )
            return AuthResult.failure(
                ErrorKind.MALFORMED_RESPONSE,
                MALFORMED_RESPONSE_MESSAGE,
                status_code=response.status_code,
            )

    def _rejected(self, operation: str, response: HttpResponse) -> AuthResult:
        message = extract_error_message(response.text, response.status_code)
        self._logger.warning(
            "%s rejected with HTTP %d: %s", operation, response.status_code, message,
            extra={
                "event": "SERVER_REJECTED",
                "operation": operation,
                "status": response.status_code,
            },
        )
        return AuthResult.failure(
            ErrorKind.SERVER_REJECTED,
            message,
            status_code=response.status_code,
        )

    def _classify_transport_error(self, operation: str, exc: TransportError) -> AuthResult:
        """Map a ``TransportError`` onto the taxonomy with a readable message."""
        if exc.kind == ErrorKind.TIMEOUT:
            if operation == "login":
                message = LOGIN_TIMEOUT_MESSAGE
            elif operation == "register":
                message = REGISTER_TIMEOUT_MESSAGE
            else:
                message = DEFAULT_TIMEOUT_MESSAGE
            kind = ErrorKind.TIMEOUT
        elif exc.kind == ErrorKind.CONNECTION_UNAVAILABLE:
            kind, message = ErrorKind.CONNECTION_UNAVAILABLE, CONNECTION_UNAVAILABLE_MESSAGE
        elif exc.kind == ErrorKind.CANCELLED:
            kind, message = ErrorKind.CANCELLED, CANCELLED_MESSAGE
        else:
            kind = ErrorKind.UNKNOWN
            message = f"{_OPERATION_LABELS.get(operation, 'Request failed')}: {exc.message}"

        self._logger.warning(
            "%s failed (%s) after %d attempt(s): %s",
            operation, exc.kind, exc.attempts, exc.message,
            extra={
                "event": "TRANSPORT_FAILURE",
                "operation": operation,
                "error_kind": str(kind),
                "attempts": exc.attempts,
            },
        )
        return AuthResult.failure(kind, message)

    async def _persist_token(self, token: str) -> None:
        """Store *token*; a storage failure never fails the auth call."""
        try:
            await self._session_store.set_token(token)
        except Exception as exc:
            self._logger.error(
                "Failed to persist the session token: %s", exc,
                extra={"event": "TOKEN_PERSIST_FAILED"},
            )
